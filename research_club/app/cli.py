"""
Command-line interface for Research Club.
Provides commands for fetching aggregates, managing exported spreadsheets,
storing credentials and chatting about the selected data.
"""

import argparse
import json
import sys
from datetime import datetime

from loguru import logger

from research_club.core.config import Settings, settings
from research_club.core.logging import configure_logging
from research_club.core.models import DEFAULT_GRANULARITY, CohortColor, Granularity


def _parse_date(value: str):
    return datetime.strptime(value, "%Y-%m-%d").date()


def _parse_datetime(value: str) -> datetime:
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise argparse.ArgumentTypeError(f"Invalid date/time '{value}' (use YYYY-MM-DD or 'YYYY-MM-DD HH:MM')")


def _parse_granularity(value: str) -> Granularity:
    try:
        return Granularity.from_minutes(int(value))
    except ValueError:
        pass
    granularity = Granularity.from_label(value)
    if granularity is None:
        choices = ", ".join(str(g.minutes) for g in Granularity)
        raise argparse.ArgumentTypeError(f"Invalid granularity '{value}' (choose from {choices} minutes)")
    return granularity


def build_session(args):
    """Create the session for this invocation."""
    from research_club.app.session import ResearchSession

    overrides = {}
    if getattr(args, "mock", False):
        overrides["use_mock_data"] = True
    if getattr(args, "data_dir", None):
        overrides["data_dir"] = args.data_dir
    return ResearchSession(Settings(**overrides))


def cmd_fetch(args, session) -> int:
    """Handle fetch command."""
    from research_club.app.exporter import ExportError

    metadata = session.fetch(
        args.ticker,
        day=args.date,
        start=args.start,
        end=args.end,
        granularity=args.granularity,
    )

    if session.error_message:
        print(f"Error: {session.error_message}")
        return 1

    aggregates = session.current_aggregates
    query = session.current_query
    if not aggregates:
        print(f"No data returned for {query.ticker} on {query.day:%Y-%m-%d}")
        return 0

    print(f"\n{'='*72}")
    print(f"  {query.ticker} {query.granularity.display_name} bars ({len(aggregates)} bars, {metadata.source})")
    print(f"{'='*72}")
    print(f"  {'Timestamp':<20} {'Open':>10} {'High':>10} {'Low':>10} {'Close':>10} {'Volume':>12}")
    print(f"  {'-'*20} {'-'*10} {'-'*10} {'-'*10} {'-'*10} {'-'*12}")
    for bar in aggregates[-args.rows:]:
        stamp = bar.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        print(f"  {stamp:<20} {bar.open:>10.2f} {bar.high:>10.2f} {bar.low:>10.2f} {bar.close:>10.2f} {bar.volume:>12,}")
    print(f"{'='*72}\n")

    if args.export:
        try:
            spreadsheet = session.export_current()
        except ExportError as e:
            print(f"Error: {e}")
            return 1
        print(f"Saved to: {spreadsheet.file_path}")

    if args.json:
        print(json.dumps([bar.model_dump(mode="json") for bar in aggregates], indent=2))

    return 0


def cmd_list(args, session) -> int:
    """Handle list command."""
    spreadsheets = session.spreadsheets()
    if not spreadsheets:
        print("No saved spreadsheets")
        return 0

    if args.json:
        print(json.dumps([s.model_dump(mode="json") for s in spreadsheets], indent=2))
        return 0

    print(f"\n  {'Chat':<5} {'Id':<36}  {'Name':<32} {'Rows':>6}")
    print(f"  {'-'*5} {'-'*36}  {'-'*32} {'-'*6}")
    for spreadsheet in spreadsheets:
        mark = "[x]" if spreadsheet.is_selected_for_llm else "[ ]"
        print(f"  {mark:<5} {spreadsheet.id:<36}  {spreadsheet.display_name:<32} {spreadsheet.data_point_count:>6}")
    print()
    return 0


def cmd_select(args, session) -> int:
    """Handle select/deselect commands."""
    from research_club.app.exporter import ExportError

    try:
        spreadsheet = session.set_selected(args.id, args.selected)
    except ExportError as e:
        print(f"Error: {e}")
        return 1
    state = "selected for" if spreadsheet.is_selected_for_llm else "removed from"
    print(f"{spreadsheet.display_name} {state} chat context")
    return 0


def cmd_delete(args, session) -> int:
    """Handle delete command."""
    from research_club.app.exporter import ExportError

    try:
        session.delete_spreadsheet(args.id)
    except ExportError as e:
        print(f"Error: {e}")
        return 1
    print(f"Deleted spreadsheet {args.id}")
    return 0


def cmd_details(args, session) -> int:
    """Handle details command."""
    from research_club.data_sources.massive import MassiveRepositoryError

    try:
        details = session.ticker_details(args.ticker, args.date)
    except MassiveRepositoryError as e:
        print(f"Error: {e}")
        return 1

    print(f"\n{'='*50}")
    print(f"  {details.ticker} Details")
    print(f"{'='*50}")
    print(f"  Market cap:         {details.formatted_market_cap or 'n/a'}")
    print(f"  Shares outstanding: {details.formatted_shares_outstanding or 'n/a'}")
    print(f"  Weighted shares:    {details.formatted_weighted_shares_outstanding or 'n/a'}")
    print(f"{'='*50}\n")
    return 0


def cmd_chat(args, session) -> int:
    """Handle chat command (one question, or an interactive loop)."""
    from research_club.app.use_cases import CohortError
    from research_club.llm.gemini_client import GeminiError

    try:
        chat = session.chat(args.conversation, cohort=args.cohort)
    except CohortError as e:
        print(f"Error: {e}")
        return 1
    if args.clear:
        chat.clear()
        print(f"Cleared conversation '{args.conversation}'")
        return 0

    selected = chat.context_provider()
    welcome = chat.ensure_welcome(len(selected))
    if welcome is not None:
        print(f"\nGemini: {welcome.content}\n")

    def ask(question: str) -> bool:
        try:
            reply = chat.send(question)
        except (GeminiError, ValueError) as e:
            print(f"Error: {e}")
            return False
        print(f"\nGemini: {reply.content}\n")
        return True

    if args.message:
        return 0 if ask(args.message) else 1

    print("Type a question, or 'quit' to leave.")
    while True:
        try:
            question = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return 0
        if question.lower() in ("quit", "exit"):
            return 0
        if question:
            ask(question)


def cmd_cohort(args, session) -> int:
    """Handle cohort command."""
    from research_club.app.exporter import ExportError
    from research_club.app.use_cases import CohortError

    use_case = session.cohorts_use_case

    if args.action == "list":
        cohorts = use_case.list_cohorts()
        if not cohorts:
            print("No cohorts")
            return 0
        print(f"\n  {'Name':<24} {'Color':<8} {'Sheets':>6}  Description")
        print(f"  {'-'*24} {'-'*8} {'-'*6}  {'-'*24}")
        for cohort in cohorts:
            print(f"  {cohort.name:<24} {cohort.color.display_name:<8} "
                  f"{len(cohort.spreadsheet_ids):>6}  {cohort.description or ''}")
        print()
        return 0

    if not args.name:
        print(f"Error: 'cohort {args.action}' needs a cohort name")
        return 1

    try:
        if args.action == "create":
            cohort = use_case.create_cohort(args.name, CohortColor(args.color), args.description)
            print(f"Created cohort {cohort.name} ({cohort.id})")
        elif args.action == "add":
            cohort = session.add_to_cohort(args.name, args.ids)
            print(f"{cohort.name} now holds {len(cohort.spreadsheet_ids)} spreadsheet(s)")
        elif args.action == "remove":
            cohort = use_case.remove_spreadsheets(args.name, args.ids)
            print(f"{cohort.name} now holds {len(cohort.spreadsheet_ids)} spreadsheet(s)")
        else:
            use_case.delete_cohort(args.name)
            print(f"Deleted cohort {args.name}")
    except (CohortError, ExportError) as e:
        print(f"Error: {e}")
        return 1
    return 0


def cmd_credentials(args, session) -> int:
    """Handle credentials command."""
    from research_club.app.use_cases import CredentialManagementError

    use_case = session.credentials_use_case
    gemini = args.service == "gemini"

    if args.action == "set":
        try:
            if gemini:
                use_case.save_gemini_credentials(args.value or "")
            else:
                use_case.save_credentials(args.value or "")
        except CredentialManagementError as e:
            print(f"Error: {e}")
            return 1
        print(f"Saved {args.service} API key")
    elif args.action == "clear":
        if gemini:
            use_case.delete_gemini_credentials()
        else:
            use_case.delete_credentials()
        print(f"Removed {args.service} API key")
    else:
        key = use_case.load_saved_gemini_credentials() if gemini else use_case.load_saved_credentials()
        print(f"{args.service} API key: {key[:8] + '...' if key else '[NOT SET]'}")
    return 0


def cmd_test(args, session) -> int:
    """Report configuration and data source status."""
    config = session.settings

    print(f"\n{'='*50}")
    print("  Configuration Test")
    print(f"{'='*50}")

    print("\n  Settings:")
    print(f"    USE_MOCK_DATA:    {config.use_mock_data}")
    print(f"    MASSIVE_BASE_URL: {config.massive_base_url}")
    print(f"    MASSIVE_API_KEY:  {'[SET]' if session.massive_api_key() else '[NOT SET]'}")
    print(f"    GEMINI_MODEL:     {config.gemini_model}")
    print(f"    GEMINI_API_KEY:   {'[SET]' if session.gemini_api_key() else '[NOT SET]'}")
    print(f"    EXPORT_DIR:       {config.export_dir}")
    print(f"    DATA SOURCE:      {session.repository.source_name}")
    print(f"\n  Saved spreadsheets: {len(session.spreadsheets())}")
    print(f"\n{'='*50}\n")
    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Research Club: stock aggregates, spreadsheet export and Gemini chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  research-club fetch AAPL --date 2024-01-02 --granularity 5 --export
  research-club fetch MSFT --start "2024-01-02 04:00" --end "2024-01-02 20:00"
  research-club list
  research-club select <spreadsheet-id>
  research-club chat -m "How volatile was AAPL in the afternoon?"
  research-club cohort create "Tech week" --color purple
  research-club cohort add "Tech week" <spreadsheet-id>
  research-club chat --cohort "Tech week" -m "Compare these days"
  research-club credentials set massive <api-key>
  research-club test
        """
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument("--mock", action="store_true", help="Use synthetic market data")
    parser.add_argument("--data-dir", help="Directory for preferences and exports")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Fetch command
    fetch_parser = subparsers.add_parser("fetch", help="Fetch aggregates for a ticker")
    fetch_parser.add_argument("ticker", help="Stock ticker symbol (e.g., AAPL)")
    fetch_parser.add_argument("--date", type=_parse_date, help="Trading day (YYYY-MM-DD, default: yesterday)")
    fetch_parser.add_argument("--start", type=_parse_datetime, help="Range start ('YYYY-MM-DD HH:MM')")
    fetch_parser.add_argument("--end", type=_parse_datetime, help="Range end ('YYYY-MM-DD HH:MM')")
    fetch_parser.add_argument("--granularity", type=_parse_granularity, default=DEFAULT_GRANULARITY,
                              help="Bar width in minutes (1, 5, 15, 30, 60)")
    fetch_parser.add_argument("--rows", type=int, default=10, help="Number of bars to display")
    fetch_parser.add_argument("--export", action="store_true", help="Export the result as a spreadsheet")
    fetch_parser.add_argument("--json", action="store_true", help="Output as JSON")
    fetch_parser.set_defaults(func=cmd_fetch)

    # List command
    list_parser = subparsers.add_parser("list", help="List saved spreadsheets")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=cmd_list)

    # Select / deselect commands
    select_parser = subparsers.add_parser("select", help="Include a spreadsheet in chat context")
    select_parser.add_argument("id", help="Spreadsheet id")
    select_parser.set_defaults(func=cmd_select, selected=True)

    deselect_parser = subparsers.add_parser("deselect", help="Exclude a spreadsheet from chat context")
    deselect_parser.add_argument("id", help="Spreadsheet id")
    deselect_parser.set_defaults(func=cmd_select, selected=False)

    # Delete command
    delete_parser = subparsers.add_parser("delete", help="Delete a saved spreadsheet")
    delete_parser.add_argument("id", help="Spreadsheet id")
    delete_parser.set_defaults(func=cmd_delete)

    # Details command
    details_parser = subparsers.add_parser("details", help="Show market cap and share counts")
    details_parser.add_argument("ticker", help="Stock ticker symbol")
    details_parser.add_argument("--date", type=_parse_date, help="Point-in-time date (YYYY-MM-DD)")
    details_parser.set_defaults(func=cmd_details)

    # Chat command
    chat_parser = subparsers.add_parser("chat", help="Chat with Gemini about selected spreadsheets")
    chat_parser.add_argument("-m", "--message", help="Send a single message and exit")
    chat_parser.add_argument("--conversation", default="default", help="Conversation id")
    chat_parser.add_argument("--clear", action="store_true", help="Clear the conversation")
    chat_parser.add_argument("--cohort", help="Use a cohort's spreadsheets instead of the selection")
    chat_parser.set_defaults(func=cmd_chat)

    # Cohort command
    cohort_parser = subparsers.add_parser("cohort", help="Manage named groups of spreadsheets")
    cohort_parser.add_argument("action", choices=["create", "list", "add", "remove", "delete"])
    cohort_parser.add_argument("name", nargs="?", help="Cohort name or id")
    cohort_parser.add_argument("ids", nargs="*", help="Spreadsheet ids (for 'add'/'remove')")
    cohort_parser.add_argument("--color", default=CohortColor.BLUE.value,
                               choices=[c.value for c in CohortColor], help="Cohort color (for 'create')")
    cohort_parser.add_argument("--description", help="Cohort description (for 'create')")
    cohort_parser.set_defaults(func=cmd_cohort)

    # Credentials command
    cred_parser = subparsers.add_parser("credentials", help="Manage API keys")
    cred_parser.add_argument("action", choices=["set", "show", "clear"])
    cred_parser.add_argument("service", choices=["massive", "gemini"])
    cred_parser.add_argument("value", nargs="?", help="API key (for 'set')")
    cred_parser.set_defaults(func=cmd_credentials)

    # Test command
    test_parser = subparsers.add_parser("test", help="Show configuration and data source")
    test_parser.set_defaults(func=cmd_test)

    args = parser.parse_args(argv)

    configure_logging(level="DEBUG" if args.verbose else settings.log_level)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    session = None
    try:
        session = build_session(args)
        status = args.func(args, session)
    except Exception as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        print(f"Error: {e}")
        status = 1
    finally:
        if session is not None:
            session.close()

    sys.exit(status)


if __name__ == "__main__":
    main()
