"""
Chat assistant over exported spreadsheets.
Builds the data context and conversation history sent to Gemini and keeps
the persisted transcript of each conversation.
"""

from datetime import date
from typing import Callable, List, Optional

from google.genai import types
from loguru import logger

from research_club.core.models import ChatMessage, ChatRole, SavedSpreadsheet
from research_club.core.storage import ConversationStore

from .gemini_client import GeminiClient

# Welcome messages are recognised by this phrase and never sent upstream
WELCOME_MARKER = "I have access to"
CONTEXT_HEADER = "Stock Market Data:\n\n"


def _read_spreadsheet(spreadsheet: SavedSpreadsheet) -> str:
    return spreadsheet.file_path.read_text(encoding="utf-8")


def format_medium_date(value: date) -> str:
    """Format a date like ``Jan 2, 2024``."""
    return f"{value:%b} {value.day}, {value.year}"


def welcome_message(spreadsheet_count: int) -> ChatMessage:
    plural = "" if spreadsheet_count == 1 else "s"
    text = (
        f"{WELCOME_MARKER} {spreadsheet_count} spreadsheet{plural} of stock data. \n"
        "You can ask me about:\n"
        "• Price trends and patterns\n"
        "• Volume analysis\n"
        "• Volatility indicators\n"
        "• Anomalies or unusual patterns\n"
        "• Correlations between metrics\n"
        "\n"
        "What would you like to know?"
    )
    return ChatMessage(role=ChatRole.ASSISTANT, content=text)


def is_welcome(message: ChatMessage) -> bool:
    return message.role is ChatRole.ASSISTANT and WELCOME_MARKER in message.content


def build_data_context(
    spreadsheets: List[SavedSpreadsheet],
    reader: Callable[[SavedSpreadsheet], str] = _read_spreadsheet,
) -> str:
    """
    Concatenate the selected spreadsheets into one labelled text block each.

    Args:
        spreadsheets: Spreadsheets selected for the conversation
        reader: Returns the raw CSV text of a spreadsheet

    Returns:
        Context text, just the header when nothing is selected
    """
    context = CONTEXT_HEADER
    for spreadsheet in spreadsheets:
        context += f"=== {spreadsheet.display_name} ===\n"
        try:
            content = reader(spreadsheet)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not load {spreadsheet.file_name} for chat context: {e}")
            context += f"Error loading data: {e}\n\n"
            continue
        context += f"Ticker: {spreadsheet.ticker}\n"
        context += f"Date: {format_medium_date(spreadsheet.date)}\n"
        context += f"Granularity: {spreadsheet.granularity.display_name}\n"
        context += f"Data Points: {spreadsheet.data_point_count}\n\n"
        context += f"CSV Data:\n{content}\n\n"
    return context


def build_history(messages: List[ChatMessage]) -> List[types.Content]:
    """
    Convert a transcript into Gemini conversation turns.

    Welcome messages are dropped, and a trailing user message is removed
    because it is sent separately as the current question.
    """
    history = [
        types.Content(role=message.role.api_role, parts=[types.Part(text=message.content)])
        for message in messages
        if not is_welcome(message)
    ]
    if history and history[-1].role == "user":
        history.pop()
    return history


class ChatSession:
    """
    One persisted conversation with the chat assistant.
    A failed send leaves the user's message in the transcript and re-raises the error.
    """

    def __init__(
        self,
        conversation_id: str,
        client: GeminiClient,
        store: ConversationStore,
        context_provider: Callable[[], List[SavedSpreadsheet]],
        reader: Callable[[SavedSpreadsheet], str] = _read_spreadsheet,
        system_instruction: Optional[str] = None,
    ):
        self.conversation_id = conversation_id
        self.client = client
        self.store = store
        self.context_provider = context_provider
        self.reader = reader
        self.system_instruction = system_instruction
        self._messages: List[ChatMessage] = store.load(conversation_id)

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def _append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self.store.save(self.conversation_id, self._messages)

    def ensure_welcome(self, spreadsheet_count: int) -> Optional[ChatMessage]:
        """Add the welcome message to an empty transcript when data is selected."""
        if self._messages or spreadsheet_count <= 0:
            return None
        message = welcome_message(spreadsheet_count)
        self._append(message)
        return message

    def send(self, user_text: str) -> ChatMessage:
        """
        Send a user message and record the assistant's reply.

        Raises:
            ValueError: If the message is blank
            GeminiError: If the request fails
        """
        text = (user_text or "").strip()
        if not text:
            raise ValueError("Message cannot be empty")

        self._append(ChatMessage(role=ChatRole.USER, content=text))

        spreadsheets = self.context_provider()
        context = build_data_context(spreadsheets, self.reader)
        history = build_history(self._messages)
        logger.info(
            f"Sending chat turn for conversation {self.conversation_id} "
            f"with {len(spreadsheets)} spreadsheet(s) and {len(history)} prior turn(s)"
        )

        reply = self.client.send_message(
            text, context, history, system_instruction=self.system_instruction
        )
        message = ChatMessage(role=ChatRole.ASSISTANT, content=reply)
        self._append(message)
        return message

    def clear(self) -> None:
        self._messages = []
        self.store.clear(self.conversation_id)
