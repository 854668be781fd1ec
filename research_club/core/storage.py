"""
Storage module for local persistence.
Provides atomic file writes, a JSON-backed key-value store, and the
credential, conversation and cohort stores built on top of it.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, List, Optional

from loguru import logger
from pydantic import TypeAdapter

from .models import ChatMessage, Cohort

_messages_adapter = TypeAdapter(List[ChatMessage])
_cohorts_adapter = TypeAdapter(List[Cohort])


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    """
    Write text to a file so readers never observe a partial write.

    The content goes to a temporary file in the same directory which is
    then renamed over the destination.

    Args:
        path: Destination file
        text: Content to write
        encoding: Text encoding
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path, default: Any = None) -> Any:
    """
    Load a JSON document, returning ``default`` when it is missing or corrupt.

    Args:
        path: File to read
        default: Value returned when the file cannot be used

    Returns:
        Parsed JSON value
    """
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable JSON file {path}: {e}")
        return default


def write_json(path: Path, value: Any) -> None:
    """Serialize ``value`` as pretty-printed JSON and write it atomically."""
    atomic_write_text(path, json.dumps(value, indent=2, sort_keys=True, default=str))


class KeyValueStore:
    """
    Small string-keyed preference store persisted as a single JSON object.
    Every mutation is written through immediately.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        data = read_json(self.path, default={})
        self._data: dict[str, Any] = data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def contains(self, key: str) -> bool:
        return key in self._data

    def _flush(self) -> None:
        write_json(self.path, self._data)
        logger.debug(f"Persisted {len(self._data)} preference keys to {self.path}")


class CredentialStore:
    """API credentials kept in the local key-value store."""

    API_KEY_KEY = "massive_api_key"
    GEMINI_API_KEY_KEY = "gemini_api_key"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def save_api_key(self, api_key: str) -> None:
        self.store.set(self.API_KEY_KEY, api_key)

    def get_api_key(self) -> Optional[str]:
        return self.store.get(self.API_KEY_KEY)

    def delete_api_key(self) -> None:
        self.store.delete(self.API_KEY_KEY)

    def has_saved_credentials(self) -> bool:
        return self.get_api_key() is not None

    # Gemini API key

    def save_gemini_api_key(self, api_key: str) -> None:
        self.store.set(self.GEMINI_API_KEY_KEY, api_key)

    def get_gemini_api_key(self) -> Optional[str]:
        return self.store.get(self.GEMINI_API_KEY_KEY)

    def delete_gemini_api_key(self) -> None:
        self.store.delete(self.GEMINI_API_KEY_KEY)

    def has_saved_gemini_credentials(self) -> bool:
        return self.get_gemini_api_key() is not None


class ConversationStore:
    """Chat transcripts persisted per conversation in the key-value store."""

    KEY_PREFIX = "gemini_conversation_"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _key(self, conversation_id: str) -> str:
        return f"{self.KEY_PREFIX}{conversation_id}"

    def load(self, conversation_id: str) -> List[ChatMessage]:
        raw = self.store.get(self._key(conversation_id))
        if not raw:
            return []
        try:
            return _messages_adapter.validate_json(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable conversation {conversation_id}: {e}")
            return []

    def save(self, conversation_id: str, messages: List[ChatMessage]) -> None:
        encoded = _messages_adapter.dump_json(messages).decode("utf-8")
        self.store.set(self._key(conversation_id), encoded)

    def clear(self, conversation_id: str) -> None:
        self.store.delete(self._key(conversation_id))


class CohortStore:
    """Named spreadsheet groups persisted as one list in the key-value store."""

    KEY = "cohorts"

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load(self) -> List[Cohort]:
        raw = self.store.get(self.KEY)
        if not raw:
            return []
        try:
            return _cohorts_adapter.validate_json(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable cohorts: {e}")
            return []

    def save_all(self, cohorts: List[Cohort]) -> None:
        self.store.set(self.KEY, _cohorts_adapter.dump_json(cohorts).decode("utf-8"))

    def upsert(self, cohort: Cohort) -> None:
        cohorts = [c for c in self.load() if c.id != cohort.id]
        cohorts.append(cohort)
        self.save_all(sorted(cohorts, key=lambda c: c.created_at))

    def delete(self, cohort_id: str) -> None:
        self.save_all([c for c in self.load() if c.id != cohort_id])
