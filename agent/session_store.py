"""Session persistence contract and the JSONL implementation.

The orchestrator only talks to ``SessionStore``: it appends every message as
soon as it enters the transcript, loads prior history when a session is
resumed, and records a summary note whenever compaction drops history from
the model's view.

``JsonSessionStore`` keeps one append-only JSONL file per session under
``~/.forge/sessions``. Each line is one record::

    {"type": "message", "timestamp": "...", "message": {...}}
    {"type": "summary", "timestamp": "...", "text": "..."}

Durability is best effort; a torn final line is skipped on load.
"""

import json
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from agent.messages import Message
from forge_constants import FORGE_SESSIONS_DIR

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def new_session_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


def validate_session_id(session_id: str) -> str:
    """Return *session_id* if it is usable as a file name, else raise ValueError."""
    if not isinstance(session_id, str) or not _SAFE_ID.match(session_id):
        raise ValueError(
            f"invalid session id: {session_id!r} (use letters, digits, '.', '_' or '-')"
        )
    return session_id


class SessionStore(ABC):
    """Where a conversation's messages and summaries live."""

    @abstractmethod
    def append_message(self, session_id: str, message: Message) -> None:
        ...

    @abstractmethod
    def load_history(self, session_id: str) -> List[Message]:
        ...

    @abstractmethod
    def save_summary(self, session_id: str, text: str) -> None:
        ...


class InMemorySessionStore(SessionStore):
    """Process-local store, for embedding and tests."""

    def __init__(self):
        self._messages: Dict[str, List[Message]] = {}
        self._summaries: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def append_message(self, session_id: str, message: Message) -> None:
        with self._lock:
            self._messages.setdefault(session_id, []).append(message)

    def load_history(self, session_id: str) -> List[Message]:
        with self._lock:
            return list(self._messages.get(session_id, []))

    def save_summary(self, session_id: str, text: str) -> None:
        with self._lock:
            self._summaries.setdefault(session_id, []).append(text)

    def summaries(self, session_id: str) -> List[str]:
        with self._lock:
            return list(self._summaries.get(session_id, []))


class JsonSessionStore(SessionStore):
    """One JSONL file per session.

    Args:
        sessions_dir: Directory holding ``session_<id>.jsonl`` files.
    """

    def __init__(self, sessions_dir: Optional[Path] = None):
        self._sessions_dir = Path(sessions_dir or FORGE_SESSIONS_DIR)
        self._lock = threading.Lock()

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    def session_file(self, session_id: str) -> Path:
        validate_session_id(session_id)
        return self._sessions_dir / f"session_{session_id}.jsonl"

    def _append(self, session_id: str, record: Dict) -> None:
        path = self.session_file(session_id)
        record = {"timestamp": datetime.now().isoformat(), **record}
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def _records(self, session_id: str) -> List[Dict]:
        path = self.session_file(session_id)
        if not path.exists():
            return []
        records = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping unreadable line %d in %s", lineno, path)
        return records

    def append_message(self, session_id: str, message: Message) -> None:
        self._append(session_id, {"type": "message", "message": message.to_dict()})

    def save_summary(self, session_id: str, text: str) -> None:
        self._append(session_id, {"type": "summary", "text": text})

    def load_history(self, session_id: str) -> List[Message]:
        history = []
        for record in self._records(session_id):
            if record.get("type") != "message":
                continue
            try:
                history.append(Message.from_dict(record["message"]))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed message in session %s: %s", session_id, e)
        return history

    def load_summaries(self, session_id: str) -> List[str]:
        return [r.get("text", "") for r in self._records(session_id) if r.get("type") == "summary"]

    def list_sessions(self) -> List[str]:
        if not self._sessions_dir.exists():
            return []
        files = sorted(self._sessions_dir.glob("session_*.jsonl"))
        return [p.stem[len("session_"):] for p in files]
