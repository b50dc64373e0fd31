from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Protocol

from cmsagent.core.types import Message, message_from_dict, message_to_dict

DEFAULT_ROOT = Path("data")


class SessionStore(Protocol):
    def get_checkpoint(self, session_id: str) -> dict[str, Any] | None:
        ...

    def set_checkpoint(self, session_id: str, payload: dict[str, Any]) -> None:
        ...

    def delete_checkpoint(self, session_id: str) -> None:
        ...

    def list_checkpoint_ids(self) -> list[str]:
        ...

    def get_messages(self, session_id: str) -> list[Message]:
        ...

    def set_messages(self, session_id: str, messages: list[Message]) -> None:
        ...


def _write_atomic(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(".json.tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False, default=str))
        handle.flush()
        os.fsync(handle.fileno())
    temp_path.replace(path)
    return path


class JsonFileSessionStore:
    """One JSON document per session; writes go through a temp file and replace."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or DEFAULT_ROOT
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(session_id, threading.Lock())

    def checkpoint_path(self, session_id: str) -> Path:
        return self.root / "checkpoints" / f"{session_id}.json"

    def messages_path(self, session_id: str) -> Path:
        return self.root / "sessions" / f"{session_id}.json"

    def get_checkpoint(self, session_id: str) -> dict[str, Any] | None:
        path = self.checkpoint_path(session_id)
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("checkpoint payload must be an object")
        return payload

    def set_checkpoint(self, session_id: str, payload: dict[str, Any]) -> None:
        with self._lock_for(session_id):
            _write_atomic(self.checkpoint_path(session_id), payload)

    def delete_checkpoint(self, session_id: str) -> None:
        with self._lock_for(session_id):
            self.checkpoint_path(session_id).unlink(missing_ok=True)

    def list_checkpoint_ids(self) -> list[str]:
        directory = self.root / "checkpoints"
        if not directory.exists():
            return []
        return sorted(path.stem for path in directory.glob("*.json"))

    def get_messages(self, session_id: str) -> list[Message]:
        path = self.messages_path(session_id)
        if not path.exists():
            return []
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, list):
            raise ValueError("session messages must be a list")
        return [message_from_dict(item) for item in payload]

    def set_messages(self, session_id: str, messages: list[Message]) -> None:
        with self._lock_for(session_id):
            _write_atomic(
                self.messages_path(session_id),
                [message_to_dict(message) for message in messages],
            )


class InMemorySessionStore:
    def __init__(self) -> None:
        self.checkpoints: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get_checkpoint(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            payload = self.checkpoints.get(session_id)
        return json.loads(json.dumps(payload)) if payload is not None else None

    def set_checkpoint(self, session_id: str, payload: dict[str, Any]) -> None:
        encoded = json.loads(json.dumps(payload, default=str))
        with self._lock:
            self.checkpoints[session_id] = encoded

    def delete_checkpoint(self, session_id: str) -> None:
        with self._lock:
            self.checkpoints.pop(session_id, None)

    def list_checkpoint_ids(self) -> list[str]:
        with self._lock:
            return sorted(self.checkpoints)

    def get_messages(self, session_id: str) -> list[Message]:
        with self._lock:
            payload = list(self.messages.get(session_id, []))
        return [message_from_dict(item) for item in payload]

    def set_messages(self, session_id: str, messages: list[Message]) -> None:
        encoded = [message_to_dict(message) for message in messages]
        with self._lock:
            self.messages[session_id] = json.loads(json.dumps(encoded, default=str))
