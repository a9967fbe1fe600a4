"""Disk-based conversation store keyed by user id (per-key locking, atomic)."""
from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

ROLES = ("user", "assistant", "system")


class StoreError(RuntimeError):
    """Raised when a conversation cannot be read from or written to disk."""


# -----------------------------
# Types
# -----------------------------
@dataclass(frozen=True)
class Message:
    """A single role-tagged turn of a conversation."""

    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if not isinstance(self.content, str):
            raise TypeError("message content must be a string")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(role=str(data.get("role", "")), content=str(data.get("content", "")))


# -----------------------------
# Helpers
# -----------------------------
def _safe_key(key: str) -> str:
    # Readable prefix plus a digest so "a/b" and "a_b" never share a file.
    readable = re.sub(r"[^\w.\-@]+", "_", key.strip())[:96] or "key"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"{readable}-{digest}"


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    try:
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass
class _Partition:
    """Owner of one key's blob; every operation on the key holds ``lock``."""

    path: Path
    lock: threading.Lock = field(default_factory=threading.Lock)


# -----------------------------
# DiskConversationStore
# -----------------------------
class DiskConversationStore:
    """JSON-based per-key conversation log.

    Layout:
        data_dir/
          <sanitized-key>-<digest>.json   # list[{"role", "content"}]

    Each key maps to a single partition cell holding the file path and a lock,
    so writes to one key are serialized while different keys proceed
    independently. Files are replaced atomically; a reader only ever sees the
    last complete write.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create conversation directory {self.root}: {e}") from e
        self._partitions: Dict[str, _Partition] = {}
        self._registry_lock = threading.Lock()

    def _partition(self, key: str) -> _Partition:
        with self._registry_lock:
            part = self._partitions.get(key)
            if part is None:
                part = _Partition(path=self.root / f"{_safe_key(key)}.json")
                self._partitions[key] = part
            return part

    # --------- core API ----------
    def append(self, key: str, message: Message) -> None:
        """Append ``message`` to the conversation for ``key`` and persist it."""
        if not isinstance(message, Message):
            raise TypeError("message must be a Message")
        part = self._partition(key)
        with part.lock:
            history = self._load(part.path)
            history.append(message)
            self._save(part.path, history)

    def read(self, key: str) -> List[Message]:
        """Return the ordered conversation for ``key`` (empty if none)."""
        part = self._partition(key)
        with part.lock:
            return self._load(part.path)

    def clear(self, key: str) -> None:
        """Reset the conversation for ``key`` to an empty list."""
        part = self._partition(key)
        with part.lock:
            self._save(part.path, [])

    # --------- internals ----------
    @staticmethod
    def _load(path: Path) -> List[Message]:
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read conversation file {path}: {e}") from e
        if not isinstance(raw, list):
            raise StoreError(f"Invalid conversation format in {path}, expected list.")
        try:
            return [Message.from_dict(item) for item in raw]
        except (AttributeError, TypeError, ValueError) as e:
            raise StoreError(f"Invalid message in {path}: {e}") from e

    @staticmethod
    def _save(path: Path, history: List[Message]) -> None:
        payload = json.dumps([m.to_dict() for m in history], ensure_ascii=False, indent=2)
        try:
            _atomic_write_text(path, payload)
        except OSError as e:
            raise StoreError(f"Failed to write conversation file {path}: {e}") from e
