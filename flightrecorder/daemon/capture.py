"""Core capture types and the content hasher."""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


class CaptureType(Enum):
    """How a piece of text was captured."""
    CLIPBOARD = "clipboard"
    TEXT_FIELD = "text_field"
    KEYSTROKE = "keystroke"  # reserved for a fallback mode

    def __str__(self) -> str:
        return self.value


def compute_hash(content: Union[str, bytes]) -> str:
    """
    Fingerprint content for deduplication.

    SHA-256 over the UTF-8 bytes, as lowercase hex. No salt, so the same
    text hashes identically across process restarts.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def content_length(text: str) -> int:
    """Length of text in UTF-8 bytes, the unit used by the length policy."""
    return len(text.encode("utf-8"))


def truncate_content(text: str, max_length: int) -> str:
    """
    Cut text to a prefix of at most max_length UTF-8 bytes.

    Not grapheme-aware: a multi-byte character split by the cut is dropped.
    """
    data = text.encode("utf-8")
    if len(data) <= max_length:
        return text
    return data[:max_length].decode("utf-8", errors="ignore")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Capture:
    """A single observed piece of text."""
    content: str
    capture_type: CaptureType
    source_app: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    content_hash: str = ""
    id: Optional[int] = None

    def __post_init__(self):
        if not self.content_hash:
            object.__setattr__(self, "content_hash", compute_hash(self.content))
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))

    def with_content(self, content: str) -> "Capture":
        """Copy of this capture with new content and a recomputed hash."""
        return replace(self, content=content, content_hash=compute_hash(content))

    def with_id(self, capture_id: int) -> "Capture":
        return replace(self, id=capture_id)

    def matches_hash(self, content_hash: str) -> bool:
        return self.content_hash == content_hash

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "source_app": self.source_app,
            "content": self.content,
            "content_hash": self.content_hash,
            "capture_type": self.capture_type.value,
        }
