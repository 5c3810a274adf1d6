"""Value types shared by the session components."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
import hashlib
from pathlib import Path
from typing import Any

from .state import ProviderKind, SessionStage

DEFAULT_MIME_TYPE = "image/jpeg"

# Leading signatures used to sniff an image format from raw bytes.
_MAGIC_PREFIXES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
)


class ChatRole(str, Enum):
    """Author of a chat message."""

    USER = "user"
    MODEL = "model"


@dataclass(frozen=True)
class ChatMessage:
    """A single entry in the conversation history."""

    id: str
    role: ChatRole
    text: str
    created_at: float


@dataclass(frozen=True)
class ClipboardCapture:
    """A secret captured from the clipboard for one provider."""

    provider: ProviderKind
    secret: str = field(repr=False)

    @classmethod
    def from_payload(cls, payload: Any) -> ClipboardCapture:
        """Build a capture from a ``clipboard-captured`` event payload."""
        if not isinstance(payload, dict):
            raise ValueError("Clipboard capture payload must be a mapping.")
        try:
            provider = ProviderKind(str(payload.get("provider", "")).strip())
        except ValueError as exc:
            raise ValueError(
                f"Unknown capture provider {payload.get('provider')!r}."
            ) from exc
        secret = payload.get("secret")
        if not isinstance(secret, str) or not secret.strip():
            raise ValueError("Clipboard capture payload carries no secret.")
        return cls(provider=provider, secret=secret.strip())


def sniff_mime_type(data: bytes) -> str:
    """Guess an image MIME type from magic bytes, defaulting to JPEG."""
    for prefix, mime_type in _MAGIC_PREFIXES:
        if data.startswith(prefix):
            return mime_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return DEFAULT_MIME_TYPE


@dataclass(frozen=True)
class ImagePayload:
    """Base64 image data handed to the chat provider and the image host."""

    base64: str = field(repr=False)
    mime_type: str = DEFAULT_MIME_TYPE

    @classmethod
    def from_bytes(cls, data: bytes) -> ImagePayload:
        if not data:
            raise ValueError("Empty image buffer")
        encoded = base64.b64encode(data).decode("ascii")
        return cls(base64=encoded, mime_type=sniff_mime_type(data))

    @classmethod
    def from_path(cls, path: str | Path) -> ImagePayload:
        return cls.from_bytes(Path(path).expanduser().read_bytes())

    @classmethod
    def from_data_url(cls, data_url: str) -> ImagePayload:
        """Parse a ``data:<mime>;base64,<data>`` string."""
        header, sep, data = data_url.partition(",")
        if not sep or not header.startswith("data:") or ";base64" not in header:
            raise ValueError("Not a base64 data URL.")
        try:
            base64.b64decode(data, validate=True)
        except binascii.Error as exc:
            raise ValueError("Data URL carries invalid base64.") from exc
        mime_type = header[len("data:") :].split(";", 1)[0] or DEFAULT_MIME_TYPE
        return cls(base64=data, mime_type=mime_type)

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"

    @cached_property
    def identity(self) -> str:
        """Content identity used to key the reverse-search cache."""
        return hashlib.sha256(self.base64.encode("ascii")).hexdigest()


@dataclass(frozen=True)
class PrefetchEntry:
    """The single reverse-search URL slot tied to the active image."""

    image_key: str
    url: str | None = None


@dataclass(frozen=True)
class ChatSessionState:
    """Immutable snapshot of the chat engine handed to UI listeners."""

    messages: tuple[ChatMessage, ...]
    streaming_text: str
    is_chat_mode: bool
    is_streaming: bool
    is_loading: bool
    error: str | None
    last_unconfirmed_message: ChatMessage | None
    model: str
    stage: SessionStage
