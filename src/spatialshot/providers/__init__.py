"""Network clients that serve the host's provider commands."""

from __future__ import annotations

from .gemini import GeminiChatSession
from .imgbb import ImgbbUploader

__all__ = ["GeminiChatSession", "ImgbbUploader"]
