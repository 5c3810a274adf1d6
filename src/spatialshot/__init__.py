"""Top-level package for the Spatialshot session core."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .bridge import EventBridge, Subscription
    from .chat_engine import ChatSessionEngine
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        CaptureInProgressError,
        ChatProviderError,
        ConfigValidationError,
        CredentialMissingError,
        HostCommandError,
        PersistenceError,
        SpatialshotError,
        TransientProviderError,
        UploadError,
    )
    from .logging_utils import configure_logging
    from .models import ChatMessage, ClipboardCapture, ImagePayload, PrefetchEntry
    from .prefetch import PrefetchCache
    from .provisioner import CredentialProvisioner
    from .session import AssistantSession
    from .state import AuthStage, ProviderKind, SessionStage
    from .transport import InProcessTransport

_EXPORTS: dict[str, str] = {
    "AssistantSession": ".session",
    "AuthStage": ".state",
    "CaptureInProgressError": ".exceptions",
    "ChatMessage": ".models",
    "ChatProviderError": ".exceptions",
    "ChatSessionEngine": ".chat_engine",
    "ClipboardCapture": ".models",
    "ConfigValidationError": ".exceptions",
    "CredentialMissingError": ".exceptions",
    "CredentialProvisioner": ".provisioner",
    "EventBridge": ".bridge",
    "HostCommandError": ".exceptions",
    "ImagePayload": ".models",
    "InProcessTransport": ".transport",
    "PersistenceError": ".exceptions",
    "PrefetchCache": ".prefetch",
    "PrefetchEntry": ".models",
    "ProviderKind": ".state",
    "SessionStage": ".state",
    "SpatialshotError": ".exceptions",
    "Subscription": ".bridge",
    "TransientProviderError": ".exceptions",
    "UploadError": ".exceptions",
    "configure_logging": ".logging_utils",
    "ensure_config_dir": ".config",
    "load_config": ".config",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so importing the package stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module_name, __name__), name)
