"""Top-level package for relay-chat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .assembler import StreamAssembler
    from .attachments import AttachmentIngestor, AttachmentLimits
    from .client import StreamingCompletionClient
    from .composer import MessageComposer
    from .config import load_config
    from .exceptions import (
        AuthError,
        ConcurrencyError,
        NetworkError,
        PersistenceError,
        RelayChatError,
        StreamCancelledError,
        ValidationError,
    )
    from .publisher import PersistencePublisher
    from .session import ChatSession, TurnOutcome

__all__ = [
    "AttachmentIngestor",
    "AttachmentLimits",
    "AuthError",
    "ChatSession",
    "ConcurrencyError",
    "MessageComposer",
    "NetworkError",
    "PersistenceError",
    "PersistencePublisher",
    "RelayChatError",
    "StreamAssembler",
    "StreamCancelledError",
    "StreamingCompletionClient",
    "TurnOutcome",
    "ValidationError",
    "load_config",
]

_EXPORTS: dict[str, str] = {
    "StreamAssembler": ".assembler",
    "AttachmentIngestor": ".attachments",
    "AttachmentLimits": ".attachments",
    "StreamingCompletionClient": ".client",
    "MessageComposer": ".composer",
    "load_config": ".config",
    "AuthError": ".exceptions",
    "ConcurrencyError": ".exceptions",
    "NetworkError": ".exceptions",
    "PersistenceError": ".exceptions",
    "RelayChatError": ".exceptions",
    "StreamCancelledError": ".exceptions",
    "ValidationError": ".exceptions",
    "PersistencePublisher": ".publisher",
    "ChatSession": ".session",
    "TurnOutcome": ".session",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import relay_chat`` stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(module_name, __name__), name)
