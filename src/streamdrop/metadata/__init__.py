"""Upload session store backends for StreamDrop."""

from typing import TYPE_CHECKING

from streamdrop.metadata.models import SessionState, UploadSession
from streamdrop.metadata.store import SessionStore

if TYPE_CHECKING:
    from streamdrop.config import MetadataConfig

__all__ = [
    "create_session_store",
    "SessionState",
    "SessionStore",
    "UploadSession",
]


def create_session_store(config: "MetadataConfig") -> SessionStore:
    """Create a session store instance based on configuration.

    Args:
        config: The metadata configuration.

    Returns:
        A session store instance implementing the SessionStore protocol.

    Raises:
        ValueError: If the engine is unknown.
    """
    engine = config.engine

    if engine == "sqlite":
        from streamdrop.metadata.sqlite import SQLiteSessionStore

        return SQLiteSessionStore(config.sqlite_path)

    elif engine == "memory":
        from streamdrop.metadata.memory import MemorySessionStore

        return MemorySessionStore()

    else:
        raise ValueError(f"Unknown metadata engine: {engine}")
