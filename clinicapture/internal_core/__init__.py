from .config import ScribeConfig, configure_logging, load_config
from .session_store import InMemorySessionStore

__all__ = ["ScribeConfig", "configure_logging", "load_config", "InMemorySessionStore"]
