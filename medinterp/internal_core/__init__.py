from .config import InterpreterConfig, configure_logging, load_config
from .conversation_store import InMemoryConversationStore

__all__ = ["InterpreterConfig", "configure_logging", "load_config", "InMemoryConversationStore"]
