"""HTTP gateway: the bundled Chat Completions client and its session cache."""

from .chat_completions_adapter import ChatCompletionsClient
from .session_cache import ClientSessionCache

__all__ = ["ChatCompletionsClient", "ClientSessionCache"]
