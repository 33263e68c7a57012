"""Model client interface and transports."""

from .client import ModelClient
from .gateway import ChatCompletionsClient, ClientSessionCache

__all__ = ["ModelClient", "ChatCompletionsClient", "ClientSessionCache"]
