from .client import ModelClient, OpenAICompatibleClient

__all__ = ["ModelClient", "OpenAICompatibleClient"]
