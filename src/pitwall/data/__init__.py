from .client import F1DataClient

__all__ = ["F1DataClient"]
