import logging
import threading
from typing import Dict, List, Optional

from ..exceptions import ConfigurationError, UnknownHandlerError
from ..state import QueryIntent
from .base import Handler, HandlerOutput

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """
    Name -> Handler map populated at startup.

    Lookups of unregistered names raise UnknownHandlerError rather than
    silently doing nothing.
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self._lock = threading.Lock()

    def register(self, handler: Handler, name: Optional[str] = None) -> str:
        """
        Register a handler instance.

        Args:
            handler: The handler to register.
            name: Registry name; defaults to ``handler.name``.

        Returns:
            The name under which the handler was registered.

        Raises:
            ConfigurationError: If no name is available or the name refers to
                a different instance already.
        """
        final_name = name or handler.name
        if not final_name:
            raise ConfigurationError(
                f"Handler {handler.__class__.__name__} has no name", config_key="name"
            )
        with self._lock:
            existing = self._handlers.get(final_name)
            if existing is not None and existing is not handler:
                raise ConfigurationError(
                    f"Handler name '{final_name}' already refers to a different handler instance.",
                    config_key="name",
                )
            self._handlers[final_name] = handler
        logger.info(f"Handler registered: {final_name} (Class: {handler.__class__.__name__})")
        return final_name

    def unregister(self, name: str) -> None:
        with self._lock:
            if self._handlers.pop(name, None) is None:
                logger.warning(f"Cannot unregister '{name}': not found in registry")
                return
        logger.info(f"Handler '{name}' unregistered")

    def get(self, name: str) -> Optional[Handler]:
        with self._lock:
            return self._handlers.get(name)

    def require(self, name: str) -> Handler:
        handler = self.get(name)
        if handler is None:
            raise UnknownHandlerError(name, available_handlers=self.names())
        return handler

    def names(self) -> List[str]:
        with self._lock:
            return list(self._handlers)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    async def execute(self, name: str, query: str, intent: QueryIntent) -> HandlerOutput:
        """Resolve ``name`` and run the handler."""
        return await self.require(name).execute(query, intent)

    async def close(self) -> None:
        for handler in list(self._handlers.values()):
            await handler.close()
