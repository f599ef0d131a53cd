"""Registry mapping handler keys to job handler callables."""

import importlib
from typing import Any, Awaitable, Callable, Dict, List, Union

from .errors import DuplicateHandlerError, HandlerNotFoundError
from .logger import configure_logger

logger = configure_logger(__name__)

# handler(payload, context) -> HandlerResult | dict | None, sync or async
Handler = Callable[[Any, Any], Union[Any, Awaitable[Any]]]


class HandlerRegistry:
    """Handlers for job types, populated once at startup.

    A registry is a plain object handed to the processor, so tests and
    separate engines can each keep their own.
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, handler_key: str, handler: Handler) -> None:
        """Register handler for handler_key. Keys can only be registered once."""
        if not handler_key:
            raise ValueError("Handler key must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for {handler_key} is not callable")
        if handler_key in self._handlers:
            raise DuplicateHandlerError(handler_key)

        self._handlers[handler_key] = handler
        logger.info(
            f"Registered handler {getattr(handler, '__name__', repr(handler))} "
            f"for job type {handler_key}"
        )

    def handler(self, handler_key: str) -> Callable[[Handler], Handler]:
        """Decorator form of register().

        Example:
            @registry.handler("send_email")
            async def send_email(payload, context):
                ...
        """

        def decorator(func: Handler) -> Handler:
            self.register(handler_key, func)
            return func

        return decorator

    def get(self, handler_key: str) -> Handler:
        try:
            return self._handlers[handler_key]
        except KeyError:
            raise HandlerNotFoundError(handler_key) from None

    def keys(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, handler_key: object) -> bool:
        return handler_key in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def load_registry(path: str) -> HandlerRegistry:
    """Import a registry from a 'package.module:attribute' path.

    The attribute may be a HandlerRegistry or a zero-argument callable
    returning one.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Registry path must look like 'module:attribute', got {path!r}")

    module = importlib.import_module(module_name)
    target = getattr(module, attribute)
    if not isinstance(target, HandlerRegistry) and callable(target):
        target = target()
    if not isinstance(target, HandlerRegistry):
        raise TypeError(f"{path} is not a HandlerRegistry")

    logger.info(f"Loaded {len(target)} handler(s) from {path}")
    return target
