import importlib
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from fitness_outbox.core.errors import ConfigurationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventEnvelope:
    """What a handler receives for one delivery attempt."""
    event_id: str
    event_type: str
    payload: Dict[str, Any]
    correlation_id: Optional[str] = None
    trace_id: Optional[str] = None
    created_at: Optional[datetime] = None


EventHandler = Callable[[EventEnvelope], Awaitable[Any]]


class HandlerRegistry:
    """
    Explicit event_type -> handlers mapping, built once at startup.
    After freeze() the mapping can no longer change.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._frozen = False

    def register(self, event_type: str, handler: EventHandler) -> EventHandler:
        if self._frozen:
            raise ConfigurationError(f"Cannot register a handler for {event_type!r}: registry is frozen")
        if not isinstance(event_type, str) or not event_type.strip():
            raise ConfigurationError("event_type must be a non-empty string")
        if not inspect.iscoroutinefunction(handler) and not inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        ):
            raise ConfigurationError(f"Handler for {event_type!r} must be an async callable")
        self._handlers.setdefault(event_type, []).append(handler)
        log.debug("Registered outbox handler", extra={"event_type": event_type, "handler": handler_name(handler)})
        return handler

    def handler(self, event_type: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of register()."""
        def decorator(func: EventHandler) -> EventHandler:
            return self.register(event_type, func)
        return decorator

    def handlers_for(self, event_type: str) -> Tuple[EventHandler, ...]:
        return tuple(self._handlers.get(event_type, ()))

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, event_type: str) -> bool:
        return event_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def handler_name(handler: Any) -> str:
    name = getattr(handler, "__qualname__", None) or type(handler).__qualname__
    module = getattr(handler, "__module__", None) or type(handler).__module__
    return f"{module}.{name}"


def load_handler_modules(registry: HandlerRegistry, module_paths: Iterable[str]) -> HandlerRegistry:
    """Imports each module once and lets its register(registry) add its handlers."""
    for path in module_paths:
        try:
            module = importlib.import_module(path)
        except ImportError as e:
            raise ConfigurationError(f"Cannot import outbox handler module {path!r}: {e}") from e
        register = getattr(module, "register", None)
        if not callable(register):
            raise ConfigurationError(f"Outbox handler module {path!r} has no register(registry) function")
        register(registry)
        log.info("Loaded outbox handler module", extra={"handler_module": path})
    return registry
