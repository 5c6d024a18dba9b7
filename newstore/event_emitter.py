import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Listener = Callable[..., Awaitable[Any]]


class EventEmitter:
    """In-process async event bus.

    Events in use:
        shutdown: application teardown, listeners release resources.
        draw_closed(draw_id): a draw just sold its last slot or was closed by an admin.
    """

    def __init__(self):
        self.listeners: dict[str, list[tuple[Listener, int]]] = {}

    def on(self, event_name: str, callback: Listener, priority: int = 0):
        """Subscribe to a given event with a callback and priority."""
        self.listeners.setdefault(event_name, []).append((callback, priority))

    def off(self, event_name: str, callback: Listener):
        self.listeners[event_name] = [
            (cb, prio)
            for cb, prio in self.listeners.get(event_name, [])
            if cb != callback
        ]

    async def emit(self, event_name: str, *args, **kwargs) -> int:
        """Call every listener of an event, lower priority first.

        A failing listener is logged and does not stop the others.
        Returns the number of listeners that failed.
        """
        sorted_listeners = sorted(self.listeners.get(event_name, []), key=lambda x: x[1])
        if not sorted_listeners:
            return 0

        results = await asyncio.gather(
            *(callback(*args, **kwargs) for callback, _ in sorted_listeners),
            return_exceptions=True,
        )

        failures = 0
        for (callback, _), result in zip(sorted_listeners, results):
            if isinstance(result, Exception):
                failures += 1
                logger.error(
                    f"Listener {getattr(callback, '__name__', callback)} for "
                    f"'{event_name}' failed: {result}",
                    exc_info=result,
                )
        return failures


event_emitter = EventEmitter()
