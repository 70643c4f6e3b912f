"""
MODULE OVERVIEW:
This module provides the observer registration used by every component.

WHAT IS HAPPENING HERE:
Each component owns its own `EventEmitter` instance; there is no process-wide bus.
Emission is synchronous: handlers run in registration order inside `emit()`, so two
consecutive events from the same transport reach consumers in the same order.
A handler may be a coroutine function; its coroutine is scheduled on the running
loop. A failing handler is logged and never stops the others.
"""
import asyncio
import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List
from loguru import logger

# Listeners registered under this name receive (event_name, *args) for every emit.
ANY_EVENT = "*"


class EventEmitter:
    def __init__(self):
        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        self._listeners[event].append(handler)
        return handler

    def once(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        def _wrapper(*args: Any) -> Any:
            self.off(event, _wrapper)
            return handler(*args)

        _wrapper.__wrapped__ = handler  # type: ignore[attr-defined]
        return self.on(event, _wrapper)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        for registered in list(listeners):
            if registered is handler or getattr(registered, "__wrapped__", None) is handler:
                listeners.remove(registered)
                break
        if not listeners:
            del self._listeners[event]

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        handlers = list(self._listeners.get(event, ()))
        wildcard = list(self._listeners.get(ANY_EVENT, ())) if event != ANY_EVENT else []

        for handler in handlers:
            self._call(event, handler, args)
        for handler in wildcard:
            self._call(event, handler, (event, *args))

        return bool(handlers or wildcard)

    def _call(self, event: str, handler: Callable[..., Any], args: tuple) -> None:
        try:
            result = handler(*args)
        except Exception as e:
            logger.error(f"event={event} handler={getattr(handler, '__name__', handler)!r} error='{e}'")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(lambda t: self._on_task_done(event, t))

    def _on_task_done(self, event: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"event={event} async handler error='{exc}'")
