"""Storage event hooks.

Two kinds of hook are supported:

- actions notify subscribers that something happened (R2 went down, an
  upload fell back to disk) and ignore their return values;
- filters pass a value through every subscriber in turn, letting them
  rewrite it (object metadata before an upload).

Subscribers may be plain functions or coroutines. They run in ascending
priority order; equal priorities run in registration order. An action
handler that raises is logged and the remaining handlers still run.
Filter errors propagate to the caller.

Usage:
    from hybrid_storage.lib.hooks import hooks, REMOTE_AVAILABILITY_CHANGED

    async def page_oncall(is_available, previous, response_time):
        ...

    hooks.add_action(REMOTE_AVAILABILITY_CHANGED, page_oncall)
"""

import bisect
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Actions
REMOTE_AVAILABILITY_CHANGED = "remote_availability_changed"
STORAGE_FALLBACK_USED = "storage_fallback_used"
STORAGE_OPERATION_FAILED = "storage_operation_failed"
AFTER_FILE_UPLOAD = "after_file_upload"
AFTER_FILE_DELETE = "after_file_delete"
AFTER_FILE_MIGRATE = "after_file_migrate"

# Filters
UPLOAD_METADATA = "upload_metadata"

_sequence = count()


@dataclass(order=True)
class HookHandler:
    priority: int
    order: int = field(default_factory=lambda: next(_sequence))
    callback: Callable = field(default=None, compare=False)

    async def call(self, *args: Any, **kwargs: Any) -> Any:
        result = self.callback(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


class HookRegistry:
    """Subscribers for storage actions and filters, keyed by hook name."""

    def __init__(self) -> None:
        self._actions: dict[str, list[HookHandler]] = defaultdict(list)
        self._filters: dict[str, list[HookHandler]] = defaultdict(list)

    @staticmethod
    def _register(table: dict, hook_name: str, callback: Callable, priority: int) -> None:
        bisect.insort(table[hook_name], HookHandler(priority=priority, callback=callback))

    @staticmethod
    def _unregister(table: dict, hook_name: str, callback: Callable) -> bool:
        handlers = table.get(hook_name, [])
        for handler in handlers:
            if handler.callback is callback:
                handlers.remove(handler)
                return True
        return False

    def add_action(self, hook_name: str, callback: Callable[..., Any], priority: int = 10) -> None:
        self._register(self._actions, hook_name, callback, priority)

    def add_filter(self, hook_name: str, callback: Callable[..., T], priority: int = 10) -> None:
        self._register(self._filters, hook_name, callback, priority)

    def remove_action(self, hook_name: str, callback: Callable[..., Any]) -> bool:
        """Unsubscribe *callback*. Returns False if it was not subscribed."""
        return self._unregister(self._actions, hook_name, callback)

    def remove_filter(self, hook_name: str, callback: Callable[..., Any]) -> bool:
        return self._unregister(self._filters, hook_name, callback)

    def has_action(self, hook_name: str) -> bool:
        return bool(self._actions.get(hook_name))

    def has_filter(self, hook_name: str) -> bool:
        return bool(self._filters.get(hook_name))

    async def do_action(self, hook_name: str, *args: Any, **kwargs: Any) -> None:
        handlers = self._actions.get(hook_name)
        if not handlers:
            return

        from hybrid_storage.lib.observability import span

        with span("storage.hook", hook=hook_name, handlers=len(handlers)):
            for handler in list(handlers):
                try:
                    await handler.call(*args, **kwargs)
                except Exception:
                    logger.exception("Handler %r for %s failed", handler.callback, hook_name)

    async def apply_filters(self, hook_name: str, value: T, *args: Any, **kwargs: Any) -> T:
        """Return *value* after every filter for *hook_name* has rewritten it."""
        for handler in list(self._filters.get(hook_name, [])):
            value = await handler.call(value, *args, **kwargs)
        return value

    def clear(self) -> None:
        self._actions.clear()
        self._filters.clear()


hooks = HookRegistry()


def action(hook_name: str, priority: int = 10) -> Callable[[Callable], Callable]:
    """Subscribe the decorated function to *hook_name* on the global registry.

    Usage:
        @action(STORAGE_FALLBACK_USED)
        async def count_fallbacks(operation, primary, fallback, error):
            ...
    """

    def decorator(func: Callable) -> Callable:
        hooks.add_action(hook_name, func, priority)
        return func

    return decorator
