"""Check dispatch table: one CheckFunction per Category.

A CheckFunction is ``async (config, token) -> CheckResult``. The token is set
when the scheduler gives up on an attempt (timeout). Coroutines are cancelled
by asyncio anyway; the token exists for work that has left the event loop
(threads, subprocesses), which can only stop if it polls ``token.cancelled``.
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable, Iterator
from typing import Protocol

from .models import Category, CheckConfig, CheckResult


class CancelToken:
    """Cooperative cancellation flag, safe to poll from worker threads."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CheckFunction(Protocol):
    def __call__(self, config: CheckConfig, token: CancelToken) -> Awaitable[CheckResult]: ...


class CheckRegistry:
    """Maps each Category to the function that checks it."""

    def __init__(self) -> None:
        self._checks: dict[Category, CheckFunction] = {}

    def register(self, category: Category, fn: CheckFunction) -> None:
        self._checks[category] = fn

    def check(self, category: Category) -> Callable[[CheckFunction], CheckFunction]:
        """Decorator form of register()."""
        def decorator(fn: CheckFunction) -> CheckFunction:
            self.register(category, fn)
            return fn
        return decorator

    def get(self, category: Category) -> CheckFunction | None:
        return self._checks.get(category)

    def __contains__(self, category: object) -> bool:
        return category in self._checks

    def __iter__(self) -> Iterator[Category]:
        return iter(self._checks)

    def __len__(self) -> int:
        return len(self._checks)
