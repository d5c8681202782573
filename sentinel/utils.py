"""Small shared helpers."""

import inspect
from typing import Any


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, otherwise return it unchanged.

    Lets hooks, predicates and strategies be plain functions or coroutine
    functions behind a single call site.
    """
    if inspect.isawaitable(value):
        return await value
    return value
