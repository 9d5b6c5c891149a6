# =============================================================================
# Result Helpers
# =============================================================================
# Small helpers shared by the IMAP and POP3 retrievers for handing results
# to callers.
# =============================================================================

import inspect
from collections.abc import Callable
from typing import Any, TypeVar

from mail_retriever.core.options import Order, What

T = TypeVar("T")


async def invoke(callback: Callable[[T], Any], item: T) -> None:
    """Call a per-item callback, awaiting it if it is a coroutine function."""
    result = callback(item)
    if inspect.isawaitable(result):
        await result


def collapse(results: list[T], count: int | str) -> T | list[T]:
    """
    Collapse a single result to a bare item when exactly one was asked for.

    Example:
        >>> collapse(["a"], 1)
        'a'
        >>> collapse([], 1)
        []
    """
    if count == 1 and len(results) == 1:
        return results[0]
    return results


def take(items: list[T], what: What, limit: int | None, order: Order) -> list[T]:
    """Take the first/last `limit` items of a listing, then apply `order`."""
    if limit is not None:
        items = items[-limit:] if what == What.LAST else items[:limit]
    if order == Order.DESC:
        items = list(reversed(items))
    return items
