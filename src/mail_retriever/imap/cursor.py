# =============================================================================
# UID Cursor Builder
# =============================================================================
# Turns caller-supplied identifier criteria into SEARCH expressions, and
# turns the (unordered) SEARCH result into the ordered list of UIDs a call
# will actually fetch.
#
# Accepted uid specifiers:
#   42                      -> UID 42
#   [1, 2, 3]               -> UID 1,2,3
#   range(10, 13)           -> UID 10,11,12
#   {"from": 5}             -> UID 5:*
#   UidInterval(end=9)      -> UID 1:9
#   "all" / "ALL"           -> ALL
#   "4:8" (any other text)  -> UID 4:8   (passed through verbatim)
# =============================================================================

from collections.abc import Iterable, Iterator, Mapping, Sequence
from typing import Any, TypeVar

from mail_retriever.core.options import ALL, Order, RetrievalOptions, UidInterval, What

T = TypeVar("T")


def build_search_keys(uids: Any) -> str:
    """
    Build a SEARCH expression from a uid specifier.

    Args:
        uids: See the module header for accepted forms.

    Returns:
        The search expression, or "" if the specifier is not understood.
    """
    if isinstance(uids, bool):
        return ""
    if isinstance(uids, int):
        return f"UID {uids}"
    if isinstance(uids, str):
        return "ALL" if uids.strip().lower() == ALL else f"UID {uids}"
    if isinstance(uids, UidInterval):
        return _interval_keys(uids.start, uids.end)
    if isinstance(uids, Mapping):
        return _interval_keys(uids.get("from"), uids.get("to"))
    if isinstance(uids, (range, list, tuple, set, frozenset)):
        ordered = sorted(uids) if isinstance(uids, (set, frozenset)) else list(uids)
        if not ordered:
            return ""
        return f"UID {','.join(str(uid) for uid in ordered)}"
    return ""


def _interval_keys(start: int | None, end: int | None) -> str:
    return f"UID {start if start else 1}:{end if end else '*'}"


def join_search_keys(keys: str | Sequence[str]) -> str:
    """Join a token sequence (e.g., ["FROM", "bob", "UNSEEN"]) into one expression."""
    if isinstance(keys, str):
        return keys.strip() or "ALL"
    joined = " ".join(str(key) for key in keys).strip()
    return joined or "ALL"


def search_criteria(options: RetrievalOptions) -> str:
    """
    Resolve the SEARCH expression for a call.

    A uid specifier, when given, takes the place of the raw keys.
    """
    if options.uids is not None:
        keys = build_search_keys(options.uids)
        if keys:
            return keys
    return join_search_keys(options.keys)


def select_uids(
    uids: Iterable[int],
    what: What,
    count: int | str,
    order: Order,
) -> list[int]:
    """
    Choose which UIDs a call processes, in the order it processes them.

    "first N" takes the N lowest UIDs, "last N" the N highest, ALL takes
    everything. The chosen UIDs come back ascending or descending per
    `order`, so batching never splits the first/last selection.

    Example:
        >>> select_uids([103, 101, 105, 102, 104], What.LAST, 2, Order.DESC)
        [105, 104]
    """
    ordered = sorted(set(uids))
    if count != ALL:
        ordered = ordered[-count:] if what == What.LAST else ordered[:count]
    if order == Order.DESC:
        ordered.reverse()
    return ordered


def batched(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError(f"batch size must be positive, got {size}")
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def format_uid_set(uids: Iterable[int]) -> str:
    """Render UIDs as an IMAP sequence set (e.g., "1,2,5")."""
    return ",".join(str(uid) for uid in uids)
