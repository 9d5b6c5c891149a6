# =============================================================================
# Retrieval Options
# =============================================================================
# Explicit option structures for the caller-facing retrieval API. Every
# recognized option is listed here with its default; public operations
# normalize their input once (RetrievalOptions.build / FolderOptions.build)
# and pass the resulting frozen value object around for the rest of the call.
#
# Options may be given as an existing options object, a plain mapping, or
# keyword arguments (keywords win). A value of None means "use the default".
# =============================================================================

import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Union

from mail_retriever.core.folder import normalize_flag


# Sentinel for "no count limit"
ALL = "all"


class What(str, Enum):
    """Which end of the matching set to take."""
    FIRST = "first"     # Lowest UIDs
    LAST = "last"       # Highest UIDs


class Order(str, Enum):
    """Order in which results are produced."""
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class UidInterval:
    """
    An open-ended UID range. Either end may be omitted.

    Example:
        >>> UidInterval(start=100)        # UID 100:*
        >>> UidInterval(end=50)           # UID 1:50
    """
    start: int | None = None
    end: int | None = None


# Anything accepted as a uid specifier (see imap.cursor.build_search_keys)
UidSpec = Union[int, str, range, UidInterval, Mapping, Collection[int]]

# A name rule: glob string, compiled regex, or a collection of either
NameRule = Union[str, re.Pattern, Collection[Union[str, re.Pattern]]]

# Mailbox attributes that mark virtual or special-purpose folders
DEFAULT_EXCLUDE_FLAGS = frozenset({
    "noselect",
    "all",
    "drafts",
    "important",
    "junk",
    "spam",
    "flagged",
    "trash",
})


def _merge(options: Any, overrides: dict[str, Any]) -> dict[str, Any]:
    """Flatten an options object/mapping and keyword overrides into a dict."""
    if options is None:
        merged: dict[str, Any] = {}
    elif isinstance(options, Mapping):
        merged = dict(options)
    else:
        merged = {f.name: getattr(options, f.name) for f in fields(options)}
    merged.update(overrides)
    return {key: value for key, value in merged.items() if value is not None}


def _check_known(cls: type, values: dict[str, Any]) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown option(s) for {cls.__name__}: {', '.join(unknown)}")


def _normalize_count(count: int | str) -> int | str:
    if isinstance(count, str):
        if count.lower() == ALL:
            return ALL
        raise ValueError(f"count must be a positive integer or 'all', got {count!r}")
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValueError(f"count must be a positive integer or 'all', got {count!r}")
    return count


def _coerce_enum(enum_cls: type[Enum], value: Any, option: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"{option} must be one of {choices}, got {value!r}") from None


@dataclass(frozen=True)
class RetrievalOptions:
    """
    Options for message and entry retrieval.

    Attributes:
        mailbox: Mailbox to search in.
        what: Take the first (lowest) or last (highest) matching UIDs.
        order: Order of the produced results.
        count: Maximum number of results, or ALL.
        keys: SEARCH criteria, as one string or a sequence of tokens.
        uids: UID specifier; when given it replaces `keys`.
        read_only: Use EXAMINE instead of SELECT (no \\Seen side effects).
        delete_after_find: Delete retrieved messages once the call completes.
        batch_size: Number of messages fetched per round-trip.
    """

    mailbox: str = "INBOX"
    what: What = What.FIRST
    order: Order = Order.ASC
    count: int | str = 10
    keys: str | tuple[str, ...] = "ALL"
    uids: Any = None
    read_only: bool = False
    delete_after_find: bool = False
    batch_size: int | None = None

    @classmethod
    def build(
        cls,
        options: "RetrievalOptions | Mapping[str, Any] | None" = None,
        *,
        defaults: Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> "RetrievalOptions":
        """
        Normalize caller input into a validated options object.

        Args:
            options: Existing options, a mapping, or None.
            defaults: Operation-specific defaults applied to unset options.
            **overrides: Individual options (take precedence).

        Raises:
            ValueError: On unknown options or invalid values.
        """
        values = dict(defaults or {})
        values.update(_merge(options, overrides))
        _check_known(cls, values)

        if "what" in values:
            values["what"] = _coerce_enum(What, values["what"], "what")
        if "order" in values:
            values["order"] = _coerce_enum(Order, values["order"], "order")
        if "count" in values:
            values["count"] = _normalize_count(values["count"])
        if "keys" in values and not isinstance(values["keys"], str):
            values["keys"] = tuple(str(key) for key in values["keys"])

        batch_size = values.get("batch_size")
        if batch_size is not None and (
            isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1
        ):
            raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")

        built = cls(**values)
        if built.read_only and built.delete_after_find:
            raise ValueError("delete_after_find cannot be combined with read_only")
        return built

    @property
    def limit(self) -> int | None:
        """The count as an integer limit, or None for ALL."""
        return None if self.count == ALL else self.count


@dataclass(frozen=True)
class FolderFilter:
    """
    Include/exclude rules for folder discovery.

    A folder is excluded if it matches any exclude name rule or carries any
    exclude flag; otherwise it is included if it matches any include name
    rule or carries any include flag.

    Attributes:
        include_names: Glob(s) and/or regex(es) a folder name may match.
        exclude_names: Glob(s) and/or regex(es) that reject a folder.
        include_flags: Attributes that admit a folder (e.g., {"inbox"}).
        exclude_flags: Attributes that reject a folder. Defaults to the
                       virtual/special-purpose attributes.
    """

    include_names: NameRule | None = "*"
    exclude_names: NameRule | None = None
    include_flags: frozenset[str] = frozenset()
    exclude_flags: frozenset[str] = DEFAULT_EXCLUDE_FLAGS

    def __post_init__(self) -> None:
        for name in ("include_flags", "exclude_flags"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = [value]
            object.__setattr__(
                self, name, frozenset(normalize_flag(flag) for flag in value or ())
            )


@dataclass(frozen=True)
class FolderOptions:
    """
    Options for folder discovery.

    Attributes:
        mailbox: Name prefix to list under ("" lists the whole tree).
        what: Take the first or last folders of the filtered listing.
        order: Order of the produced folders.
        count: Maximum number of folders, or ALL.
        subscribed: List only subscribed folders (LSUB).
        filter: Name/flag rules applied to the listing.
    """

    mailbox: str = ""
    what: What = What.FIRST
    order: Order = Order.ASC
    count: int | str = ALL
    subscribed: bool = False
    filter: FolderFilter = field(default_factory=FolderFilter)

    @classmethod
    def build(
        cls,
        options: "FolderOptions | Mapping[str, Any] | None" = None,
        **overrides: Any,
    ) -> "FolderOptions":
        """Normalize caller input into a validated folder options object."""
        values = _merge(options, overrides)

        # Filter rules may be passed flat for convenience
        filter_values = {
            f.name: values.pop(f.name) for f in fields(FolderFilter) if f.name in values
        }
        _check_known(cls, values)

        if "what" in values:
            values["what"] = _coerce_enum(What, values["what"], "what")
        if "order" in values:
            values["order"] = _coerce_enum(Order, values["order"], "order")
        if "count" in values:
            values["count"] = _normalize_count(values["count"])

        folder_filter = values.get("filter")
        if isinstance(folder_filter, Mapping):
            folder_filter = FolderFilter(**folder_filter)
        if filter_values:
            base = folder_filter or FolderFilter()
            merged = {f.name: getattr(base, f.name) for f in fields(FolderFilter)}
            merged.update(filter_values)
            folder_filter = FolderFilter(**merged)
        if folder_filter is not None:
            values["filter"] = folder_filter

        return cls(**values)

    @property
    def limit(self) -> int | None:
        return None if self.count == ALL else self.count
