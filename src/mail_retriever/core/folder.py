# =============================================================================
# Folder Model
# =============================================================================
# Represents a mailbox folder (IMAP "mailbox") as reported by folder
# discovery: its decoded name, hierarchy delimiter, attribute flags and the
# live STATUS counters fetched for it.
#
# IMAP allows arbitrary folder hierarchies, so users may have custom folders
# like "Work/Projects/Alpha" or "Receipts/2024". Servers also expose virtual
# or special-purpose folders through attributes (RFC 3501 / RFC 6154):
#   \Noselect, \All, \Drafts, \Flagged, \Junk, \Trash, \Important ...
# =============================================================================

from dataclasses import dataclass, field


def normalize_flag(flag: str | bytes) -> str:
    """
    Normalize an IMAP flag or mailbox attribute for comparison.

    Strips the leading backslash and lowercases, so "\\Noselect",
    "\\NoSelect" and "noselect" all compare equal.

    Example:
        >>> normalize_flag("\\\\Drafts")
        'drafts'
    """
    if isinstance(flag, bytes):
        flag = flag.decode("utf-8", errors="replace")
    return flag.strip().lstrip("\\").lower()


@dataclass(frozen=True)
class Folder:
    """
    Represents a mailbox folder discovered on the server.

    Attributes:
        name: The decoded folder name (e.g., "INBOX", "Work/Projects").
              For nested folders, this is the full path.
        delimiter: The hierarchy delimiter (usually "/" or "."), or None
                   for a flat namespace.
        flags: Normalized mailbox attributes (e.g., {"hasnochildren"}).

        messages: Total number of messages (STATUS MESSAGES).
        unseen: Number of unseen messages (STATUS UNSEEN).
        validity: UIDVALIDITY of the folder. If this changes, every UID
                  previously obtained from the folder is worthless.
        next_uid: Predicted next UID (STATUS UIDNEXT).

    Example:
        >>> folder = Folder(
        ...     name="INBOX",
        ...     flags=frozenset({"hasnochildren"}),
        ...     messages=12,
        ...     unseen=3,
        ...     validity=1234567890,
        ...     next_uid=4242,
        ... )
    """

    name: str
    delimiter: str | None = "/"
    flags: frozenset[str] = field(default_factory=frozenset)

    # STATUS counters
    messages: int | None = None
    unseen: int | None = None
    validity: int | None = None
    next_uid: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "flags", frozenset(normalize_flag(f) for f in self.flags)
        )

    @property
    def identity(self) -> tuple[str, int | None]:
        """A folder is identified by its name within one validity epoch."""
        return (self.name, self.validity)

    @property
    def is_selectable(self) -> bool:
        """False for folders that only exist as hierarchy nodes."""
        return "noselect" not in self.flags and "nonexistent" not in self.flags

    @property
    def parent_path(self) -> str | None:
        """
        Returns the parent folder path, or None if this is a top-level folder.

        Example:
            >>> Folder(name="Work/Projects/Alpha").parent_path
            'Work/Projects'
        """
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[0]
        return None

    @property
    def display_name(self) -> str:
        """
        Returns just the folder name without parent path.

        Example:
            >>> Folder(name="Work/Projects/Alpha").display_name
            'Alpha'
        """
        if self.delimiter and self.delimiter in self.name:
            return self.name.rsplit(self.delimiter, 1)[1]
        return self.name

    def __str__(self) -> str:
        """Human-readable representation."""
        unseen_indicator = f" ({self.unseen})" if self.unseen else ""
        return f"{self.name}{unseen_indicator}"
