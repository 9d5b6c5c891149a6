# =============================================================================
# Entry Model
# =============================================================================
# A lightweight handle on a remote message: where it lives (folder +
# UIDVALIDITY + UID) and a few cheap attributes (flags, size, internal date,
# Message-ID). Entries are produced by header-only retrieval, so listing a
# large mailbox never transfers message bodies.
# =============================================================================

import hashlib
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Entry:
    """
    Identifies a message on the server without its payload.

    Attributes:
        folder: Name of the folder the message was found in.
        validity: UIDVALIDITY of the folder when the entry was read. The UID
                  is only meaningful together with this value.
        uid: IMAP UID of the message within that validity epoch.
        size: RFC822.SIZE in bytes.
        date: Server INTERNALDATE.
        message_id: Message-ID header value without angle brackets.
        flags: Normalized message flags (e.g., {"seen", "flagged"}).
    """

    folder: str
    validity: int | None
    uid: int
    size: int = 0
    date: datetime | None = None
    message_id: str | None = None
    flags: frozenset[str] = field(default_factory=frozenset)

    @property
    def sha(self) -> str:
        """
        Content fingerprint usable as a dedup key.

        Hashes size, date and Message-ID, so the same message stored in two
        folders (or re-uploaded with a new UID) yields the same value.
        """
        date = self.date.isoformat() if self.date else ""
        digest_input = f"{self.size}{date}{self.message_id or ''}"
        return hashlib.sha256(digest_input.encode("utf-8")).hexdigest()

    @property
    def is_read(self) -> bool:
        return "seen" in self.flags

    def __str__(self) -> str:
        return f"{self.folder}.{self.validity}.{self.uid}: {self.sha}"
