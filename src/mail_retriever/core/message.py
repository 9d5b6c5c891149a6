# =============================================================================
# Message Model
# =============================================================================
# Represents a retrieved email message: the raw RFC 2822 payload as it came
# off the wire, plus the server-side metadata it was fetched with (folder,
# UIDVALIDITY, UID, flags, size, internal date).
#
# Parsing is lazy: the raw bytes are turned into an email.message.Message
# the first time a header or body part is accessed.
# =============================================================================

import email
import email.header
import email.policy
import email.utils
from dataclasses import dataclass, field
from datetime import datetime
from email.message import Message as EmailMessage
from functools import cached_property


def decode_header(value: str | None) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    try:
        decoded_parts = email.header.decode_header(str(value))
        result = ""
        for part, charset in decoded_parts:
            if isinstance(part, bytes):
                result += part.decode(charset or "utf-8", errors="replace")
            else:
                result += part
        return result
    except (LookupError, ValueError):
        return str(value)


@dataclass
class Attachment:
    """
    Represents a file attached to an email message.

    Attributes:
        filename: Original filename of the attachment.
        content_type: MIME type (e.g., "application/pdf", "image/png").
        size: Size in bytes.
        content_id: For inline images, the Content-ID used in HTML <img> tags.
        is_inline: True if the part is embedded in the HTML body.
        data: The decoded attachment data.
    """
    filename: str
    content_type: str
    size: int
    content_id: str | None = None
    is_inline: bool = False
    data: bytes | None = None

    @property
    def is_image(self) -> bool:
        """Returns True if this attachment is an image."""
        return self.content_type.startswith("image/")


@dataclass(eq=False)
class Message:
    """
    Represents a retrieved email message.

    Attributes:
        raw: The complete RFC 2822 payload.
        folder: Name of the folder the message was retrieved from
                (None for POP3, which has no folders).
        validity: UIDVALIDITY of the folder at retrieval time.
        uid: IMAP UID (or POP3 message number) of the message.
        flags: Normalized message flags (e.g., {"seen", "answered"}).
        size: Server-reported size in bytes (RFC822.SIZE).
        date: Server INTERNALDATE.
        message_id: Message-ID header value (without angle brackets).
        mark_for_delete: For streaming retrieval with deletion, a callback
                         may clear this to keep the message on the server.

    Example:
        >>> msg = Message(raw=b"Subject: Hi\\r\\n\\r\\nHello", uid=42)
        >>> msg.subject
        'Hi'
    """

    raw: bytes
    folder: str | None = None
    validity: int | None = None
    uid: int | None = None
    flags: frozenset[str] = field(default_factory=frozenset)
    size: int | None = None
    date: datetime | None = None
    message_id: str | None = None
    mark_for_delete: bool = False

    def __post_init__(self) -> None:
        if self.size is None:
            self.size = len(self.raw)

    # -------------------------------------------------------------------------
    # Parsed view
    # -------------------------------------------------------------------------

    @cached_property
    def parsed(self) -> EmailMessage:
        """The parsed message (parsed on first access)."""
        return email.message_from_bytes(self.raw, policy=email.policy.compat32)

    def header(self, name: str) -> str:
        """Return a decoded header value, or "" if absent."""
        return decode_header(self.parsed.get(name))

    @property
    def subject(self) -> str:
        return self.header("Subject")

    @property
    def sender(self) -> str:
        """The bare "From" address."""
        return email.utils.parseaddr(self.header("From"))[1]

    @property
    def sender_name(self) -> str:
        return email.utils.parseaddr(self.header("From"))[0]

    @property
    def recipients(self) -> list[str]:
        """All "To" addresses."""
        values = self.parsed.get_all("To", [])
        return [addr for _, addr in email.utils.getaddresses(values) if addr]

    @property
    def date_sent(self) -> datetime | None:
        """Parsed "Date" header, or None if missing or malformed."""
        value = self.parsed.get("Date")
        if not value:
            return None
        try:
            return email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None

    @property
    def is_read(self) -> bool:
        """Returns True if the message has been read (\\Seen flag)."""
        return "seen" in self.flags

    @property
    def is_deleted(self) -> bool:
        return "deleted" in self.flags

    # -------------------------------------------------------------------------
    # Body parts
    # -------------------------------------------------------------------------

    @cached_property
    def _parts(self) -> tuple[str, str, list[Attachment]]:
        """Walk the MIME tree once: first text/plain, first text/html, files."""
        texts: dict[str, str] = {}
        attachments: list[Attachment] = []

        for part in self.parsed.walk():
            if part.is_multipart():
                continue
            kind = part.get_content_type()
            disposition = (part.get_content_disposition() or "").lower()

            if disposition == "attachment" or (
                disposition != "inline" and part.get_filename() and not kind.startswith("text/")
            ):
                attachment = _attachment(part)
            elif kind in ("text/plain", "text/html"):
                texts.setdefault(kind, _text(part))
                continue
            elif kind.startswith("image/"):
                attachment = _attachment(part, inline=True)
            else:
                continue

            if attachment is not None:
                attachments.append(attachment)

        return texts.get("text/plain", ""), texts.get("text/html", ""), attachments

    @property
    def body_text(self) -> str:
        return self._parts[0]

    @property
    def body_html(self) -> str:
        return self._parts[1]

    @property
    def attachments(self) -> list[Attachment]:
        return self._parts[2]

    def __repr__(self) -> str:
        return (
            f"Message(folder={self.folder!r}, validity={self.validity}, "
            f"uid={self.uid}, size={self.size}, flags={sorted(self.flags)})"
        )


def _text(part: EmailMessage) -> str:
    """Decode a text part with its declared charset (UTF-8 if unknown)."""
    data = part.get_payload(decode=True)
    if not isinstance(data, bytes):
        return str(data or "")
    charset = part.get_content_charset() or "utf-8"
    try:
        return data.decode(charset, errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")


def _attachment(part: EmailMessage, *, inline: bool = False) -> Attachment | None:
    """Build an Attachment from a leaf part; None if it has no binary payload."""
    data = part.get_payload(decode=True)
    if not isinstance(data, bytes):
        return None

    kind = part.get_content_type()
    name = part.get_filename() or f"attachment.{kind.partition('/')[2] or 'bin'}"
    content_id = str(part.get("Content-ID", "")).strip().strip("<>") or None

    return Attachment(
        filename=decode_header(name),
        content_type=kind,
        size=len(data),
        content_id=content_id if inline else None,
        is_inline=inline,
        data=data,
    )
