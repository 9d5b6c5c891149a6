# =============================================================================
# IMAP Session Transport
# =============================================================================
# A thin async wrapper around aioimaplib exposing exactly the commands the
# retrieval engine needs: connect/authenticate, LIST/LSUB, STATUS,
# SELECT/EXAMINE, UID SEARCH, UID FETCH, UID STORE, EXPUNGE and LOGOUT.
#
# Key responsibilities:
#   - Opening the connection (plain, SSL, or STARTTLS) and logging in
#   - Parsing aioimaplib responses into plain Python values
#   - Turning tagged NO/BAD/BYE results into typed exceptions
#
# The transport does not retry anything. Every failure propagates to the
# retry controller, which decides what to do about it.
#
# Response shape note:
#   aioimaplib returns `Response(result, lines)`. Text lines are bytes;
#   literal payloads (announced by a trailing "{N}" on the previous line)
#   arrive as separate bytearray items. The last line is the text of the
#   tagged completion response.
# =============================================================================

import asyncio
import logging
import re
import ssl
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from aioimaplib import aioimaplib

from mail_retriever.core.account import Settings
from mail_retriever.core.folder import normalize_flag
from mail_retriever.errors import ErrorKind
from mail_retriever.imap import utf7

# Set up logging for this module
logger = logging.getLogger(__name__)

# STATUS items requested by folder discovery
STATUS_FIELDS = ("MESSAGES", "UNSEEN", "UIDVALIDITY", "UIDNEXT")

# Format of INTERNALDATE, e.g. "17-Jul-1996 02:44:25 -0700"
INTERNALDATE_FORMAT = "%d-%b-%Y %H:%M:%S %z"

_FETCH_START = re.compile(r"^\d+\s+FETCH\s*\(", re.IGNORECASE)
_LITERAL_ITEM = re.compile(r"(RFC822|BODY(?:\.PEEK)?\[[^\]]*\])\s*\{(\d+)\}\s*$", re.IGNORECASE)
_LIST_LINE = re.compile(
    r'^\(([^)]*)\)\s+(?:"((?:[^"\\]|\\.)*)"|NIL)\s+(.*)$', re.IGNORECASE
)
_MESSAGE_ID = re.compile(rb"<(.*)>")


def _quote_mailbox(name: str) -> str:
    """
    Encode and quote a mailbox name for an IMAP command.

    The name is converted to modified UTF-7, then wrapped in double quotes
    with internal quotes and backslashes escaped.

    Args:
        name: The decoded mailbox name.

    Returns:
        The quoted wire form.
    """
    encoded = utf7.encode(name)
    escaped = encoded.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        value = value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def _as_text(item: Any) -> str:
    if isinstance(item, (bytes, bytearray)):
        return bytes(item).decode("utf-8", errors="replace")
    return str(item)


def _body_lines(lines: Sequence[Any]) -> Sequence[Any]:
    """Drop the trailing tagged completion text."""
    return lines[:-1] if len(lines) > 1 else lines


@dataclass(frozen=True)
class ListedMailbox:
    """One LIST/LSUB line: decoded name, delimiter, and attributes."""
    name: str
    delimiter: str | None
    flags: frozenset[str] = field(default_factory=frozenset)


@dataclass
class FetchData:
    """
    Parsed attributes of one message from a UID FETCH response.

    Attributes:
        uid: The message UID.
        flags: Normalized flags.
        size: RFC822.SIZE, if requested.
        date: INTERNALDATE, if requested and parseable.
        message_id: Message-ID (without angle brackets), if the header
                    field was requested and present.
        body: The full RFC822 payload, if requested.
    """
    uid: int
    flags: frozenset[str] = field(default_factory=frozenset)
    size: int | None = None
    date: datetime | None = None
    message_id: str | None = None
    body: bytes | None = None

    def merged_with(self, later: "FetchData") -> "FetchData":
        """
        Fold a later record for the same UID into this one.

        Servers may send extra FETCH responses for a UID, such as an
        unsolicited flag update. Fields this record already has are kept;
        the later record fills the gaps and supplies the newer flags.
        """
        return replace(
            self,
            flags=later.flags or self.flags,
            size=self.size if self.size is not None else later.size,
            date=self.date if self.date is not None else later.date,
            message_id=self.message_id if self.message_id is not None else later.message_id,
            body=self.body if self.body is not None else later.body,
        )


# =============================================================================
# Response Parsers
# =============================================================================

def parse_internal_date(value: str | None) -> datetime | None:
    """Parse an INTERNALDATE string, returning None if it is malformed."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), INTERNALDATE_FORMAT)
    except ValueError:
        logger.debug(f"Unparseable INTERNALDATE: {value!r}")
        return None


def parse_list_response(lines: Sequence[Any]) -> list[ListedMailbox]:
    """
    Parse LIST/LSUB response lines.

    LIST response format:
        (\\HasNoChildren) "/" "INBOX"
        (\\HasNoChildren \\Sent) "/" Sent
        (\\Noselect) NIL {5}        <- name follows as a literal
    """
    mailboxes: list[ListedMailbox] = []
    pending: tuple[str, str | None] | None = None

    for item in _body_lines(lines):
        line = _as_text(item)

        if pending is not None:
            flags_str, delimiter = pending
            pending = None
            mailboxes.append(_listed(line, delimiter, flags_str))
            continue

        match = _LIST_LINE.match(line.strip())
        if not match:
            if line.strip():
                logger.debug(f"Could not parse folder line: {line}")
            continue

        flags_str, delimiter, name = match.groups()
        if delimiter is not None:
            delimiter = _unquote(f'"{delimiter}"')
        if re.fullmatch(r"\{\d+\}", name.strip()):
            pending = (flags_str, delimiter)
            continue
        mailboxes.append(_listed(_unquote(name), delimiter, flags_str))

    return mailboxes


def _listed(raw_name: str, delimiter: str | None, flags_str: str) -> ListedMailbox:
    name = utf7.decode(raw_name)
    if name.upper() == "INBOX":
        name = "INBOX"
    flags = frozenset(normalize_flag(f) for f in flags_str.split()) if flags_str else frozenset()
    return ListedMailbox(name=name, delimiter=delimiter, flags=flags)


def parse_status_response(lines: Sequence[Any]) -> dict[str, int]:
    """Parse a STATUS response into {"MESSAGES": n, ...}."""
    status: dict[str, int] = {}
    for item in lines:
        line = _as_text(item)

        # Extract values from parentheses
        match = re.search(r"\(([^()]*)\)\s*$", line)
        if match:
            items = match.group(1).split()
            for i in range(0, len(items) - 1, 2):
                try:
                    status[items[i].upper()] = int(items[i + 1])
                except ValueError:
                    continue
    return status


def parse_select_response(lines: Sequence[Any]) -> dict[str, int]:
    """Parse SELECT/EXAMINE response into a status dictionary."""
    status: dict[str, int] = {}
    patterns = {
        "EXISTS": r"(\d+)\s+EXISTS",
        "RECENT": r"(\d+)\s+RECENT",
        "UIDVALIDITY": r"UIDVALIDITY\s+(\d+)",
        "UIDNEXT": r"UIDNEXT\s+(\d+)",
        "UNSEEN": r"UNSEEN\s+(\d+)",
    }
    for item in lines:
        line = _as_text(item)
        for key, pattern in patterns.items():
            match = re.search(pattern, line, re.IGNORECASE)
            if match:
                status[key] = int(match.group(1))
    return status


def parse_search_response(lines: Sequence[Any]) -> list[int]:
    """Collect UIDs from UID SEARCH response lines."""
    uids: list[int] = []
    for item in _body_lines(lines):
        for token in _as_text(item).split():
            if token.isdigit():
                uids.append(int(token))
    return uids


def parse_fetch_response(lines: Sequence[Any]) -> list[FetchData]:
    """
    Parse a UID FETCH response into FetchData records.

    Each record starts with a "N FETCH (" line. A line ending in
    "RFC822 {N}" or "BODY[...] {N}" announces that the next item is that
    item's literal payload.
    """
    records: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    pending_literal: str | None = None

    for item in lines:
        if pending_literal is not None and current is not None:
            payload = bytes(item) if isinstance(item, (bytes, bytearray)) else str(item).encode()
            current["literals"][pending_literal] = payload
            pending_literal = None
            continue

        line = _as_text(item)
        if _FETCH_START.match(line):
            current = {"text": "", "literals": {}}
            records.append(current)
        if current is None:
            continue

        current["text"] += " " + line
        literal = _LITERAL_ITEM.search(line)
        if literal:
            pending_literal = literal.group(1).upper()

    results: list[FetchData] = []
    for record in records:
        data = _build_fetch_data(record["text"], record["literals"])
        if data is not None:
            results.append(data)
    return results


def _build_fetch_data(text: str, literals: dict[str, bytes]) -> FetchData | None:
    uid_match = re.search(r"\bUID\s+(\d+)", text, re.IGNORECASE)
    if not uid_match:
        logger.debug(f"FETCH record without UID: {text[:120]!r}")
        return None

    data = FetchData(uid=int(uid_match.group(1)))

    flags_match = re.search(r"FLAGS\s*\(([^)]*)\)", text, re.IGNORECASE)
    if flags_match:
        data.flags = frozenset(normalize_flag(f) for f in flags_match.group(1).split())

    size_match = re.search(r"RFC822\.SIZE\s+(\d+)", text, re.IGNORECASE)
    if size_match:
        data.size = int(size_match.group(1))

    date_match = re.search(r'INTERNALDATE\s+"([^"]+)"', text, re.IGNORECASE)
    if date_match:
        data.date = parse_internal_date(date_match.group(1))

    for name, payload in literals.items():
        if name == "RFC822":
            data.body = payload
        elif "HEADER" in name:
            id_match = _MESSAGE_ID.search(payload)
            if id_match:
                data.message_id = id_match.group(1).decode("utf-8", errors="replace")

    return data


# =============================================================================
# Transport
# =============================================================================

class IMAPTransport:
    """
    One IMAP connection.

    Usage:
        >>> transport = IMAPTransport(settings)
        >>> await transport.connect()
        >>> validity = await transport.select("INBOX", read_only=True)
        >>> uids = await transport.uid_search("UNSEEN")
        >>> await transport.logout()

    Attributes:
        settings: Connection settings.
        selected: Name of the currently selected mailbox, if any.
        validity: UIDVALIDITY of the selected mailbox.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.selected: str | None = None
        self.read_only = False
        self.validity: int | None = None
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> "IMAPTransport":
        """
        Connect and authenticate.

        Returns:
            self, for use as a session factory result.

        Raises:
            IMAPConnectionError: If the server cannot be reached.
            IMAPAuthenticationError: If login fails.
        """
        settings = self.settings
        logger.info(f"Connecting to {settings.address}:{settings.port}")

        try:
            await self._open()
            await self.authenticate(settings.resolve_password())
        except BaseException:
            # Half-open sessions never reach the caller
            await self.close()
            raise

        logger.info(f"Successfully connected to {settings.address}")
        return self

    async def _open(self) -> None:
        settings = self.settings
        try:
            if settings.enable_ssl:
                # Direct SSL connection (usually port 993)
                self._client = aioimaplib.IMAP4_SSL(
                    host=settings.address,
                    port=settings.port,
                    timeout=settings.timeout,
                    ssl_context=ssl.create_default_context(),
                )
            else:
                # Plain connection, optionally upgraded with STARTTLS (usually port 143)
                self._client = aioimaplib.IMAP4(
                    host=settings.address,
                    port=settings.port,
                    timeout=settings.timeout,
                )

            await self._client.wait_hello_from_server()

            if settings.enable_starttls:
                if not self._client.has_capability("STARTTLS"):
                    raise IMAPConnectionError("Server does not support STARTTLS")
                logger.debug("Upgrading to TLS via STARTTLS")
                await self._client.starttls()

        except asyncio.TimeoutError as e:
            raise IMAPConnectionError(
                f"Connection timed out to {settings.address}:{settings.port}"
            ) from e
        except OSError as e:
            raise IMAPConnectionError(
                f"Failed to connect to {settings.address}:{settings.port}: {e}"
            ) from e

    async def authenticate(self, password: str | None) -> None:
        """
        Log in with LOGIN, or XOAUTH2 when configured.

        Raises:
            IMAPAuthenticationError: If no secret is available or the server
                                     refuses the credentials.
        """
        client = self._require_client()
        user = self.settings.user_name

        if not user or not password:
            raise IMAPAuthenticationError(
                f"No credentials for {self.settings}. "
                f"Set a password with: keyring set {self.settings.keyring_service} {user or '<user>'}"
            )

        logger.debug(f"Authenticating as {user}")
        if self.settings.authentication == "xoauth2":
            response = await client.xoauth2(user, password)
        else:
            response = await client.login(user, password)

        if response.result != "OK":
            raise IMAPAuthenticationError(f"Authentication failed for {user}: {response.lines}")
        logger.debug("Authentication successful")

    async def logout(self) -> None:
        """Send LOGOUT and forget the connection."""
        client, self._client = self._client, None
        self._forget_selection()
        if client is not None:
            logger.debug("Sending LOGOUT")
            await client.logout()

    async def close(self) -> None:
        """Drop the connection without a LOGOUT."""
        client, self._client = self._client, None
        self._forget_selection()
        protocol = getattr(client, "protocol", None) if client is not None else None
        transport = getattr(protocol, "transport", None)
        if transport is not None:
            transport.close()

    def _forget_selection(self) -> None:
        self.selected = None
        self.read_only = False
        self.validity = None

    def _require_client(self) -> aioimaplib.IMAP4:
        if self._client is None:
            raise IMAPConnectionError("Not connected")
        return self._client

    def _check(self, response: Any, command: str) -> Any:
        """Raise the typed error for a non-OK tagged response."""
        result = str(response.result).upper()
        if result == "OK":
            return response
        detail = f"{command} failed: {[_as_text(line) for line in response.lines]}"
        if result == "NO":
            raise IMAPCommandError(detail)
        if result == "BYE":
            raise IMAPByeError(detail)
        raise IMAPProtocolError(detail)

    # =========================================================================
    # Mailbox Commands
    # =========================================================================

    async def list_mailboxes(
        self,
        reference: str = "",
        pattern: str = "*",
        *,
        subscribed: bool = False,
    ) -> list[ListedMailbox]:
        """List mailboxes (LSUB when `subscribed`)."""
        client = self._require_client()
        command = "LSUB" if subscribed else "LIST"
        ref = _quote_mailbox(reference)
        wildcard = _quote_mailbox(pattern)
        logger.debug(f"{command} {ref} {wildcard}")

        if subscribed:
            response = await client.lsub(ref, wildcard)
        else:
            response = await client.list(ref, wildcard)
        self._check(response, command)
        return parse_list_response(response.lines)

    async def hierarchy_delimiter(self) -> str | None:
        """
        Ask the server for its hierarchy delimiter with LIST "" "".

        Returns:
            The delimiter (e.g., "/" or "."), or None for a flat namespace.
        """
        root = await self.list_mailboxes("", "")
        return root[0].delimiter if root else None

    async def status(self, name: str, fields: Iterable[str] = STATUS_FIELDS) -> dict[str, int]:
        """Get STATUS counters of a mailbox without selecting it."""
        client = self._require_client()
        names = f"({' '.join(fields)})"
        response = await client.status(_quote_mailbox(name), names)
        self._check(response, f"STATUS {name}")
        return parse_status_response(response.lines)

    async def select(self, name: str, *, read_only: bool = False) -> int | None:
        """
        SELECT (or EXAMINE when read_only) a mailbox.

        Returns:
            The mailbox UIDVALIDITY.
        """
        client = self._require_client()
        command = "EXAMINE" if read_only else "SELECT"
        logger.debug(f"{command} {name}")

        quoted = _quote_mailbox(name)
        if read_only:
            response = await client.examine(quoted)
        else:
            response = await client.select(quoted)
        self._check(response, f"{command} {name}")

        status = parse_select_response(response.lines)
        self.selected = name
        self.read_only = read_only
        self.validity = status.get("UIDVALIDITY")
        logger.debug(f"Selected {name}: {status}")
        return self.validity

    # =========================================================================
    # Message Commands
    # =========================================================================

    async def uid_search(self, criteria: str) -> list[int]:
        client = self._require_client()
        logger.debug(f"UID SEARCH {criteria}")
        response = await client.uid_search(criteria, charset=None)
        self._check(response, f"UID SEARCH {criteria}")
        return parse_search_response(response.lines)

    async def uid_fetch(self, uids: str, spec: str) -> list[FetchData]:
        """UID FETCH `spec` for a UID set such as "1,2,5"."""
        client = self._require_client()
        logger.debug(f"UID FETCH {uids} {spec}")
        response = await client.uid("FETCH", uids, spec)
        self._check(response, "UID FETCH")
        return parse_fetch_response(response.lines)

    async def uid_store(self, uids: str, operation: str, flags: str) -> None:
        """UID STORE, e.g. uid_store("1,2", "+FLAGS", "(\\Deleted)")."""
        client = self._require_client()
        logger.debug(f"UID STORE {uids} {operation} {flags}")
        response = await client.uid("STORE", uids, f"{operation} {flags}")
        self._check(response, "UID STORE")

    async def expunge(self) -> None:
        client = self._require_client()
        logger.debug(f"EXPUNGE {self.selected}")
        response = await client.expunge()
        self._check(response, "EXPUNGE")


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when unable to connect to the server, or when not connected."""
    kind = ErrorKind.NOT_CONNECTED


class IMAPAuthenticationError(IMAPError):
    """Raised when IMAP authentication fails."""
    pass


class IMAPCommandError(IMAPError):
    """Raised when the server answers a command with NO."""
    kind = ErrorKind.NO_RESPONSE


class IMAPProtocolError(IMAPError):
    """Raised on a BAD answer or a response that cannot be understood."""
    kind = ErrorKind.BAD_RESPONSE


class IMAPByeError(IMAPError):
    """Raised when the server ends the session with BYE."""
    kind = ErrorKind.BYE
