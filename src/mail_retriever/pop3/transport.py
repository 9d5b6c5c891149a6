# =============================================================================
# POP3 Session Transport
# =============================================================================
# Async wrapper around the standard library's poplib. poplib is blocking,
# so every command runs in a worker thread via asyncio.to_thread().
#
# POP3 deletion semantics:
#   - DELE only marks a message; the server deletes marked messages when
#     the session ends with QUIT (the UPDATE state).
#   - RSET clears all marks.
#   - A connection that drops without QUIT deletes nothing.
#
# The transport therefore has two ways to end a session:
#   commit()  QUIT, applying every DELE of the session
#   logout()  RSET then QUIT, applying nothing
# A fresh session always starts with RSET so stale marks never survive.
# =============================================================================

import asyncio
import logging
import poplib
import ssl

from mail_retriever.core.account import Settings
from mail_retriever.errors import ErrorKind

# Set up logging for this module
logger = logging.getLogger(__name__)


class POP3Transport:
    """
    One POP3 connection.

    Usage:
        >>> transport = await POP3Transport(settings).connect()
        >>> listing = await transport.list_messages()
        >>> raw = await transport.retrieve(listing[0][0])
        >>> await transport.logout()
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: poplib.POP3 | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> "POP3Transport":
        """
        Connect, authenticate, and clear stale deletion marks.

        Raises:
            POP3ConnectionError: If the server cannot be reached.
            POP3AuthenticationError: If the server refuses the credentials.
        """
        settings = self.settings
        logger.info(f"Connecting to {settings.address}:{settings.port}")

        try:
            self._client = await asyncio.to_thread(self._open)
        except OSError as e:
            raise POP3ConnectionError(
                f"Failed to connect to {settings.address}:{settings.port}: {e}"
            ) from e

        try:
            await self.authenticate(settings.resolve_password())
            # Clears all "deleted" marks left over from server-side state
            await asyncio.to_thread(self._require_client().rset)
        except BaseException:
            await self.close()
            raise

        logger.info(f"Successfully connected to {settings.address}")
        return self

    def _open(self) -> poplib.POP3:
        settings = self.settings
        if settings.enable_ssl:
            return poplib.POP3_SSL(
                settings.address,
                settings.port,
                timeout=settings.timeout,
                context=ssl.create_default_context(),
            )

        client = poplib.POP3(settings.address, settings.port, timeout=settings.timeout)
        if settings.enable_starttls:
            logger.debug("Upgrading to TLS via STLS")
            try:
                client.stls(context=ssl.create_default_context())
            except BaseException:
                client.close()
                raise
        return client

    async def authenticate(self, password: str | None) -> None:
        """
        Log in with USER/PASS, or APOP when configured.

        Raises:
            POP3AuthenticationError: If no secret is available or login fails.
        """
        client = self._require_client()
        user = self.settings.user_name

        if not user or not password:
            raise POP3AuthenticationError(
                f"No credentials for {self.settings}. "
                f"Set a password with: keyring set {self.settings.keyring_service} {user or '<user>'}"
            )

        logger.debug(f"Authenticating as {user}")
        try:
            if self.settings.authentication == "apop":
                await asyncio.to_thread(client.apop, user, password)
            else:
                await asyncio.to_thread(client.user, user)
                await asyncio.to_thread(client.pass_, password)
        except poplib.error_proto as e:
            raise POP3AuthenticationError(f"Authentication failed for {user}: {e}") from e
        logger.debug("Authentication successful")

    async def commit(self) -> None:
        """End the session with QUIT, applying this session's deletions."""
        client, self._client = self._client, None
        if client is not None:
            logger.debug("Sending QUIT (commit)")
            await asyncio.to_thread(client.quit)

    async def logout(self) -> None:
        """End the session with RSET and QUIT, applying nothing."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            logger.debug("Sending RSET")
            await asyncio.to_thread(client.rset)
        finally:
            logger.debug("Sending QUIT")
            await asyncio.to_thread(client.quit)

    async def close(self) -> None:
        """Drop the connection without QUIT (the server applies nothing)."""
        client, self._client = self._client, None
        if client is not None:
            client.close()

    def _require_client(self) -> poplib.POP3:
        if self._client is None:
            raise POP3ConnectionError("Not connected")
        return self._client

    # =========================================================================
    # Mailbox Commands
    # =========================================================================

    async def list_messages(self) -> list[tuple[int, int]]:
        """List all messages as (message number, size) tuples."""
        client = self._require_client()
        _, listings, _ = await asyncio.to_thread(client.list)
        messages = []
        for item in listings:
            line = item.decode() if isinstance(item, bytes) else item
            number, size = line.split()[:2]
            messages.append((int(number), int(size)))
        logger.debug(f"Found {len(messages)} messages in mailbox")
        return messages

    async def unique_ids(self) -> dict[int, str]:
        """
        Map message numbers to their UIDL unique ids.

        Servers without UIDL get each number as its own id.
        """
        client = self._require_client()
        try:
            _, listings, _ = await asyncio.to_thread(client.uidl)
        except poplib.error_proto as e:
            logger.debug(f"UIDL not supported ({e}), falling back to message numbers")
            return {number: str(number) for number, _ in await self.list_messages()}

        ids = {}
        for item in listings:
            line = item.decode() if isinstance(item, bytes) else item
            number, unique_id = line.split()[:2]
            ids[int(number)] = unique_id
        return ids

    async def retrieve(self, number: int) -> bytes:
        """Fetch a complete message by number, returning raw bytes."""
        client = self._require_client()
        _, lines, _ = await asyncio.to_thread(client.retr, number)
        return b"\r\n".join(lines) + b"\r\n"

    async def delete(self, number: int) -> None:
        """Mark a message for deletion (applied on commit)."""
        client = self._require_client()
        await asyncio.to_thread(client.dele, number)
        logger.debug(f"Marked message {number} for deletion")

    async def reset(self) -> None:
        """Clear every deletion mark of this session."""
        client = self._require_client()
        await asyncio.to_thread(client.rset)


# =============================================================================
# Exceptions
# =============================================================================

class POP3Error(Exception):
    """Base exception for POP3 operations."""
    pass


class POP3ConnectionError(POP3Error):
    """Raised when unable to connect to the POP3 server, or when not connected."""
    kind = ErrorKind.NOT_CONNECTED


class POP3AuthenticationError(POP3Error):
    """Raised when POP3 authentication fails."""
    pass
