# =============================================================================
# SMTP Delivery
# =============================================================================
# Sends an already-composed message through an SMTP server.
#
# Key responsibilities:
#   - Connection management with SSL/TLS or opportunistic STARTTLS
#   - Optional certificate settings (verify mode, CA path, CA file)
#   - Authentication when credentials are available
#   - Deriving the envelope sender and recipients from the message headers
#
# Every delivery is single-shot: open a session, send, always quit. There is
# no retry or batching here.
#
# Uses aiosmtplib for async operations.
# =============================================================================

import email
import email.policy
import email.utils
import logging
import ssl
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from email.message import Message as EmailMessage

import aiosmtplib
import keyring

from mail_retriever.core.account import KEYRING_PREFIX
from mail_retriever.core.message import Message

logger = logging.getLogger(__name__)

# Accepted values of SMTPSettings.openssl_verify_mode
VERIFY_MODES = {
    "peer": ssl.CERT_REQUIRED,
    "none": ssl.CERT_NONE,
}


@dataclass(frozen=True)
class SMTPSettings:
    """
    Connection settings for SMTP delivery.

    Attributes:
        name: Account identifier, used for keyring lookups.
        address: SMTP server hostname.
        port: Server port (25, 465 for SSL, 587 for submission).
        domain: Name announced in HELO/EHLO.
        user_name: Login name. No login happens without one.
        password: Login secret. None means "ask the keyring".
        authentication: "plain", "login", "cram_md5", or None to let the
                        server's advertised mechanisms decide.
        enable_ssl: Connect with implicit TLS.
        enable_starttls_auto: Upgrade with STARTTLS when the server offers it.
        openssl_verify_mode: "peer" or "none". None keeps the default
                             (verify the peer).
        ca_path: Directory of trusted CA certificates.
        ca_file: File of trusted CA certificates.
        timeout: Timeout for each SMTP command in seconds.
    """

    name: str = "default"
    address: str = "localhost"
    port: int = 25
    domain: str = "localhost.localdomain"
    user_name: str | None = None
    password: str | None = field(default=None, repr=False)
    authentication: str | None = None
    enable_ssl: bool = False
    enable_starttls_auto: bool = True
    openssl_verify_mode: str | None = None
    ca_path: str | None = None
    ca_file: str | None = None
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.port <= 0:
            raise ValueError(f"port must be positive, got {self.port}")
        if self.openssl_verify_mode is not None:
            mode = self.openssl_verify_mode.strip().lower()
            if mode not in VERIFY_MODES:
                raise ValueError(
                    f"openssl_verify_mode must be one of {sorted(VERIFY_MODES)}, "
                    f"got {self.openssl_verify_mode!r}"
                )
            object.__setattr__(self, "openssl_verify_mode", mode)
        if self.authentication is not None:
            mechanism = self.authentication.strip().lower() or None
            object.__setattr__(self, "authentication", mechanism)

    @property
    def keyring_service(self) -> str:
        return f"{KEYRING_PREFIX}:{self.name}"

    def resolve_password(self) -> str | None:
        """Return the configured password, falling back to the keyring."""
        if self.password is not None:
            return self.password
        if not self.user_name:
            return None
        return keyring.get_password(self.keyring_service, self.user_name)

    def ssl_context(self) -> ssl.SSLContext:
        """Build the TLS context for SSL and STARTTLS connections."""
        context = ssl.create_default_context(cafile=self.ca_file, capath=self.ca_path)
        if self.openssl_verify_mode == "none":
            # check_hostname must be off before verification can be disabled
            context.check_hostname = False
        if self.openssl_verify_mode is not None:
            context.verify_mode = VERIFY_MODES[self.openssl_verify_mode]
        return context


def envelope_sender(message: EmailMessage) -> str | None:
    """Pick the envelope sender: Return-Path, then Sender, then From."""
    for header in ("Return-Path", "Sender", "From"):
        value = message.get(header)
        if value:
            address = email.utils.parseaddr(str(value))[1]
            if address:
                return address
    return None


def envelope_recipients(message: EmailMessage) -> list[str]:
    """Collect every To, Cc and Bcc address, keeping their first-seen order."""
    values: list[str] = []
    for header in ("To", "Cc", "Bcc"):
        values.extend(str(v) for v in message.get_all(header, []))

    recipients: list[str] = []
    for _, address in email.utils.getaddresses(values):
        if address and address not in recipients:
            recipients.append(address)
    return recipients


def _as_email(message: "Message | EmailMessage | bytes | str") -> EmailMessage:
    if isinstance(message, Message):
        return message.parsed
    if isinstance(message, EmailMessage):
        return message
    if isinstance(message, str):
        message = message.encode("utf-8")
    return email.message_from_bytes(message, policy=email.policy.compat32)


def _wire_bytes(parsed: EmailMessage) -> bytes:
    """Serialize for sending, leaving Bcc out of the transmitted headers."""
    if "Bcc" in parsed:
        parsed = email.message_from_bytes(parsed.as_bytes(), policy=email.policy.compat32)
        del parsed["Bcc"]
    return parsed.as_bytes(policy=email.policy.SMTP)


class SMTPDelivery:
    """
    Delivers messages over SMTP.

    Usage:
        >>> delivery = SMTPDelivery(SMTPSettings(address="smtp.example.com", port=587))
        >>> await delivery.deliver(message)

    Attributes:
        settings: Server and credential settings.
    """

    def __init__(self, settings: SMTPSettings) -> None:
        self.settings = settings

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver(
        self,
        message: Message | EmailMessage | bytes | str,
        sender: str | None = None,
        recipients: Iterable[str] | None = None,
    ) -> str:
        """
        Send a message in its own session.

        Args:
            message: A retrieved Message, an email.message.Message, or the
                     raw RFC 2822 text.
            sender: Envelope sender. Defaults to Return-Path/Sender/From.
            recipients: Envelope recipients. Defaults to To + Cc + Bcc.

        Returns:
            The server's final response text.

        Raises:
            DeliveryError: If no sender or recipient can be determined, or
                           the server refuses the message.
            SMTPConnectionError: If unable to connect.
            SMTPAuthenticationError: If authentication fails.
        """
        parsed = _as_email(message)
        sender = sender or envelope_sender(parsed)
        recipients = list(recipients) if recipients is not None else envelope_recipients(parsed)

        if not sender:
            raise DeliveryError("No sender: set a From, Sender or Return-Path header")
        if not recipients:
            raise DeliveryError("No recipients: set a To, Cc or Bcc header")

        data = _wire_bytes(parsed)

        async with self.connection() as client:
            logger.info(f"Sending message from {sender} to {', '.join(recipients)}")
            try:
                refused, response = await client.sendmail(sender, recipients, data)
            except aiosmtplib.SMTPException as e:
                raise DeliveryError(f"Failed to send message: {e}") from e

        for address, reply in refused.items():
            logger.warning(f"Recipient {address} refused: {reply}")
        logger.info(f"Message sent: {response}")
        return response

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosmtplib.SMTP]:
        """
        Yield a connected, authenticated aiosmtplib client.

        The session is always ended with QUIT when the block exits.
        """
        client = await self._connect()
        try:
            yield client
        finally:
            await self._disconnect(client)

    # =========================================================================
    # Session Management
    # =========================================================================

    def _client(self) -> aiosmtplib.SMTP:
        settings = self.settings
        return aiosmtplib.SMTP(
            hostname=settings.address,
            port=settings.port,
            local_hostname=settings.domain,
            use_tls=settings.enable_ssl,
            # None lets aiosmtplib upgrade whenever the server offers STARTTLS
            start_tls=None if settings.enable_starttls_auto and not settings.enable_ssl else False,
            tls_context=settings.ssl_context(),
            timeout=settings.timeout,
        )

    async def _connect(self) -> aiosmtplib.SMTP:
        settings = self.settings
        logger.info(f"Connecting to SMTP {settings.address}:{settings.port}")

        client = self._client()
        try:
            await client.connect()
        except (aiosmtplib.SMTPException, OSError) as e:
            raise SMTPConnectionError(
                f"Failed to connect to SMTP {settings.address}:{settings.port}: {e}"
            ) from e
        logger.debug("SMTP connection established")

        try:
            await self._authenticate(client)
        except BaseException:
            await self._disconnect(client)
            raise
        return client

    async def _authenticate(self, client: aiosmtplib.SMTP) -> None:
        """
        Log in when a user name is configured.

        Raises:
            SMTPAuthenticationError: If the password is missing or refused.
        """
        settings = self.settings
        if not settings.user_name:
            logger.debug("No user name configured, sending without authentication")
            return

        password = settings.resolve_password()
        if not password:
            raise SMTPAuthenticationError(
                f"No password found for {settings.user_name}. "
                f"Set it with: keyring set {settings.keyring_service} {settings.user_name}"
            )

        logger.debug(f"Authenticating as {settings.user_name}")
        try:
            if settings.authentication == "plain":
                await client.auth_plain(settings.user_name, password)
            elif settings.authentication == "login":
                await client.auth_login(settings.user_name, password)
            elif settings.authentication == "cram_md5":
                await client.auth_crammd5(settings.user_name, password)
            else:
                await client.login(settings.user_name, password)
        except aiosmtplib.SMTPException as e:
            raise SMTPAuthenticationError(
                f"SMTP authentication failed for {settings.user_name}: {e}"
            ) from e
        logger.debug("SMTP authentication successful")

    async def _disconnect(self, client: aiosmtplib.SMTP) -> None:
        if not client.is_connected:
            return
        try:
            logger.debug("Disconnecting from SMTP")
            await client.quit()
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning(f"Error during SMTP disconnect: {e}")
            client.close()


# =============================================================================
# Exceptions
# =============================================================================

class SMTPError(Exception):
    """Base exception for SMTP operations."""
    pass


class SMTPConnectionError(SMTPError):
    """Raised when unable to connect to the SMTP server."""
    pass


class SMTPAuthenticationError(SMTPError):
    """Raised when SMTP authentication fails."""
    pass


class DeliveryError(SMTPError):
    """Raised when a message cannot be delivered."""
    pass
