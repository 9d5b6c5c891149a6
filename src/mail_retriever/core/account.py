# =============================================================================
# Retriever Settings
# =============================================================================
# Connection settings for a remote mailbox (IMAP or POP3). Settings are
# supplied once when a retriever is built and never change while a session
# is open, so the dataclass is frozen.
#
# IMPORTANT: Passwords should NOT live in config files. When no password is
# given here, it is looked up in the system keyring at connect time using
# the 'keyring' library.
# =============================================================================

from dataclasses import dataclass, field, replace

import keyring


# Prefix for keyring service names
KEYRING_PREFIX = "mail-retriever"


@dataclass(frozen=True)
class Settings:
    """
    Connection settings for a mail retriever.

    Attributes:
        name: Account identifier. Used for keyring lookups and logging.
        address: Hostname of the mail server (e.g., "imap.gmail.com").
        port: Server port. Standard ports:
              - 143 for IMAP (plain or STARTTLS), 993 for IMAP over SSL
              - 110 for POP3, 995 for POP3 over SSL
        user_name: Login name, usually the email address.
        password: Login secret. None means "ask the keyring".
        authentication: Authentication mechanism. None or "login" uses a
                        plain LOGIN/USER+PASS; "xoauth2" (IMAP) and "apop"
                        (POP3) select the alternative mechanisms.
        enable_ssl: Connect with implicit TLS.
        enable_starttls: Upgrade a plain connection with STARTTLS (IMAP).
        max_retries: How many times a failed unit of work is retried
                     before giving up.
        retry_delay: Base backoff in seconds. Attempt N waits N * retry_delay.
        timeout: Socket/command timeout in seconds.

    Example:
        >>> settings = Settings(
        ...     name="personal",
        ...     address="imap.example.com",
        ...     port=993,
        ...     user_name="user@example.com",
        ...     enable_ssl=True,
        ... )
    """

    name: str = "default"
    address: str = "localhost"
    port: int = 143
    user_name: str | None = None
    password: str | None = field(default=None, repr=False)
    authentication: str | None = None
    enable_ssl: bool = False
    enable_starttls: bool = False
    max_retries: int = 3
    retry_delay: float = 1.0
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.port <= 0:
            raise ValueError(f"port must be positive, got {self.port}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be >= 0, got {self.retry_delay}")
        if self.enable_ssl and self.enable_starttls:
            raise ValueError("enable_ssl and enable_starttls are mutually exclusive")
        # Normalize an empty mechanism to "no mechanism"
        if self.authentication is not None:
            mechanism = self.authentication.strip().lower() or None
            object.__setattr__(self, "authentication", mechanism)

    @classmethod
    def for_pop3(cls, **values) -> "Settings":
        """Settings with POP3 default ports (110, or 995 with SSL)."""
        if "port" not in values:
            values["port"] = 995 if values.get("enable_ssl") else 110
        return cls(**values)

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        Passwords can be managed with the keyring CLI:
            keyring set mail-retriever:personal user@example.com
        """
        return f"{KEYRING_PREFIX}:{self.name}"

    def resolve_password(self) -> str | None:
        """Return the configured password, falling back to the keyring."""
        if self.password is not None:
            return self.password
        if not self.user_name:
            return None
        return keyring.get_password(self.keyring_service, self.user_name)

    def with_values(self, **changes) -> "Settings":
        """Return a copy with some fields replaced."""
        return replace(self, **changes)

    def __str__(self) -> str:
        return f"{self.name} <{self.user_name or '?'}@{self.address}:{self.port}>"
