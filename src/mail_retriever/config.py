# =============================================================================
# Configuration Management
# =============================================================================
# Loads and saves named mail accounts from a TOML file.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mail-retriever/  (default: ~/.config/mail-retriever/)
#
# Files:
#   - config.toml: Accounts (retrieval server plus optional SMTP server)
#
# Passwords are never written to the file. They are looked up in the system
# keyring at connect time (see Settings.resolve_password).
# =============================================================================

import logging
import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mail_retriever.core.account import Settings
from mail_retriever.imap.retriever import IMAPRetriever
from mail_retriever.pop3.retriever import POP3Retriever
from mail_retriever.smtp.client import SMTPDelivery, SMTPSettings

logger = logging.getLogger(__name__)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mail-retriever"

PROTOCOLS = ("imap", "pop3")


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mail-retriever.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mail-retriever/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class AccountConfig:
    """
    One configured account.

    Attributes:
        name: Account name (the key under [accounts]).
        protocol: "imap" or "pop3".
        settings: Retrieval server settings.
        smtp: Outgoing server settings, if the account has one.
    """
    name: str
    protocol: str = "imap"
    settings: Settings = field(default_factory=Settings)
    smtp: SMTPSettings | None = None


@dataclass
class Config:
    """
    Main configuration container.

    Attributes:
        default_account: Name of the account used when none is given.
        accounts: Configured accounts, keyed by name.
        path: File the configuration was loaded from (and saves to).

    Usage:
        >>> config = Config.load()
        >>> retriever = config.retriever("work")
        >>> messages = await retriever.find(count=5)
    """
    default_account: str = ""
    accounts: dict[str, AccountConfig] = field(default_factory=dict)
    path: Path | None = None

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """
        Load configuration from a config file.

        If the file doesn't exist, returns an empty configuration.

        Args:
            path: File to read. Defaults to the XDG config file.

        Raises:
            ConfigError: If the file exists but is invalid.
        """
        config_path = Path(path) if path is not None else cls.config_file_path()

        if not config_path.exists():
            logger.debug(f"No config file at {config_path}, using defaults")
            return cls(path=config_path)

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}") from e

        config = cls._from_dict(data)
        config.path = config_path
        logger.info(f"Loaded {len(config.accounts)} account(s) from {config_path}")
        return config

    def save(self, path: Path | str | None = None) -> Path:
        """
        Save configuration to a config file.

        Creates the parent directory if it doesn't exist.

        Returns:
            The path written.
        """
        config_path = Path(path) if path is not None else (self.path or self.config_file_path())
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

        self.path = config_path
        logger.debug(f"Saved config to {config_path}")
        return config_path

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create a Config from a parsed TOML document."""
        config = cls()

        general = data.get("general", {})
        config.default_account = general.get("default_account", "")

        # Accounts - each key under [accounts] is an account name
        for name, acct_data in data.get("accounts", {}).items():
            config.accounts[name] = _account_from_dict(name, dict(acct_data))

        if config.default_account and config.default_account not in config.accounts:
            raise ConfigError(f"default_account {config.default_account!r} is not configured")
        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        data: dict[str, Any] = {
            "general": {"default_account": self.default_account},
            "accounts": {},
        }
        for name, account in self.accounts.items():
            entry = {"protocol": account.protocol}
            entry.update(_settings_to_dict(account.settings))
            if account.smtp is not None:
                entry["smtp"] = _settings_to_dict(account.smtp)
            data["accounts"][name] = entry
        return data

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def account(self, name: str | None = None) -> AccountConfig:
        """
        Look up an account, defaulting to default_account.

        Raises:
            ConfigError: If the account is not configured.
        """
        name = name or self.default_account
        if not name:
            if len(self.accounts) == 1:
                return next(iter(self.accounts.values()))
            raise ConfigError("No account name given and no default_account configured")
        try:
            return self.accounts[name]
        except KeyError:
            raise ConfigError(f"Unknown account: {name!r}") from None

    def retriever(self, name: str | None = None) -> IMAPRetriever | POP3Retriever:
        """Build the retriever for an account."""
        account = self.account(name)
        if account.protocol == "pop3":
            return POP3Retriever(account.settings)
        return IMAPRetriever(account.settings)

    def delivery(self, name: str | None = None) -> SMTPDelivery:
        """
        Build the SMTP delivery for an account.

        Raises:
            ConfigError: If the account has no [smtp] table.
        """
        account = self.account(name)
        if account.smtp is None:
            raise ConfigError(f"Account {account.name!r} has no SMTP settings")
        return SMTPDelivery(account.smtp)


# =============================================================================
# Account (de)serialization
# =============================================================================

def _field_names(cls: type) -> set[str]:
    return {f.name for f in fields(cls)}


def _account_from_dict(name: str, data: dict[str, Any]) -> AccountConfig:
    protocol = str(data.pop("protocol", "imap")).lower()
    if protocol not in PROTOCOLS:
        raise ConfigError(f"Account {name!r}: protocol must be one of {PROTOCOLS}, got {protocol!r}")

    smtp_data = data.pop("smtp", None)
    if "password" in data or (smtp_data and "password" in smtp_data):
        raise ConfigError(f"Account {name!r}: passwords belong in the keyring, not the config file")

    unknown = set(data) - _field_names(Settings)
    if unknown:
        raise ConfigError(f"Account {name!r}: unknown settings {sorted(unknown)}")

    values = {"name": name, **data}
    if "port" not in values and protocol == "imap" and values.get("enable_ssl"):
        values["port"] = 993

    try:
        if protocol == "pop3":
            settings = Settings.for_pop3(**values)
        else:
            settings = Settings(**values)
        smtp = _smtp_from_dict(settings, smtp_data) if smtp_data is not None else None
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Account {name!r}: {e}") from e

    return AccountConfig(name=name, protocol=protocol, settings=settings, smtp=smtp)


def _smtp_from_dict(account: Settings, data: dict[str, Any]) -> SMTPSettings:
    unknown = set(data) - _field_names(SMTPSettings)
    if unknown:
        raise ConfigError(f"Account {account.name!r}: unknown SMTP settings {sorted(unknown)}")
    # The SMTP login defaults to the retrieval login
    values = {"name": account.name, "user_name": account.user_name, **data}
    if "port" not in values and values.get("enable_ssl"):
        values["port"] = 465
    return SMTPSettings(**values)


def _settings_to_dict(settings: Settings | SMTPSettings) -> dict[str, Any]:
    # TOML has no null, and secrets stay in the keyring
    return {
        f.name: getattr(settings, f.name)
        for f in fields(settings)
        if f.name not in ("name", "password") and getattr(settings, f.name) is not None
    }


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass
