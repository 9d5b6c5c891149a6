# =============================================================================
# mail-retriever
# =============================================================================
# Resilient retrieval of messages, header-only entries and folders from
# IMAP and POP3 servers, plus single-shot SMTP delivery.
#
# Package layout:
#   core/    - Settings, caller options and the retrieved data models
#   imap/    - IMAP transport and retriever
#   pop3/    - POP3 transport and retriever
#   smtp/    - SMTP delivery
#   retry    - Session lifetime and bounded retry for units of work
#   config   - TOML account configuration
#
# Usage:
#   >>> retriever = IMAPRetriever(Settings(address="imap.example.com", port=993,
#   ...                                    user_name="me@example.com", enable_ssl=True))
#   >>> newest = await retriever.find(what="last", count=5, order="desc")
# =============================================================================

from mail_retriever.core import (
    ALL,
    Attachment,
    DEFAULT_EXCLUDE_FLAGS,
    Entry,
    Folder,
    FolderFilter,
    FolderOptions,
    Message,
    Order,
    RetrievalOptions,
    Settings,
    UidInterval,
    What,
)
from mail_retriever.errors import ErrorKind
from mail_retriever.retry import (
    ErrorDescription,
    FailureClass,
    RetrievalError,
    SessionController,
    UIDValidityError,
)
from mail_retriever.imap import IMAPRetriever
from mail_retriever.pop3 import POP3Retriever
from mail_retriever.smtp import SMTPDelivery, SMTPSettings
from mail_retriever.config import Config, ConfigError

__version__ = "0.1.0"

__all__ = [
    # Models and options
    "ALL",
    "Attachment",
    "DEFAULT_EXCLUDE_FLAGS",
    "Entry",
    "Folder",
    "FolderFilter",
    "FolderOptions",
    "Message",
    "Order",
    "RetrievalOptions",
    "Settings",
    "UidInterval",
    "What",
    # Failures
    "ErrorDescription",
    "ErrorKind",
    "FailureClass",
    "RetrievalError",
    "UIDValidityError",
    "SessionController",
    # Retrievers and delivery
    "IMAPRetriever",
    "POP3Retriever",
    "SMTPDelivery",
    "SMTPSettings",
    # Configuration
    "Config",
    "ConfigError",
]
