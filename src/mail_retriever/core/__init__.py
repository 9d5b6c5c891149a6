# =============================================================================
# mail-retriever Core Module
# =============================================================================
# This module contains the core domain models. These are plain Python
# dataclasses with no protocol dependencies, so they can be imported anywhere
# without causing circular dependency issues.
#
# The core models represent:
#   - Settings: Connection settings for a mail server
#   - RetrievalOptions / FolderOptions / FolderFilter: Caller options
#   - Folder: A mailbox folder with its STATUS counters
#   - Entry: A header-only handle on a remote message
#   - Message: A fully retrieved email message
# =============================================================================

from mail_retriever.core.account import Settings
from mail_retriever.core.entry import Entry
from mail_retriever.core.folder import Folder, normalize_flag
from mail_retriever.core.message import Attachment, Message
from mail_retriever.core.options import (
    ALL,
    DEFAULT_EXCLUDE_FLAGS,
    FolderFilter,
    FolderOptions,
    Order,
    RetrievalOptions,
    UidInterval,
    What,
)

__all__ = [
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
    "normalize_flag",
]
