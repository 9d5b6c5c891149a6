# =============================================================================
# IMAP Module
# =============================================================================
# Retrieval over IMAP (Internet Message Access Protocol):
#   - Connecting to IMAP servers with SSL/STARTTLS
#   - Listing folders with their STATUS counters
#   - Streaming messages and header-only entries in UID batches
#   - Deleting retrieved messages with a single final EXPUNGE
#
# This module uses aioimaplib for async IMAP operations.
# =============================================================================

from mail_retriever.imap.transport import (
    IMAPTransport,
    IMAPError,
    IMAPConnectionError,
    IMAPAuthenticationError,
    IMAPCommandError,
    IMAPProtocolError,
    IMAPByeError,
)
from mail_retriever.imap.matcher import FolderMatcher
from mail_retriever.imap.retriever import IMAPRetriever

__all__ = [
    # Transport
    "IMAPTransport",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "IMAPCommandError",
    "IMAPProtocolError",
    "IMAPByeError",
    # Retrieval
    "FolderMatcher",
    "IMAPRetriever",
]
