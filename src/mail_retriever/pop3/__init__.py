# =============================================================================
# POP3 Module
# =============================================================================
# Retrieval over POP3 (Post Office Protocol v3). POP3 has a single mailbox
# and no folders; deletions only take effect when a session ends with QUIT.
#
# poplib is blocking, so commands run in worker threads.
# =============================================================================

from mail_retriever.pop3.transport import (
    POP3Transport,
    POP3Error,
    POP3ConnectionError,
    POP3AuthenticationError,
)
from mail_retriever.pop3.retriever import POP3Retriever

__all__ = [
    "POP3Transport",
    "POP3Error",
    "POP3ConnectionError",
    "POP3AuthenticationError",
    "POP3Retriever",
]
