# =============================================================================
# Error Kinds
# =============================================================================
# The vocabulary of failure categories shared by the transports and the
# retry controller. Transport exceptions declare their category through a
# `kind` class attribute, so the controller can classify them without
# importing any protocol module.
# =============================================================================

from enum import Enum


class ErrorKind(str, Enum):
    """What went wrong, independent of which library raised it."""
    CONNECTION_RESET = "connection_reset"
    CONNECTION_ABORTED = "connection_aborted"
    BROKEN_PIPE = "broken_pipe"
    TIMEOUT = "timeout"
    NOT_CONNECTED = "not_connected"
    IO = "io"
    TLS = "tls"
    BYE = "bye"
    BAD_RESPONSE = "bad_response"
    NO_RESPONSE = "no_response"
    OTHER = "other"
