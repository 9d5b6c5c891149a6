# =============================================================================
# Modified UTF-7
# =============================================================================
# IMAP mailbox names travel in a variant of UTF-7 (RFC 3501 section 5.1.3):
#   - printable ASCII stands for itself, except "&" which becomes "&-"
#   - any other run of characters is UTF-16BE, base64 encoded with ","
#     in place of "/", no padding, and wrapped in "&" ... "-"
#
# Example:
#   "Entwürfe"  <->  "Entw&APw-rfe"
# =============================================================================

import base64


def _is_direct(char: str) -> bool:
    return 0x20 <= ord(char) <= 0x7E and char != "&"


def _modified_base64(text: str) -> str:
    encoded = base64.b64encode(text.encode("utf-16-be")).decode("ascii")
    return encoded.rstrip("=").replace("/", ",")


def _modified_unbase64(text: str) -> str:
    data = text.replace(",", "/")
    data += "=" * (-len(data) % 4)
    return base64.b64decode(data).decode("utf-16-be")


def encode(name: str) -> str:
    """
    Encode a mailbox name for the wire.

    Example:
        >>> encode("Entwürfe")
        'Entw&APw-rfe'
    """
    result: list[str] = []
    pending: list[str] = []

    for char in name:
        if _is_direct(char) or char == "&":
            if pending:
                result.extend(["&", _modified_base64("".join(pending)), "-"])
                pending.clear()
            result.append("&-" if char == "&" else char)
        else:
            pending.append(char)

    if pending:
        result.extend(["&", _modified_base64("".join(pending)), "-"])
    return "".join(result)


def decode(name: str | bytes) -> str:
    """
    Decode a mailbox name as received from the server.

    Malformed shift sequences are kept verbatim.

    Example:
        >>> decode("Entw&APw-rfe")
        'Entwürfe'
    """
    if isinstance(name, (bytes, bytearray)):
        name = bytes(name).decode("ascii", errors="replace")

    result: list[str] = []
    shifted: list[str] | None = None

    for char in name:
        if shifted is None:
            if char == "&":
                shifted = []
            else:
                result.append(char)
        elif char == "-":
            if not shifted:
                result.append("&")
            else:
                result.append(_decode_run("".join(shifted)))
            shifted = None
        else:
            shifted.append(char)

    if shifted is not None:
        result.append("&" + "".join(shifted))
    return "".join(result)


def _decode_run(run: str) -> str:
    try:
        return _modified_unbase64(run)
    except (ValueError, UnicodeDecodeError):
        return f"&{run}-"
