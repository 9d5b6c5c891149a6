# =============================================================================
# SMTP Module
# =============================================================================
# Sends already-composed messages via SMTP (Simple Mail Transfer Protocol).
#
# Features:
#   - Connection with SSL or opportunistic STARTTLS
#   - Certificate settings (verify mode, CA path, CA file)
#   - Envelope sender/recipients derived from the message headers
# =============================================================================

from mail_retriever.smtp.client import (
    SMTPDelivery,
    SMTPSettings,
    SMTPError,
    SMTPConnectionError,
    SMTPAuthenticationError,
    DeliveryError,
)

__all__ = [
    "SMTPDelivery",
    "SMTPSettings",
    "SMTPError",
    "SMTPConnectionError",
    "SMTPAuthenticationError",
    "DeliveryError",
]
