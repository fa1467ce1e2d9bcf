"""Compose a MIME message and deliver it over SMTP."""

from .config import SmtpSettings
from .errors import (
    AuthError,
    ConnectError,
    InputError,
    MailError,
    ProtocolError,
    RecipientsRefused,
    SendTimeoutError,
    SerializationError,
    TLSError,
)
from .message import Attachment, HeaderSet, Message
from .smtp import SendResult, SmtpClient, State, send_mail

__version__ = "0.1.0"

__all__ = [
    "Attachment",
    "AuthError",
    "ConnectError",
    "HeaderSet",
    "InputError",
    "MailError",
    "Message",
    "ProtocolError",
    "RecipientsRefused",
    "SendResult",
    "SendTimeoutError",
    "SerializationError",
    "SmtpClient",
    "SmtpSettings",
    "State",
    "TLSError",
    "send_mail",
]
