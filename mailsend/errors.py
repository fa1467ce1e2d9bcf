"""Failure kinds raised while building or sending a message.

Every failure is terminal for the send attempt. The ``stage`` attribute names
the SMTP state the transaction was in when it failed (``None`` for failures
that happen before any network activity).
"""

from typing import Optional


class MailError(Exception):
    """Base class for everything that aborts a send."""

    exit_code = 1

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"{self.stage}: {self.message}"
        return self.message


class InputError(MailError):
    """Missing field, unreadable attachment or unreadable stdin."""

    exit_code = 2


class SerializationError(MailError):
    """The composed message could not be written to its sink."""


class ConnectError(MailError):
    """TCP connection to the server could not be established."""


class TLSError(MailError):
    """TLS negotiation failed or was required and not offered."""


class AuthError(MailError):
    """The server rejected the supplied credentials."""


class ProtocolError(MailError):
    """The server rejected a command (sender, recipient, data, ...)."""


class RecipientsRefused(ProtocolError):
    """One or more envelope recipients were rejected.

    ``refused`` maps each rejected address to the server's ``(code, reply)``.
    """

    def __init__(self, refused: dict, stage: Optional[str] = "rcpt"):
        detail = ", ".join(
            f"{addr} ({code} {reply.decode('utf-8', 'replace') if isinstance(reply, bytes) else reply})"
            for addr, (code, reply) in refused.items()
        )
        super().__init__(f"recipient(s) refused: {detail}", stage)
        self.refused = dict(refused)


class SendTimeoutError(MailError):
    """The transaction deadline expired."""
