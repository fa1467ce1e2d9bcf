"""Single-transaction SMTP client.

The client drives one connection through a fixed, forward-only sequence::

    CONNECTED -> GREETED -> [TLS_NEGOTIATED] -> [AUTHENTICATED]
              -> MAIL_SET -> RCPT_SET -> DATA_SENT -> CLOSED

STARTTLS is used whenever the server advertises it (or required with
``require_tls``), PLAIN authentication is performed when a username is set,
and the connection is always released, whichever stage fails. A single
deadline covers the whole transaction: every stage arms the socket with the
time that is left.

Example:
    Sending a serialized message::

        settings = SmtpSettings(host="smtp.example.com", port=587,
                                username="me", password="secret")
        result = send_mail(settings, "me@example.com",
                           ["you@example.com"], message.as_bytes())
"""

import logging
import re
import smtplib
import ssl
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .config import SmtpSettings
from .errors import (
    AuthError,
    ConnectError,
    InputError,
    MailError,
    ProtocolError,
    RecipientsRefused,
    SendTimeoutError,
    TLSError,
)

logger = logging.getLogger(__name__)

_BARE_LF = re.compile(rb"(?<!\r)\n")


class State(IntEnum):
    NEW = 0
    CONNECTED = 1
    GREETED = 2
    TLS_NEGOTIATED = 3
    AUTHENTICATED = 4
    MAIL_SET = 5
    RCPT_SET = 6
    DATA_SENT = 7
    CLOSED = 8


class Deadline:
    """Absolute point in time after which the transaction is abandoned."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return self.expires_at - self._clock()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


@dataclass
class SendResult:
    accepted: List[str]
    refused: Dict[str, Tuple[int, bytes]] = field(default_factory=dict)
    encrypted: bool = False
    authenticated: bool = False
    reply: Optional[Tuple[int, bytes]] = None


def reply_text(code: int, reply) -> str:
    if isinstance(reply, bytes):
        reply = reply.decode("utf-8", "replace")
    return f"{code} {reply}".strip()


def normalize_line_endings(payload: bytes) -> bytes:
    """Turn bare LF into CRLF as required on the SMTP wire.

    This applies to the whole DATA payload, attachment bytes included: raw
    binary attachments containing 0x0A arrive with those bytes widened.
    """
    return _BARE_LF.sub(b"\r\n", payload)


def needs_smtputf8(sender: str, recipients: Sequence[str]) -> bool:
    return not all(addr.isascii() for addr in [sender, *recipients])


class SmtpClient:
    """Conducts exactly one send transaction against one SMTP server.

    ``smtp_factory`` builds the underlying ``smtplib.SMTP``-compatible object;
    it defaults to ``smtplib.SMTP`` (or ``smtplib.SMTP_SSL`` for implicit TLS).
    """

    def __init__(self, settings: SmtpSettings, smtp_factory: Optional[Callable] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self.state = State.NEW
        self.encrypted = False
        self.authenticated = False
        self.accepted: List[str] = []
        self.refused: Dict[str, Tuple[int, bytes]] = {}
        self._factory = smtp_factory
        self._clock = clock
        self._smtp = None
        self._deadline: Optional[Deadline] = None

    def __enter__(self) -> "SmtpClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.quit()

    # -- helpers ---------------------------------------------------------

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if self.settings.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _open(self):
        kwargs = {
            "local_hostname": self.settings.local_hostname,
            "timeout": self._deadline.remaining(),
        }
        if self.settings.implicit_tls:
            factory = self._factory or smtplib.SMTP_SSL
            return factory(context=self._tls_context(), **kwargs)
        factory = self._factory or smtplib.SMTP
        return factory(**kwargs)

    def _expect(self, stage: str, *states: State) -> None:
        if self.state not in states:
            raise ProtocolError(f"command not allowed in state {self.state.name}", stage)

    def _arm(self, stage: str) -> None:
        remaining = self._deadline.remaining()
        if remaining <= 0:
            raise SendTimeoutError(f"deadline of {self._deadline.seconds}s expired", stage)
        if self._smtp is not None:
            self._smtp.timeout = remaining
            if self._smtp.sock is not None:
                self._smtp.sock.settimeout(remaining)

    @contextmanager
    def _stage(self, stage: str, error_cls: type) -> Iterator[None]:
        """Arm the deadline and translate low-level failures into ``error_cls``."""
        self._arm(stage)
        logger.debug("%s: %s", self.settings.address, stage)
        try:
            yield
        except MailError:
            raise
        except TimeoutError as exc:
            raise SendTimeoutError(f"timed out after {self._deadline.seconds}s", stage) from exc
        except smtplib.SMTPServerDisconnected as exc:
            if self._deadline.expired or isinstance(exc.__context__, TimeoutError):
                raise SendTimeoutError(f"timed out after {self._deadline.seconds}s", stage) from exc
            raise error_cls(f"connection lost: {exc}", stage) from exc
        except smtplib.SMTPResponseException as exc:
            raise error_cls(reply_text(exc.smtp_code, exc.smtp_error), stage) from exc
        except ssl.SSLError as exc:
            raise TLSError(str(exc), stage) from exc
        except UnicodeEncodeError as exc:
            raise error_cls("non-ASCII address but the server does not offer SMTPUTF8", stage) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise error_cls(str(exc) or exc.__class__.__name__, stage) from exc

    # -- stages ----------------------------------------------------------

    def connect(self) -> None:
        """Open the connection and complete the greeting and EHLO exchange."""
        self._expect("connect", State.NEW)
        settings = self.settings
        self._deadline = Deadline(settings.timeout, self._clock)
        try:
            with self._stage("connect", ConnectError):
                self._smtp = self._open()
                if settings.debug:
                    self._smtp.set_debuglevel(1)
                code, reply = self._smtp.connect(settings.host, settings.port)
            self.state = State.CONNECTED

            with self._stage("greeting", ProtocolError):
                if code != 220:
                    raise ProtocolError(f"unexpected greeting {reply_text(code, reply)}", "greeting")
                self._smtp.ehlo_or_helo_if_needed()
        except MailError:
            self.close()
            raise
        self.encrypted = settings.implicit_tls
        self.state = State.GREETED

    def starttls(self) -> bool:
        """Upgrade to TLS when the server offers it. Returns True if upgraded."""
        self._expect("starttls", State.GREETED)
        if self.encrypted:
            return False
        if not self._smtp.has_extn("starttls"):
            if self.settings.require_tls:
                raise TLSError("server does not offer STARTTLS", "starttls")
            logger.debug("STARTTLS not offered by %s, continuing in plaintext", self.settings.host)
            return False
        with self._stage("starttls", TLSError):
            self._smtp.starttls(context=self._tls_context())
            self._smtp.ehlo()
        self.encrypted = True
        self.state = State.TLS_NEGOTIATED
        return True

    def authenticate(self) -> bool:
        """Run AUTH PLAIN when a username is configured."""
        self._expect("auth", State.GREETED, State.TLS_NEGOTIATED)
        settings = self.settings
        if not settings.wants_auth:
            return False
        if not self.encrypted:
            logger.warning("Sending credentials for %s over an unencrypted connection",
                           settings.username)
        with self._stage("auth", AuthError):
            self._smtp.user, self._smtp.password = settings.username, settings.password
            self._smtp.auth("PLAIN", self._smtp.auth_plain)
        self.authenticated = True
        self.state = State.AUTHENTICATED
        return True

    def mail(self, sender: str, size: Optional[int] = None, smtputf8: bool = False) -> None:
        """Issue MAIL FROM, declaring SIZE and SMTPUTF8 when the server supports them."""
        self._expect("mail", State.GREETED, State.TLS_NEGOTIATED, State.AUTHENTICATED)
        options = []
        if size is not None and self._smtp.has_extn("size"):
            options.append(f"SIZE={size}")
        if smtputf8:
            if self._smtp.has_extn("smtputf8"):
                options.append("SMTPUTF8")
            else:
                logger.debug("%s does not offer SMTPUTF8", self.settings.host)
        with self._stage("mail", ProtocolError):
            code, reply = self._smtp.mail(sender, options)
        if code != 250:
            raise ProtocolError(f"sender {sender} rejected: {reply_text(code, reply)}", "mail")
        self.state = State.MAIL_SET

    def rcpt(self, recipients: Sequence[str]) -> List[str]:
        """Issue RCPT TO for each recipient in order.

        By default the first refusal aborts the transaction. With
        ``allow_partial`` refusals are collected and the send continues with
        the accepted subset; it still fails when nobody was accepted.
        """
        self._expect("rcpt", State.MAIL_SET)
        if not recipients:
            raise InputError("no recipients given", "rcpt")
        for addr in recipients:
            with self._stage("rcpt", ProtocolError):
                code, reply = self._smtp.rcpt(addr)
            if code in (250, 251):
                self.accepted.append(addr)
                continue
            self.refused[addr] = (code, reply)
            if not self.settings.allow_partial:
                raise RecipientsRefused(self.refused)
            logger.warning("Recipient %s refused: %s", addr, reply_text(code, reply))
        if not self.accepted:
            raise RecipientsRefused(self.refused)
        self.state = State.RCPT_SET
        return list(self.accepted)

    def data(self, payload: bytes) -> Tuple[int, bytes]:
        self._expect("data", State.RCPT_SET)
        with self._stage("data", ProtocolError):
            code, reply = self._smtp.data(normalize_line_endings(payload))
        if code != 250:
            raise ProtocolError(f"message rejected: {reply_text(code, reply)}", "data")
        self.state = State.DATA_SENT
        return code, reply

    def quit(self) -> bool:
        """Send QUIT once and release the connection.

        Returns False when QUIT itself failed; the socket is closed either way.
        """
        if self.state is State.CLOSED or self._smtp is None:
            self.state = State.CLOSED
            return True
        if self.state is State.NEW:
            self.close()
            return True
        try:
            with self._stage("quit", ProtocolError):
                self._smtp.quit()
            return True
        except MailError as exc:
            logger.debug("QUIT failed: %s", exc)
            return False
        finally:
            self.close()

    def close(self) -> None:
        if self._smtp is not None:
            self._smtp.close()
            self._smtp = None
        self.state = State.CLOSED

    # -- whole transaction -----------------------------------------------

    def send(self, sender: str, recipients: Sequence[str], payload: bytes) -> SendResult:
        """Run the full transaction and always close the connection."""
        logger.info("Sending mail to %s via %s...", ", ".join(recipients), self.settings.address)
        try:
            if self.state is State.NEW:
                self.connect()
            self.starttls()
            self.authenticate()
            self.mail(sender, size=len(payload), smtputf8=needs_smtputf8(sender, recipients))
            self.rcpt(recipients)
            reply = self.data(payload)
        finally:
            closed_cleanly = self.quit()
        if not closed_cleanly:
            logger.warning("QUIT failed after the message was accepted")
        logger.info("Sent.")
        return SendResult(
            accepted=list(self.accepted),
            refused=dict(self.refused),
            encrypted=self.encrypted,
            authenticated=self.authenticated,
            reply=reply,
        )


def send_mail(settings: SmtpSettings, sender: str, recipients: Sequence[str], payload: bytes,
              smtp_factory: Optional[Callable] = None) -> SendResult:
    """Connect, send ``payload`` to ``recipients`` and disconnect."""
    with SmtpClient(settings, smtp_factory=smtp_factory) as client:
        return client.send(sender, recipients, payload)
