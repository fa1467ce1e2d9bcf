import smtplib
import socket

import pytest
from aiosmtpd.controller import Controller


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# --- Recording stand-in for smtplib.SMTP ---

class FakeSocket:
    def __init__(self):
        self.timeouts = []

    def settimeout(self, value):
        self.timeouts.append(value)


class FakeSMTP:
    """Mimics the parts of smtplib.SMTP used by SmtpClient and records commands."""

    def __init__(self, server, **kwargs):
        self.server = server
        self.kwargs = kwargs
        self.timeout = kwargs.get("timeout")
        self.sock = None
        self.commands = []
        self.user = None
        self.password = None
        self.tls_context = None
        self.auth_response = None
        self.mail_options = None
        self.payload = None
        self.debuglevel = 0
        self.command_encoding = "ascii"
        self.closed = False

    def _hook(self, command):
        command.encode(self.command_encoding)
        self.commands.append(command)
        action = self.server.hooks.get(command.split()[0])
        if action:
            action()
        if self.server.hang_on == command.split()[0]:
            try:
                raise TimeoutError("timed out")
            except TimeoutError:
                self.close()
                raise smtplib.SMTPServerDisconnected("Connection unexpectedly closed: timed out")

    def set_debuglevel(self, level):
        self.debuglevel = level

    def connect(self, host, port):
        self.commands.append("connect")
        if self.server.refuse_connection:
            raise ConnectionRefusedError(111, "Connection refused")
        self.host, self.port = host, port
        self.sock = FakeSocket()
        return self.server.greeting

    def ehlo_or_helo_if_needed(self):
        self._hook("ehlo")

    def ehlo(self, name=""):
        self._hook("ehlo")
        return 250, b"fake.test"

    def has_extn(self, name):
        return name.lower() in self.server.features

    def starttls(self, context=None):
        self._hook("starttls")
        self.tls_context = context
        if self.server.tls_error:
            raise self.server.tls_error
        return 220, b"2.0.0 Ready to start TLS"

    def auth_plain(self, challenge=None):
        return "\0%s\0%s" % (self.user, self.password)

    def auth(self, mechanism, authobject, *, initial_response_ok=True):
        self._hook(f"auth {mechanism}")
        self.auth_response = authobject()
        if self.server.auth_error:
            raise self.server.auth_error
        return 235, b"2.7.0 Authentication successful"

    def mail(self, sender, options=()):
        if "SMTPUTF8" in options:
            self.command_encoding = "utf-8"
        self._hook(f"mail {sender}")
        self.mail_options = list(options)
        return self.server.mail_reply

    def rcpt(self, recip, options=()):
        self._hook(f"rcpt {recip}")
        return self.server.refused.get(recip, (250, b"2.1.5 OK"))

    def data(self, msg):
        self._hook("data")
        if self.server.data_error:
            raise self.server.data_error
        self.payload = msg
        return self.server.data_reply

    def quit(self):
        self._hook("quit")
        if self.server.quit_error:
            self.close()
            raise self.server.quit_error
        self.close()
        return 221, b"2.0.0 Bye"

    def close(self):
        self.closed = True
        self.sock = None


class FakeServer:
    """Scripted server behaviour; calling it builds a FakeSMTP connection."""

    def __init__(self):
        self.features = {"size", "8bitmime"}
        self.greeting = (220, b"fake.test ESMTP")
        self.mail_reply = (250, b"2.1.0 OK")
        self.data_reply = (250, b"2.0.0 OK queued")
        self.refused = {}
        self.refuse_connection = False
        self.tls_error = None
        self.auth_error = None
        self.data_error = None
        self.quit_error = None
        self.hang_on = None
        self.hooks = {}
        self.connections = []

    def __call__(self, **kwargs):
        smtp = FakeSMTP(self, **kwargs)
        self.connections.append(smtp)
        return smtp

    @property
    def conn(self):
        return self.connections[-1]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def clock():
    return FakeClock()


# --- Real SMTP server (aiosmtpd) ---

class RecordingHandler:
    """Accepts everything except recipients whose local part starts with 'reject'."""

    def __init__(self):
        self.messages = []

    async def handle_RCPT(self, server, session, envelope, address, rcpt_options):
        if address.startswith("reject"):
            return "550 5.1.1 No such user"
        envelope.rcpt_tos.append(address)
        return "250 OK"

    async def handle_DATA(self, server, session, envelope):
        self.messages.append({
            "mail_from": envelope.mail_from,
            "rcpt_tos": list(envelope.rcpt_tos),
            "content": envelope.content,
        })
        return "250 Message accepted for delivery"


@pytest.fixture
def smtp_server():
    handler = RecordingHandler()
    controller = Controller(handler, hostname="127.0.0.1", port=free_port())
    controller.start()
    try:
        yield controller
    finally:
        controller.stop()


@pytest.fixture
def closed_port():
    return free_port()
