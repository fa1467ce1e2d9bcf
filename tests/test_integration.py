"""End-to-end sends against an in-process aiosmtpd server."""

import email

import pytest

from mailsend.config import SmtpSettings
from mailsend.errors import ConnectError, ProtocolError, RecipientsRefused
from mailsend.message import Attachment, Message
from mailsend.smtp import send_mail


def local_settings(port, **overrides):
    return SmtpSettings(host="127.0.0.1", port=port, timeout=10, **overrides)


def test_delivers_plain_message(smtp_server):
    msg = Message(to=["a@x.com"], sender="b@y.com", subject="Hi", body=b"hello")

    result = send_mail(local_settings(smtp_server.port), msg.sender, msg.to, msg.as_bytes())

    assert result.accepted == ["a@x.com"]
    assert result.encrypted is False
    [delivered] = smtp_server.handler.messages
    assert delivered["mail_from"] == "b@y.com"
    assert delivered["rcpt_tos"] == ["a@x.com"]
    assert delivered["content"].startswith(b"To: a@x.com\r\nFrom: b@y.com\r\nSubject: Hi\r\n\r\n")
    assert b"hello" in delivered["content"]


def test_delivers_attachment(smtp_server):
    msg = Message(to=["a@x.com", "c@z.com"], sender="b@y.com", subject="Hi", body=b"hello",
                  attachments=[Attachment("note.txt", b"abc")])

    send_mail(local_settings(smtp_server.port), msg.sender, msg.to, msg.as_bytes())

    [delivered] = smtp_server.handler.messages
    assert delivered["rcpt_tos"] == ["a@x.com", "c@z.com"]
    parsed = email.message_from_bytes(delivered["content"])
    body, attachment = parsed.get_payload()
    assert body.get_payload(decode=True) == b"hello"
    assert attachment.get_filename() == "note.txt"
    assert attachment.get_payload(decode=True) == b"abc"


def test_dot_lines_survive_transport(smtp_server):
    body = b"first\r\n.\r\n..two dots\r\n"
    msg = Message(to=["a@x.com"], sender="b@y.com", body=body)

    send_mail(local_settings(smtp_server.port), msg.sender, msg.to, msg.as_bytes())

    [delivered] = smtp_server.handler.messages
    assert body in delivered["content"]


def test_refused_recipient_aborts_delivery(smtp_server):
    with pytest.raises(RecipientsRefused) as excinfo:
        send_mail(local_settings(smtp_server.port), "b@y.com",
                  ["a@x.com", "reject@x.com"], b"Subject: x\r\n\r\nhello")

    assert list(excinfo.value.refused) == ["reject@x.com"]
    assert excinfo.value.refused["reject@x.com"][0] == 550
    assert smtp_server.handler.messages == []


def test_partial_delivery(smtp_server):
    result = send_mail(local_settings(smtp_server.port, allow_partial=True), "b@y.com",
                       ["a@x.com", "reject@x.com"], b"Subject: x\r\n\r\nhello")

    assert result.accepted == ["a@x.com"]
    assert list(result.refused) == ["reject@x.com"]
    [delivered] = smtp_server.handler.messages
    assert delivered["rcpt_tos"] == ["a@x.com"]


def test_connection_refused(closed_port):
    with pytest.raises(ConnectError) as excinfo:
        send_mail(local_settings(closed_port), "b@y.com", ["a@x.com"], b"hello")

    assert excinfo.value.stage == "connect"


def test_non_ascii_sender_is_a_protocol_error(smtp_server):
    with pytest.raises(ProtocolError) as excinfo:
        send_mail(local_settings(smtp_server.port), "jörg@y.com", ["a@x.com"],
                  b"Subject: x\r\n\r\nhello")

    assert excinfo.value.stage == "mail"
    assert smtp_server.handler.messages == []
