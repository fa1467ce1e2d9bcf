"""Compose RFC 822 / MIME messages.

A message without attachments is written as a bare header block, a blank line
and the body bytes verbatim. With attachments it becomes ``multipart/mixed``:
the body is the first ``text/plain`` part and every attachment follows in the
order it was added.
"""

import logging
import mimetypes
import os
import re
import secrets
from dataclasses import dataclass, field
from email.header import Header
from email.utils import encode_rfc2231
from io import BytesIO
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple, Union

from .errors import InputError, SerializationError

logger = logging.getLogger(__name__)

CRLF = b"\r\n"
VALUE_SEPARATOR = "; "
DEFAULT_CONTENT_TYPE = "application/octet-stream"
MAX_ATTACHMENT_SIZE = 50 * 1024 * 1024  # 50 MB
BOUNDARY_ATTEMPTS = 10

_FOLD = re.compile(r"\r\n(?=[ \t])")


class HeaderSet:
    """Ordered mapping of header name to one or more values.

    Names are matched case-insensitively and keep the spelling they were
    first added with. Each name is emitted once; multiple values are joined
    with ``"; "``.
    """

    def __init__(self, headers: Optional[dict] = None):
        self._headers: dict = {}
        for name, values in (headers or {}).items():
            self.set(name, values)

    def add(self, name: str, value: str) -> None:
        key = name.lower()
        if key in self._headers:
            self._headers[key][1].append(value)
        else:
            self._headers[key] = (name, [value])

    def set(self, name: str, values: Union[str, Iterable[str]]) -> None:
        if isinstance(values, str):
            values = [values]
        key = name.lower()
        original = self._headers[key][0] if key in self._headers else name
        self._headers[key] = (original, list(values))

    def get(self, name: str) -> List[str]:
        entry = self._headers.get(name.lower())
        return list(entry[1]) if entry else []

    def render(self, name: str) -> str:
        """Return the joined value of ``name`` as it appears on the wire."""
        return VALUE_SEPARATOR.join(self.get(name))

    def items(self) -> Iterator[Tuple[str, List[str]]]:
        for name, values in self._headers.values():
            yield name, list(values)

    def update(self, other: "HeaderSet") -> None:
        for name, values in other.items():
            self.set(name, values)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._headers

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._headers.values())

    def __len__(self) -> int:
        return len(self._headers)

    def __repr__(self) -> str:
        return f"HeaderSet({dict(self.items())!r})"

    def to_bytes(self) -> bytes:
        lines = []
        for name, values in self.items():
            value = VALUE_SEPARATOR.join(values)
            if not name or any(c in name for c in ": \t\r\n"):
                raise SerializationError(f"invalid header name {name!r}")
            unfolded = _FOLD.sub("", value)
            if "\r" in unfolded or "\n" in unfolded:
                raise SerializationError(f"line break in {name} header value")
            lines.append(f"{name}: {value}".encode("utf-8") + CRLF)
        return b"".join(lines)

    def write_to(self, sink: BinaryIO) -> int:
        data = self.to_bytes()
        try:
            sink.write(data)
        except (OSError, ValueError) as exc:
            raise SerializationError(f"failed to write headers: {exc}") from exc
        return len(data)


def make_boundary() -> str:
    """Return a fresh random multipart boundary token."""
    return secrets.token_hex(30)


def guess_content_type(filename: str) -> str:
    """Map a filename extension to a MIME type, falling back to octet-stream."""
    ctype, encoding = mimetypes.guess_type(filename)
    if ctype is None or encoding is not None:
        return DEFAULT_CONTENT_TYPE
    return ctype


def encode_header_value(value: str, header_name: Optional[str] = None) -> str:
    """RFC 2047 encode a free-text header value when it is not plain ASCII.

    Long values are folded into several encoded words on CRLF + space
    continuation lines.
    """
    if value.isascii():
        return value
    return Header(value, "utf-8", header_name=header_name).encode(linesep="\r\n")


def disposition_filename(filename: str) -> str:
    if not filename.isascii():
        return f"filename*={encode_rfc2231(filename, 'utf-8')}"
    escaped = filename.replace("\\", "\\\\").replace('"', '\\"')
    return f'filename="{escaped}"'


@dataclass(frozen=True)
class Attachment:
    """A file attached to a message. ``filename`` is a base name only."""

    filename: str
    data: bytes

    @classmethod
    def from_path(cls, path: str, max_size: int = MAX_ATTACHMENT_SIZE) -> "Attachment":
        """Read ``path`` once and wrap its contents."""
        try:
            size = os.path.getsize(path)
            if size > max_size:
                raise InputError(
                    f"attachment '{path}' exceeds maximum size of {max_size // 1024 // 1024} MB"
                )
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError as exc:
            raise InputError(f"attachment '{path}' does not exist") from exc
        except OSError as exc:
            raise InputError(f"failed to read attachment '{path}': {exc.strerror or exc}") from exc
        return cls(os.path.basename(path), data)

    @property
    def content_type(self) -> str:
        return guess_content_type(self.filename)

    def part_headers(self) -> HeaderSet:
        if "\r" in self.filename or "\n" in self.filename:
            raise SerializationError(f"attachment name {self.filename!r} contains a line break")
        return HeaderSet({
            "Content-Type": self.content_type,
            "Content-Disposition": ["attachment", disposition_filename(self.filename)],
        })


@dataclass
class Message:
    """A simplified view of an email message."""

    to: List[str]
    sender: str
    subject: str = ""
    body: bytes = b""
    attachments: List[Attachment] = field(default_factory=list)
    headers: HeaderSet = field(default_factory=HeaderSet)

    def add_attachment(self, path: str) -> Attachment:
        attachment = Attachment.from_path(path)
        self.attachments.append(attachment)
        logger.debug("Attached %s (%d bytes, %s)", attachment.filename,
                     len(attachment.data), attachment.content_type)
        return attachment

    def base_headers(self) -> HeaderSet:
        headers = HeaderSet({
            "To": ", ".join(self.to),
            "From": self.sender,
            "Subject": encode_header_value(self.subject, "Subject"),
        })
        headers.update(self.headers)
        return headers

    def _pick_boundary(self) -> str:
        payloads = [self.body] + [a.data for a in self.attachments]
        for _ in range(BOUNDARY_ATTEMPTS):
            boundary = make_boundary()
            token = boundary.encode("ascii")
            if not any(token in payload for payload in payloads):
                return boundary
            logger.debug("Boundary %s collides with message content, retrying", boundary)
        raise SerializationError("could not find a boundary absent from the message content")

    def as_bytes(self) -> bytes:
        """Serialize the whole message."""
        buf = BytesIO()
        headers = self.base_headers()

        if not self.attachments:
            buf.write(headers.to_bytes())
            buf.write(CRLF)
            buf.write(self.body)
            return buf.getvalue()

        boundary = self._pick_boundary()
        headers.set("MIME-Version", "1.0")
        headers.set("Content-Type", ["multipart/mixed", f"boundary={boundary}"])
        delimiter = b"--" + boundary.encode("ascii")

        buf.write(headers.to_bytes())
        buf.write(CRLF)

        parts = [(HeaderSet({"Content-Type": "text/plain"}), self.body)]
        for attachment in self.attachments:
            parts.append((attachment.part_headers(), attachment.data))

        for index, (part_headers, payload) in enumerate(parts):
            if index:
                buf.write(CRLF)
            buf.write(delimiter + CRLF)
            buf.write(part_headers.to_bytes())
            buf.write(CRLF)
            buf.write(payload)
        buf.write(CRLF + delimiter + b"--" + CRLF)
        return buf.getvalue()

    def write_to(self, sink: BinaryIO) -> int:
        """Write the serialized message to ``sink`` and return the byte count."""
        data = self.as_bytes()
        try:
            sink.write(data)
            sink.flush()
        except (OSError, ValueError) as exc:
            raise SerializationError(f"failed to write message: {exc}") from exc
        return len(data)
