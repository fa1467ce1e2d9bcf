"""Immutable settings for a single send and input helpers for the CLI."""

from dataclasses import dataclass
from typing import BinaryIO, List, Optional

from .errors import InputError

DEFAULT_PORT = 25
DEFAULT_TIMEOUT = 60


@dataclass(frozen=True)
class SmtpSettings:
    """Everything the SMTP client needs to know about the server and policy."""

    host: str
    port: int = DEFAULT_PORT
    username: str = ""
    password: str = ""
    timeout: float = DEFAULT_TIMEOUT
    implicit_tls: bool = False
    require_tls: bool = False
    insecure: bool = False
    allow_partial: bool = False
    local_hostname: Optional[str] = None
    debug: bool = False

    def __post_init__(self) -> None:
        if not self.host:
            raise InputError("SMTP host not set")
        if not (1 <= self.port <= 65535):
            raise InputError(f"invalid port: must be between 1 and 65535, got {self.port}")
        if self.timeout <= 0:
            raise InputError(f"invalid timeout: must be positive, got {self.timeout}")
        if self.password and not self.username:
            raise InputError("password given without a username")
        if self.implicit_tls and self.require_tls:
            raise InputError("--ssl and --require-tls are mutually exclusive")

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def wants_auth(self) -> bool:
        return bool(self.username)


def split_addrs(text: str) -> List[str]:
    """Split a comma or semicolon separated address list."""
    parts = [x.strip() for x in text.replace(";", ",").split(",")]
    return [x for x in parts if x]


def read_body(source: str, stdin: BinaryIO) -> bytes:
    """Resolve the body source: ``-`` reads stdin to EOF, anything else is literal."""
    if source != "-":
        return source.encode("utf-8")
    try:
        return stdin.read()
    except (OSError, ValueError) as exc:
        raise InputError(f"failed to read message body from stdin: {exc}") from exc
