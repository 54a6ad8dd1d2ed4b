"""
Error types shared by the device client, the pollers and the scheduler.

Every error carries an `ErrorKind` tag set where it is raised, so the
scheduler can decide whether to keep polling without inspecting messages:

- AUTH, CERTIFICATE  -> fatal, the process exits
- everything else    -> recoverable, logged and retried on the next tick
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    AUTH = "auth"
    CERTIFICATE = "certificate"
    TRANSPORT = "transport"
    DECODE = "decode"
    REMOTE = "remote"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def fatal(self) -> bool:
        return self in (ErrorKind.AUTH, ErrorKind.CERTIFICATE)


class LiveboxError(Exception):
    """Base class for errors raised while talking to the Livebox."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class AuthError(LiveboxError):
    """The device rejected the admin credentials."""

    kind = ErrorKind.AUTH


class CertificateError(LiveboxError):
    """TLS verification of the device certificate failed."""

    kind = ErrorKind.CERTIFICATE


class TransportError(LiveboxError):
    """Network failure, timeout or unexpected HTTP status."""

    kind = ErrorKind.TRANSPORT


class DecodeError(LiveboxError):
    """A response did not have the expected shape."""

    kind = ErrorKind.DECODE


class RemoteError(LiveboxError):
    """The device answered with an error list."""

    kind = ErrorKind.REMOTE


class PollError(Exception):
    """A poller failed during a tick. Wraps the original exception."""

    def __init__(self, poller: str, cause: BaseException, kind: ErrorKind | None = None):
        super().__init__(f"{poller}: {cause}")
        self.poller = poller
        self.cause = cause
        if kind is None:
            kind = getattr(cause, "kind", ErrorKind.UNKNOWN)
        self.kind = kind

    @property
    def fatal(self) -> bool:
        return self.kind.fatal


def is_fatal_error(exc: BaseException) -> bool:
    kind = getattr(exc, "kind", None)
    return isinstance(kind, ErrorKind) and kind.fatal
