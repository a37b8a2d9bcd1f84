"""
Exception hierarchy.

Camera errors carry an :class:`ErrorKind` so the capture loop can decide
whether to retry without inspecting message text.
"""

from __future__ import annotations

from enum import Enum, auto


class ErrorKind(Enum):
    TRANSIENT = auto()   # busy / capture in progress / not ready – retry
    FATAL     = auto()   # permission revoked, hardware gone – give up


class SelfieCaptureError(Exception):
    """Base class for all errors raised by this package."""


class CaptureError(SelfieCaptureError):
    """The final photo could not be taken."""


class CameraError(CaptureError):
    kind = ErrorKind.FATAL


class TransientCameraError(CameraError):
    kind = ErrorKind.TRANSIENT


class FatalCameraError(CameraError):
    kind = ErrorKind.FATAL


class CameraBusyError(CaptureError):
    """A probe request did not finish in time before the final capture."""


class DecodeError(SelfieCaptureError):
    """Encoded frame bytes could not be turned into pixels."""


def classify_error(exc: BaseException) -> ErrorKind:
    """Return the retry class of *exc*; anything untyped is fatal."""
    if isinstance(exc, CameraError):
        return exc.kind
    return ErrorKind.FATAL
