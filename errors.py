"""
Error taxonomy for the compliance engine.

All failures raised by the engine are local and synchronous.  Callers
catch :class:`ComplianceError` to handle every kind at once; the HTTP
layer in ``app.py`` maps each subclass to a status code.
"""
from typing import Iterable

import pydantic


class ComplianceError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(ComplianceError, ValueError):
    """Malformed or missing input, or an illegal value for a field."""

    @classmethod
    def from_messages(cls, messages: Iterable[str]) -> "ValidationError":
        return cls("; ".join(messages))

    @classmethod
    def from_pydantic(cls, exc: pydantic.ValidationError) -> "ValidationError":
        messages = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err["loc"])
            messages.append(f"{location}: {err['msg']}" if location else err["msg"])
        return cls.from_messages(messages)


class NotFoundError(ComplianceError, LookupError):
    """A referenced institution, qualification, facility or change record does not exist."""


class ConflictError(ComplianceError):
    """Uniqueness violation or an illegal state transition."""
