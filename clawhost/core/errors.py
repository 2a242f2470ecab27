from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class HostError(Exception):
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ParseFailure(HostError):
    """Mailbox entry could not be read as a known request."""


class AuthorizationFailure(HostError):
    """Source tenant is not allowed to perform the request."""


class ValidationFailure(HostError):
    """Request is well-formed but its values are unusable."""


class StorageFailure(HostError):
    """A durable read or write failed."""
