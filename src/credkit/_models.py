"""
Data model shared by the credkit components.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Self

from credkit._utils import identity_hash


@dataclass(frozen=True)
class CredentialKey:
    """
    Identifies one Credential Record: (user secret identity, service id).

    The identity is a hash of the user secret, never the secret itself, so keys
    are safe to use as file names and in log messages.

    Example:
        >>> key = CredentialKey.for_secret("my-long-lived-secret", "moon")
        >>> key.service_id
        'moon'
    """

    identity: str
    service_id: str

    @classmethod
    def for_secret(cls, user_secret: str, service_id: str) -> Self:
        """Build the key for a user secret and service."""
        assert user_secret, "user_secret cannot be empty."
        assert service_id, "service_id cannot be empty."
        return cls(identity=identity_hash(user_secret), service_id=service_id)

    @property
    def slug(self) -> str:
        """File-name friendly representation of the key."""
        return f"{self.identity}.{self.service_id}"

    def __str__(self) -> str:
        return f"{self.identity[:8]}.{self.service_id}"


@dataclass(frozen=True)
class CredentialRecord:
    """
    Short-lived credential issued by an AuthenticationProtocol.

    Records are immutable and replaced wholesale on renewal, so a reader always
    observes either the old or the new complete record.

    Attributes:
        token: Opaque bearer value.
        issued_at: Epoch seconds when the record was created.
        expires_at: Epoch seconds after which the record must not serve requests.
        metadata: Service-specific values (user agent, version, user id, ...).
    """

    token: str
    expires_at: float
    issued_at: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float | None = None, margin: float = 0.0) -> bool:
        """Return True if the record expires within `margin` seconds of `now`."""
        now = time.time() if now is None else now
        return now >= self.expires_at - margin

    def needs_renewal(self, now: float | None = None, margin: float = 0.0) -> bool:
        """
        Return True if the record should be replaced before use.

        `margin` is capped at half the record's lifetime, so a service issuing
        credentials shorter than the margin does not get a login per request.
        """
        lifetime = max(0.0, self.expires_at - self.issued_at)
        return self.is_expired(now, margin=min(margin, lifetime / 2))

    def remaining(self, now: float | None = None) -> float:
        """Seconds until expiry (negative once expired)."""
        now = time.time() if now is None else now
        return self.expires_at - now

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            token=data["token"],
            issued_at=float(data["issued_at"]),
            expires_at=float(data["expires_at"]),
            metadata=dict(data.get("metadata") or {}),
        )

    def __repr__(self) -> str:
        # Keeps tokens out of logs and tracebacks
        return (
            f"CredentialRecord(token='{self.token[:4]}...', issued_at={self.issued_at}, "
            f"expires_at={self.expires_at}, metadata_keys={sorted(self.metadata)})"
        )


class AttemptOutcome(StrEnum):
    """Outcome of an authentication attempt as recorded in the Attempt Log."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class AttemptEntry:
    """
    One Attempt Log entry.

    The log is append-only: an attempt is appended as PENDING, and its outcome
    is appended later as a second entry with the same `attempt_id`.

    Attributes:
        attempt_id: Identifier shared by the entries of one attempt.
        timestamp: Epoch seconds when the attempt started.
        outcome: PENDING, SUCCESS or ERROR.
        detail: Short error description for failed attempts.
    """

    attempt_id: str
    timestamp: float
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "timestamp": self.timestamp,
            "outcome": self.outcome.value,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            attempt_id=str(data["attempt_id"]),
            timestamp=float(data["timestamp"]),
            outcome=AttemptOutcome(data.get("outcome", AttemptOutcome.PENDING.value)),
            detail=data.get("detail"),
        )
