"""
Credential types.

A Credential is immutable; refreshing replaces the refresher's reference
with a new instance, so snapshots handed to other components stay valid
read-only views.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

# Lifetime assumed when the server omits expiresIn (7 days)
DEFAULT_EXPIRES_IN = 604800


@dataclass(frozen=True)
class Credential:
    """Access token with expiry and optional refresh token."""

    access_token: str
    expiry: datetime
    refresh_token: str | None = None

    def remaining(self, now: datetime | None = None) -> timedelta:
        """Time left before the access token expires."""
        return self.expiry - (now or datetime.now(UTC))

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.remaining(now) <= timedelta(0)

    def needs_refresh(self, threshold_seconds: float, now: datetime | None = None) -> bool:
        """True when remaining validity has dropped below the threshold."""
        return self.remaining(now) < timedelta(seconds=threshold_seconds)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "access_token": self.access_token,
            "expiry": self.expiry.isoformat(),
            "refresh_token": self.refresh_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        """Deserialize from dictionary."""
        return cls(
            access_token=data["access_token"],
            expiry=datetime.fromisoformat(data["expiry"]),
            refresh_token=data.get("refresh_token"),
        )

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        fallback_refresh_token: str | None = None,
        now: datetime | None = None,
    ) -> Credential:
        """Build from a ``{"token", "expiresIn", "refreshToken"}`` auth response.

        Raises:
            KeyError: If the response has no token
        """
        expires_in = data.get("expiresIn") or DEFAULT_EXPIRES_IN
        issued = now or datetime.now(UTC)
        return cls(
            access_token=data["token"],
            expiry=issued + timedelta(seconds=float(expires_in)),
            refresh_token=data.get("refreshToken") or fallback_refresh_token,
        )

    def __repr__(self) -> str:
        # Tokens intentionally excluded
        return f"Credential(expiry={self.expiry.isoformat()}, refreshable={self.refresh_token is not None})"


@dataclass
class SessionProfile:
    """User data stored alongside the credential."""

    user: dict[str, Any] = field(default_factory=dict)
    user_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"user": self.user, "user_type": self.user_type}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionProfile:
        return cls(user=data.get("user") or {}, user_type=data.get("user_type"))
