"""Credential pool with per-credential health tracking and exponential backoff."""

import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Union

from pydantic import BaseModel

from .exceptions import NoCredentialAvailableError
from .models import OAuthCredentialConfig

MAX_BACKOFF_SECONDS = 60
MAX_BACKOFF_EXPONENT = 6
UNHEALTHY_AFTER_FAILURES = 3


def mask_credential(secret: str) -> str:
    """Mask a secret, keeping the first and last four characters."""
    if not secret:
        return ""
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}...{secret[-4:]}"


def backoff_seconds(consecutive_failures: int) -> float:
    """Backoff window after ``consecutive_failures`` failures in a row."""
    if consecutive_failures <= 0:
        return 0.0
    exponent = min(consecutive_failures - 1, MAX_BACKOFF_EXPONENT)
    return float(min(2**exponent, MAX_BACKOFF_SECONDS))


@dataclass(frozen=True)
class APIKeyCredential:
    """An opaque API key."""

    key: str
    kind: Literal["api_key"] = "api_key"

    @property
    def id(self) -> str:
        return self.key

    @property
    def token(self) -> str:
        return self.key

    @property
    def display_id(self) -> str:
        return mask_credential(self.key)


@dataclass(frozen=True)
class OAuthCredential:
    """An OAuth credential set.

    Instances are immutable; a refresh produces a new instance that replaces
    the old one in its pool.
    """

    id: str
    access_token: str
    refresh_token: str = ""
    client_id: str = ""
    client_secret: str | None = None
    expires_at: float | None = None
    scopes: tuple[str, ...] = ()
    last_refresh: float | None = None
    refresh_count: int = 0
    kind: Literal["oauth"] = "oauth"

    @property
    def token(self) -> str:
        return self.access_token

    @property
    def display_id(self) -> str:
        return self.id

    def expires_in(self, now: float | None = None) -> float | None:
        """Seconds until expiry, ``None`` when the token has no known expiry."""
        if self.expires_at is None:
            return None
        return self.expires_at - (time.time() if now is None else now)

    def with_token(
        self,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: float | None = None,
        now: float | None = None,
    ) -> "OAuthCredential":
        """Return the refreshed version of this credential.

        Without ``expires_in`` the new token has no known expiry; it is used
        until the provider rejects it.
        """
        now = time.time() if now is None else now
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=now + expires_in if expires_in else None,
            last_refresh=now,
            refresh_count=self.refresh_count + 1,
        )

    @classmethod
    def from_config(cls, config: OAuthCredentialConfig) -> "OAuthCredential":
        return cls(
            id=config.id,
            access_token=config.access_token,
            refresh_token=config.refresh_token,
            client_id=config.client_id,
            client_secret=config.client_secret,
            expires_at=config.expires_at.timestamp() if config.expires_at else None,
            scopes=tuple(config.scopes),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the configuration shape."""
        expires_at = None
        if self.expires_at is not None:
            expires_at = datetime.fromtimestamp(self.expires_at, tz=timezone.utc).isoformat()
        return {
            "id": self.id,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": expires_at,
            "scopes": list(self.scopes),
        }


Credential = Union[APIKeyCredential, OAuthCredential]


@dataclass
class CredentialHealth:
    """Mutable health record of one credential."""

    consecutive_failures: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    backoff_until: float | None = None
    healthy: bool = True
    refresh_failures: int = 0
    last_error: str | None = None

    def is_available(self, now: float) -> bool:
        return self.backoff_until is None or self.backoff_until <= now

    def record_success(self, now: float) -> None:
        self.consecutive_failures = 0
        self.last_success_time = now
        self.backoff_until = None
        self.healthy = True
        self.last_error = None

    def record_failure(self, now: float, error: str | None = None) -> None:
        self.consecutive_failures += 1
        self.last_failure_time = now
        self.backoff_until = now + backoff_seconds(self.consecutive_failures)
        self.last_error = error
        if self.consecutive_failures >= UNHEALTHY_AFTER_FAILURES:
            self.healthy = False

    def record_refresh_success(self) -> None:
        self.refresh_failures = 0
        self.consecutive_failures = 0
        self.backoff_until = None
        self.healthy = True
        self.last_error = None

    def record_refresh_failure(self, error: str) -> None:
        self.refresh_failures += 1
        self.last_error = error


class CredentialHealthSnapshot(BaseModel):
    """Read-only view of a credential's health."""

    credential: str
    kind: str
    consecutive_failures: int
    last_failure_time: float | None = None
    last_success_time: float | None = None
    backoff_until: float | None = None
    in_backoff: bool = False
    healthy: bool = True
    refresh_failures: int = 0
    last_error: str | None = None
    expires_at: float | None = None
    refresh_count: int | None = None


class CredentialPool:
    """
    Interchangeable credentials of one provider instance.

    Rules:
    - Selection is round-robin, starting one past the cursor, and skips
      credentials whose backoff window has not elapsed.
    - A failure doubles the backoff window (1s, 2s, 4s, ... capped at 60s).
    - Three failures in a row mark a credential unhealthy; it stays
      selectable once its backoff elapses.
    - A success clears the failure count and the backoff.
    """

    def __init__(self, credentials: Iterable[Credential], provider: str = "unknown") -> None:
        """
        Initialize the pool.

        Args:
            credentials: Initial credentials; duplicates (same id) are dropped
            provider: Provider name used in errors and logs

        Raises:
            ValueError: If no credential is given
        """
        self.provider = provider
        self._credentials: list[Credential] = []
        self._health: dict[str, CredentialHealth] = {}
        for credential in credentials:
            if credential.id not in self._health:
                self._credentials.append(credential)
                self._health[credential.id] = CredentialHealth()
        if not self._credentials:
            raise ValueError("At least one credential must be configured")
        self._cursor = -1
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return len(self._credentials)

    def __len__(self) -> int:
        return self.size

    def __contains__(self, credential: object) -> bool:
        credential_id = getattr(credential, "id", credential)
        return credential_id in self._health

    @property
    def auth_method(self) -> str:
        """``api_key``, ``oauth`` or ``mixed``."""
        kinds = {credential.kind for credential in self.credentials()}
        if kinds == {"api_key"}:
            return "api_key"
        if kinds == {"oauth"}:
            return "oauth"
        return "mixed"

    def next(self) -> Credential:
        """Select the next usable credential, advancing the cursor.

        Raises:
            NoCredentialAvailableError: If every credential is in backoff
        """
        with self._lock:
            now = time.time()
            count = len(self._credentials)

            if count == 1:
                credential = self._credentials[0]
                if self._health[credential.id].is_available(now):
                    return credential
                raise NoCredentialAvailableError(
                    f"Only credential for {self.provider} is in backoff", self.provider
                )

            self._cursor = (self._cursor + 1) % count
            for offset in range(count):
                credential = self._credentials[(self._cursor + offset) % count]
                if self._health[credential.id].is_available(now):
                    return credential

        raise NoCredentialAvailableError(
            f"All {count} credentials for {self.provider} are in backoff", self.provider
        )

    def current(self) -> Credential:
        """Return a usable credential without advancing the cursor.

        Falls back to the credential under the cursor when all are in backoff.
        """
        with self._lock:
            now = time.time()
            count = len(self._credentials)
            head = max(self._cursor, 0) % count
            for offset in range(count):
                credential = self._credentials[(head + offset) % count]
                if self._health[credential.id].is_available(now):
                    return credential
            return self._credentials[head]

    def get(self, credential_id: str) -> Credential | None:
        """Return the pool's current version of a credential."""
        with self._lock:
            for credential in self._credentials:
                if credential.id == credential_id:
                    return credential
        return None

    def credentials(self) -> list[Credential]:
        with self._lock:
            return list(self._credentials)

    def report_success(self, credential: Credential) -> None:
        with self._lock:
            health = self._health.get(credential.id)
            if health is not None:
                health.record_success(time.time())

    def report_failure(self, credential: Credential, error: BaseException | str | None = None) -> None:
        with self._lock:
            health = self._health.get(credential.id)
            if health is not None:
                health.record_failure(time.time(), str(error) if error is not None else None)

    def record_refresh_success(self, credential: Credential) -> None:
        with self._lock:
            health = self._health.get(credential.id)
            if health is not None:
                health.record_refresh_success()

    def record_refresh_failure(self, credential: Credential, error: BaseException | str) -> None:
        with self._lock:
            health = self._health.get(credential.id)
            if health is not None:
                health.record_refresh_failure(str(error))

    def add(self, credential: Credential) -> bool:
        """Add a credential; returns False if one with the same id exists."""
        with self._lock:
            if credential.id in self._health:
                return False
            self._credentials.append(credential)
            self._health[credential.id] = CredentialHealth()
            return True

    def remove(self, credential: Credential | str) -> None:
        """Remove a credential.

        Raises:
            KeyError: If the credential is not in the pool
            ValueError: If it is the last credential
        """
        credential_id = credential if isinstance(credential, str) else credential.id
        with self._lock:
            if credential_id not in self._health:
                raise KeyError(f"Credential {mask_credential(credential_id)} is not in the pool")
            if len(self._credentials) == 1:
                raise ValueError("Cannot remove the last credential from the pool")
            index = next(
                i for i, c in enumerate(self._credentials) if c.id == credential_id
            )
            del self._credentials[index]
            del self._health[credential_id]
            if index <= self._cursor:
                self._cursor -= 1

    def replace(self, credential: Credential) -> None:
        """Swap in a new version of a credential, keeping its health record.

        Raises:
            KeyError: If no credential with the same id is in the pool
        """
        with self._lock:
            for index, existing in enumerate(self._credentials):
                if existing.id == credential.id:
                    self._credentials[index] = credential
                    return
        raise KeyError(f"Credential {credential.display_id} is not in the pool")

    def health(self, credential: Credential | str) -> CredentialHealth:
        """Return a copy of a credential's health record."""
        credential_id = credential if isinstance(credential, str) else credential.id
        with self._lock:
            return replace(self._health[credential_id])

    def snapshot(self) -> list[CredentialHealthSnapshot]:
        """Read-only health view of every credential, with masked identifiers."""
        with self._lock:
            now = time.time()
            snapshots = []
            for credential in self._credentials:
                health = self._health[credential.id]
                is_oauth = isinstance(credential, OAuthCredential)
                snapshots.append(
                    CredentialHealthSnapshot(
                        credential=credential.display_id,
                        kind=credential.kind,
                        consecutive_failures=health.consecutive_failures,
                        last_failure_time=health.last_failure_time,
                        last_success_time=health.last_success_time,
                        backoff_until=health.backoff_until,
                        in_backoff=not health.is_available(now),
                        healthy=health.healthy,
                        refresh_failures=health.refresh_failures,
                        last_error=health.last_error,
                        expires_at=credential.expires_at if is_oauth else None,
                        refresh_count=credential.refresh_count if is_oauth else None,
                    )
                )
            return snapshots
