from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any, Literal, Protocol


RetryOutcome = Literal["retrying", "dead_lettered", "lease_lost"]


@dataclass
class Job:
    # The idempotency key doubles as the job id; one live job per key.
    key: str
    kind: str
    payload: dict[str, Any]
    attempts: int = 0
    enqueued_at: float = 0.0
    lease_token: str | None = None
    lease_expires_at: float | None = None
    last_error: str | None = None

    def to_json(self) -> str:
        # Payload travels as an opaque string so Lua never re-encodes it.
        return json.dumps(
            {
                "key": self.key,
                "kind": self.kind,
                "payload": json.dumps(self.payload, separators=(",", ":")),
                "attempts": self.attempts,
                "enqueued_at": self.enqueued_at,
                "lease_token": self.lease_token or "",
                "lease_expires_at": self.lease_expires_at or 0,
                "last_error": self.last_error or "",
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Job":
        data = json.loads(raw)
        return cls(
            key=data["key"],
            kind=data["kind"],
            payload=json.loads(data["payload"]),
            attempts=int(data.get("attempts") or 0),
            enqueued_at=float(data.get("enqueued_at") or 0.0),
            lease_token=data.get("lease_token") or None,
            lease_expires_at=float(data["lease_expires_at"]) if data.get("lease_expires_at") else None,
            last_error=data.get("last_error") or None,
        )


@dataclass(frozen=True)
class DeadLetter:
    key: str
    kind: str
    payload: dict[str, Any]
    attempts: int
    last_error: str | None


@dataclass(frozen=True)
class QueueDepth:
    pending: int
    leased: int
    dead: int
    extra: dict[str, int] = field(default_factory=dict)


class JobQueue(Protocol):
    async def enqueue(self, key: str, kind: str, payload: dict[str, Any]) -> bool:
        """Add a job unless ``key`` is pending, leased, recently completed or dead-lettered."""
        ...

    async def dequeue(self, lease_s: float) -> Job | None:
        ...

    async def ack(self, job: Job) -> bool:
        """Complete the job; False when the lease was lost to another consumer."""
        ...

    async def extend(self, job: Job, lease_s: float) -> None:
        """Push the lease deadline out; raises ``LeaseLost`` when the lease moved on."""
        ...

    async def retry(self, job: Job, reason: str) -> RetryOutcome:
        ...

    async def is_completed(self, key: str) -> bool:
        ...

    async def dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        ...

    async def requeue_dead_letter(self, key: str) -> bool:
        ...

    async def depth(self) -> QueueDepth:
        ...

    async def close(self) -> None:
        ...


class LeaseGuard(Protocol):
    async def check(self) -> None:
        """Raise ``LeaseLost`` when this consumer no longer owns the job."""
        ...


class NoLease:
    # Used when a job runs outside the queue, e.g. direct service calls in tests.
    async def check(self) -> None:
        return None
