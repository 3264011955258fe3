"""Queue record schemas.

NormalizedMessage is the canonical inbound message produced by intake.
Job wraps it with queue bookkeeping and serializes to flat string dicts
for Redis Streams and back without loss. DeadLetter is the review view
of a job that exhausted its delivery attempts.

Stream key pattern: t:{tenant_id}:queue:messages
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

DLQ_FIELD_PREFIX = "_dlq_"


class NormalizedMessage(BaseModel):
    """Validated inbound chat message.

    Attributes:
        tenant_id: Owning tenant (the ``agent_id`` of the intake payload).
        user_id: End user on the messaging platform.
        text: Message text, kept literal.
        media: Attached media URIs, possibly empty.
        timestamp: Client-supplied timestamp, passed through unparsed.
        platform: Messaging platform the reply goes back to.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    user_id: str
    text: str
    media: tuple[str, ...] = ()
    timestamp: str
    platform: str = "whatsapp"


class Job(BaseModel):
    """A queued unit of work for one tenant's worker.

    The ``id`` doubles as the ``messageId`` returned to intake callers.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    message: NormalizedMessage
    attempt_count: int = 0
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def tenant_id(self) -> str:
        return self.message.tenant_id

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat dict of strings for XADD.

        Media is JSON-encoded; datetimes use ISO format.
        """
        return {
            "job_id": self.id,
            "tenant_id": self.message.tenant_id,
            "user_id": self.message.user_id,
            "text": self.message.text,
            "media": json.dumps(list(self.message.media)),
            "timestamp": self.message.timestamp,
            "platform": self.message.platform,
            "attempt_count": str(self.attempt_count),
            "enqueued_at": self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> Job:
        """Deserialize from a Redis Streams flat dict.

        Raises:
            KeyError: A required field is missing.
            ValueError: A field cannot be decoded.
        """
        return cls(
            id=raw["job_id"],
            message=NormalizedMessage(
                tenant_id=raw["tenant_id"],
                user_id=raw["user_id"],
                text=raw["text"],
                media=json.loads(raw["media"]) if raw.get("media") else (),
                timestamp=raw["timestamp"],
                platform=raw["platform"],
            ),
            attempt_count=int(raw.get("attempt_count", "0")),
            enqueued_at=datetime.fromisoformat(raw["enqueued_at"]),
        )


class DeadLetter(BaseModel):
    """A dead-lettered job as stored in the tenant's DLQ stream."""

    entry_id: str
    original_id: str
    job_id: str | None = None
    error: str
    attempts: int
    dead_lettered_at: datetime
    payload: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_stream_entry(cls, entry_id: str, raw: dict[str, str]) -> DeadLetter:
        payload = {k: v for k, v in raw.items() if not k.startswith(DLQ_FIELD_PREFIX)}
        return cls(
            entry_id=entry_id,
            original_id=raw.get(f"{DLQ_FIELD_PREFIX}original_id", ""),
            job_id=payload.get("job_id") or None,
            error=raw.get(f"{DLQ_FIELD_PREFIX}error", ""),
            attempts=int(raw.get(f"{DLQ_FIELD_PREFIX}attempts", "0")),
            dead_lettered_at=datetime.fromisoformat(raw[f"{DLQ_FIELD_PREFIX}timestamp"]),
            payload=payload,
        )
