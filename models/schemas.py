"""
Core data models for the jobspread system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from core.errors import SerializationError


def utc_today() -> str:
    """Current business date, ISO format, UTC."""
    return datetime.now(timezone.utc).date().isoformat()


def dedup_key(job_id: str, date: str) -> str:
    return f"{job_id}@{date}"


def result_key(job_id: str, date: str) -> str:
    return f"RES#{job_id}#{date}"


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class DispatchStatus(str, Enum):
    OK = "OK"
    FAILED = "FAILED"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class ConsumerOutcome(str, Enum):
    """What the integration layer must do with a processed message."""
    ACKNOWLEDGE = "acknowledge"
    SIGNAL_RETRY = "signal_retry"


# ──────────────────────────────────────────────────────────────
#  Records & jobs
# ──────────────────────────────────────────────────────────────

def _parse_body(raw: Any) -> Any:
    if raw is None:
        return {}
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, str):
        try:
            return json.loads(raw) if raw else {}
        except ValueError:
            return {}
    return {}


class Record(BaseModel):
    """A candidate record read from the Record Source."""
    id: str
    provider: str = "default"
    endpoint: str = "/"
    body: Any = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict[str, Any], index: int = 0) -> Record:
        """Normalise a raw source row, applying the documented defaults."""
        return cls(
            id=str(raw.get("id") or f"rec-{index}"),
            provider=str(raw.get("provider") or "default"),
            endpoint=str(raw.get("endpoint") or "/"),
            body=_parse_body(raw.get("body")),
        )

    def to_job(self) -> JobMessage:
        return JobMessage(id=self.id, provider=self.provider,
                          endpoint=self.endpoint, body=self.body)


class JobMessage(BaseModel):
    """Immutable unit of work carried by the Dispatch Queue."""
    model_config = {"frozen": True}

    id: str
    provider: str
    endpoint: str
    body: Any = Field(default_factory=dict)

    def to_body(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_body(cls, raw: str) -> JobMessage:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise SerializationError(f"Malformed job body: {e.error_count()} error(s)") from e


class MessageEnvelope(BaseModel):
    """A delivered queue message, as seen by the consumer."""
    message_id: str
    receipt_handle: str
    body: str
    partition_key: str
    dedup_id: str
    receive_count: int = 1


# ──────────────────────────────────────────────────────────────
#  Downstream outcomes
# ──────────────────────────────────────────────────────────────

class DownstreamOutcome(BaseModel):
    """Tri-state result of one downstream call."""
    kind: OutcomeKind
    http_status: int
    data: Any = None
    error: Optional[dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def code(self) -> Optional[str]:
        return (self.error or {}).get("code")


class ConsolidatedResponse(BaseModel):
    ok: bool
    http_status: int
    latency_ms: int
    data: dict[str, Any]
    errors: dict[str, Any] = Field(default_factory=dict)
    code: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Persisted result
# ──────────────────────────────────────────────────────────────

class DispatchResult(BaseModel):
    """One row in the Result Store, keyed by (id, date)."""
    id: str
    date: str
    status: DispatchStatus
    http_status: int
    latency_ms: int
    payload: Any = None
    error: Optional[dict[str, Any]] = None
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def key(self) -> str:
        return result_key(self.id, self.date)

    def to_item(self) -> dict[str, Any]:
        """Flatten to store conventions: strings and numbers only."""
        item: dict[str, Any] = {
            "pk": self.key,
            "sk": f"RES#{self.id}",
            "id": self.id,
            "date": self.date,
            "status": self.status.value,
            "httpStatus": self.http_status,
            "latencyMs": self.latency_ms,
            "updatedAt": self.updated_at,
        }
        if self.status == DispatchStatus.OK:
            item["payload"] = json.dumps(self.payload)
        else:
            item["error"] = json.dumps(self.error or {})
            if self.payload is not None:
                item["payload"] = json.dumps(self.payload)
        return item

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> DispatchResult:
        return cls(
            id=item["id"],
            date=item["date"],
            status=DispatchStatus(item["status"]),
            http_status=int(item["httpStatus"]),
            latency_ms=int(item["latencyMs"]),
            payload=json.loads(item["payload"]) if item.get("payload") else None,
            error=json.loads(item["error"]) if item.get("error") else None,
            updated_at=item.get("updatedAt", ""),
        )
