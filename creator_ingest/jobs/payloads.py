"""Job payload structures.

Payloads form a closed tagged union discriminated by ``job_type``. They are
validated when enqueued and again at the worker boundary before dispatch, so
a handler only ever sees a well-formed payload of the kind its queue accepts.
"""
from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class _PayloadBase(BaseModel):
    def dedup_key(self) -> str | None:
        """Deterministic key for the logical subject; None = no dedup."""
        return None


class CreatorCollectionPayload(_PayloadBase):
    job_type: Literal["creator_collection"] = "creator_collection"
    creator_id: str = Field(min_length=1)
    creator_name: str = ""
    skip_slow_platform: bool = False

    def dedup_key(self) -> str:
        return f"creator:{self.creator_id}"


class SnapshotPollPayload(_PayloadBase):
    job_type: Literal["snapshot_poll"] = "snapshot_poll"
    snapshot_id: str = Field(min_length=1)
    creator_id: str = Field(min_length=1)

    def dedup_key(self) -> str:
        return f"snapshot:{self.snapshot_id}"


class SummarizationPayload(_PayloadBase):
    job_type: Literal["summarization"] = "summarization"
    content_ids: list[str] = Field(min_length=1)
    creator_id: Optional[str] = None
    requested_at: Optional[float] = None


class DigestPayload(_PayloadBase):
    job_type: Literal["digest"] = "digest"
    user_id: str = Field(min_length=1)
    user_email: str = Field(min_length=3)
    digest_date: str

    @field_validator("digest_date")
    @classmethod
    def _iso_date(cls, value: str) -> str:
        if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
            raise ValueError("digest_date must be YYYY-MM-DD")
        return value

    def dedup_key(self) -> str:
        return f"digest:{self.user_id}:{self.digest_date}"


JobPayload = Annotated[
    Union[CreatorCollectionPayload, SnapshotPollPayload, SummarizationPayload, DigestPayload],
    Field(discriminator="job_type"),
]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)


def parse_payload(data: Any) -> JobPayload:
    """Validate raw (deserialized) payload data into its typed variant.

    Raises ``pydantic.ValidationError`` for unknown job types or bad fields.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return _PAYLOAD_ADAPTER.validate_python(data)


__all__ = [
    "CreatorCollectionPayload",
    "SnapshotPollPayload",
    "SummarizationPayload",
    "DigestPayload",
    "JobPayload",
    "parse_payload",
]
