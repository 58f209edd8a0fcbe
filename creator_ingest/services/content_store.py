"""Content reconciliation store.

Single public entry point ``ContentStore.store_batch(items)`` that, for each
candidate record:
1. Validates it against ``ContentInput`` (malformed -> per-record error, batch continues).
2. Looks it up by natural key ``(creator_id, platform, platform_content_id)``.
3. Inserts it (created), updates tracked mutable fields when they differ
   (updated), or leaves it untouched (skipped).
4. Runs each write inside a SAVEPOINT so a storage error on one record only
   rolls back that record.

The whole batch is committed once at the end; ``content_created`` and
``content_updated`` events are published only after the commit succeeds. Rows soft-deleted by the content
management service are never resurrected: matching records count as skipped.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from creator_ingest.models.db.content import ContentItem
from creator_ingest.models.db.enums import ProcessingStatus
from creator_ingest.models.schemas.content import CandidateRecord, ContentInput
from creator_ingest.services.content_events import CONTENT_CREATED, CONTENT_UPDATED, ContentEvent, ContentEventStream
from creator_ingest.utils import get_logger
from creator_ingest.utils.text import content_hash, reading_time_minutes, word_count
from creator_ingest.utils.time import utc_now

logger = get_logger(__name__)

TRACKED_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "content_body",
    "thumbnail_url",
    "media_urls",
    "engagement_metrics",
    "reference_type",
    "referenced_content",
)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


@dataclass(slots=True)
class RecordError:
    item: dict
    reason: str

    @property
    def platform_content_id(self) -> Optional[str]:
        return self.item.get("platform_content_id") or None


@dataclass(slots=True)
class ReconciliationResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[RecordError] = field(default_factory=list)
    created_ids: list[str] = field(default_factory=list)
    updated_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": [{"platform_content_id": e.platform_content_id, "error": e.reason} for e in self.errors],
            "created_ids": list(self.created_ids),
        }


CandidateLike = Union[CandidateRecord, Mapping[str, Any]]


def _as_dict(item: Any) -> dict:
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json")
    if isinstance(item, Mapping):
        return dict(item)
    return {"value": repr(item)}


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "record"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def _tracked_values(record: ContentInput) -> dict[str, Any]:
    return {
        "title": record.title,
        "description": record.description,
        "content_body": record.content_body,
        "thumbnail_url": record.thumbnail_url,
        "media_urls": [m.model_dump(mode="json", exclude_none=True) for m in record.media_urls],
        "engagement_metrics": (
            record.engagement_metrics.model_dump(mode="json", exclude_none=True)
            if record.engagement_metrics is not None else None
        ),
        "reference_type": record.reference_type.value if record.reference_type is not None else None,
        "referenced_content": record.referenced_content,
    }


def _apply_derived(item: ContentItem) -> None:
    words = word_count(item.title, item.content_body or item.description)
    item.word_count = words
    item.reading_time_minutes = reading_time_minutes(words)
    item.content_hash = content_hash(item.title, item.content_body or item.description)


class ContentStore:
    def __init__(self, session: Session, events: Optional[ContentEventStream] = None) -> None:
        self.session = session
        self.events = events

    def _validate(self, item: CandidateLike) -> ContentInput:
        if isinstance(item, BaseModel):
            return ContentInput.model_validate(item.model_dump())
        if isinstance(item, Mapping):
            return ContentInput.model_validate(dict(item))
        raise TypeError(f"Unsupported candidate type {type(item).__name__}")

    def _find(self, record: ContentInput) -> Optional[ContentItem]:
        stmt = select(ContentItem).where(
            ContentItem.creator_id == record.creator_id,
            ContentItem.platform == record.platform.value,
            ContentItem.platform_content_id == record.platform_content_id,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def _upsert(self, record: ContentInput) -> tuple[str, str]:
        values = _tracked_values(record)
        existing = self._find(record)
        if existing is None:
            item = ContentItem(
                id=str(uuid.uuid4()),
                creator_id=record.creator_id,
                platform=record.platform.value,
                platform_content_id=record.platform_content_id,
                url=record.url,
                published_at=record.published_at or utc_now(),
                processing_status=ProcessingStatus.PROCESSED,
                **values,
            )
            _apply_derived(item)
            self.session.add(item)
            self.session.flush()
            return CREATED, item.id

        if existing.is_deleted:
            return SKIPPED, existing.id

        changed = [name for name, value in values.items() if getattr(existing, name) != value]
        if not changed:
            return SKIPPED, existing.id
        for name in changed:
            setattr(existing, name, values[name])
        _apply_derived(existing)
        existing.updated_at = utc_now()
        self.session.flush()
        logger.debug("Content updated", content_id=existing.id, fields=changed)
        return UPDATED, existing.id

    def _write(self, record: ContentInput) -> tuple[str, str]:
        try:
            with self.session.begin_nested():
                return self._upsert(record)
        except IntegrityError:
            # A concurrent writer inserted the same natural key first; reconcile against it.
            logger.info(
                "Natural key race on insert, retrying as update",
                creator_id=record.creator_id,
                platform=record.platform.value,
                platform_content_id=record.platform_content_id,
            )
            with self.session.begin_nested():
                return self._upsert(record)

    def store_batch(self, items: Iterable[CandidateLike]) -> ReconciliationResult:
        result = ReconciliationResult()
        seen: set[tuple[str, str, str]] = set()
        pending_events: list[ContentEvent] = []

        for raw in items:
            try:
                record = self._validate(raw)
            except (ValidationError, TypeError) as e:
                reason = _format_validation_error(e) if isinstance(e, ValidationError) else str(e)
                result.errors.append(RecordError(item=_as_dict(raw), reason=reason))
                logger.warning("Rejected invalid content record", reason=reason)
                continue

            key = (record.creator_id, record.platform.value, record.platform_content_id)
            if key in seen:
                result.skipped += 1
                continue
            seen.add(key)

            try:
                outcome, content_id = self._write(record)
            except SQLAlchemyError as e:
                result.errors.append(RecordError(item=_as_dict(raw), reason=f"storage error: {e.__class__.__name__}: {e}"))
                logger.error(
                    "Failed to store content record",
                    platform=record.platform.value,
                    platform_content_id=record.platform_content_id,
                    error=str(e),
                )
                continue

            if outcome == CREATED:
                result.created += 1
                result.created_ids.append(content_id)
                pending_events.append(ContentEvent(CONTENT_CREATED, content_id, record.creator_id, record.platform.value))
            elif outcome == UPDATED:
                result.updated += 1
                result.updated_ids.append(content_id)
                pending_events.append(ContentEvent(CONTENT_UPDATED, content_id, record.creator_id, record.platform.value))
            else:
                result.skipped += 1

        self.session.commit()

        if self.events is not None:
            for event in pending_events:
                self.events.publish(event)

        logger.info(
            "Content batch stored",
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result


__all__ = ["ContentStore", "ReconciliationResult", "RecordError", "TRACKED_FIELDS"]
