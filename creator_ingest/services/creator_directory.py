"""Read access to creators and their registered sources, plus run metadata writes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from creator_ingest.models.db.creators import Creator, CreatorUrl
from creator_ingest.models.db.enums import CreatorStatus, UrlValidationStatus
from creator_ingest.utils import get_logger
from creator_ingest.utils.time import utc_now

logger = get_logger(__name__)


class CreatorNotFoundError(LookupError):
    pass


@dataclass(slots=True, frozen=True)
class SourceUrl:
    id: int
    platform: str
    url: str


class CreatorDirectory:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_creator(self, creator_id: str) -> Creator:
        creator = self.session.get(Creator, creator_id)
        if creator is None:
            raise CreatorNotFoundError(f"Creator {creator_id} not found")
        return creator

    def list_sources(self, creator_id: str) -> list[SourceUrl]:
        """Registered sources for a creator, excluding URLs flagged invalid."""
        stmt = (
            select(CreatorUrl)
            .where(CreatorUrl.creator_id == creator_id)
            .where(CreatorUrl.validation_status != UrlValidationStatus.INVALID)
            .order_by(CreatorUrl.id)
        )
        return [
            SourceUrl(id=row.id, platform=(row.platform or "").strip().lower(), url=row.url)
            for row in self.session.execute(stmt).scalars()
        ]

    def list_active_creators(self, limit: Optional[int] = None) -> list[Creator]:
        stmt = select(Creator).where(Creator.status == CreatorStatus.ACTIVE).order_by(Creator.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def record_run(self, creator_id: str, stats: dict[str, Any]) -> None:
        creator = self.get_creator(creator_id)
        metadata = dict(creator.creator_metadata or {})
        metadata["last_fetched_at"] = utc_now().isoformat()
        metadata["last_fetch_stats"] = stats
        creator.creator_metadata = metadata
        creator.updated_at = utc_now()
        self.session.commit()
        logger.debug("Creator run metadata recorded", creator_id=creator_id)


__all__ = ["CreatorDirectory", "CreatorNotFoundError", "SourceUrl"]
