from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from fileshare.config import settings
from fileshare.metrics import staged_chunks_swept_total
from fileshare.storage import ChunkStore


def cleanup_once(db: Session, now: datetime | None = None) -> dict[str, int]:
    try:
        deleted = ChunkStore(db).sweep(timedelta(seconds=settings.staged_chunk_ttl_seconds), now=now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    staged_chunks_swept_total.inc(deleted)
    return {"staged_chunks_deleted": deleted}
