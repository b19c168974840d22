import enum
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fileshare.db import Base


class UploadState(str, enum.Enum):
    receiving = "RECEIVING"
    completing = "COMPLETING"
    done = "DONE"
    failed = "FAILED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StagedChunk(Base):
    __tablename__ = "staged_chunks"
    __table_args__ = (Index("idx_staged_chunks_created_at", "created_at"),)

    upload_id: Mapped[str] = mapped_column(Text, primary_key=True)
    chunk_index: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    chunk_data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class FileChunk(Base):
    __tablename__ = "file_chunks"

    file_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    chunk_index: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
