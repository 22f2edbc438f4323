import uuid

from sqlalchemy import JSON, String, Text, DateTime, ForeignKey, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base

# PostgreSQL では JSONB、それ以外（テスト用SQLite等）では JSON として扱う
JsonType = JSON().with_variant(JSONB(), "postgresql")

FILE_STATUS_PENDING = "pending"
FILE_STATUS_READY = "ready"
FILE_STATUS_FAILED = "failed"


def _new_id() -> str:
    return str(uuid.uuid4())


class Folder(Base):
    __tablename__ = "folders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    created_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[str] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    files: Mapped[list["File"]] = relationship(back_populates="folder", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class File(Base):
    """CSV 1件分のメタデータ。動的テーブル（table_name）と 1:1 で対応する。"""

    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    folder_id: Mapped[str] = mapped_column(ForeignKey("folders.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    table_name: Mapped[str | None] = mapped_column(String(63), nullable=True, unique=True)
    storage_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_headers: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    ai_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=FILE_STATUS_PENDING)
    access_policy: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[str] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    folder: Mapped[Folder] = relationship(back_populates="files")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "folder_id": self.folder_id,
            "user_id": self.user_id,
            "table_name": self.table_name,
            "storage_path": self.storage_path,
            "original_headers": self.original_headers,
            "ai_summary": self.ai_summary,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
