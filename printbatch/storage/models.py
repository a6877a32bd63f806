"""
State Database Models

Process-wide pipeline state that must survive restarts:
- PipelineCheckpoint: one integer watermark per key (e.g. the OrderItems scan row)
- ProcessedManifestFile: external manifest files already imported
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all state models"""
    pass


class PipelineCheckpoint(Base):
    """Watermark row number per table key"""

    __tablename__ = "pipeline_checkpoints"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<PipelineCheckpoint {self.key}={self.value}>"


class ProcessedManifestFile(Base):
    """Manifest file IDs already imported, never expired"""

    __tablename__ = "processed_manifest_files"

    file_id: Mapped[str] = mapped_column(String(500), primary_key=True)
    file_name: Mapped[str] = mapped_column(String(500), default="")
    processed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    def __repr__(self) -> str:
        return f"<ProcessedManifestFile {self.file_id}>"
