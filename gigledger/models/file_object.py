"""
FileObject model for uploaded source documents.

Every statement and receipt points at exactly one stored blob.
"""
import uuid
from enum import Enum

from sqlalchemy import BigInteger, Column, DateTime, Enum as SQLEnum, Index, String

from gigledger.database import Base
from gigledger.models.types import UUID, utcnow


class FileSource(str, Enum):
    """Upload channel a file came from."""
    STATEMENT_UPLOAD = "StatementUpload"
    RECEIPT_UPLOAD = "ReceiptUpload"


class FileObject(Base):
    """Metadata for one blob in the object store."""

    __tablename__ = "file_objects"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(), nullable=False, index=True)

    blob_path = Column(String(500), nullable=False)
    sha256 = Column(String(64), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    content_type = Column(String(100), nullable=False)
    original_name = Column(String(255), nullable=True)
    source = Column(SQLEnum(FileSource), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_file_objects_tenant_source_sha", "tenant_id", "source", "sha256"),
    )

    def __repr__(self) -> str:
        return f"<FileObject {self.id} {self.content_type} {self.blob_path}>"
