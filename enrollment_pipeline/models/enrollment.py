"""
Enrollment aggregate: enrollments, their documents and health records,
plus the immutable audit trail.

PHI never lands in plaintext columns: health-record fields marked sensitive
are stored as independent ciphertext envelopes produced by ``FieldCodec``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from enrollment_pipeline.exceptions import ValidationError
from enrollment_pipeline.models.database import Base, JSONType

if TYPE_CHECKING:
    from enrollment_pipeline.services.encryption import FieldCodec


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnrollmentStatus(str, Enum):
    DRAFT = "draft"
    DOCUMENTS_PENDING = "documents_pending"
    HEALTH_DECLARATION_PENDING = "health_declaration_pending"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    INTERVIEW_COMPLETED = "interview_completed"
    COMPLETED = "completed"
    FAILED = "failed"
    WITHDRAWN = "withdrawn"


class DocumentType(str, Enum):
    ID_DOCUMENT = "id_document"
    PROOF_OF_ADDRESS = "proof_of_address"
    HEALTH_DECLARATION = "health_declaration"
    MEDICAL_RECORD = "medical_record"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Enrollment – aggregate root
# ---------------------------------------------------------------------------
class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    status = Column(
        SAEnum(*[s.value for s in EnrollmentStatus], name="enrollment_status_enum"),
        nullable=False,
        default=EnrollmentStatus.DRAFT.value,
    )
    # personal / contact / address / health_declaration / consent / age
    details = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    documents = relationship("Document", back_populates="enrollment", lazy="selectin")
    health_records = relationship("HealthRecord", back_populates="enrollment", lazy="selectin")

    __table_args__ = (Index("ix_enrollments_status", "status"),)

    def requires_interview(self) -> bool:
        """A medical interview is needed for any positive risk answer or age over 60."""
        details = self.details or {}
        declaration = details.get("health_declaration") or {}
        if any(answer is True for answer in declaration.values()):
            return True
        age = details.get("age")
        return age is not None and age > 60

    def processed_documents(self) -> list[Document]:
        return [d for d in self.documents if d.status == DocumentStatus.PROCESSED]

    def verified_health_records(self) -> list[HealthRecord]:
        return [r for r in self.health_records if r.verified]


# ---------------------------------------------------------------------------
# Document – uploaded file awaiting OCR
# ---------------------------------------------------------------------------
class Document(Base):
    __tablename__ = "documents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    enrollment_id = Column(Uuid, ForeignKey("enrollments.id"), nullable=False)
    document_type = Column(
        SAEnum(*[t.value for t in DocumentType], name="document_type_enum"), nullable=False
    )
    storage_path = Column(Text, nullable=False, comment="Object storage key")
    file_type = Column(String(16), nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    status = Column(
        SAEnum(*[s.value for s in DocumentStatus], name="document_status_enum"),
        nullable=False,
        default=DocumentStatus.PENDING.value,
    )
    ocr_confidence = Column(Float, nullable=True)
    ocr_data = Column(JSONType, nullable=True, comment="Extracted line items")
    failure_reason = Column(String(64), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    enrollment = relationship("Enrollment", back_populates="documents")

    __table_args__ = (Index("ix_documents_enrollment", "enrollment_id"),)


# ---------------------------------------------------------------------------
# HealthRecord – declaration data with per-field encryption
# ---------------------------------------------------------------------------
class HealthRecord(Base):
    __tablename__ = "health_records"

    REQUIRED_FIELDS = ("medical_history", "current_medications", "allergies")
    DEFAULT_SENSITIVE_FIELDS = (
        "medical_history",
        "chronic_conditions",
        "family_history",
        "allergies",
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    enrollment_id = Column(Uuid, ForeignKey("enrollments.id"), nullable=False)
    health_data = Column(JSONType, nullable=False, default=dict)
    sensitive_fields = Column(JSONType, nullable=False, default=list)
    verified = Column(Boolean, nullable=False, default=False)
    submitted_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    fhir_cache = Column(JSONType, nullable=True, comment="Resource kind -> converted resource")
    converted_at = Column(DateTime(timezone=True), nullable=True)

    enrollment = relationship("Enrollment", back_populates="health_records")

    def set_health_data(
        self,
        data: dict[str, Any],
        codec: FieldCodec,
        sensitive: list[str] | tuple[str, ...] | None = None,
    ) -> None:
        """Store health data, encrypting each sensitive field independently."""
        missing = [f for f in self.REQUIRED_FIELDS if f not in data]
        if missing:
            raise ValidationError(f"Missing required health data fields: {', '.join(missing)}")

        sensitive_fields = list(sensitive if sensitive is not None else self.DEFAULT_SENSITIVE_FIELDS)
        stored: dict[str, Any] = {}
        for name, value in data.items():
            stored[name] = codec.encrypt(value) if name in sensitive_fields else value

        self.health_data = stored
        self.sensitive_fields = [f for f in sensitive_fields if f in data]
        # Any previously converted resource is stale now.
        self.fhir_cache = None
        self.converted_at = None

    def get_field(self, name: str, codec: FieldCodec) -> Any:
        value = (self.health_data or {}).get(name)
        if value is not None and name in (self.sensitive_fields or []):
            return codec.decrypt(value)
        return value

    def get_health_data(self, codec: FieldCodec, fields: list[str] | None = None) -> dict[str, Any]:
        """Decrypt and return health data, optionally only the requested fields."""
        names = fields if fields is not None else list((self.health_data or {}).keys())
        return {
            name: self.get_field(name, codec)
            for name in names
            if name in (self.health_data or {})
        }

    def rotate_keys(self, codec: FieldCodec) -> int:
        """Re-encrypt sensitive fields under the codec's active key. Returns count rotated."""
        rotated = 0
        stored = dict(self.health_data or {})
        for name in self.sensitive_fields or []:
            envelope = stored.get(name)
            if envelope is not None and envelope.get("kid") != codec.active_key_id:
                stored[name] = codec.rotate(envelope)
                rotated += 1
        self.health_data = stored
        return rotated


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False)
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(64), nullable=False)
    detail = Column(JSONType, comment="Redacted context for the action")
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_timestamp", "timestamp"),
        Index("ix_audit_resource", "resource_type", "resource_id"),
    )
