import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql.sqltypes import DateTime

Base = declarative_base()

# Максимум опекунов на одного пациента
MAX_CAREGIVERS_PER_PATIENT = 3
# Количество фотографий в одной сессии оценки
IMAGES_PER_SESSION = 3


def utcnow() -> datetime:
    """Текущее время UTC без tzinfo (так хранятся все даты в базе)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRole(enum.Enum):
    doctor = "doctor"
    caregiver = "caregiver"
    patient = "patient"
    admin = "admin"


class ImageStatus(enum.Enum):
    free = "free"
    assigned_to_session = "assigned_to_session"


class SessionState(enum.Enum):
    pending = "pending"
    en_curso = "en_curso"
    completado = "completado"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    role = Column(Enum(UserRole), nullable=False)
    name = Column(String(250), nullable=False)
    email = Column(String(250), unique=True, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_users_email", "email"),
        Index("idx_users_role", "role"),
    )

    def __repr__(self):
        return f"<User(id='{self.id}', role='{self.role.value}')>"


class CareAssignment(Base):
    __tablename__ = "care_assignments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    caregiver_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    patient_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    # Номер места опекуна у пациента (1..3)
    slot = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        # Один опекун - один пациент
        UniqueConstraint("caregiver_id", name="uq_care_assignment_caregiver"),
        # Не больше трех опекунов на пациента
        UniqueConstraint("patient_id", "slot", name="uq_care_assignment_patient_slot"),
        CheckConstraint(
            f"slot >= 1 AND slot <= {MAX_CAREGIVERS_PER_PATIENT}",
            name="ck_care_assignment_slot_range",
        ),
        Index("idx_care_assignments_patient_id", "patient_id"),
    )


class ReferenceImage(Base):
    __tablename__ = "reference_images"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    url = Column(String(1000), nullable=False)
    uploader_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    uploaded_at = Column(DateTime, nullable=False, default=utcnow)
    status = Column(Enum(ImageStatus), nullable=False, default=ImageStatus.free)

    ground_truth = relationship(
        "GroundTruth",
        back_populates="image",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (Index("idx_reference_images_uploader_id", "uploader_id"),)


class GroundTruth(Base):
    __tablename__ = "ground_truths"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    image_id = Column(
        String(36), ForeignKey("reference_images.id"), unique=True, nullable=False
    )
    text = Column(Text, nullable=False)
    keywords = Column(JSON, nullable=False, default=list)
    guide_questions = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    image = relationship("ReferenceImage", back_populates="ground_truth")


class AssessmentSession(Base):
    __tablename__ = "assessment_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    patient_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    caregiver_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    is_active = Column(Boolean, nullable=False, default=False)
    state = Column(Enum(SessionState), nullable=False, default=SessionState.pending)
    completed_at = Column(DateTime, nullable=True)

    # Агрегаты сессии, заполняются только в состоянии completado
    session_omission = Column(Float, nullable=True)
    session_commission = Column(Float, nullable=True)
    session_recall = Column(Float, nullable=True)
    session_coherence = Column(Float, nullable=True)
    session_fluency = Column(Float, nullable=True)
    session_total = Column(Float, nullable=True)

    technical_conclusion = Column(Text, nullable=True)
    plain_conclusion = Column(Text, nullable=True)
    doctor_notes = Column(JSON, nullable=False, default=list)
    doctor_reviewed_at = Column(DateTime, nullable=True)

    images = relationship(
        "SessionImage",
        back_populates="session",
        order_by="SessionImage.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_assessment_sessions_patient_id", "patient_id"),
        Index("idx_assessment_sessions_state", "state"),
    )


class SessionImage(Base):
    __tablename__ = "session_images"

    session_id = Column(
        String(36), ForeignKey("assessment_sessions.id"), primary_key=True
    )
    image_id = Column(String(36), ForeignKey("reference_images.id"), primary_key=True)
    position = Column(Integer, nullable=False)

    session = relationship("AssessmentSession", back_populates="images")
    image = relationship("ReferenceImage", lazy="selectin")

    __table_args__ = (
        # Фотография участвует только в одной сессии за всё время
        UniqueConstraint("image_id", name="uq_session_images_image"),
        UniqueConstraint("session_id", "position", name="uq_session_images_position"),
    )


class PatientDescription(Base):
    __tablename__ = "patient_descriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(
        String(36), ForeignKey("assessment_sessions.id"), nullable=False
    )
    image_id = Column(String(36), ForeignKey("reference_images.id"), nullable=False)
    patient_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    text = Column(Text, nullable=False)
    submitted_at = Column(DateTime, nullable=False, default=utcnow)

    score = relationship(
        "Score",
        back_populates="description",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("session_id", "image_id", name="uq_description_session_image"),
        Index("idx_patient_descriptions_session_id", "session_id"),
    )


class Score(Base):
    __tablename__ = "scores"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    description_id = Column(
        String(36), ForeignKey("patient_descriptions.id"), unique=True, nullable=False
    )
    rate_omission = Column(Float, nullable=False)
    rate_commission = Column(Float, nullable=False)
    rate_exactness = Column(Float, nullable=False)
    coherence = Column(Float, nullable=False)
    fluency = Column(Float, nullable=False)
    total = Column(Float, nullable=False)
    hits = Column(JSON, nullable=False, default=list)
    omitted_details = Column(JSON, nullable=False, default=list)
    omitted_keywords = Column(JSON, nullable=False, default=list)
    added_elements = Column(JSON, nullable=False, default=list)
    conclusion = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    description = relationship("PatientDescription", back_populates="score")
