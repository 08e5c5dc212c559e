from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    EmailStr,
    field_validator,
)
from typing import List, Literal, Optional
from datetime import datetime

from memory_care.database.models import (
    IMAGES_PER_SESSION,
    ImageStatus,
    SessionState,
    UserRole,
)


# USER MODELS


class UserCreate(BaseModel):
    id: Optional[str] = Field(
        None,
        max_length=36,
        description="ID пользователя у провайдера идентификации (если уже выдан)",
    )
    role: UserRole = Field(..., description="Роль: doctor, caregiver, patient, admin")
    name: str = Field(..., min_length=1, max_length=250, description="Отображаемое имя")
    email: EmailStr = Field(..., description="Контактный email")


class UserResponse(BaseModel):
    id: str
    role: UserRole
    name: str
    email: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaginatedUsersResponse(BaseModel):
    items: List[UserResponse]
    total: int


# ASSIGNMENT MODELS


class AssignmentRequest(BaseModel):
    caregiver_id: str = Field(..., description="ID опекуна")
    patient_id: str = Field(..., description="ID пациента")


class AssignmentResponse(BaseModel):
    id: str
    caregiver_id: str
    patient_id: str
    slot: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RemoveAssignmentResponse(BaseModel):
    caregiver_id: str
    patient_id: str
    removed: bool
    message: str = "Связь опекун-пациент удалена"


class CaregiverCountResponse(BaseModel):
    patient_id: str
    count: int
    capacity: int


class CaregiverAvailabilityResponse(BaseModel):
    caregiver_id: str
    available: bool


# IMAGE MODELS


class GroundTruthUpsert(BaseModel):
    text: str = Field(..., min_length=1, description="Эталонное описание фотографии")
    keywords: List[str] = Field(default_factory=list, description="Ключевые слова")
    guide_questions: List[str] = Field(
        default_factory=list, description="Наводящие вопросы для пациента"
    )

    @field_validator("keywords", "guide_questions")
    @classmethod
    def strip_empty(cls, v: List[str]) -> List[str]:
        return [item.strip() for item in v if item and item.strip()]


class GroundTruthUpdate(BaseModel):
    text: Optional[str] = Field(None, min_length=1)
    keywords: Optional[List[str]] = None
    guide_questions: Optional[List[str]] = None


class GroundTruthResponse(BaseModel):
    id: str
    image_id: str
    text: str
    keywords: List[str]
    guide_questions: List[str]
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ImageCreate(BaseModel):
    url: str = Field(..., min_length=1, max_length=1000, description="URL в хранилище")
    ground_truth: Optional[GroundTruthUpsert] = None


class ImageResponse(BaseModel):
    id: str
    url: str
    uploader_id: str
    uploaded_at: datetime
    status: ImageStatus
    ground_truth: Optional[GroundTruthResponse] = None

    model_config = ConfigDict(from_attributes=True)


class PaginatedImagesResponse(BaseModel):
    items: List[ImageResponse]
    total: int
    page: int
    limit: int


class DeleteImageResponse(BaseModel):
    id: str
    message: str = "Фотография удалена"


# SCORER MODELS


class ScoreResult(BaseModel):
    """Ответ внешнего оценщика для одного описания."""

    rate_omission: float = Field(..., ge=0, le=1)
    rate_commission: float = Field(..., ge=0, le=1)
    rate_exactness: float = Field(..., ge=0, le=1)
    coherence: float = Field(..., ge=0, le=1)
    fluency: float = Field(..., ge=0, le=1)
    total: float = Field(..., ge=0, le=1)
    hits: List[str] = Field(default_factory=list)
    omitted_details: List[str] = Field(default_factory=list)
    omitted_keywords: List[str] = Field(default_factory=list)
    added_elements: List[str] = Field(default_factory=list)
    conclusion: Optional[str] = None


class ConclusionsResult(BaseModel):
    technical: Optional[str] = None
    plain: Optional[str] = None


class SessionRates(BaseModel):
    omission: float
    commission: float
    recall: float
    coherence: float
    fluency: float
    total: float


# SESSION MODELS


class SessionCreate(BaseModel):
    patient_id: str = Field(..., description="ID пациента")
    image_ids: List[str] = Field(
        ..., description=f"Ровно {IMAGES_PER_SESSION} разных ID фотографий"
    )


class ActivationUpdate(BaseModel):
    active: bool


class DescriptionCreate(BaseModel):
    image_id: str
    text: str = Field(..., min_length=1, description="Описание фотографии пациентом")


class ScoreResponse(ScoreResult):
    id: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DescriptionResponse(BaseModel):
    id: str
    session_id: str
    image_id: str
    patient_id: str
    text: str
    submitted_at: datetime
    score: Optional[ScoreResponse] = None

    model_config = ConfigDict(from_attributes=True)


class PaginatedDescriptionsResponse(BaseModel):
    items: List[DescriptionResponse]
    total: int
    page: int
    limit: int


class DoctorNote(BaseModel):
    id: str
    content: str
    created_at: datetime


class DoctorNoteCreate(BaseModel):
    content: str = Field(..., min_length=1)


class DoctorNotesReplace(BaseModel):
    notes: List[DoctorNote]


class SessionResponse(BaseModel):
    id: str
    patient_id: str
    caregiver_id: str
    created_at: datetime
    is_active: bool
    state: SessionState
    completed_at: Optional[datetime] = None
    image_ids: List[str]
    session_omission: Optional[float] = None
    session_commission: Optional[float] = None
    session_recall: Optional[float] = None
    session_coherence: Optional[float] = None
    session_fluency: Optional[float] = None
    session_total: Optional[float] = None
    technical_conclusion: Optional[str] = None
    plain_conclusion: Optional[str] = None
    doctor_notes: List[DoctorNote] = Field(default_factory=list)
    doctor_reviewed_at: Optional[datetime] = None


class PaginatedSessionsResponse(BaseModel):
    items: List[SessionResponse]
    total: int
    page: int
    limit: int


class SessionCountResponse(BaseModel):
    patient_id: str
    total: int
    completed: int


class SessionImageDetails(BaseModel):
    image_id: str
    position: int
    url: str
    ground_truth: Optional[GroundTruthResponse] = None
    description: Optional[DescriptionResponse] = None


class SessionDetailsResponse(SessionResponse):
    images: List[SessionImageDetails]


# REPORT MODELS


class PatientSummary(BaseModel):
    count: int = 0
    avg_session_total: float = 0.0
    avg_recall: float = 0.0
    first_session_total: float = 0.0
    last_session_total: float = 0.0
    trend: Literal["improving", "declining", "stable"] = "stable"
    slope_per_day: Optional[float] = None


class ReportPeriod(BaseModel):
    from_: Optional[datetime] = Field(None, alias="from")
    to: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)


class ReportSessionData(BaseModel):
    session_id: str
    created_at: datetime
    completed_at: Optional[datetime] = None
    session_total: float
    session_recall: float
    session_coherence: float
    session_fluency: float
    session_omission: float
    session_commission: float


class PatientReport(BaseModel):
    patient_id: str
    patient_name: str
    period: ReportPeriod
    summary: PatientSummary
    sessions: List[ReportSessionData]


class BaselineResponse(BaseModel):
    patient_id: str
    found: bool
    session: Optional[SessionDetailsResponse] = None


class RateDeltas(BaseModel):
    total: float
    recall: float
    coherence: float
    fluency: float
    omission: float
    commission: float


class SessionComparison(BaseModel):
    session_id: str
    patient_id: str
    is_baseline: bool
    session: ReportSessionData
    baseline: ReportSessionData
    deltas: RateDeltas = Field(..., description="Сессия минус базовая линия по каждому показателю")


class CohortOverview(BaseModel):
    total_reports: int = 0
    total_sessions: int = 0
    avg_improvement: float = 0.0
    patients_with_progress: int = 0
