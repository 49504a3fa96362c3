"""
Pydantic models for disease-detection requests, provider results and the
persisted analysis record.

Field names are camelCase because API responses serialize these models as-is.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, model_validator

Severity = Literal["low", "medium", "high", "unknown"]
Priority = Literal["high", "medium", "low"]
ProviderName = Literal["groq", "gemini", "huggingface"]
AnalysisStatus = Literal["pending", "processing", "completed", "failed"]
StepStatus = Literal["pending", "completed", "failed"]

PROVIDER_NAMES = ("groq", "gemini", "huggingface")
SEVERITIES = ("low", "medium", "high", "unknown")
PRIORITIES = ("high", "medium", "low")
ANALYSIS_STATUSES = ("pending", "processing", "completed", "failed")

# Disease value of a well-formed result that carries no usable analysis.
FALLBACK_DISEASE = "Analysis failed"
INCONCLUSIVE_DISEASE = "Inconclusive - requires expert review"

# Forward-only lifecycle; failed -> pending is the retry edge.
STATUS_TRANSITIONS = {
    "pending": {"processing", "failed"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": {"pending"},
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Coordinates(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class Location(BaseModel):
    district: Optional[str] = None
    state: Optional[str] = None
    coordinates: Optional[Coordinates] = None

    def label(self) -> str:
        return self.district or self.state or "your area"


class ImageRef(BaseModel):
    """Resolvable image handle: a URL or an inline base64 payload."""

    url: Optional[str] = None
    base64: Optional[str] = None

    @model_validator(mode="after")
    def _require_source(self):
        if not (self.url or self.base64):
            raise ValueError("image url or base64 data required")
        return self

    def as_data_url(self, mime_type: str = "image/jpeg") -> str:
        if self.url:
            return self.url
        return f"data:{mime_type};base64,{self.base64}"

    def describe(self) -> str:
        if self.url:
            return self.url
        return f"<inline image, {len(self.base64 or '')} b64 chars>"


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    imageUrl: Optional[str] = None
    imageBase64: Optional[str] = None
    crop: Optional[str] = Field(None, max_length=100, validation_alias=AliasChoices("crop", "cropType"))
    location: Optional[Location] = None
    provider: ProviderName = Field("groq", validation_alias=AliasChoices("provider", "preferredProvider"))
    user: Optional[str] = None

    @model_validator(mode="after")
    def _require_image(self):
        if not (self.imageUrl or self.imageBase64):
            raise ValueError("imageUrl or imageBase64 required")
        return self

    def image_ref(self) -> ImageRef:
        return ImageRef(url=self.imageUrl, base64=None if self.imageUrl else self.imageBase64)


class TreatmentOption(BaseModel):
    method: str
    description: str
    priority: Priority = "medium"


class DetectionResult(BaseModel):
    """Canonical output of one provider adapter call."""

    disease: str
    confidence: float = 0.5
    severity: Severity = "medium"
    symptoms: List[str] = Field(default_factory=list)
    treatment: List[TreatmentOption] = Field(default_factory=list)
    fertilizers: List[str] = Field(default_factory=list)
    homeRemedies: List[str] = Field(default_factory=list)
    prevention: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    provider: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        disease = (self.disease or "").strip()
        return bool(disease) and disease != FALLBACK_DISEASE


class Detection(BaseModel):
    disease: str
    confidence: float = Field(..., ge=0, le=1)
    severity: Severity = "medium"
    symptoms: List[str] = Field(default_factory=list)
    analysisProvider: Optional[str] = None
    needsExpertReview: bool = False
    reliable: bool = False


class RecommendedTreatment(TreatmentOption):
    locationSpecific: bool = True
    cropSpecific: str = "general"
    availabilityNote: str = ""


class Recommendations(BaseModel):
    treatment: List[RecommendedTreatment] = Field(default_factory=list)
    fertilizers: List[str] = Field(default_factory=list)
    homeRemedies: List[str] = Field(default_factory=list)
    preventiveMeasures: List[str] = Field(default_factory=list)


class ProcessingStep(BaseModel):
    step: str
    status: StepStatus
    result: Optional[Any] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class AnalysisRecord(BaseModel):
    id: str
    user: Optional[str] = None
    imageUrl: Optional[str] = None
    imageBase64: Optional[str] = Field(None, exclude=True)
    crop: Optional[str] = None
    location: Optional[Location] = None
    status: AnalysisStatus = "pending"
    detection: Optional[Detection] = None
    recommendations: Optional[Recommendations] = None
    processingSteps: List[ProcessingStep] = Field(default_factory=list)
    aiProvider: Optional[str] = None
    error: Optional[str] = None
    finalResult: Optional[Dict[str, Any]] = None
    rawResponses: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @computed_field
    @property
    def confidencePercentage(self) -> int:
        if not self.detection:
            return 0
        return int(round(self.detection.confidence * 100))

    def image_ref(self) -> Optional[ImageRef]:
        if not (self.imageUrl or self.imageBase64):
            return None
        return ImageRef(url=self.imageUrl, base64=self.imageBase64)
