from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SUPPORTED_LANGUAGES = ("pt-BR", "en-US", "es-ES")


class JobStage(str, Enum):
    QUEUED = "queued"
    GENERATING = "generating"
    GENERATED = "generated"
    SIGNING = "signing"
    SIGNED = "signed"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentType(str, Enum):
    BLANK = "blank"
    LOGO = "logo"
    WATERMARK = "watermark"
    EXAM = "exam"
    ASSESSMENT = "assessment"
    QUIZ = "quiz"
    BUDGET = "budget"
    BUDGET_PREMIUM = "budget-premium"
    REPORT = "report"
    INVOICE = "invoice"
    ANAMNESIS = "anamnesis"
    PRESCRIPTION = "prescription"
    CLINICAL_FORM = "clinical_form"


class ApiKeyTier(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    UNLIMITED = "unlimited"


class PageMargin(BaseModel):
    top: Optional[str] = None
    right: Optional[str] = None
    bottom: Optional[str] = None
    left: Optional[str] = None


class PageConfig(BaseModel):
    format: Literal["A4", "A5", "A3", "Letter", "Legal"] = "A4"
    orientation: Literal["portrait", "landscape"] = "portrait"
    margin: Optional[PageMargin] = None


class GenerationRequest(BaseModel):
    """Payload accepted by ``POST /pdf/jobs`` and interpreted by the generate stage."""

    model_config = ConfigDict(use_enum_values=True)

    type: DocumentType
    title: str = "Document"
    data: Dict[str, Any] = Field(default_factory=dict)
    config: PageConfig = Field(default_factory=PageConfig)
    language: str = "pt-BR"

    @field_validator("language")
    @classmethod
    def _check_language(cls, value: str) -> str:
        if value not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Language '{value}' is not supported. Use: {', '.join(SUPPORTED_LANGUAGES)}")
        return value

    @model_validator(mode="after")
    def _check_document_data(self) -> "GenerationRequest":
        errors = _document_errors(self.type, self.data)
        if errors:
            raise ValueError("; ".join(errors))
        return self


def _section(data: Dict[str, Any], name: str, errors: List[str]) -> Dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"'data.{name}' must be an object")
        return {}
    return value


def _document_errors(document_type: str, data: Dict[str, Any]) -> List[str]:
    errors: List[str] = []

    if document_type in (DocumentType.BUDGET.value, DocumentType.BUDGET_PREMIUM.value):
        items = _section(data, "budget", errors).get("items")
        if not isinstance(items, list):
            errors.append("Budget templates require 'data.budget.items' as a list")
        elif not items:
            errors.append("Budget templates need at least 1 item")
        else:
            for index, item in enumerate(items, start=1):
                if not isinstance(item, dict):
                    errors.append(f"Item {index}: must be an object")
                    continue
                if not item.get("description"):
                    errors.append(f"Item {index}: 'description' is required")
                quantity = item.get("quantity")
                if not isinstance(quantity, (int, float)) or quantity <= 0:
                    errors.append(f"Item {index}: 'quantity' must be greater than 0")
                unit_price = item.get("unitPrice")
                if not isinstance(unit_price, (int, float)) or unit_price < 0:
                    errors.append(f"Item {index}: 'unitPrice' must be >= 0")

    if document_type == DocumentType.EXAM.value:
        if not _section(data, "exam", errors).get("subject"):
            errors.append("Exam template requires 'data.exam.subject'")

    if document_type == DocumentType.PRESCRIPTION.value:
        if not isinstance(data.get("medications"), list):
            errors.append("Prescription template requires 'data.medications' as a list")
        if not _section(data, "doctor", errors).get("name"):
            errors.append("Prescription template requires 'data.doctor.name'")
        if not _section(data, "patient", errors).get("name"):
            errors.append("Prescription template requires 'data.patient.name'")

    return errors


class JobEvent(BaseModel):
    timestamp: datetime
    stage: JobStage


class JobAccepted(BaseModel):
    job_id: str
    status: JobStage


class JobStatusResponse(BaseModel):
    """Status payload; stage metadata (artifact_ref, result_url, error, ...) is flattened in."""

    model_config = ConfigDict(extra="allow")

    job_id: str
    status: JobStage
    created_at: datetime
    updated_at: datetime
    events: List[JobEvent] = Field(default_factory=list)


class JobSummary(BaseModel):
    job_id: str
    status: JobStage
    document_type: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class JobResult(BaseModel):
    job_id: str
    url: str
    expires_at: Optional[datetime] = None


class RateLimitInfo(BaseModel):
    limit: int
    remaining: int = 0
    reset_time: datetime
    retry_after_seconds: int


class RateLimitKeyInfo(BaseModel):
    name: str
    tier: ApiKeyTier
    limit: int


class RateLimitErrorResponse(BaseModel):
    status_code: int = 429
    error: str = "Too Many Requests"
    message: str = "Request limit exceeded. Try again in a few seconds."
    rate_limit: RateLimitInfo
    suggestion: str
    api_key: Optional[RateLimitKeyInfo] = None


class APIKeyCreate(BaseModel):
    name: str = Field(min_length=1)
    tier: ApiKeyTier = ApiKeyTier.BASIC
    requests_per_minute: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None


class APIKeyInfo(BaseModel):
    id: str
    name: str
    prefix: str
    tier: ApiKeyTier
    requests_per_minute: int
    is_active: bool
    description: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None


class APIKeyCreated(BaseModel):
    api_key: str
    record: APIKeyInfo


class TemplateList(BaseModel):
    templates: List[str]
    languages: List[str]
    total: int
