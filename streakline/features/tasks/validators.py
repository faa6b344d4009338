"""Request models and input sanitation for task queries and evidence."""

import re
from datetime import date
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from streakline.models.task import EvidenceType, TaskType

MAX_NOTES_CHARS = 1000
MAX_TEXT_CHARS = 2000

_TAG_RE = re.compile(r"<[^>]*>")
_SCRIPT_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)


def strip_markup(value: Optional[str]) -> Optional[str]:
    """Remove HTML/XML markup (and script/style bodies) and trim whitespace."""
    if value is None:
        return None
    cleaned = _SCRIPT_RE.sub("", value)
    cleaned = _TAG_RE.sub("", cleaned)
    return cleaned.replace("<", "").replace(">", "").strip()


class TextLogData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(..., min_length=1, max_length=MAX_TEXT_CHARS)

    @field_validator("text")
    def sanitize_text(cls, v):
        cleaned = strip_markup(v)
        if not cleaned:
            raise ValueError("text cannot be empty")
        return cleaned


class MetricsData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metrics: Dict[str, Union[float, str]]

    @field_validator("metrics")
    def validate_metrics(cls, v):
        if not v:
            raise ValueError("metrics must contain at least one entry")
        return {key: strip_markup(val) if isinstance(val, str) else val for key, val in v.items()}


class PhotoReferenceData(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    photo_url: str = Field(..., alias="photoUrl", min_length=1)
    photo_storage_key: Optional[str] = Field(None, alias="photoStorageKey")

    @field_validator("photo_url")
    def validate_photo_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("photoUrl must be an http(s) URL")
        return v


_DATA_MODELS = {
    EvidenceType.TEXT_LOG: TextLogData,
    EvidenceType.METRICS: MetricsData,
    EvidenceType.PHOTO_REFERENCE: PhotoReferenceData,
}


class EvidenceSubmission(BaseModel):
    """POST /v1/evidence body. ``data`` is re-validated against the model for ``type``."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: int = Field(..., alias="taskId", gt=0)
    type: EvidenceType
    data: Dict[str, Any]
    notes: Optional[str] = Field(None, max_length=MAX_NOTES_CHARS)

    @field_validator("data")
    def data_matches_type(cls, v, info: ValidationInfo):
        evidence_type = info.data.get("type")
        if evidence_type is None:
            # type itself failed validation; that error is reported on its own
            return v
        model = _DATA_MODELS[evidence_type]
        try:
            parsed = model.model_validate(v)
        except PydanticValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ()))
            raise ValueError(
                f"Evidence data must match type {evidence_type.value}: {where or 'data'} {first.get('msg', 'is invalid')}"
            )
        return parsed.model_dump()

    @field_validator("notes")
    def sanitize_notes(cls, v):
        cleaned = strip_markup(v)
        return cleaned or None

    @property
    def text(self) -> Optional[str]:
        return self.data.get("text")

    @property
    def metrics(self) -> Optional[Dict[str, Any]]:
        return self.data.get("metrics")

    @property
    def photo_url(self) -> Optional[str]:
        return self.data.get("photo_url")

    @property
    def photo_storage_key(self) -> Optional[str]:
        return self.data.get("photo_storage_key")


class TodayTasksQuery(BaseModel):
    day: Optional[date] = None
    limit: int = Field(50, ge=1, le=100)
    offset: int = Field(0, ge=0)
    task_type: Optional[TaskType] = None
