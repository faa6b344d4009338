"""
Task and evidence models.

Tasks are created by plan generation and only mutated by the evidence
transaction; evidence rows are append-only.
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskType(str, Enum):
    WORKOUT = "workout"
    MEAL = "meal"
    HYDRATION = "hydration"
    SUPPLEMENT = "supplement"
    CARDIO = "cardio"
    WEIGHT_LOG = "weight_log"
    PROGRESS_PHOTO = "progress_photo"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class EvidenceType(str, Enum):
    TEXT_LOG = "text_log"
    METRICS = "metrics"
    PHOTO_REFERENCE = "photo_reference"


class Evidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    task_id: int
    user_id: str
    type: EvidenceType
    notes: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    photo_url: Optional[str] = None
    photo_storage_key: Optional[str] = None
    recorded_at: datetime

    def to_response(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "notes": self.notes,
            "metrics": self.metrics,
            "photoUrl": self.photo_url,
            "photoStorageKey": self.photo_storage_key,
            "recordedAt": self.recorded_at.isoformat(),
        }


class Task(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    type: TaskType
    title: str
    description: Optional[str] = None
    due_date: date
    due_time: Optional[time] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 0
    completed_at: Optional[datetime] = None
    evidence: List[Evidence] = Field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "dueDate": self.due_date.isoformat(),
            "dueTime": self.due_time.strftime("%H:%M") if self.due_time else None,
            "status": self.status.value,
            "priority": self.priority,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "evidence": [e.to_response() for e in self.evidence],
        }
