from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from streakline.api.deps import get_container
from streakline.container import Container
from streakline.core.auth import get_current_user_id
from streakline.core.logging import log_event
from streakline.features.tasks.validators import EvidenceSubmission, TodayTasksQuery
from streakline.models.task import TaskType

router = APIRouter(prefix="/v1", tags=["tasks"])


@router.get("/tasks/today")
def get_today_tasks(
    day: Optional[date] = Query(None, alias="date", description="YYYY-MM-DD; defaults to today in the user's timezone"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    task_type: Optional[TaskType] = Query(None, alias="type"),
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    """Paginated, optionally type-filtered task list for one day."""
    query = TodayTasksQuery(day=day, limit=limit, offset=offset, task_type=task_type)
    return container.tasks.get_today_tasks(user_id, query)


@router.post("/evidence", status_code=201)
def create_evidence(
    body: EvidenceSubmission,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    """Attach evidence to a task and complete it."""
    result = container.tasks.submit_evidence(user_id, body)
    log_event(
        "info",
        "evidence.created",
        user_id=user_id,
        event_type="evidence",
        extra={
            "task_id": body.task_id,
            "evidence_type": body.type.value,
            "streak_updated": result["streakUpdated"],
            "new_badges": len(result["newlyAwardedBadges"]),
        },
    )
    return result
