from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, Field

from streakline.api.deps import get_container
from streakline.container import Container
from streakline.core.auth import get_current_user_id
from streakline.core.database import transaction
from streakline.core.errors import ValidationError
from streakline.features.users.service import local_today

router = APIRouter(prefix="/v1", tags=["streaks"])


class CheckComplianceRequest(BaseModel):
    day: Optional[date] = Field(None, alias="date", description="YYYY-MM-DD; defaults to today")


@router.get("/streaks/me")
def get_my_streak(
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    """Compliance streak snapshot plus how today is going."""
    with transaction(container.session_factory) as session:
        return container.daily_check.snapshot(session, user_id, local_today(session, user_id))


@router.post("/streaks/check-compliance")
def check_compliance(
    body: Optional[CheckComplianceRequest] = Body(None),
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    """Evaluate a day (retroactively if given) and advance the compliance streak if it qualified."""
    with transaction(container.session_factory) as session:
        today = local_today(session, user_id)
        day = body.day if body and body.day else today
        if day > today:
            raise ValidationError(
                "Cannot check compliance for a future date",
                details=[{"field": "date", "message": "must not be after today"}],
            )
        outcome = container.daily_check.run(session, user_id, day)

    return {
        "date": day.isoformat(),
        "isCompliant": outcome.is_compliant,
        "compliance": outcome.compliance.to_response(),
        "streakData": {
            **outcome.record.to_response(),
            "updated": bool(outcome.update and outcome.update.advanced),
        },
        "newlyAwardedBadges": [container.awarder.describe(award) for award in outcome.awards],
    }
