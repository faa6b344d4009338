from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class BadgeType(str, Enum):
    DAY_ONE_DONE = "day_one_done"
    WEEK_WARRIOR = "week_warrior"
    PERFECT_MONTH = "perfect_month"
    HUNDRED_CLUB = "hundred_club"
    CONSISTENCY_KING = "consistency_king"
    HYDRATION_NATION = "hydration_nation"
    CARDIO_KING = "cardio_king"
    WORKOUT_WARRIOR = "workout_warrior"
    SUPPLEMENT_CHAMPION = "supplement_champion"


class BadgeAward(BaseModel):
    """A permanent award row; at most one per (user, badge)."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    badge_type: BadgeType
    awarded_at: datetime
