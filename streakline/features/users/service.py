"""
User lookups needed by the engagement engine.
- get_or_create_user(session, user_id)
- user_timezone(session, user_id)
- local_today(session, user_id)
- active_user_ids(session)

Identity itself is owned by the external auth provider; app_users only holds
the per-user preferences the engine needs (status, timezone).
"""

import logging
from datetime import date, datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from streakline.core.database import insert_unless_exists, users as app_users

logger = logging.getLogger("streakline.users")

UTC = ZoneInfo("UTC")


def get_or_create_user(session: Session, user_id: str, *, tz_name: str = "UTC", display_name: Optional[str] = None) -> bool:
    """Ensure an app_users row exists. Returns True if it was created."""
    return insert_unless_exists(
        session,
        app_users,
        {
            "user_id": user_id,
            "display_name": display_name or f"user_{user_id[:8]}",
            "status": "active",
            "timezone": tz_name,
            "created_at": datetime.now(timezone.utc),
        },
        ["user_id"],
    )


def user_timezone(session: Session, user_id: str) -> ZoneInfo:
    tz_name = session.execute(select(app_users.c.timezone).where(app_users.c.user_id == user_id)).scalar()
    if not tz_name:
        return UTC
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown user timezone; using UTC", extra={"user_id": user_id})
        return UTC


def local_today(session: Session, user_id: str, now: Optional[datetime] = None) -> date:
    """Calendar day in the user's own timezone."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(user_timezone(session, user_id)).date()


def active_user_ids(session: Session) -> List[str]:
    rows = session.execute(
        select(app_users.c.user_id).where(app_users.c.status == "active").order_by(app_users.c.user_id)
    ).scalars()
    return list(rows)
