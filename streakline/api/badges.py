from fastapi import APIRouter, Depends

from streakline.api.deps import get_container
from streakline.container import Container
from streakline.core.auth import get_current_user_id
from streakline.core.database import transaction

router = APIRouter(prefix="/v1", tags=["badges"])


@router.get("/badges/me")
def get_my_badges(
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
):
    """Earned badges with catalog metadata and overall completion."""
    with transaction(container.session_factory) as session:
        return container.awarder.list_badges(session, user_id)
