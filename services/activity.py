import logging
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from models import ActivityLog, utcnow
from schemas import Page
from services.pagination import make_page, paginate

logger = logging.getLogger(__name__)

ADD_ITEM = "ADD_ITEM"
UPDATE_ITEM = "UPDATE_ITEM"
UPDATE_ITEM_IMAGE = "UPDATE_ITEM_IMAGE"
DELETE_ITEM = "DELETE_ITEM"
COLLECT_ITEM = "COLLECT_ITEM"
RETURN_ITEM = "RETURN_ITEM"


class ActivityRecorder:
    """Append-only log of who changed what.

    ``record`` runs in its own session after the change it describes has
    committed. A failure here is logged and never reaches the caller.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record(self, actor_email: str, action: str, details: dict) -> Optional[ActivityLog]:
        try:
            with Session(self.engine) as session:
                entry = ActivityLog(
                    actor_email=actor_email or "Unknown",
                    action=action,
                    details=details,
                    timestamp=utcnow(),
                )
                session.add(entry)
                session.commit()
                session.refresh(entry)
                return entry
        except SQLAlchemyError:
            logger.exception("Error logging activity %s by %s", action, actor_email)
            return None


def list_activity(
    session: Session,
    page: int,
    page_size: int,
    action: str = "",
    actor_email: str = "",
) -> Page:
    query = select(ActivityLog)
    if action:
        query = query.where(ActivityLog.action == action)
    if actor_email:
        query = query.where(ActivityLog.actor_email == actor_email)
    query = query.order_by(col(ActivityLog.timestamp).desc(), col(ActivityLog.id).desc())

    logs, total = paginate(session, query, page, page_size)
    return make_page(logs, page, page_size, total)
