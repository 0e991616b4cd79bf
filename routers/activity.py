from fastapi import APIRouter

from db import SessionDep
from schemas import ActivityRead, Page
from services.activity import list_activity
from .auth import AdminDep

router = APIRouter(tags=["activity"])


@router.get("/", response_model=Page[ActivityRead])
def list_activity_logs(
    session: SessionDep,
    current: AdminDep,
    action: str = "",
    page: int = 1,
    page_size: int = 10,
):
    """
    All recorded changes, newest first (admin only).
    """
    return list_activity(session, page, page_size, action=action)


@router.get("/actor/{email}", response_model=Page[ActivityRead])
def actor_activity(
    email: str,
    session: SessionDep,
    current: AdminDep,
    page: int = 1,
    page_size: int = 10,
):
    return list_activity(session, page, page_size, actor_email=email)
