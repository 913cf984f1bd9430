from fastapi import Depends, Request

from .db import async_session_maker
from .models.user_model import User
from .security import current_active_user
from .services.attempt_lifecycle import AttemptLifecycle
from .services.attempt_store import SqlAttemptStore
from .services.exam_catalog import SqlExamCatalog


async def current_admin(user: User = Depends(current_active_user)):
    # every account is an instructor; students never log in
    return user


def get_attempt_store() -> SqlAttemptStore:
    return SqlAttemptStore(async_session_maker)


def get_exam_catalog() -> SqlExamCatalog:
    return SqlExamCatalog(async_session_maker)


def get_attempt_lifecycle(store=Depends(get_attempt_store), catalog=Depends(get_exam_catalog)) -> AttemptLifecycle:
    return AttemptLifecycle(store, catalog)


def client_ip(request: Request) -> str:
    """Best-effort client address for the audit log; proxies put it in headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
