from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging

from .config import CORS_ORIGINS, SWEEP_INTERVAL_SECONDS
from .db import async_session_maker, create_db_and_tables
from .routers import admin_routers, auth, student_routers
from .schemas.user_schema import UserCreate, UserRead, UserUpdate
from .security import app_users, auth_backend, current_active_user
from .services.attempt_lifecycle import AttemptLifecycle
from .services.attempt_store import SqlAttemptStore
from .services.exam_catalog import SqlExamCatalog
from .services.sweep_service import run_sweep_loop
from fastapi import Depends

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # run once when app starts. Make DB tables and start the expiry sweep.
    await create_db_and_tables()
    sweep_task = None
    if SWEEP_INTERVAL_SECONDS > 0:
        lifecycle = AttemptLifecycle(SqlAttemptStore(async_session_maker), SqlExamCatalog(async_session_maker))
        sweep_task = asyncio.create_task(run_sweep_loop(lifecycle, SWEEP_INTERVAL_SECONDS))
    yield
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass

app = FastAPI(lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,  # which sites can call this API
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# instructors manage their own account through /users/me
app.include_router(
    app_users.get_users_router(UserRead, UserUpdate),
    prefix="/users",
    tags=["users"],
    dependencies=[Depends(current_active_user)],
)

app.include_router(student_routers.router, prefix="/api", tags=["Student"])
app.include_router(admin_routers.router, prefix="/api")

# Auth routers
app.include_router(app_users.get_auth_router(auth_backend), prefix="/auth/jwt", tags=["auth"])
app.include_router(auth.router)
app.include_router(app_users.get_register_router(UserRead, UserCreate), prefix="/auth", tags=["auth"])
