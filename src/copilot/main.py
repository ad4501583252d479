from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.copilot.api.v1.routes_conversation import router as conversation_router_v1
from src.copilot.api.v1.routes_sessions import router as sessions_router_v1
from src.copilot.api.v1.routes_system import router as system_router_v1
from src.copilot.config import settings
from src.copilot.infra.db.bootstrap import init_sql_repositories
from src.copilot.services.conversation.engine import conversation_engine
from src.copilot.services.sessions.autosave import session_autosave
from src.copilot.services.sessions.reaper import session_reaper


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire SQL repositories and the background tasks for the server process.

    With USE_SQL_REPOS unset (tests, local dev) the in-memory repositories
    stay active. Autosave always runs; the reaper only runs on a schedule
    when REAPER_ENABLED=true.
    """

    init_sql_repositories()
    session_autosave.start()
    if settings.reaper_enabled:
        session_reaper.start()
    try:
        yield
    finally:
        session_reaper.stop()
        session_autosave.stop()
        conversation_engine.close()


app = FastAPI(title="Course Copilot API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_allow_origins.split(",") if o.strip()] or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok", "service": "course-copilot"}


app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(conversation_router_v1, prefix="/api/v1")
app.include_router(sessions_router_v1, prefix="/api/v1")
