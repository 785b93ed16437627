import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from conversa.config import settings
from conversa.database import get_db
from conversa.logging_config import get_logger, setup_logging
from conversa.models import Campaign, Contact, Conversation, Job, Message
from conversa.routers import admin, campaigns, conversations, media, webhook
from conversa.worker import job_worker_loop, reaper_loop

setup_logging(settings.log_level)

app = FastAPI(
    title="Conversa API",
    description="Conversation orchestration engine for WhatsApp chatbots and campaigns",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(campaigns.router)
app.include_router(conversations.router)
app.include_router(media.router)
app.include_router(admin.router)

worker_logger = get_logger("worker")
_background_tasks: list[asyncio.Task] = []


def _is_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.worker_enabled


@app.on_event("startup")
async def start_background_workers() -> None:
    if not _is_worker_enabled():
        return
    if not _background_tasks:
        _background_tasks.append(asyncio.create_task(job_worker_loop()))
        _background_tasks.append(asyncio.create_task(reaper_loop()))
        worker_logger.info("Background workers started")


@app.on_event("shutdown")
async def stop_background_workers() -> None:
    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _background_tasks.clear()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "contacts": db.query(Contact).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "campaigns": db.query(Campaign).count(),
        "pending_jobs": db.query(Job).filter(Job.status == "PENDING").count(),
    }
