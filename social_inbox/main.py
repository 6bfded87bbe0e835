from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from social_inbox import models  # noqa: F401  (registers tables on Base.metadata)
from social_inbox.config import settings
from social_inbox.database import Base, SessionLocal, engine
from social_inbox.dependencies import init_state
from social_inbox.logging_config import get_logger, setup_logging
from social_inbox.routers import inbox, media, realtime, templates, webhook

setup_logging(settings.log_level, sql_echo=settings.debug)
logger = get_logger("main")

app = FastAPI(
    title="Social Inbox",
    description="Facebook/Instagram customer support relay",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
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
app.include_router(inbox.router)
app.include_router(media.router)
app.include_router(realtime.router)
app.include_router(templates.router)


@app.on_event("startup")
async def startup() -> None:
    init_state(app)
    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as exc:
        logger.error("Schema creation failed", extra={"context": {"error": str(exc)}})

    db = SessionLocal()
    try:
        app.state.token_cache.refresh(db)
    finally:
        db.close()
    logger.info("Social inbox started", extra={"context": app.state.token_cache.meta()})


@app.get("/health")
async def health():
    return {"status": "ok", "page_tokens": app.state.token_cache.meta() if hasattr(app.state, "token_cache") else None}
