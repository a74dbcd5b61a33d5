import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.config import get_settings
from app.core.redis import close_redis, redis_status
from app.routers import ai, chats
from app.services.ai_service import close_upstream_client

settings = get_settings()
logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


_configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Providers enabled: %s", ", ".join(settings.enabled_provider_ids) or "none")
    try:
        yield
    finally:
        await close_upstream_client()
        await close_redis()


app = FastAPI(title="Prompt Arena API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed JSON and missing fields are client errors (400), not 422."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


app.include_router(chats.router)
app.include_router(ai.router)


@app.get("/")
def root():
    return {"message": "Prompt Arena API", "docs": "/docs"}


@app.get("/health")
async def health():
    """Liveness plus Redis status (optional). DB not checked here."""
    return {"status": "ok", "redis": await redis_status()}
