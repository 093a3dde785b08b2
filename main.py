import json
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.redis_client import close_redis
from app.routers import auth, products, sales, students, sync, telegram, webhooks

APP_VERSION = "1.0.0"


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    """Route every logger through one root handler, JSON-formatted in production."""
    handler = logging.StreamHandler()
    if settings.log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))


configure_logging()
logger = logging.getLogger("memberbridge")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        started = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "%s %s -> %d (%.0f ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000,
            extra={"request_id": request_id},
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting in %s: kiwify=%s hotmart=%s telegram=%s async_webhooks=%s",
        settings.environment,
        settings.kiwify_enabled,
        settings.hotmart_enabled,
        settings.telegram_enabled and bool(settings.telegram_chat_id),
        settings.webhook_async_processing,
    )
    if not settings.sync_api_key:
        logger.warning("SYNC_API_KEY is not set; /sync is only reachable with a bearer token")
    yield
    close_redis()


app = FastAPI(
    title="MemberBridge API",
    description="Keeps a Telegram group in step with Kiwify and Hotmart sales",
    version=APP_VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, webhooks, sync, students, sales, products, telegram):
    app.include_router(module.router)


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "environment": settings.environment,
        "version": APP_VERSION,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, reload=settings.debug)
