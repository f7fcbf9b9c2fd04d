"""FastAPI application entrypoint."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .database import init_db
from .errors import ErrorKind, MailSyncError
from .routers import mail, sync

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

_STATUS_BY_KIND = {
    ErrorKind.AUTH_EXPIRED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.BUSY: 409,
    ErrorKind.REMOTE_FAILED: 502,
    ErrorKind.REMOTE_TRANSIENT: 503,
    ErrorKind.STORAGE: 503,
    ErrorKind.RESYNC_REQUIRED: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Mail Mirror API",
    description="Mirror Gmail threads and messages into a local store via paginated backfill and push notifications",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MailSyncError)
async def mail_sync_error_handler(request: Request, exc: MailSyncError):
    status_code = _STATUS_BY_KIND.get(exc.kind, 500)
    headers = {"Retry-After": "30"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "kind": exc.kind.value,
            "detail": str(exc),
            "retryable": exc.retryable,
        },
        headers=headers,
    )


app.include_router(sync.router)
app.include_router(mail.router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
