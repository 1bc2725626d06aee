import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from wayfare.api.v1.api import api_router
from wayfare.core.config import settings
from wayfare.core.errors import WayfareError
from wayfare.core.logging import clear_log_context, configure_logging, update_log_context

configure_logging()
logger = logging.getLogger("wayfare.request")


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.time()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            latency_ms = int((time.time() - start) * 1000)
            logger.info("request", extra={"status_code": status_code, "latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


app = FastAPI(title=settings.APP_NAME)

# CORS: use CORS_ORIGINS from env in production; default to localhost for dev
_default_origins = [
    "http://127.0.0.1:8080", "http://localhost:8080",
    "http://127.0.0.1:3000", "http://localhost:3000",
]
_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()] if settings.CORS_ORIGINS else _default_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)


@app.exception_handler(WayfareError)
async def wayfare_error_handler(request: Request, exc: WayfareError):
    if exc.http_status >= 500:
        logger.error("request_failed", extra={"code": exc.code})
    else:
        logger.info("request_rejected", extra={"code": exc.code})
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


app.include_router(api_router)


@app.get("/health")
def health():
    return {"status": "ok"}
