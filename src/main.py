import logging
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.config import settings
from src.domain.errors import WebhookCoreError
from src.models.common import envelope
from src.observability import configure_logging, incr_metric, log_event
from src.routers import webhook_events, whatsapp

configure_logging(debug=settings.app_debug)

app = FastAPI(title="Engagement Webhooks", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _error_response(request: Request, status_code: int, message: str, code: str, detail: str) -> JSONResponse:
    if status_code >= 500:
        message = "Internal server error"
        error = detail if settings.app_debug else "Internal server error"
    else:
        error = detail if settings.app_debug else code
    response = JSONResponse(status_code=status_code, content=envelope(message, error=error))
    request_id = _request_id(request)
    if request_id:
        response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(WebhookCoreError)
async def handle_core_error(request: Request, exc: WebhookCoreError):
    incr_metric("http.errors", code=exc.code)
    log_event(
        "request_failed",
        level=logging.ERROR if exc.status_code >= 500 else logging.INFO,
        request_id=_request_id(request),
        exc=exc,
        path=request.url.path,
        status_code=exc.status_code,
        code=exc.code,
    )
    return _error_response(request, exc.status_code, str(exc), exc.code, str(exc))


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    response = _error_response(request, exc.status_code, detail, f"http_{exc.status_code}", detail)
    for key, value in (exc.headers or {}).items():
        response.headers[key] = value
    return response


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())[1:]),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    log_event("request_validation_failed", request_id=_request_id(request), path=request.url.path, errors=errors)
    content = envelope("The given data was invalid.", data={"errors": errors}, error="validation_error")
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    incr_metric("http.errors", code="internal_error")
    log_event(
        "request_crashed",
        level=logging.ERROR,
        request_id=_request_id(request),
        exc=exc,
        path=request.url.path,
    )
    return _error_response(request, 500, "Internal server error", "internal_error", repr(exc))


app.include_router(webhook_events.router)
app.include_router(whatsapp.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "engagement-webhooks"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
