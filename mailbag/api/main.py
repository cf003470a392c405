"""
FastAPI Backend for the Mailbag webmail client

Bridges the browser UI to IMAP (read) and SMTP (send) through the mail gateway,
and serves the contact address book.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Request as FastAPIRequest
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import logging
import uuid

from mailbag.api.dependencies import get_gateway
from mailbag.api.routes import mailboxes, messages, contacts
from mailbag.api.schemas import ErrorResponse, HealthResponse
from mailbag.core.config import configure_logging, get_settings
from mailbag.core.database import close_db, init_db
from mailbag.core.email.errors import ErrorKind, GatewayError, sanitize_error_message
from mailbag.core.email.gateway import MailGateway, outcome_for

API_VERSION = "1.0.0"

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)
error_logger = logging.getLogger("api.errors")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the mail gateway and contact database; tear both down on shutdown."""
    gateway = MailGateway(settings)
    await gateway.start()
    app.state.gateway = gateway

    try:
        init_db()
        logger.info("Contact database initialized successfully")
    except RuntimeError as e:
        # Mail endpoints still work without the address book
        logger.error(f"Failed to initialize contact database: {e}")

    yield

    await gateway.close()
    close_db()


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# Create FastAPI app
app = FastAPI(
    title="Mailbag API",
    description="Webmail gateway: IMAP mailboxes, SMTP submission, contacts",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Unknown mailbox/message is a client error; every other gateway failure is ours
CLIENT_ERROR_KINDS = {ErrorKind.NOT_FOUND}


def _server_error(request: FastAPIRequest, exc: Exception, content: dict, exc_info: bool = False) -> JSONResponse:
    """Log under a fresh error id and return a 500 that carries only that id."""
    error_id = str(uuid.uuid4())
    error_logger.error(
        f"Error {error_id}: {type(exc).__name__}: {sanitize_error_message(str(exc))}",
        exc_info=exc_info,
        extra={
            "error_id": error_id,
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else None,
        },
    )
    return JSONResponse(status_code=500, content={**content, "error_id": error_id})


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: FastAPIRequest, exc: GatewayError):
    """
    Map gateway failures to HTTP responses.

    The body carries the public message and outcome code only; the server
    text stays in the (sanitized) log.
    """
    content = ErrorResponse(
        detail=exc.public_message,
        outcome=outcome_for(exc).value,
        error_kind=exc.kind.value,
    ).model_dump(exclude_none=True)
    if exc.kind in CLIENT_ERROR_KINDS:
        return JSONResponse(status_code=400, content=content)
    return _server_error(request, exc, content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: FastAPIRequest, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Bad Request", "outcome": "invalid", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: FastAPIRequest, exc: Exception):
    """Anything unexpected: full traceback in the log, generic 500 to the client."""
    return _server_error(
        request, exc, {"detail": "An internal error occurred", "outcome": "failed"}, exc_info=True
    )


app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "Authorization"],
    max_age=3600,  # Cache preflight requests for 1 hour
)

# Include routers
app.include_router(mailboxes.router)
app.include_router(messages.router)
app.include_router(contacts.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": "Mailbag API",
        "version": API_VERSION,
        "status": "running",
    }


@app.get("/health", response_model=HealthResponse)
async def health_check(gateway: MailGateway = Depends(get_gateway)):
    """Health check endpoint (no auth required)"""
    from mailbag.core.database import connection

    gateway_health = gateway.health()
    health = {
        "status": "healthy" if gateway.started else "degraded",
        "version": API_VERSION,
        "database": "connected" if connection.SessionLocal is not None else "disconnected",
        "pools": gateway_health["pools"],
    }
    if health["database"] != "connected":
        health["status"] = "degraded"
    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.api_port)
