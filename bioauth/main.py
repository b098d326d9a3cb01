from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from bioauth.api.routes import router
from bioauth.api.admin_routes import router as admin_router
from bioauth.core.errors import OperationError
from bioauth.observability.logging import log
from bioauth.provider.errors import InvalidSubject, ProviderError, ProviderUnavailable
from bioauth.settings import settings
from bioauth.utils.lock import LockNotAcquired

app = FastAPI(title="Biometric Operation Broker")

# The capture page runs on its own origin; restrict in prod via env.
origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "ok"}


def _error(status_code: int, message: str, code: str, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "code": code, "retryable": retryable},
    )


# ---------------------------------------------------------------------------
# Error mapping. Only invalid input, settled failures and unknown ids are
# caller-visible; provider trouble is a retryable 503.
# ---------------------------------------------------------------------------
@app.exception_handler(OperationError)
async def operation_error_handler(request: Request, exc: OperationError):
    return _error(exc.http_status, str(exc), exc.code)


@app.exception_handler(InvalidSubject)
async def invalid_subject_handler(request: Request, exc: InvalidSubject):
    return _error(400, str(exc), "INVALID_SUBJECT")


@app.exception_handler(ProviderUnavailable)
async def provider_unavailable_handler(request: Request, exc: ProviderUnavailable):
    log(event="provider_unavailable_surfaced", path=request.url.path, error=str(exc))
    return _error(503, "Verification provider unavailable, try again shortly", "PROVIDER_UNAVAILABLE", retryable=True)


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    log(event="provider_error_surfaced", path=request.url.path, error=str(exc), statusCode=exc.status_code)
    return _error(502, "Verification provider rejected the request", "PROVIDER_ERROR")


@app.exception_handler(LockNotAcquired)
async def lock_busy_handler(request: Request, exc: LockNotAcquired):
    return _error(503, str(exc), "OPERATION_BUSY", retryable=True)


@app.exception_handler(Exception)
async def universal_exception_handler(request: Request, exc: Exception):
    log(event="unhandled_exception", path=request.url.path, errorType=type(exc).__name__, error=str(exc))
    return _error(500, "Internal error", "INTERNAL")
