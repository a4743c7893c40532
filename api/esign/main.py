import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers import admin, documents, signing
from .db import init_db
from .errors import SigningError, Throttled
from .logging_setup import configure_logging

logger = logging.getLogger(__name__)

app = FastAPI(title="E-Sign Orchestration API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()

@app.exception_handler(SigningError)
def handle_signing_error(request: Request, exc: SigningError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = {}
    if isinstance(exc, Throttled):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict(), headers=headers)

@app.exception_handler(RequestValidationError)
def handle_request_validation(request: Request, exc: RequestValidationError):
    body = {"ok": False, "code": "VALIDATION_FAILED", "error": "Request payload is invalid",
            "details": {"errors": jsonable_encoder(exc.errors())}}
    return JSONResponse(status_code=400, content=body)

app.include_router(documents.router, prefix="/api/documents", tags=["documents"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

@app.get("/")
def root():
    return {"ok": True, "service": "esign-api"}
