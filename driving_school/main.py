# driving_school/main.py
from typing import Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from driving_school import database
from driving_school.auth import get_optional_principal
from driving_school.config import Settings, get_settings
from driving_school.exceptions import AppError
from driving_school.principals import Principal, StaffPrincipal
from driving_school.routes import auth, dashboard, payments, students
from driving_school.schemas import envelope

# logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("driving-school")

API_PREFIX = "/api"


def _error(status_code: int, message: str, errors=None) -> JSONResponse:
    body = {"status": "error", "message": message}
    if errors is not None:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(AppError)
    def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error(exc.status_code, exc.message, exc.errors)

    @app.exception_handler(RequestValidationError)
    def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {
                # drop the leading "body"/"query"/"path" location segment
                "field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        return _error(400, "Validation failed", errors)

    @app.exception_handler(IntegrityError)
    def handle_integrity_error(request: Request, exc: IntegrityError):
        logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
        return _error(409, "Resource already exists")

    @app.exception_handler(StarletteHTTPException)
    def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            return _error(404, f"Cannot {request.method} {request.url.path}")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = "Internal server error" if settings.is_production else str(exc)
        return _error(500, message)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Driving School API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.cors_origin.split(",")],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    register_exception_handlers(app, settings)

    # Startup: initialize DB
    @app.on_event("startup")
    def startup():
        logger.info("Initializing DB...")
        database.init_db(settings.database_url)
        logger.info("Startup complete.")

    # Root and health endpoints
    @app.get("/")
    def root():
        return {"service": "Driving School API", "status": "running", "endpoints": [f"{API_PREFIX}/health", "/docs", "/openapi.json"]}

    @app.get(f"{API_PREFIX}/health")
    def health(
        principal: Optional[Principal] = Depends(get_optional_principal),
        db: Session = Depends(database.get_db),
    ):
        data = {"status": "ok"}
        # anonymous callers only learn that the process is up
        if isinstance(principal, StaffPrincipal):
            try:
                db.execute(text("SELECT 1"))
            except SQLAlchemyError as e:
                logger.exception("Health check failed: %s", e)
                raise HTTPException(status_code=503, detail="Database unreachable")
            data["database"] = "ok"
        return envelope(data)

    app.include_router(auth.router, prefix=API_PREFIX)
    app.include_router(students.router, prefix=API_PREFIX)
    app.include_router(payments.router, prefix=API_PREFIX)
    app.include_router(dashboard.router, prefix=API_PREFIX)
    return app


app = create_app()
