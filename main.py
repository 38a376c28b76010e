import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from db import create_db_and_tables
from errors import (
    InsufficientStock,
    InvalidTransition,
    NotFound,
    ValidationError,
    WorkflowError,
)
from routers import auth, items, notifications, requests, users

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Supply Request Workflow")

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFound: 404,
    InvalidTransition: 409,
    InsufficientStock: 409,
}


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()


@app.exception_handler(WorkflowError)
def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 400)
    logger.info("%s %s -> %s: %s", request.method, request.url.path, status_code, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__, **exc.extra()},
    )


@app.get("/")
def read_root():
    return {"service": "supply-request-workflow", "status": "ok"}


app.include_router(auth.router)
app.include_router(users.router, prefix="/users")
app.include_router(items.router, prefix="/items")
app.include_router(requests.router, prefix="/requests")
app.include_router(notifications.router, prefix="/notifications")
