from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class CollectionsError(Exception):
    """Base class for collections engine failures."""


class DataIntegrityError(CollectionsError):
    """A unit's ledger data cannot be classified (e.g. a zero monthly charge)."""

    def __init__(self, unit_id: Any, message: str) -> None:
        super().__init__(f"Unit {unit_id}: {message}")
        self.unit_id = unit_id


class LedgerWriteError(CollectionsError):
    """Persisting a unit's new delinquency status failed."""

    def __init__(self, unit_id: Any, message: str) -> None:
        super().__init__(f"Unit {unit_id}: {message}")
        self.unit_id = unit_id


class LedgerUnavailableError(CollectionsError):
    """The unit ledger could not be read at all; the cycle cannot proceed."""


class TransportError(CollectionsError):
    """The notification transport failed to deliver a message."""


class TemplateRenderError(CollectionsError):
    """A notice template referenced a placeholder the payload does not provide."""


class CycleAlreadyRunning(CollectionsError):
    """A collection cycle is in progress; the caller should retry later."""

    def __init__(self) -> None:
        super().__init__("A collection cycle is already running.")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore[override]
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation failed.",
                "errors": exc.errors(),
                "path": str(request.url),
            },
        )

    @app.exception_handler(CycleAlreadyRunning)
    async def cycle_running_handler(request: Request, exc: CycleAlreadyRunning) -> JSONResponse:  # type: ignore[override]
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "path": str(request.url)},
        )

    @app.exception_handler(LedgerUnavailableError)
    async def ledger_unavailable_handler(request: Request, exc: LedgerUnavailableError) -> JSONResponse:  # type: ignore[override]
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc) or "Unit ledger unavailable.", "path": str(request.url)},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload: Dict[str, Any] = {"detail": exc.detail or "HTTP error.", "path": str(request.url)}
        if exc.headers:
            payload["headers"] = exc.headers
        return JSONResponse(status_code=exc.status_code, content=payload)
