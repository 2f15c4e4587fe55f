"""Error taxonomy shared by services and routes.

Services raise these; the handlers installed by :func:`install_error_handlers`
turn them into ``{"success": false, "error": ...}`` envelopes. Every class
subclasses ``ValueError`` so callers that only care about "the operation was
refused" can keep catching that.
"""
from __future__ import annotations

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


logger = structlog.get_logger(__name__)


class GearFlowError(ValueError):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GearFlowError):
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(GearFlowError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(GearFlowError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(GearFlowError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(GearFlowError):
    status_code = status.HTTP_409_CONFLICT


class RateLimited(GearFlowError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class UpstreamError(GearFlowError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({'success': False, 'error': message}, status_code=status_code)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GearFlowError)
    async def gearflow_error_handler(request: Request, exc: GearFlowError):
        if exc.status_code >= 500:
            logger.error('request_failed', error=exc.message)
        return error_response(exc.message, exc.status_code)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else 'Request failed'
        return error_response(message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            location = '.'.join(str(part) for part in err.get('loc', ()) if part != 'body')
            problems.append(f"{location}: {err.get('msg')}" if location else str(err.get('msg')))
        return error_response('; '.join(problems) or 'Invalid request body', status.HTTP_400_BAD_REQUEST)
