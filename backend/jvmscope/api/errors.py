"""
Mapping of discovery engine exceptions onto HTTP responses.

Only the errors a caller can act on reach the HTTP layer:

=========================  ======
Exception                  Status
=========================  ======
AuthorizationError         401
AdmissionError             400
TopologyConflictError      409
TargetConnectionError      400
PluginNotFoundError        404
BuiltinPluginError         403
=========================  ======
"""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from jvmscope.core.exceptions import (
    AdmissionError,
    AuthorizationError,
    TargetConnectionError,
    TopologyConflictError,
)
from jvmscope.core.logging import get_logger
from jvmscope.discovery.plugins import BuiltinPluginError, PluginNotFoundError

logger = get_logger(__name__)

_STATUS_BY_ERROR: dict[type[Exception], int] = {
    AuthorizationError: status.HTTP_401_UNAUTHORIZED,
    AdmissionError: status.HTTP_400_BAD_REQUEST,
    TopologyConflictError: status.HTTP_409_CONFLICT,
    TargetConnectionError: status.HTTP_400_BAD_REQUEST,
    PluginNotFoundError: status.HTTP_404_NOT_FOUND,
    BuiltinPluginError: status.HTTP_403_FORBIDDEN,
}


def register_exception_handlers(application: FastAPI) -> None:
    """Install one JSON handler per discovery exception type."""
    for error_type, status_code in _STATUS_BY_ERROR.items():
        application.add_exception_handler(error_type, _handler_for(status_code))


def _handler_for(status_code: int):
    async def _handle(request: Request, exc: Exception) -> JSONResponse:
        logger.info(
            "Request rejected: %s",
            exc,
            extra={"action": "request_rejected", "target": request.url.path},
        )
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return _handle
