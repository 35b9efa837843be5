from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from payment_api.logging_config import get_logger


logger = get_logger(__name__)


class PaymentAPIError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentAPIError):
    status_code = 400


class MissingPlayerIdentifier(ValidationError):
    """Provider payment carries neither a metadata username nor an external reference."""


class AuthenticationError(PaymentAPIError):
    status_code = 401


class NotFoundError(PaymentAPIError):
    status_code = 404


class ConflictError(PaymentAPIError):
    status_code = 409


class TransientInfraError(PaymentAPIError):
    """Storage or provider failure the caller should retry."""

    status_code = 503


class TransactionAlreadyExists(Exception):
    """Raised by the ledger when an insert collides on the unique external id."""

    def __init__(self, external_id: str):
        super().__init__(f"transaction already exists: {external_id}")
        self.external_id = external_id


class InvalidTransition(Exception):
    pass


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PaymentAPIError)
    async def payment_api_error_handler(request: Request, exc: PaymentAPIError):
        if isinstance(exc, TransientInfraError):
            logger.error(
                "Transient failure path=%s error=%s",
                request.url.path,
                exc.message,
                exc_info=exc.__cause__,
            )
            return JSONResponse(status_code=exc.status_code, content={"error": "Service temporarily unavailable"})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
