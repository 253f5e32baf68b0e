from typing import Optional

from fastapi import status
from fastapi.responses import JSONResponse


class GatewayError(Exception):
    """
    Base error for request-terminal failures.
    Carries the HTTP status and the message sent back as {"error": message}.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = "Internal Server Error"

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content={"error": self.message})


# =========================
# Authentication
# =========================

class AuthenticationMissing(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "X-API-Key header is missing"


class AuthenticationRequired(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "API key data is missing"


class AuthenticationInvalid(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Invalid or unauthorized API Key"


# =========================
# Authorization
# =========================

class AuthorizationDenied(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "API key does not have the required purpose"


# =========================
# Persistence
# =========================

class PersistenceTransientFailure(Exception):
    """
    A durable write wrote nothing. Callers keep their data and retry later.
    """


def internal_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred.",
        },
    )
