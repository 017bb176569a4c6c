"""
Service errors.

Services raise these directly; FastAPI renders them like any other
HTTPException, as {"detail": message} with the class status code.
"""
from fastapi import HTTPException


class ServiceError(HTTPException):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(status_code=self.status_code, detail=detail)

    @property
    def message(self) -> str:
        return self.detail


class InvalidInput(ServiceError):
    status_code = 400


class Conflict(ServiceError):
    status_code = 400


class NotFound(ServiceError):
    status_code = 404


class Forbidden(ServiceError):
    status_code = 403


# Account flows
class AlreadyVerified(ServiceError):
    status_code = 400


class OTPExpired(ServiceError):
    status_code = 400


class InvalidOTP(ServiceError):
    status_code = 400


class RateLimited(ServiceError):
    status_code = 400


class Unverified(ServiceError):
    status_code = 403


class InvalidCredentials(ServiceError):
    status_code = 401


# Orders
class InvalidVariant(ServiceError):
    status_code = 400


class InsufficientStock(ServiceError):
    status_code = 400


class InvalidTransition(ServiceError):
    status_code = 400
