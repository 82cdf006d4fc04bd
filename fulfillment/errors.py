"""
Error taxonomy for the Fulfillment service.

Every business-rule failure raised by the use cases is a FulfillmentError
carrying a machine-readable kind, the HTTP status it maps to, and a list of
{path, message} issues. Infrastructure errors (database, Redis, FileHub) are
not wrapped and propagate unchanged.
"""
from typing import Dict, List


class FulfillmentError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, path: str, message: str):
        super().__init__(message)
        self.issues: List[Dict[str, str]] = [{"path": path, "message": message}]

    @property
    def message(self) -> str:
        return self.issues[0]["message"]

    def to_dict(self) -> dict:
        return {"kind": self.kind, "errors": self.issues}


class NotFoundError(FulfillmentError):
    kind = "not_found"
    status_code = 404


class BadRequestError(FulfillmentError):
    kind = "bad_request"
    status_code = 400


class UnauthorizedError(FulfillmentError):
    kind = "unauthorized"
    status_code = 401


class ForbiddenError(FulfillmentError):
    kind = "forbidden"
    status_code = 403


class TooManyRequestsError(FulfillmentError):
    kind = "too_many_requests"
    status_code = 429
