"""
Error taxonomy for the study hub.

Every mutating operation of the store converts these into a failed Result;
the HTTP layer maps the code to a status.
"""


class PortalError(Exception):
    code = "gateway"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(PortalError):
    """A required field is missing or malformed. Raised before any write."""
    code = "validation"


class DuplicateMaterialError(PortalError):
    """A material with the same title already exists for the subject."""
    code = "duplicate"


class GatewayError(PortalError):
    """The document store or identity provider failed."""
    code = "gateway"


class NotFoundError(PortalError):
    code = "not_found"


class ForbiddenError(GatewayError):
    """The database refused the operation for lack of permission."""
    code = "forbidden"


HTTP_STATUS = {
    "validation": 400,
    "forbidden": 403,
    "not_found": 404,
    "duplicate": 409,
    "gateway": 503,
}
