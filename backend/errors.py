# errors.py
class FitzError(Exception):
    """Base class for failures surfaced to operators."""
    status_code = 500


class NotFoundError(FitzError, LookupError):
    """A referenced ticket or guest no longer exists."""
    status_code = 404


class RemoteError(FitzError):
    """The store or an outbound service failed."""
    status_code = 502


class ValidationError(FitzError, ValueError):
    """A required field is missing; raised before any call is made."""
    status_code = 400
