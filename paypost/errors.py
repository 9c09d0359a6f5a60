# paypost/errors.py


class PaypostError(Exception):
    """Base class for errors that cross the order controller boundary."""


class ValidationError(PaypostError):
    pass


class NotFound(PaypostError):
    pass


class InvalidState(PaypostError):
    pass


class AlreadyPaid(InvalidState):
    pass


class PublishFailed(PaypostError):
    pass


# Absorbed internally, never surfaced by the controller

class ComplianceUnavailable(Exception):
    """The compliance authority could not issue an identifier."""


class UploadFailed(Exception):
    """A single photo could not be hosted."""
