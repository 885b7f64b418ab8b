"""Error taxonomy shared by the post service and the image worker.

HTTP-facing errors carry the status code the post service answers with.
``ProcessingFailure`` and its subclasses never leave the worker as exceptions:
they are turned into failure result messages.
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Missing or malformed caller input."""

    status_code = 400


class InvalidArgument(ValidationError):
    status_code = 400


class Unauthorized(ValidationError):
    """No caller identity was propagated by the gateway."""

    status_code = 401


class NotFoundError(AppError):
    status_code = 404


class UpstreamUnavailable(AppError):
    """Queue or database unreachable. Fatal at startup, retryable afterwards."""

    status_code = 503


class ProcessingFailure(AppError):
    pass


class SourceUnavailable(ProcessingFailure):
    """The staged upload is not readable from the worker."""


class MalformedMessage(AppError):
    """A queue message body that can never be processed."""
