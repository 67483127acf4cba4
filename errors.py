"""
Domain exceptions for the Inflio clip backend.
Services raise these; routers translate them into HTTP responses.
"""

from typing import Optional


class InflioError(Exception):
    """Base class for errors that carry an HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProjectNotFoundError(InflioError):
    status_code = 404


class PersonaNotFoundError(InflioError):
    status_code = 404


class ForbiddenError(InflioError):
    status_code = 403


class ValidationError(InflioError):
    status_code = 400


class JobAlreadyDispatchedError(InflioError):
    """The project already holds an external job for this task type."""

    status_code = 409


class JobNotDispatchedError(InflioError):
    """The operation needs a stored external job id and there is none."""

    status_code = 409


class InvalidTaskTransitionError(InflioError):
    status_code = 409


class KlapNotConfiguredError(InflioError):
    status_code = 503


class KlapAPIError(InflioError):
    """A failed call to the Klap API.

    `status_code` is the vendor's HTTP status, or None for network failures.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.details = details
        self._retryable = retryable

    @property
    def transient(self) -> bool:
        """True when retrying later could succeed (network, rate limit, 5xx)."""
        if self._retryable is not None:
            return self._retryable
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class EmptyFolderError(KlapAPIError):
    """A finished Klap folder that lists no clips yet."""

    def __init__(self, folder_id: str):
        super().__init__(f"No clips available yet in folder {folder_id}", retryable=True)
        self.folder_id = folder_id
