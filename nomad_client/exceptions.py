from __future__ import annotations

from typing import Any


class NomadError(Exception):
    """Base exception for Nomad-related errors."""

    pass


class NomadConfigError(NomadError):
    """Raised when client credentials or TLS settings are invalid."""

    pass


class NomadLoaderError(NomadError):
    """Raised when a job file cannot be loaded or fails validation."""

    pass


class NomadRequestError(NomadError):
    """Raised when a request to the Nomad API fails.

    Attributes:
        method: The HTTP method of the failed request.
        path: The API path of the failed request.
        status_code: The HTTP status code, or ``None`` if no response arrived.
    """

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        path: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.method = method
        self.path = path
        self.status_code = status_code


class NomadConnectionError(NomadRequestError):
    """Raised when the Nomad agent cannot be reached."""

    pass


class NomadTimeoutError(NomadRequestError):
    """Raised when a single request to the Nomad agent times out."""

    pass


class NomadResponseError(NomadRequestError):
    """Raised when the Nomad agent answers with a non-2xx status.

    Attributes:
        body: The decoded response body, if any.
    """

    def __init__(self, message: str, *, body: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.body = body


class NomadBadRequestError(NomadResponseError):
    """Raised when Nomad rejects a request as malformed (HTTP 400)."""

    pass


class NomadPermissionError(NomadResponseError):
    """Raised when the ACL token is missing or lacks permission (HTTP 401/403)."""

    pass


class NomadNotFoundError(NomadResponseError):
    """Raised when the requested Nomad object does not exist (HTTP 404)."""

    pass
