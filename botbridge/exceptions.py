"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients
  (decryption failures, corrupted state, etc.). The global handler logs the
  full message at ERROR and returns a generic "Internal server error" (500).
- ``ValueError``: for *business logic* validation errors that are safe to
  forward to clients (unknown provider, bad sheet mapping, etc.). The global
  ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- ``IntegrationError`` and its subclasses: failures talking to or configuring
  a connected system (SharePoint, the chatbot platform, a helpdesk vendor).
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``botbridge/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class IntegrationError(Exception):
    """Base class for connector failures."""


class ConfigurationError(IntegrationError):
    """Site, library, routing or provider configuration is unusable.

    Fatal at registration time: setup aborts and the message is shown to the
    operator.
    """


class AuthError(IntegrationError):
    """A credential could not be acquired for an upstream call."""


class RemoteError(IntegrationError):
    """An upstream HTTP call failed.

    Carries the upstream status code (when one was received) and the message
    extracted from the response body.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class NotFoundError(RemoteError):
    """The upstream resource does not exist (HTTP 404)."""
