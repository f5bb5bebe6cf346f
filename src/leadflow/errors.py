"""Error taxonomy shared by the messaging and credential subsystems.

Every error carries a machine-readable ``kind`` and the HTTP status the API
layer answers with. Partial refresh success is not an error; see
``leadflow.credentials.refresher.RefreshOutcome``.
"""

from __future__ import annotations

from typing import Any


class LeadflowError(Exception):
    """Base class for errors surfaced to API consumers."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Render as the JSON error envelope body."""
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(LeadflowError):
    """Missing or malformed required input."""

    kind = "validation_error"
    status_code = 400


class AuthenticationError(LeadflowError):
    """Bearer token present but invalid or expired."""

    kind = "authentication_error"
    status_code = 401


class NotFoundError(LeadflowError):
    """Requested contact or credential does not exist."""

    kind = "not_found"
    status_code = 404


class UpstreamError(LeadflowError):
    """Remote platform call failed or returned an error body."""

    kind = "upstream_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any | None = None,
    ) -> None:
        super().__init__(message, details=details)
        if status_code is not None and 400 <= status_code < 600:
            self.status_code = status_code


class PersistenceError(LeadflowError):
    """Local read/write failure (snapshot file, token store)."""

    kind = "persistence_error"
    status_code = 500


class ConfigurationError(LeadflowError):
    """Required server configuration (app secret, client id) is missing."""

    kind = "configuration_error"
    status_code = 500
