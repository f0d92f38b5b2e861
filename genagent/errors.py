"""Error taxonomy shared by the job core and the vendor integrations."""

from __future__ import annotations


class GenAgentError(Exception):
    """Base class for all errors raised by genagent."""


class SessionUnavailable(GenAgentError):
    """The shared browser session could not be obtained or died mid-task."""


class VendorError(GenAgentError):
    """A vendor network/API call failed (non-2xx, malformed payload)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class VendorRejected(VendorError):
    """The vendor explicitly refused the job. Not worth polling again."""


class ValidationError(GenAgentError):
    """Malformed caller input. Raised before any job record exists."""


class JobNotFound(GenAgentError):
    """No job with the requested id is known."""


class InvalidTransition(GenAgentError):
    """A job status change not allowed by the state machine."""
