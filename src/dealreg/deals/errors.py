"""Error taxonomy for conflict detection and resolution.

- ValidationError: malformed input (unknown ids, bad resolution). Never retried.
- RepositoryUnavailable: transient storage failure or timeout. Retried with
  backoff at the call site, then surfaced as 503.
- IntegrityViolation: uniqueness breach or a transition out of a terminal
  state. Fatal, never retried.
"""

from __future__ import annotations


class DealRegistrationError(Exception):
    """Base class for all deal-registration domain errors."""


class ValidationError(DealRegistrationError):
    """Input to detection or resolution is malformed or refers to nothing."""


class NotFoundError(ValidationError):
    """A referenced deal or conflict does not exist."""


class RepositoryUnavailable(DealRegistrationError):
    """The store did not answer in time or the connection failed."""


class IntegrityViolation(DealRegistrationError):
    """A store invariant was breached or a terminal record was transitioned."""
