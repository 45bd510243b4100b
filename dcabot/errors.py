from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dcabot.broker.capability import MfaChallenge
    from dcabot.jobs.models import Job


class DcaError(RuntimeError):
    """Base class for scheduler/execution errors."""


class AuthenticationError(DcaError):
    """Login or MFA submission failed; terminal for this attempt."""


class MfaRequiredError(DcaError):
    """The broker wants a one-time code before the session is usable."""

    def __init__(self, challenge: MfaChallenge, message: str = "mfa required"):
        super().__init__(message)
        self.challenge = challenge


class PasswordMissingError(DcaError):
    """
    Unattended run found no stored password.

    Carries the jobs that were due at that instant so an interactive surface
    can offer to run them once the user has typed credentials.
    """

    def __init__(self, pending_jobs: list[Job], message: str = "password not found"):
        super().__init__(message)
        self.pending_jobs = pending_jobs


class MarketClosedError(DcaError):
    pass


class MarketStatusError(DcaError):
    """Market status could not be determined."""


class QuoteLookupError(DcaError):
    pass


class ResolutionError(DcaError):
    """Order arguments do not resolve to a share count."""


class OrderPlacementError(DcaError):
    pass


class PersistenceError(DcaError):
    pass


class StoreIOError(PersistenceError):
    """Store could not be read or written; retrying may succeed."""


class CorruptStoreError(PersistenceError):
    """Store content is not valid; retrying will not help."""


class JobNotFoundError(DcaError):
    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id
