from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from dcabot.auth.session import AuthSession
from dcabot.broker.capability import BrokerError
from dcabot.clock import utc_now
from dcabot.errors import AuthenticationError, DcaError, PasswordMissingError, PersistenceError
from dcabot.execution.engine import ExecutionEngine
from dcabot.jobs.models import Job, OrderPassed
from dcabot.jobs.schedule import due_jobs, job_is_due
from dcabot.storage.credentials import CredentialSource
from dcabot.storage.job_store import JobStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchReport:
    due: list[str] = field(default_factory=list)
    executed: list[OrderPassed] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def run_batch(
    *,
    credentials: CredentialSource,
    job_store: JobStore,
    engine: ExecutionEngine,
    session: AuthSession,
    timezone_name: str = "UTC",
    clock: Callable[[], datetime] = utc_now,
) -> BatchReport:
    """
    Unattended pass over every due job.

    Without a stored password nothing runs: the due jobs are attached to
    ``PasswordMissingError`` and the job file is written back unchanged.
    """
    jobs = job_store.load()
    creds = credentials.read()
    if not creds.client_id:
        raise AuthenticationError("client_id not found")

    if not creds.password:
        pending = due_jobs(jobs, clock(), timezone_name)
        LOGGER.warning("No stored password, %d due job(s) left for an interactive run", len(pending))
        job_store.save(jobs)
        raise PasswordMissingError(pending)

    # No one is around to type an MFA code here, MfaRequiredError goes to the caller.
    session.login(creds.client_id, creds.password)

    report = BatchReport()
    try:
        for job in jobs:
            if not job_is_due(job, clock(), timezone_name):
                continue
            report.due.append(job.id)
            try:
                report.executed.append(engine.execute(job, session))
            except PersistenceError:
                raise
            except (DcaError, BrokerError, NotImplementedError) as exc:
                LOGGER.error("Error running job %s: %s", job.id, exc)
                report.failures[job.id] = str(exc)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Unhandled error running job %s", job.id)
                report.failures[job.id] = f"{type(exc).__name__}: {exc}"
    finally:
        job_store.save(jobs)

    return report


def run_one(job: Job, session: AuthSession, *, engine: ExecutionEngine, job_store: JobStore) -> OrderPassed:
    """Run a single job picked by the user; errors go back untouched for display."""
    order = engine.execute(job, session)
    LOGGER.info("Job %s run successfully", job.id)
    job_store.upsert(job)
    return order
