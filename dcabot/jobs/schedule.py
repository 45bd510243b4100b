from __future__ import annotations

from datetime import datetime

from dcabot.clock import from_timestamp, iso_week_number, to_timezone
from dcabot.jobs.models import DailySchedule, Job, MonthlySchedule, Schedule, WeeklySchedule


def is_due(schedule: Schedule, now: datetime, last_run: datetime) -> bool:
    """
    Calendar boundary test: a job is due on the first evaluation after a
    day/week/month boundary has been crossed since ``last_run``.

    ``day`` on weekly/monthly schedules is not consulted. Week and month
    numbers are compared without the year, so December -> January does not
    count as a week/month crossing on its own (the date test still fires).
    """
    new_day = now.date() > last_run.date()
    if isinstance(schedule, DailySchedule):
        return new_day
    if isinstance(schedule, WeeklySchedule):
        return new_day or iso_week_number(now) > iso_week_number(last_run)
    if isinstance(schedule, MonthlySchedule):
        return new_day or now.month > last_run.month
    raise TypeError(f"Unsupported schedule {type(schedule).__name__}")


def job_is_due(job: Job, now: datetime, timezone_name: str = "UTC") -> bool:
    return is_due(
        job.schedule,
        to_timezone(now, timezone_name),
        from_timestamp(job.last_run, timezone_name),
    )


def due_jobs(jobs: list[Job], now: datetime, timezone_name: str = "UTC") -> list[Job]:
    return [job for job in jobs if job_is_due(job, now, timezone_name)]
