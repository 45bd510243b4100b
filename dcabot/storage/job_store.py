from __future__ import annotations

import logging
import threading
from pathlib import Path

from pydantic import ValidationError

from dcabot.errors import CorruptStoreError, JobNotFoundError, StoreIOError
from dcabot.jobs.models import Job
from dcabot.storage.files import parse_json, read_text, write_json

LOGGER = logging.getLogger(__name__)

JOBS_FILE_NAME = "jobs.json"


class JobStore:
    """
    jobs.json as a whole-file JSON array.

    Every mutation is load-modify-save of the full list. There is no
    cross-process locking: a concurrent writer may lose updates.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.lock = threading.RLock()

    @classmethod
    def in_dir(cls, data_dir: str | Path, file_name: str = JOBS_FILE_NAME) -> "JobStore":
        return cls(Path(data_dir) / file_name)

    def load(self) -> list[Job]:
        with self.lock:
            if not self.path.exists():
                self._create_empty()
                return []
            content = read_text(self.path)
            if not content.strip():
                return []
            raw = parse_json(self.path, content)
            if not isinstance(raw, list):
                raise CorruptStoreError(f"{self.path} must hold a JSON array of jobs")
            try:
                return [Job.model_validate(item) for item in raw]
            except ValidationError as exc:
                raise CorruptStoreError(f"Invalid job record in {self.path}: {exc}") from exc

    def save(self, jobs: list[Job]) -> None:
        with self.lock:
            write_json(self.path, [job.to_json() for job in jobs])
            LOGGER.debug("Saved %d jobs to %s", len(jobs), self.path)

    def get(self, job_id: str) -> Job:
        for job in self.load():
            if job.id == job_id:
                return job
        raise JobNotFoundError(job_id)

    def upsert(self, job: Job) -> None:
        with self.lock:
            jobs = self.load()
            for index, existing in enumerate(jobs):
                if existing.id == job.id:
                    LOGGER.debug("Updating job %s (last_run %d -> %d)", job.id, existing.last_run, job.last_run)
                    jobs[index] = job
                    break
            else:
                LOGGER.debug("Adding job %s", job.id)
                jobs.append(job)
            self.save(jobs)

    def delete(self, job_id: str) -> None:
        with self.lock:
            jobs = self.load()
            kept = [job for job in jobs if job.id != job_id]
            if len(kept) == len(jobs):
                LOGGER.debug("Delete of unknown job %s ignored", job_id)
            self.save(kept)

    def _create_empty(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("x", encoding="utf-8"):
                pass
        except FileExistsError:
            return
        except OSError as exc:
            raise StoreIOError(f"Could not create {self.path}: {exc}") from exc
