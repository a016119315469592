"""File-system backed job queue: one directory per archive item."""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import stat
import time
from pathlib import Path
from typing import Iterator

from .errors import JobError
from .models import Job
from .utils import (
    BUILD_DIR_NAME,
    JOB_FILE_NAME,
    LOCK_FILE_NAME,
    LOG_FILE_NAME,
    is_safe_item_id,
    read_json,
)

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"


class JobStore:
    """Persistence for queued jobs under a single queue root.

    Layout::

        <queue_dir>/<itemId>/job.json    descriptor (0600, carries a credential)
        <queue_dir>/<itemId>/lock        claim marker
        <queue_dir>/<itemId>/log.txt     per-run log
        <queue_dir>/<itemId>/build/      per-page intermediates
        <queue_dir>/<itemId>/<itemId>.djvu
    """

    def __init__(self, queue_dir: Path) -> None:
        self.queue_dir = Path(queue_dir)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def job_dir(self, item_id: str) -> Path:
        if not is_safe_item_id(item_id):
            raise JobError(f"Unsafe item identifier {item_id!r}")
        return self.queue_dir / item_id

    def job_file(self, item_id: str) -> Path:
        return self.job_dir(item_id) / JOB_FILE_NAME

    def lock_file(self, item_id: str) -> Path:
        return self.job_dir(item_id) / LOCK_FILE_NAME

    def log_file(self, item_id: str) -> Path:
        return self.job_dir(item_id) / LOG_FILE_NAME

    def build_dir(self, item_id: str) -> Path:
        return self.job_dir(item_id) / BUILD_DIR_NAME

    def document_path(self, job: Job) -> Path:
        return self.job_dir(job.ia_id) / f"{job.ia_id}.{job.format}"

    def ensure_job_dir(self, item_id: str) -> Path:
        path = self.job_dir(item_id)
        path.mkdir(parents=True, exist_ok=True)
        if not os.access(path, os.W_OK):
            raise JobError(f"Unable to write to job directory {path}")
        return path

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def job_files(self) -> Iterator[Path]:
        """Yield every ``<queue>/*/job.json`` in file-system order."""
        if not self.queue_dir.is_dir():
            return
        for entry in os.scandir(self.queue_dir):
            if not entry.is_dir():
                continue
            job_file = Path(entry.path) / JOB_FILE_NAME
            if job_file.is_file():
                yield job_file

    def enumerate(self) -> Iterator[Job]:
        """Lazily load each pending job descriptor.

        Directories removed (e.g. by the pruner) between listing and reading
        are skipped; unreadable descriptors are logged and skipped.
        """
        for job_file in self.job_files():
            try:
                data = read_json(job_file)
            except FileNotFoundError:
                continue
            except (json.JSONDecodeError, OSError) as exc:
                log.warning("Skipping unreadable job descriptor %s: %s", job_file, exc)
                continue
            try:
                yield Job.from_dict(data)
            except (KeyError, TypeError, AttributeError) as exc:
                log.warning("Skipping malformed job descriptor %s: %s", job_file, exc)

    def load(self, item_id: str) -> Job:
        return Job.from_dict(read_json(self.job_file(item_id)))

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def is_locked(self, job: Job) -> bool:
        return self.lock_file(job.ia_id).exists()

    def claim(self, job: Job) -> bool:
        """Atomically create the lock marker.

        Returns ``True`` only for the single caller whose exclusive create
        succeeded; every other concurrent claimer gets ``False``.
        """
        lock_path = self.lock_file(job.ia_id)
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as exc:
            if exc.errno == errno.ENOENT:
                # Job directory vanished (pruned) before we could claim it.
                return False
            raise
        os.close(fd)
        return True

    def is_stale(self, job: Job, threshold_s: float, *, now: float | None = None) -> bool:
        """True when the job's log exists and has not been touched for *threshold_s*."""
        log_path = self.log_file(job.ia_id)
        try:
            mtime = log_path.stat().st_mtime
        except FileNotFoundError:
            return False
        now = time.time() if now is None else now
        return mtime < now - threshold_s

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def write(self, job: Job) -> Path:
        """Write the descriptor, restricting it to the owner before any content lands."""
        self.ensure_job_dir(job.ia_id)
        job_file = self.job_file(job.ia_id)
        fd = os.open(job_file, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        try:
            # Pre-existing descriptors keep their old mode through O_CREAT.
            os.fchmod(fd, stat.S_IRUSR | stat.S_IWUSR)
            payload = json.dumps(job.to_dict(), ensure_ascii=False).encode("utf-8")
            os.write(fd, payload)
        finally:
            os.close(fd)
        log.info("Queued job %s (%s from %s)", job.ia_id, job.format, job.file_source)
        return job_file

    def delete(self, job_or_id: Job | str) -> None:
        """Remove the whole job directory tree; errors propagate."""
        item_id = job_or_id.ia_id if isinstance(job_or_id, Job) else job_or_id
        path = self.job_dir(item_id)
        shutil.rmtree(path)
        log.info("Deleted job directory %s", path)

    def read_log(self, item_id: str) -> str | None:
        path = self.log_file(item_id)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def job_logger(self, job: Job) -> logging.Logger:
        """Return a logger that appends to this job's ``log.txt``.

        Records also propagate to the process-wide handlers. Call
        :func:`close_job_logger` when the job is finished.
        """
        job_dir = self.ensure_job_dir(job.ia_id)
        logger = logging.getLogger(f"iaupload.job.{job.ia_id}")
        logger.setLevel(logging.DEBUG)
        close_job_logger(logger)
        handler = logging.FileHandler(job_dir / LOG_FILE_NAME, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, "%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
        return logger


def close_job_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
