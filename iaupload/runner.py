"""Queue operations: submit, run, prune and list jobs."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from .clients import CommonsClient, IaClient, build_wiki_session
from .config import Config
from .errors import SubmissionError, UploadNotPermittedError
from .makers import maker_for, remove_first_page
from .models import Job, JobStatus
from .store import JobStore, close_job_logger
from .tools import ToolRunner
from .utils import UPLOAD_COMMENT, is_safe_item_id, strip_target_extension

log = logging.getLogger(__name__)

WikiClientFactory = Callable[[Job, logging.Logger], CommonsClient]
ToolRunnerFactory = Callable[[logging.Logger], ToolRunner]


def default_wiki_client_factory(config: Config) -> WikiClientFactory:
    def _factory(job: Job, logger: logging.Logger) -> CommonsClient:
        session = build_wiki_session(config, job.user_access_token)
        return CommonsClient(config.wiki_base_url, session, logger)

    return _factory


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


def requires_queue(job: Job) -> bool:
    """DjVu built from a PDF or from page images is too slow to do in a request."""
    return job.format == "djvu" and job.file_source in ("pdf", "jp2")


def submit_job(
    store: JobStore,
    job: Job,
    *,
    wiki: CommonsClient,
    ia_client: IaClient,
) -> Optional[Path]:
    """Validate a conversion request and queue it.

    Returns the descriptor path, or ``None`` when the job does not need the
    queue (the archive file can be uploaded as-is).

    Raises:
        SubmissionError: a field is missing, the target already exists on
            the wiki, or the item does not exist on the archive.
    """
    job.commons_name = strip_target_extension(wiki.normalize_page_title(job.commons_name))
    if not job.ia_id or not job.commons_name or not job.description:
        raise SubmissionError("You must set all the fields of the form")
    if not wiki.is_page_title_valid(job.commons_name):
        raise SubmissionError(f"Invalid file name {job.commons_name!r}")
    if wiki.page_exists(f"File:{job.full_commons_name}"):
        raise SubmissionError(f"File:{job.full_commons_name} already exists")

    metadata = ia_client.file_details(job.ia_id)
    if metadata is None:
        raise SubmissionError(f"Item {job.ia_id} not found on the Internet Archive")
    identifier = (metadata.get("metadata") or {}).get("identifier") or [job.ia_id]
    job.ia_id = identifier[0] if isinstance(identifier, list) else str(identifier)
    if not is_safe_item_id(job.ia_id):
        raise SubmissionError(f"Unusable item identifier {job.ia_id!r}")

    if not requires_queue(job):
        log.info("%s needs no conversion; not queued", job.ia_id)
        return None
    return store.write(job)


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


def run_jobs(
    config: Config,
    store: Optional[JobStore] = None,
    *,
    ia_client: Optional[IaClient] = None,
    wiki_client_factory: Optional[WikiClientFactory] = None,
    tool_runner_factory: ToolRunnerFactory = ToolRunner,
) -> int:
    """Process every unlocked job once, in directory order.

    Any failure aborts the whole run: the failing job keeps its lock and its
    partial artifacts, and the exception propagates to the caller.

    Returns:
        Number of jobs uploaded and removed from the queue.
    """
    store = store or JobStore(config.queue_dir)
    ia_client = ia_client or IaClient(config.archive_base_url)
    wiki_client_factory = wiki_client_factory or default_wiki_client_factory(config)

    processed = 0
    for job in store.enumerate():
        if store.is_locked(job):
            log.debug("Skipping locked job %s", job.ia_id)
            continue

        # Environment checks come first so a bad credential or source type
        # never leaves a lock or a log behind.
        wiki = wiki_client_factory(job, log)
        if not wiki.can_upload():
            log.critical("Credential for %s cannot upload to %s", job.ia_id, config.wiki_base_url)
            raise UploadNotPermittedError(f"Unable to upload to {config.wiki_base_url}")
        maker_cls = maker_for(job)

        if not store.claim(job):
            log.info("Job %s was claimed by another runner", job.ia_id)
            continue

        job_log = store.job_logger(job)
        wiki.log = job_log
        tools = tool_runner_factory(job_log)
        try:
            job_log.info("Creating %s for %s from %s", job.format, job.ia_id, job.file_source)
            maker = maker_cls(
                job,
                store.job_dir(job.ia_id),
                ia_client=ia_client,
                tools=tools,
                config=config,
                logger=job_log,
            )
            document = maker.create_local_document()

            if job.remove_first_page:
                marker = document.with_name(document.name + ".first-page-removed")
                if not marker.exists():
                    job_log.info("Removing first page of %s", document.name)
                    remove_first_page(tools, document)
                    marker.touch()

            job_log.info("Uploading %s to Commons %s", document, job.full_commons_name)
            wiki.upload(job.full_commons_name, document, job.description, UPLOAD_COMMENT)
        except Exception as exc:
            job_log.critical("%s", exc, exc_info=True)
            raise
        finally:
            close_job_logger(job_log)

        store.delete(job)
        processed += 1
        log.info("Finished job %s", job.ia_id)
    return processed


# ---------------------------------------------------------------------------
# Pruning and listing
# ---------------------------------------------------------------------------


def prune_jobs(
    store: JobStore,
    retention_days: float,
    *,
    now: Optional[float] = None,
) -> list[str]:
    """Delete job directories whose descriptor is older than *retention_days*.

    Lock and failure state are ignored.
    """
    now = time.time() if now is None else now
    cutoff = now - retention_days * 24 * 60 * 60
    deleted: list[str] = []
    for job_file in list(store.job_files()):
        try:
            mtime = job_file.stat().st_mtime
        except FileNotFoundError:
            continue
        if mtime < cutoff:
            store.delete(job_file.parent.name)
            deleted.append(job_file.parent.name)
    log.info("Pruned %s job(s)", len(deleted))
    return deleted


def list_jobs(store: JobStore, stale_after_s: float) -> list[JobStatus]:
    statuses = []
    for job in store.enumerate():
        locked = store.is_locked(job)
        statuses.append(
            JobStatus(
                ia_id=job.ia_id,
                full_commons_name=job.full_commons_name,
                file_source=job.file_source,
                locked=locked,
                # A lock whose log went quiet means the run died mid-job.
                failed=locked and store.is_stale(job, stale_after_s),
                has_document=store.document_path(job).exists(),
                description=job.description,
            )
        )
    return statuses
