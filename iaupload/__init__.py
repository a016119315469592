"""Internet Archive -> DjVu -> Wikimedia Commons conversion job queue.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from iaupload import X`` works.
"""

from .clients import CommonsClient, IaClient, build_wiki_session
from .config import Config, load_config
from .errors import (
    ConfigurationError,
    IaUploadError,
    JobError,
    SubmissionError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    UnknownFileSourceError,
    UploadError,
    UploadNotPermittedError,
)
from .languages import LANGUAGE_CATEGORIES, language_category, normalize_language_code
from .makers import (
    MAKERS,
    DjvuMaker,
    Jp2DjvuMaker,
    NativeMaker,
    PdfDjvuMaker,
    maker_for,
    remove_first_page,
)
from .models import AccessToken, Job, JobStatus
from .runner import list_jobs, prune_jobs, requires_queue, run_jobs, submit_job
from .store import JobStore, close_job_logger
from .tools import ToolRunner
from .utils import (
    JOB_FILE_NAME,
    LOCK_FILE_NAME,
    LOG_FILE_NAME,
    UPLOAD_COMMENT,
    page_file_name,
    select_source_file,
    sorted_pages,
)

__all__ = [
    # Models
    "AccessToken",
    "Job",
    "JobStatus",
    # Config
    "Config",
    "load_config",
    # Errors
    "IaUploadError",
    "ToolError",
    "ToolNotFoundError",
    "ToolExecutionError",
    "ConfigurationError",
    "UnknownFileSourceError",
    "UploadNotPermittedError",
    "JobError",
    "SubmissionError",
    "UploadError",
    # Constants
    "JOB_FILE_NAME",
    "LOCK_FILE_NAME",
    "LOG_FILE_NAME",
    "UPLOAD_COMMENT",
    "LANGUAGE_CATEGORIES",
    # Utils
    "page_file_name",
    "sorted_pages",
    "select_source_file",
    "normalize_language_code",
    "language_category",
    # Store
    "JobStore",
    "close_job_logger",
    # Tools
    "ToolRunner",
    # Clients
    "IaClient",
    "CommonsClient",
    "build_wiki_session",
    # Makers
    "DjvuMaker",
    "NativeMaker",
    "Jp2DjvuMaker",
    "PdfDjvuMaker",
    "MAKERS",
    "maker_for",
    "remove_first_page",
    # Runner
    "requires_queue",
    "submit_job",
    "run_jobs",
    "prune_jobs",
    "list_jobs",
]
