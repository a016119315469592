"""Command line for the conversion job queue.

Usage:
    python ia_upload.py jobs
    python ia_upload.py prune --verbose
    python ia_upload.py list --json
    python ia_upload.py log <ITEM_ID>
    python ia_upload.py submit <ITEM_ID> "<Commons name>" --description "..." \\
        --token-key KEY --token-secret SECRET
"""

from __future__ import annotations

import argparse
import json
import logging
from logging.handlers import RotatingFileHandler
import os
import sys
import time
from pathlib import Path

from .config import Config, load_config
from .errors import IaUploadError

log = logging.getLogger(__name__)


def _setup_logging(
    *,
    verbose: bool,
    detailed_logging: bool,
    log_file: Path | None,
) -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(root_level)

    console_fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    detailed_fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "%(process)d | %(filename)s:%(lineno)d | %(message)s"
    )
    formatter = logging.Formatter(
        detailed_fmt if detailed_logging else console_fmt,
        "%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_fmt, "%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests_oauthlib").setLevel(logging.WARNING)
    logging.getLogger("oauthlib").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Internet Archive -> DjVu -> Wikimedia Commons job queue"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("IAUPLOAD_CONFIG", "config.ini")),
        help="INI config file (default: config.ini or $IAUPLOAD_CONFIG)",
    )
    parser.add_argument(
        "--queue-dir",
        type=Path,
        default=None,
        help="Job queue root directory (overrides the config file)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--detailed-logging",
        action="store_true",
        help="Enable detailed logging (process id, file/line)",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional log file path")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("jobs", help="Run DjVu conversion jobs")

    prune = sub.add_parser("prune", help="Delete old job queue items")
    prune.add_argument(
        "--retention-days",
        type=float,
        default=None,
        help="Delete jobs whose descriptor is older than this (default: config, 7)",
    )

    listing = sub.add_parser("list", help="Show queued jobs and their state")
    listing.add_argument("--json", action="store_true", help="Print JSON instead of text")

    show_log = sub.add_parser("log", help="Print a job's log")
    show_log.add_argument("item_id")

    submit = sub.add_parser("submit", help="Queue a conversion job")
    submit.add_argument("item_id", help="Internet Archive identifier")
    submit.add_argument("commons_name", help="Target file name on Commons (no extension)")
    submit.add_argument("--description", required=True, help="File description page text")
    submit.add_argument("--format", choices=["djvu", "pdf"], default="djvu")
    submit.add_argument("--file-source", choices=["djvu", "pdf", "jp2"], default="jp2")
    submit.add_argument("--remove-first-page", action="store_true")
    submit.add_argument(
        "--token-key",
        default=os.environ.get("IAUPLOAD_TOKEN_KEY", ""),
        help="User OAuth access token key (default: $IAUPLOAD_TOKEN_KEY)",
    )
    submit.add_argument(
        "--token-secret",
        default=os.environ.get("IAUPLOAD_TOKEN_SECRET", ""),
        help="User OAuth access token secret (default: $IAUPLOAD_TOKEN_SECRET)",
    )
    return parser.parse_args(argv)


def _run_command(args: argparse.Namespace, config: Config) -> int:
    from .clients import CommonsClient, IaClient, build_wiki_session
    from .models import AccessToken, Job
    from .runner import list_jobs, prune_jobs, run_jobs, submit_job
    from .store import JobStore

    store = JobStore(config.queue_dir)

    if args.command == "jobs":
        t0 = time.perf_counter()
        processed = run_jobs(config, store)
        log.info("Processed %s job(s) in %.2fs", processed, time.perf_counter() - t0)
        return 0

    if args.command == "prune":
        retention = args.retention_days if args.retention_days is not None else config.retention_days
        for item_id in prune_jobs(store, retention):
            if args.verbose:
                print(f"Deleted {store.queue_dir / item_id}")
        return 0

    if args.command == "list":
        statuses = list_jobs(store, config.stale_after_hours * 60 * 60)
        if args.json:
            print(json.dumps([s.to_dict() for s in statuses], indent=2, ensure_ascii=False))
        else:
            for s in statuses:
                state = "failed" if s.failed else ("running" if s.locked else "queued")
                print(f"{s.ia_id}\t{s.full_commons_name}\t{s.file_source}\t{state}")
        return 0

    if args.command == "log":
        text = store.read_log(args.item_id)
        print(text if text is not None else "No log available.")
        return 0

    if args.command == "submit":
        token = AccessToken(key=args.token_key, secret=args.token_secret)
        job = Job(
            ia_id=args.item_id,
            commons_name=args.commons_name,
            format=args.format,
            file_source=args.file_source,
            description=args.description,
            remove_first_page=args.remove_first_page,
            user_access_token=token,
        )
        wiki = CommonsClient(config.wiki_base_url, build_wiki_session(config, token))
        path = submit_job(store, job, wiki=wiki, ia_client=IaClient(config.archive_base_url))
        if path is None:
            log.info("%s does not need conversion; upload it directly", job.ia_id)
        else:
            log.info("Queued %s at %s", job.ia_id, path)
        return 0

    raise ValueError(f"Unknown command {args.command}")


def main(argv: list[str] | None = None) -> int:
    """Run one queue command and return the process exit status."""
    args = parse_args(argv)
    _setup_logging(
        verbose=args.verbose,
        detailed_logging=args.detailed_logging,
        log_file=args.log_file,
    )
    try:
        config = load_config(args.config)
        if args.queue_dir is not None:
            config.queue_dir = args.queue_dir
        log.debug("Queue directory: %s", config.queue_dir)
        return _run_command(args, config)
    except IaUploadError as exc:
        log.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
