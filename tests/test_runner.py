"""Tests for running, pruning, listing and submitting queue jobs."""

from __future__ import annotations

import os
import stat
import time

import pytest

from iaupload import (
    UPLOAD_COMMENT,
    Job,
    SubmissionError,
    ToolExecutionError,
    UnknownFileSourceError,
    UploadNotPermittedError,
    list_jobs,
    prune_jobs,
    requires_queue,
    run_jobs,
    submit_job,
)

from conftest import ITEM_ID, FakeIaClient, FakeWiki, make_metadata

DAY = 24 * 60 * 60


def _run(config, store, ia, wiki, tools):
    return run_jobs(
        config,
        store,
        ia_client=ia,
        wiki_client_factory=lambda job, logger: wiki,
        tool_runner_factory=lambda logger: tools,
    )


# =========================================================================
# 1. run_jobs
# =========================================================================


class TestRunJobs:
    def test_converts_uploads_and_deletes(self, config, store, job, tools, jp2_item):
        store.write(job)
        wiki = FakeWiki()

        processed = _run(config, store, jp2_item(xml=None), wiki, tools)

        assert processed == 1
        assert not store.job_dir(ITEM_ID).exists()
        (upload,) = wiki.uploads
        assert upload["filename"] == "Example book.djvu"
        assert upload["text"] == "{{Book}}"
        assert upload["comment"] == UPLOAD_COMMENT
        assert len(upload["content"].splitlines()) == 3

    def test_removes_first_page_when_requested(self, config, store, job, tools, jp2_item):
        job.remove_first_page = True
        store.write(job)
        wiki = FakeWiki()

        _run(config, store, jp2_item(), wiki, tools)

        assert len(wiki.uploads[0]["content"].splitlines()) == 2
        assert tools.commands.count("djvm") == 2

    def test_first_page_removed_once_across_retries(self, config, store, job, tools, jp2_item):
        job.remove_first_page = True
        store.write(job)

        class FlakyWiki(FakeWiki):
            def upload(self, *args, **kwargs):
                raise RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            _run(config, store, jp2_item(), FlakyWiki(), tools)
        store.lock_file(ITEM_ID).unlink()

        wiki = FakeWiki()
        _run(config, store, jp2_item(), wiki, tools)
        assert len(wiki.uploads[0]["content"].splitlines()) == 2

    def test_skips_locked_jobs(self, config, store, job, tools, jp2_item):
        store.write(job)
        store.claim(job)
        wiki = FakeWiki()
        ia = jp2_item()

        assert _run(config, store, ia, wiki, tools) == 0
        assert wiki.uploads == []
        assert ia.downloads == []
        assert store.job_dir(ITEM_ID).exists()

    def test_credential_gate_aborts_before_job_io(self, config, store, job, tools, jp2_item):
        store.write(job)
        ia = jp2_item()

        with pytest.raises(UploadNotPermittedError):
            _run(config, store, ia, FakeWiki(can_upload=False), tools)

        assert sorted(p.name for p in store.job_dir(ITEM_ID).iterdir()) == ["job.json"]
        assert ia.details_calls == 0
        assert tools.calls == []

    def test_unknown_source_is_fatal(self, config, store, job, tools, jp2_item):
        job.file_source = "tiff"
        store.write(job)
        with pytest.raises(UnknownFileSourceError):
            _run(config, store, jp2_item(), FakeWiki(), tools)
        assert not store.lock_file(ITEM_ID).exists()

    def test_failure_keeps_lock_and_logs_critical(self, config, store, job, tools, jp2_item):
        store.write(job)
        tools.fail_on["c44"] = 2

        with pytest.raises(ToolExecutionError):
            _run(config, store, jp2_item(), FakeWiki(), tools)

        assert store.lock_file(ITEM_ID).exists()
        log_text = store.read_log(ITEM_ID)
        assert "CRITICAL" in log_text
        assert "c44" in log_text

    def test_failure_stops_the_whole_run(self, config, store, tools, jp2_item):
        for item in ("itema", "itemb"):
            store.write(Job(ia_id=item, commons_name=item, file_source="jp2", description="d"))
        tools.fail_on["c44"] = 1
        wiki = FakeWiki()

        with pytest.raises(ToolExecutionError):
            _run(config, store, jp2_item(item_id="itema"), wiki, tools)

        locked = [item for item in ("itema", "itemb") if store.lock_file(item).exists()]
        assert len(locked) == 1
        assert wiki.uploads == []

    def test_resumes_after_lock_is_cleared(self, config, store, job, tools, jp2_item):
        store.write(job)
        ia = jp2_item()
        tools.fail_on["djvm"] = 1
        with pytest.raises(ToolExecutionError):
            _run(config, store, ia, FakeWiki(), tools)

        store.lock_file(ITEM_ID).unlink()
        del tools.fail_on["djvm"]
        tools.calls.clear()
        ia.downloads.clear()
        wiki = FakeWiki()
        _run(config, store, ia, wiki, tools)

        assert "c44" not in tools.commands
        assert ia.downloads == []
        assert len(wiki.uploads) == 1


# =========================================================================
# 2. prune_jobs
# =========================================================================


class TestPrune:
    def _age(self, store, item_id, days, now):
        path = store.job_file(item_id)
        os.utime(path, (now - days * DAY, now - days * DAY))

    def test_retention_window(self, store):
        now = time.time()
        for item in ("old", "recent"):
            store.write(Job(ia_id=item, commons_name=item))
        store.claim(Job(ia_id="old", commons_name="old"))
        self._age(store, "old", 8, now)
        self._age(store, "recent", 6, now)

        deleted = prune_jobs(store, 7, now=now)

        assert deleted == ["old"]
        assert not store.job_dir("old").exists()
        assert store.job_dir("recent").exists()

    def test_locked_recent_job_kept(self, store):
        now = time.time()
        store.write(Job(ia_id="busy", commons_name="busy"))
        store.claim(Job(ia_id="busy", commons_name="busy"))
        assert prune_jobs(store, 7, now=now) == []


# =========================================================================
# 3. list_jobs
# =========================================================================


def test_list_jobs_reports_state(store):
    now = time.time()
    store.write(Job(ia_id="queued1", commons_name="Q"))
    store.write(Job(ia_id="running1", commons_name="R"))
    store.claim(Job(ia_id="running1", commons_name="R"))
    store.write(Job(ia_id="failed1", commons_name="F"))
    store.claim(Job(ia_id="failed1", commons_name="F"))
    log_file = store.log_file("failed1")
    log_file.write_text("boom\n")
    os.utime(log_file, (now - 2 * DAY, now - 2 * DAY))
    (store.job_dir("failed1") / "failed1.djvu").write_bytes(b"x")

    by_id = {s.ia_id: s for s in list_jobs(store, DAY)}

    assert (by_id["queued1"].locked, by_id["queued1"].failed) == (False, False)
    assert (by_id["running1"].locked, by_id["running1"].failed) == (True, False)
    assert (by_id["failed1"].locked, by_id["failed1"].failed) == (True, True)
    assert by_id["failed1"].has_document is True
    assert "userAccessToken" not in by_id["failed1"].to_dict()


# =========================================================================
# 4. submit_job
# =========================================================================


class TestSubmit:
    def _ia(self, identifier=ITEM_ID):
        return FakeIaClient(make_metadata(identifier, []), {})

    def test_queues_jp2_conversion(self, store, job):
        job.commons_name = "  Example book.DJVU "
        path = submit_job(store, job, wiki=FakeWiki(), ia_client=self._ia())

        assert path == store.job_file(ITEM_ID)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        saved = store.load(ITEM_ID)
        assert saved.commons_name == "Example book"
        assert saved.full_commons_name == "Example book.djvu"

    def test_uses_canonical_identifier(self, store, job):
        job.ia_id = "EXAMPLEITEM42"
        submit_job(store, job, wiki=FakeWiki(), ia_client=self._ia("exampleitem42"))
        assert store.job_file("exampleitem42").exists()

    def test_native_format_not_queued(self, store, job):
        job.format = job.file_source = "pdf"
        assert submit_job(store, job, wiki=FakeWiki(), ia_client=self._ia()) is None
        assert list(store.job_files()) == []

    def test_rejects_existing_target(self, store, job):
        wiki = FakeWiki(existing={"File:Example book.djvu"})
        with pytest.raises(SubmissionError, match="already exists"):
            submit_job(store, job, wiki=wiki, ia_client=self._ia())

    def test_rejects_missing_item(self, store, job):
        with pytest.raises(SubmissionError, match="not found"):
            submit_job(store, job, wiki=FakeWiki(), ia_client=FakeIaClient(None, {}))

    def test_rejects_missing_fields(self, store, job):
        job.description = ""
        with pytest.raises(SubmissionError, match="all the fields"):
            submit_job(store, job, wiki=FakeWiki(), ia_client=self._ia())

    def test_rejects_invalid_title(self, store, job):
        job.commons_name = "Category:Books"
        with pytest.raises(SubmissionError, match="Invalid"):
            submit_job(store, job, wiki=FakeWiki(), ia_client=self._ia())


@pytest.mark.parametrize(
    "fmt,source,expected",
    [
        ("djvu", "jp2", True),
        ("djvu", "pdf", True),
        ("djvu", "djvu", False),
        ("pdf", "pdf", False),
    ],
)
def test_requires_queue(fmt, source, expected):
    assert requires_queue(Job(ia_id="x", commons_name="X", format=fmt, file_source=source)) is expected
