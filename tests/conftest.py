"""Shared fixtures for the job queue test suite.

External binaries, the archive and the wiki are all replaced by in-memory
fakes; the fakes write the same files the real tools would so every stage's
skip-if-present logic is exercised for real.
"""

from __future__ import annotations

import logging
import sys
import zipfile
from pathlib import Path
from typing import Any

import pytest
import requests

from iaupload import AccessToken, Config, Job, JobStore, ToolRunner

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)

ITEM_ID = "exampleitem42"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeToolRunner(ToolRunner):
    """Records every command and imitates its effect on the file system.

    ``djvm -c`` writes one line per merged page holding the page's source
    name, so tests can read back page order and count.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        super().__init__(logger)
        self.calls: list[tuple[str, list[str]]] = []
        self.corrupt_pages: set[int] = set()
        self.broken_pages: set[int] = set()
        self.stripped_pages: list[int] = []
        self.whole_document_status: int | None = None
        self.fail_on: dict[str, int] = {}

    @property
    def commands(self) -> list[str]:
        return [command for command, _ in self.calls]

    def status(self, command: str, args) -> tuple[int, str]:
        args = [str(a) for a in args]
        self.calls.append((command, args))
        if command in self.fail_on:
            return self.fail_on[command], f"{command}: simulated failure"

        if command == "gm":
            src, dst = Path(args[-2]), Path(args[-1])
            dst.write_text(src.name, encoding="utf-8")
        elif command == "c44":
            src, dst = Path(args[0]), Path(args[1])
            dst.write_text(src.read_text(encoding="utf-8"), encoding="utf-8")
        elif command == "djvm" and args[0] == "-c":
            out = Path(args[1])
            pages = [Path(p).read_text(encoding="utf-8") for p in args[2:]]
            out.write_text("\n".join(pages), encoding="utf-8")
        elif command == "djvm" and args[0] == "-d":
            doc = Path(args[1])
            lines = doc.read_text(encoding="utf-8").splitlines()
            doc.write_text("\n".join(lines[1:]), encoding="utf-8")
        elif command == "djvused":
            return self._djvused(args)
        return 0, ""

    def _djvused(self, args: list[str]) -> tuple[int, str]:
        script = args[args.index("-e") + 1]
        if script == "n":
            doc = Path(args[0])
            return 0, f"{len(doc.read_text(encoding='utf-8').splitlines())}\n"
        if script == "select; output-txt":
            if self.whole_document_status is not None:
                return self.whole_document_status, ""
            return (10 if self.corrupt_pages else 0), ""
        page = int(script.split(";")[0].split()[1])
        if script.endswith("remove-txt; save"):
            self.corrupt_pages.discard(page)
            self.stripped_pages.append(page)
            return 0, ""
        if page in self.broken_pages:
            return 1, "some other failure"
        return (10 if page in self.corrupt_pages else 0), ""


class FakeIaClient:
    def __init__(self, metadata: dict[str, Any] | None, files: dict[str, bytes]) -> None:
        self.metadata = metadata
        self.files = files
        self.details_calls = 0
        self.downloads: list[str] = []

    def file_details(self, item_id: str) -> dict[str, Any] | None:
        self.details_calls += 1
        return self.metadata

    def download_file(self, remote_path: str, dest: Path) -> Path:
        self.downloads.append(remote_path)
        name = remote_path.split("/", 1)[1]
        dest.write_bytes(self.files[name])
        return dest


class FakeWiki:
    def __init__(self, *, can_upload: bool = True, existing: set[str] | None = None) -> None:
        self._can_upload = can_upload
        self.existing = existing or set()
        self.uploads: list[dict[str, Any]] = []
        self.log: logging.Logger | None = None

    def can_upload(self) -> bool:
        return self._can_upload

    def page_exists(self, title: str) -> bool:
        return title in self.existing

    def normalize_page_title(self, title: str) -> str:
        return title.strip()

    @staticmethod
    def is_page_title_valid(title: str) -> bool:
        return ":" not in title and "/" not in title

    def upload(self, filename: str, path: Path, text: str, comment: str) -> dict[str, Any]:
        self.uploads.append(
            {
                "filename": filename,
                "content": path.read_text(encoding="utf-8"),
                "text": text,
                "comment": comment,
            }
        )
        return {"upload": {"result": "Success"}}


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, content: bytes = b"") -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = content

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, responses: list[FakeResponse]) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def get(self, url: str, params: dict[str, Any] | None = None, **kwargs: Any) -> FakeResponse:
        self.requests.append(dict(params or {}))
        return self.responses.pop(0)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_jp2_zip(item_id: str, page_names: list[str]) -> bytes:
    """A ``<item>_jp2.zip`` with a top-level ``<item>_jp2/`` directory."""
    import io

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(f"{item_id}_jp2/", "")
        for name in page_names:
            zf.writestr(f"{item_id}_jp2/{name}", b"jp2-bytes")
    return buf.getvalue()


def make_djvu_xml(item_id: str, pages: int, *, with_body: bool = True) -> bytes:
    objects = "".join(
        f'<OBJECT data="file://localhost/var/tmp/{item_id}.djvu" type="image/x.djvu" '
        f'usemap="{item_id}_{i + 1:04d}.djvu">'
        f'<PARAM name="PAGE" value="{item_id}_{i + 1:04d}.djvu"/>'
        f'<PARAM name="DPI" value="600"/>'
        f"<HIDDENTEXT><PAGECOLUMN><LINE><WORD>page{i}</WORD></LINE></PAGECOLUMN></HIDDENTEXT>"
        f"</OBJECT>"
        for i in range(pages)
    )
    body = f"<BODY>{objects}</BODY>" if with_body else ""
    return f'<?xml version="1.0" encoding="UTF-8"?><DjVuXML><HEAD/>{body}</DjVuXML>'.encode()


def make_metadata(item_id: str, files: list[str]) -> dict[str, Any]:
    return {
        "metadata": {"identifier": [item_id]},
        "files": {f"/{name}": {"format": "x", "size": "1"} for name in files},
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def queue_dir(tmp_path: Path) -> Path:
    path = tmp_path / "jobqueue"
    path.mkdir()
    return path


@pytest.fixture
def store(queue_dir: Path) -> JobStore:
    return JobStore(queue_dir)


@pytest.fixture
def config(queue_dir: Path) -> Config:
    return Config(
        queue_dir=queue_dir,
        consumer_key="consumer",
        consumer_secret="secret",
        poll_interval_s=0.5,
    )


@pytest.fixture
def tools() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture
def job() -> Job:
    return Job(
        ia_id=ITEM_ID,
        commons_name="Example book",
        format="djvu",
        file_source="jp2",
        description="{{Book}}",
        user_access_token=AccessToken(key="k", secret="s"),
    )


@pytest.fixture
def jp2_item():
    """Factory for a fake archive item with page images and optional OCR XML."""

    def _make(
        page_names: list[str] | None = None,
        *,
        xml: bytes | None = b"default",
        item_id: str = ITEM_ID,
    ) -> FakeIaClient:
        page_names = page_names or [f"{item_id}_{i:04d}.jp2" for i in range(3)]
        files = {f"{item_id}_jp2.zip": make_jp2_zip(item_id, page_names)}
        if xml == b"default":
            xml = make_djvu_xml(item_id, len(page_names))
        if xml is not None:
            files[f"{item_id}_djvu.xml"] = xml
        return FakeIaClient(make_metadata(item_id, list(files)), files)

    return _make
