"""Document makers: turn one queued job into a single local document file.

Every stage writes a deterministically named artifact into the job directory
and is skipped when that artifact is already present, so a job interrupted at
any point resumes where it stopped.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
import xml.etree.ElementTree as ET
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import requests

from .clients import IaClient
from .config import Config
from .errors import ConfigurationError, JobError, ToolError, UnknownFileSourceError
from .models import Job
from .tools import ToolRunner
from .utils import (
    BUILD_DIR_NAME,
    METADATA_FILE_NAME,
    page_file_name,
    read_json,
    select_source_file,
    sorted_pages,
    write_json,
)

log = logging.getLogger(__name__)

# djvused exits with this status when a text layer is present but malformed.
DJVUSED_CORRUPT_TEXT = 10

# Conversion-service error codes meaning "not ready yet, ask again".
PENDING_CONVERSION_ERRORS = (0, 3)


class DjvuMaker(ABC):
    """Base class for the per-source document makers."""

    #: Extension of the document this maker produces; ``None`` means the job's format.
    extension: Optional[str] = "djvu"

    def __init__(
        self,
        job: Job,
        job_dir: Path,
        *,
        ia_client: IaClient,
        tools: ToolRunner,
        config: Config,
        logger: logging.Logger | None = None,
    ) -> None:
        self.job = job
        self.item_id = job.ia_id
        self.job_dir = Path(job_dir)
        self.ia_client = ia_client
        self.tools = tools
        self.config = config
        self.log = logger or log
        if not self.job_dir.is_dir():
            raise JobError(f"Unable to find job directory {self.job_dir}")

    @property
    def output_path(self) -> Path:
        ext = self.extension or self.job.format
        return self.job_dir / f"{self.item_id}.{ext}"

    @abstractmethod
    def build(self) -> Path:
        """Produce the document and return its path."""

    def create_local_document(self) -> Path:
        """Build the document and check that something usable came out."""
        path = self.build()
        if not path.is_file() or path.stat().st_size == 0:
            raise JobError(f"Document {path} is missing or empty")
        return path.resolve()

    # ------------------------------------------------------------------
    # Shared stages
    # ------------------------------------------------------------------

    def fetch_metadata(self) -> dict[str, Any]:
        """Archive metadata, cached as ``metadata.json``."""
        metadata_file = self.job_dir / METADATA_FILE_NAME
        if metadata_file.exists():
            try:
                metadata = read_json(metadata_file)
            except (json.JSONDecodeError, OSError, ValueError) as exc:
                self.log.warning("Ignoring unreadable %s: %s", metadata_file.name, exc)
            else:
                if isinstance(metadata, dict):
                    return metadata
        self.log.info("Saving IA metadata to %s", metadata_file)
        metadata = self.ia_client.file_details(self.item_id)
        if metadata is None:
            raise JobError(f"Unable to fetch metadata for {self.item_id}")
        write_json(metadata_file, metadata)
        return metadata

    def download(self, remote_name: str) -> Path:
        """Download ``<itemId>/<remote_name>`` into the job directory unless present."""
        local = self.job_dir / remote_name.lstrip("/")
        if local.exists():
            return local
        remote = f"{self.item_id}/{remote_name.lstrip('/')}"
        self.log.info("Downloading %s", remote)
        self.ia_client.download_file(remote, local)
        return local


class NativeMaker(DjvuMaker):
    """The archive already has a file in the target format; just fetch it."""

    extension = None

    def build(self) -> Path:
        if self.output_path.exists():
            return self.output_path
        metadata = self.fetch_metadata()
        remote_name = select_source_file(metadata, self.job.format)
        if remote_name is None:
            raise JobError(f"No {self.job.format} file found for {self.item_id}")
        self.log.info("Downloading %s%s", self.item_id, remote_name)
        self.ia_client.download_file(f"{self.item_id}/{remote_name.lstrip('/')}", self.output_path)
        return self.output_path


class Jp2DjvuMaker(DjvuMaker):
    """Build a DjVu from an item's ``*_jp2.zip`` page images and ``*_djvu.xml`` OCR."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.page_count = 0

    @property
    def build_dir(self) -> Path:
        return self.job_dir / BUILD_DIR_NAME

    @property
    def validated_marker(self) -> Path:
        return self.output_path.with_name(self.output_path.name + ".validated")

    def build(self) -> Path:
        if self.output_path.exists():
            self.log.info("Using existing %s", self.output_path)
        else:
            self.download_files()
            jp2_dir = self.unzip_jp2_archive()
            self.convert_jp2_to_djvu(jp2_dir)
        self.add_text_layer(self.output_path)
        self.validate(self.output_path)
        return self.output_path

    # ------------------------------------------------------------------
    # Download and unpack
    # ------------------------------------------------------------------

    def download_files(self) -> list[Path]:
        metadata = self.fetch_metadata()
        wanted = [
            name
            for name in metadata.get("files", {})
            if name.endswith("_djvu.xml") or name.endswith("_jp2.zip")
        ]
        return [self.download(name) for name in wanted]

    def _find_one(self, pattern: str) -> Optional[Path]:
        matches = sorted(p for p in self.job_dir.glob(pattern) if p.is_file())
        return matches[0] if matches else None

    def unzip_jp2_archive(self) -> Path:
        """Extract ``<item>_jp2.zip`` to ``<item>_jp2/`` unless already fully extracted.

        A directory whose file count differs from the archive's is a partial
        extraction; it is removed and extracted again from scratch.
        """
        zip_file = self._find_one("*_jp2.zip")
        if zip_file is None:
            raise JobError("JP2 zip file not found")
        out_dir = self.job_dir / zip_file.stem

        with zipfile.ZipFile(zip_file) as archive:
            members = [info for info in archive.infolist() if not info.is_dir()]
            if out_dir.is_dir():
                num_in_dir = sum(1 for p in out_dir.rglob("*") if p.is_file())
                if num_in_dir == len(members):
                    self.log.info("%s already extracted (%s files)", zip_file.name, num_in_dir)
                    return out_dir
                self.log.info(
                    "Re-extracting %s: %s files on disk, %s in archive",
                    zip_file.name,
                    num_in_dir,
                    len(members),
                )
                shutil.rmtree(out_dir)

            self.log.info("Unzipping %s", zip_file)
            prefix = f"{out_dir.name}/"
            has_top_dir = bool(members) and all(m.filename.startswith(prefix) for m in members)
            archive.extractall(self.job_dir if has_top_dir else out_dir)
        self.log.debug("Zip file extracted to %s", out_dir)
        return out_dir

    # ------------------------------------------------------------------
    # Per-page conversion and merge
    # ------------------------------------------------------------------

    def convert_jp2_to_djvu(self, jp2_dir: Path) -> Path:
        """Encode every page and merge them, in page order, into ``<item>.djvu``."""
        from tqdm import tqdm

        self.log.info("Processing JP2 files")
        jp2_files = sorted_pages(p for p in jp2_dir.rglob("*.jp2") if p.is_file())
        if not jp2_files:
            raise JobError(f"No JP2 file found in {jp2_dir}")
        self.log.info("Converting %s individual JP2s to DjVus", len(jp2_files))
        self.build_dir.mkdir(exist_ok=True)

        djvu_files: list[Path] = []
        size = self.config.max_page_dimension
        for index, jp2_file in enumerate(tqdm(jp2_files, desc=self.item_id, leave=False)):
            djvu_file = self.build_dir / page_file_name(self.item_id, index, "djvu")
            if not djvu_file.exists():
                jpg_file = self.build_dir / page_file_name(self.item_id, index, "jpg")
                self.log.debug("Converting %s", jp2_file)
                # Tools write to a .part name; only a finished page gets the final name.
                if not jpg_file.exists():
                    partial_jpg = self.build_dir / page_file_name(self.item_id, index, "part.jpg")
                    # Shrink only: longest edge <= size, aspect preserved.
                    self.tools.run(
                        "gm", ["convert", "-resize", f"{size}x{size}>", jp2_file, partial_jpg]
                    )
                    os.replace(partial_jpg, jpg_file)
                partial_djvu = self.build_dir / page_file_name(self.item_id, index, "part.djvu")
                self.tools.run("c44", [jpg_file, partial_djvu])
                os.replace(partial_djvu, djvu_file)
            djvu_files.append(djvu_file)
        self.page_count = len(djvu_files)

        if not self.output_path.exists():
            self.log.info("Merging all DjVu files to %s", self.output_path)
            partial = self.build_dir / f"{self.item_id}.merged.djvu"
            self.tools.run("djvm", ["-c", partial, *djvu_files])
            os.replace(partial, self.output_path)
        return self.output_path

    # ------------------------------------------------------------------
    # Text layer
    # ------------------------------------------------------------------

    def text_layer_already_merged(self, new_xml: Path) -> bool:
        """A rewritten XML file means the merge was attempted; never run it twice.

        The rewritten file is saved before ``djvuxmlparser`` runs, so a crash
        between the two leaves a document without its text layer. That case is
        reported (missing ``.merged`` marker) but not retried.
        """
        if not new_xml.exists():
            return False
        marker = new_xml.with_name(new_xml.name + ".merged")
        if marker.exists():
            self.log.info("Text layer already merged from %s", new_xml.name)
        else:
            self.log.warning(
                "%s exists but its merge was never confirmed; assuming it is done",
                new_xml.name,
            )
        return True

    def add_text_layer(self, djvu_file: Path) -> None:
        """Point the OCR XML at our document and merge it in.

        Items without a usable OCR layer (common for languages the archive
        cannot OCR) keep the plain document.
        """
        xml_file = self._find_one("*_djvu.xml")
        if xml_file is None:
            self.log.info("No *_djvu.xml file found; leaving %s without text", djvu_file.name)
            return
        new_xml = xml_file.with_name(xml_file.name + "_new.xml")
        if self.text_layer_already_merged(new_xml):
            return

        self.log.info("Modifying DjVu XML file %s to add %s", xml_file, djvu_file)
        try:
            tree = ET.parse(xml_file)
        except ET.ParseError as exc:
            self.log.info("Unable to load XML file %s: %s", xml_file.name, exc)
            return
        body = tree.getroot().find("BODY")
        if body is None:
            self.log.info("No BODY element found in %s", xml_file.name)
            return

        data_uri = "file://localhost" + str(djvu_file.resolve())
        for page_num, obj in enumerate(body.findall("OBJECT")):
            obj.set("data", data_uri)
            # The first PARAM is always PAGE.
            param = obj.find("PARAM")
            if param is not None:
                param.set("value", page_file_name(self.item_id, page_num, "djvu"))
        tree.write(new_xml, encoding="utf-8", xml_declaration=True)

        self.log.info("Merging modified XML into full DjVu file")
        self.tools.run("djvuxmlparser", [new_xml])
        new_xml.with_name(new_xml.name + ".merged").touch()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _count_pages(self, djvu_file: Path) -> int:
        if self.page_count:
            return self.page_count
        returncode, output = self.tools.status("djvused", [djvu_file, "-e", "n"])
        if returncode != 0:
            return 0
        try:
            return int(output.strip().splitlines()[-1])
        except (ValueError, IndexError):
            return 0

    def validate(self, djvu_file: Path) -> bool:
        """Check the text layer and strip it from any page where it is corrupt.

        Never raises: the worst outcome is a document with fewer searchable pages.
        """
        if self.validated_marker.exists():
            return True
        self.log.info("Validating text layer of DjVu")
        try:
            returncode, _ = self.tools.status(
                "djvused", ["-u", djvu_file, "-e", "select; output-txt"]
            )
            if returncode == 0:
                self.log.debug("Text layer OK")
                self.validated_marker.touch()
                return True
            if returncode != DJVUSED_CORRUPT_TEXT:
                self.log.error("Unable to validate DjVu: %s", djvu_file)
                return False

            for page_num in range(1, self._count_pages(djvu_file) + 1):
                returncode, _ = self.tools.status(
                    "djvused", ["-u", djvu_file, "-e", f"select {page_num}; output-txt"]
                )
                if returncode == 0:
                    continue
                if returncode != DJVUSED_CORRUPT_TEXT:
                    self.log.error("Unable to validate DjVu page %s in %s", page_num, djvu_file)
                    continue
                self.log.info("Fixing page %s (1-indexed)", page_num)
                returncode, _ = self.tools.status(
                    "djvused",
                    ["-u", djvu_file, "-e", f"select {page_num}; remove-txt; save"],
                )
                if returncode != 0:
                    self.log.error("Unable to fix page %s in %s", page_num, djvu_file)
        except ToolError as exc:
            self.log.error("Validation skipped: %s", exc)
            return False
        self.log.info("Validation complete")
        self.validated_marker.touch()
        return True


class PdfDjvuMaker(DjvuMaker):
    """Ask the remote PDF-to-DjVu service for the document and wait for it."""

    def __init__(
        self,
        *args: Any,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.session = session or requests.Session()
        self.sleep = sleep
        self.service_url = self.config.conversion_service_url

    def build(self) -> Path:
        if self.output_path.exists():
            return self.output_path
        self.start_conversion()
        self.download_converted(self.output_path)
        return self.output_path

    def start_conversion(self) -> None:
        self.log.info("Requesting start of conversion of %s", self.item_id)
        response = self.session.get(
            self.service_url, params={"cmd": "convert", "ia_id": self.item_id}
        )
        response.raise_for_status()

    def download_converted(self, dest: Path) -> Path:
        """Poll until the service returns the document; errors 0 and 3 mean "wait"."""
        self.log.info("Starting download to %s", dest)
        while True:
            self.log.debug("Getting %s", self.item_id)
            response = self.session.get(
                self.service_url, params={"cmd": "get", "ia_id": self.item_id}
            )
            if response.ok:
                partial = dest.with_name(dest.name + ".part")
                partial.write_bytes(response.content)
                os.replace(partial, dest)
                return dest
            try:
                error = response.json()
            except ValueError:
                error = None
            if isinstance(error, dict) and error.get("error") in PENDING_CONVERSION_ERRORS:
                self.log.debug("%s", error.get("text", "conversion pending"))
                self.sleep(self.config.poll_interval_s)
                continue
            self.log.error("Conversion service error for %s: %s", self.item_id, error)
            response.raise_for_status()


MAKERS: Mapping[str, type[DjvuMaker]] = MappingProxyType(
    {
        "djvu": NativeMaker,
        "jp2": Jp2DjvuMaker,
        "pdf": PdfDjvuMaker,
    }
)


def maker_for(job: Job) -> type[DjvuMaker]:
    """Pick the maker for the job's source representation."""
    if job.file_source == job.format:
        return NativeMaker
    try:
        maker = MAKERS[job.file_source]
    except KeyError:
        raise UnknownFileSourceError(job.file_source) from None
    if maker.extension is not None and maker.extension != job.format:
        raise ConfigurationError(
            f"Cannot produce {job.format} from {job.file_source} for {job.ia_id}"
        )
    return maker


def remove_first_page(tools: ToolRunner, document: Path) -> None:
    """Drop page 1 (usually an archive cover sheet) from a DjVu in place."""
    if document.suffix.lower() != ".djvu":
        log.warning("First-page removal is only supported for DjVu, not %s", document.name)
        return
    tools.run("djvm", ["-d", document, "1"])
