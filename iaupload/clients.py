"""HTTP collaborators: the Internet Archive and the MediaWiki action API."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import requests
from requests_oauthlib import OAuth1Session

from .config import Config
from .errors import ConfigurationError, UploadError
from .models import AccessToken
from .utils import UPLOAD_CHUNK_SIZE

log = logging.getLogger(__name__)

USER_AGENT = "iaupload-jobqueue/1.0 (https://ia-upload.toolforge.org)"
DOWNLOAD_CHUNK = 1024 * 1024


# ---------------------------------------------------------------------------
# Internet Archive
# ---------------------------------------------------------------------------


class IaClient:
    """Metadata and file downloads from the archive."""

    def __init__(
        self,
        base_url: str = "https://archive.org",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)

    def file_details(self, item_id: str) -> Optional[dict[str, Any]]:
        """Return the item's details JSON, or ``None`` if it can't be fetched."""
        url = f"{self.base_url}/details/{quote(item_id, safe='')}"
        try:
            response = self.session.get(url, params={"output": "json"})
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            log.warning("Unable to fetch archive metadata for %s: %s", item_id, exc)
            return None
        if not isinstance(data, dict) or "files" not in data:
            return None
        return data

    def download_file(self, remote_path: str, dest: Path) -> Path:
        """Stream ``/download/<remote_path>`` to *dest*.

        Writes to a ``.part`` file first so an interrupted download never
        looks complete to a resumed job.
        """
        url = f"{self.base_url}/download/{remote_path.lstrip('/')}"
        tmp = dest.with_name(dest.name + ".part")
        log.debug("GET %s -> %s", url, dest)
        with self.session.get(url, stream=True) as response:
            response.raise_for_status()
            with open(tmp, "wb") as fh:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                    if chunk:
                        fh.write(chunk)
        os.replace(tmp, dest)
        return dest


# ---------------------------------------------------------------------------
# MediaWiki / Commons
# ---------------------------------------------------------------------------


def build_wiki_session(config: Config, token: Optional[AccessToken]) -> requests.Session:
    """Exchange a stored user credential for an OAuth-signed session."""
    if token is None or not token.key or not token.secret:
        raise ConfigurationError("Job has no user access token")
    if not config.consumer_key or not config.consumer_secret:
        raise ConfigurationError("OAuth consumer key/secret are not configured")
    session = OAuth1Session(
        config.consumer_key,
        client_secret=config.consumer_secret,
        resource_owner_key=token.key,
        resource_owner_secret=token.secret,
    )
    session.headers["User-Agent"] = USER_AGENT
    return session


class CommonsClient:
    """The subset of the action API the queue needs."""

    def __init__(
        self,
        base_url: str,
        session: requests.Session,
        logger: logging.Logger | None = None,
        *,
        chunk_size: int = UPLOAD_CHUNK_SIZE,
    ) -> None:
        self.api_url = base_url.rstrip("/") + "/w/api.php"
        self.session = session
        self.log = logger or log
        self.chunk_size = chunk_size

    def _get(self, **params: Any) -> dict[str, Any]:
        params.setdefault("format", "json")
        response = self.session.get(self.api_url, params=params)
        response.raise_for_status()
        return response.json()

    def _post(self, data: dict[str, Any], files: dict[str, Any] | None = None) -> dict[str, Any]:
        data.setdefault("format", "json")
        response = self.session.post(self.api_url, data=data, files=files)
        response.raise_for_status()
        result = response.json()
        if "error" in result:
            error = result["error"]
            raise UploadError(f"{error.get('code')}: {error.get('info')}")
        return result

    def can_upload(self) -> bool:
        result = self._get(action="query", meta="userinfo", uiprop="rights")
        rights = result.get("query", {}).get("userinfo", {}).get("rights", [])
        return "upload" in rights

    def page_exists(self, title: str) -> bool:
        result = self._get(action="query", titles=title, prop="info")
        pages = result.get("query", {}).get("pages", {})
        return "-1" not in pages and bool(pages)

    def normalize_page_title(self, title: str) -> str:
        trimmed = title.strip()
        result = self._get(action="query", titles=trimmed)
        normalized = result.get("query", {}).get("normalized") or []
        if normalized and normalized[0].get("to"):
            return normalized[0]["to"]
        return trimmed

    @staticmethod
    def is_page_title_valid(title: str) -> bool:
        return ":" not in title and "/" not in title

    def _csrf_token(self) -> str:
        result = self._get(action="query", meta="tokens", type="csrf")
        return result["query"]["tokens"]["csrftoken"]

    def upload(self, filename: str, path: Path, text: str, comment: str) -> dict[str, Any]:
        """Upload *path* as ``File:<filename>``, in chunks when it is large."""
        token = self._csrf_token()
        size = path.stat().st_size
        self.log.info("Uploading %s (%s bytes) as %s", path, size, filename)
        base = {
            "action": "upload",
            "filename": filename,
            "text": text,
            "comment": comment,
            "ignorewarnings": 1,
            "token": token,
        }
        if size <= self.chunk_size:
            with open(path, "rb") as fh:
                result = self._post(dict(base), files={"file": (filename, fh)})
        else:
            filekey = self._upload_chunks(filename, path, size, token)
            result = self._post({**base, "filekey": filekey})
        outcome = result.get("upload", {}).get("result")
        if outcome != "Success":
            raise UploadError(f"Upload of {filename} did not succeed: {result}")
        return result

    def _upload_chunks(self, filename: str, path: Path, size: int, token: str) -> str:
        filekey = None
        offset = 0
        with open(path, "rb") as fh:
            while offset < size:
                chunk = fh.read(self.chunk_size)
                data: dict[str, Any] = {
                    "action": "upload",
                    "stash": 1,
                    "filename": filename,
                    "filesize": size,
                    "offset": offset,
                    "token": token,
                }
                if filekey:
                    data["filekey"] = filekey
                result = self._post(data, files={"chunk": (filename, chunk)})
                filekey = result["upload"]["filekey"]
                offset += len(chunk)
                self.log.debug("Uploaded chunk up to offset %s of %s", offset, size)
        if filekey is None:
            raise UploadError(f"Nothing was uploaded from {path}")
        return filekey
