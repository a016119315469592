"""Shared data models for the job queue."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Literal, Optional

FileSource = Literal["djvu", "pdf", "jp2"]
TargetFormat = Literal["djvu", "pdf"]

FILE_SOURCES: tuple[str, ...] = ("djvu", "pdf", "jp2")
TARGET_FORMATS: tuple[str, ...] = ("djvu", "pdf")


@dataclass
class AccessToken:
    """A user's OAuth access credential (key + secret pair)."""

    key: str
    secret: str

    @classmethod
    def from_dict(cls, data: Any) -> Optional["AccessToken"]:
        if not isinstance(data, dict):
            return None
        return cls(key=str(data.get("key", "")), secret=str(data.get("secret", "")))


@dataclass
class Job:
    """One queued conversion-and-upload request.

    Serialised to ``job.json`` with the same camelCase keys the web front end
    writes, so descriptors are interchangeable between the two.
    """

    ia_id: str
    commons_name: str
    format: str = "djvu"
    file_source: str = "jp2"
    description: str = ""
    remove_first_page: bool = False
    user_access_token: Optional[AccessToken] = None

    @property
    def full_commons_name(self) -> str:
        return f"{self.commons_name}.{self.format}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "iaId": self.ia_id,
            "format": self.format,
            "commonsName": self.commons_name,
            "fullCommonsName": self.full_commons_name,
            "description": self.description,
            "fileSource": self.file_source,
            "removeFirstPage": self.remove_first_page,
            "userAccessToken": (
                asdict(self.user_access_token) if self.user_access_token else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        commons_name = data.get("commonsName")
        fmt = str(data.get("format") or "djvu")
        if not commons_name:
            full = str(data.get("fullCommonsName") or "")
            suffix = f".{fmt}"
            commons_name = full[: -len(suffix)] if full.endswith(suffix) else full
        return cls(
            ia_id=str(data["iaId"]),
            commons_name=str(commons_name),
            format=fmt,
            file_source=str(data.get("fileSource") or "jp2"),
            description=str(data.get("description") or ""),
            remove_first_page=bool(data.get("removeFirstPage", False)),
            user_access_token=AccessToken.from_dict(data.get("userAccessToken")),
        )


@dataclass
class JobStatus:
    """What the queue listing shows about one job (never the credential)."""

    ia_id: str
    full_commons_name: str
    file_source: str
    locked: bool = False
    failed: bool = False
    has_document: bool = False
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "iaId": self.ia_id,
            "fullCommonsName": self.full_commons_name,
            "fileSource": self.file_source,
            "locked": self.locked,
            "failed": self.failed,
            "hasDocument": self.has_document,
            "description": self.description,
        }
