"""Exception hierarchy for the conversion job pipeline."""

from __future__ import annotations


class IaUploadError(Exception):
    """Base class for every error raised by this package."""


class ToolError(IaUploadError):
    """An external conversion binary could not be used."""


class ToolNotFoundError(ToolError):
    """The named command is not resolvable on ``PATH``."""

    def __init__(self, command: str) -> None:
        super().__init__(f"Command {command} not found")
        self.command = command


class ToolExecutionError(ToolError):
    """The command ran but exited with a non-zero status."""

    def __init__(self, command: str, returncode: int, output: str) -> None:
        super().__init__(
            f"Command {command} failed with exit status {returncode}: {output.strip()[:500]}"
        )
        self.command = command
        self.returncode = returncode
        self.output = output


class ConfigurationError(IaUploadError):
    """The environment cannot process jobs at all; aborts the whole run."""


class UnknownFileSourceError(ConfigurationError):
    def __init__(self, file_source: str) -> None:
        super().__init__(f"No document maker registered for file source {file_source!r}")
        self.file_source = file_source


class UploadNotPermittedError(ConfigurationError):
    """The stored credential does not carry the ``upload`` right."""


class JobError(IaUploadError):
    """A single job could not be downloaded, converted or merged."""


class SubmissionError(IaUploadError):
    """A conversion request was rejected before being queued."""


class UploadError(IaUploadError):
    """The wiki refused or failed an upload."""
