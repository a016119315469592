"""Invocation of external image/document conversion binaries."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Sequence, Union

from .errors import ToolExecutionError, ToolNotFoundError

log = logging.getLogger(__name__)

Arg = Union[str, Path]


class ToolRunner:
    """Run named commands found on ``PATH``.

    Output files are the tools' business; callers only get the combined
    stdout/stderr text back. Nothing here retries.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.log = logger or log

    def which(self, command: str) -> str:
        resolved = shutil.which(command)
        if resolved is None:
            raise ToolNotFoundError(command)
        return resolved

    def status(self, command: str, args: Sequence[Arg]) -> tuple[int, str]:
        """Run *command* and return ``(returncode, output)`` without judging it."""
        executable = self.which(command)
        argv = [executable, *(str(a) for a in args)]
        self.log.debug("Running %s %s", command, " ".join(argv[1:]))
        completed = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
        return completed.returncode, completed.stdout or ""

    def run(self, command: str, args: Sequence[Arg]) -> str:
        """Run *command*, raising :class:`ToolExecutionError` on a non-zero exit."""
        returncode, output = self.status(command, args)
        if returncode != 0:
            self.log.error("%s exited with %s: %s", command, returncode, output.strip())
            raise ToolExecutionError(command, returncode, output)
        if output.strip():
            self.log.debug(output.strip())
        return output
