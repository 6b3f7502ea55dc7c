"""
Error taxonomy for the pipeline.

Each error carries the exit code of the stage that raised it, so the CLI can
exit with a status that names the first fatal stage.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    exit_code = 1


class InputError(PipelineError):
    """A required file, directory, tool or setting is missing or malformed."""

    exit_code = 2


class CacheIntegrityError(PipelineError):
    """A dependency cache entry does not match the manifests or target it is used with."""

    exit_code = 3


class ToolIntegrityError(PipelineError):
    """A pinned tool failed a content-hash or version check."""

    exit_code = 4


class CompilationError(PipelineError):
    exit_code = 5


class CheckError(CompilationError):
    """A gating check (lint with deny-warnings, format) failed."""

    exit_code = 6


class StylesheetError(PipelineError):
    exit_code = 7


class PackagingError(PipelineError):
    """The bundle could not be assembled; the published output was left untouched."""

    exit_code = 8


class SupervisorError(PipelineError):
    exit_code = 9


class CommandError(PipelineError):
    def __init__(self, cmd: list[str], returncode: int, *, cwd: str | None = None) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.cwd = cwd
        where = f" (in {cwd})" if cwd else ""
        super().__init__(f"command failed with exit code {returncode}{where}: {' '.join(self.cmd)}")
