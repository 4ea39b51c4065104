from __future__ import annotations

from pathlib import Path
from typing import Sequence


class PipelineError(RuntimeError):
    """Base class for failures that halt a stage."""


class ConfigurationError(PipelineError):
    pass


class CheckpointError(PipelineError):
    pass


class ConfigPatchError(PipelineError):
    """A config document or script could not be patched.

    Raised before anything is written, so the target file is left as it was.
    """


class MissingArtifactError(PipelineError):
    """An input or output file the pipeline relies on does not exist."""

    def __init__(self, path: Path | str, message: str | None = None) -> None:
        self.path = Path(path)
        super().__init__(message or f"Expected artifact not found: {self.path}")


class CommandError(PipelineError):
    def __init__(self, cmd: Sequence[str], returncode: int) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        super().__init__(f"Command exited with status {returncode}: {' '.join(self.cmd)}")


class StepFailedError(PipelineError):
    def __init__(self, step: str, returncode: int | None = None, detail: str = "") -> None:
        self.step = step
        self.returncode = returncode
        msg = f"Step '{step}' failed"
        if returncode is not None:
            msg += f" (exit status {returncode})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
