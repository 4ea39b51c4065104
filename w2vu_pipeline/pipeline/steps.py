from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from w2vu_pipeline.errors import CommandError, MissingArtifactError, StepFailedError
from w2vu_pipeline.pipeline.checkpointing import CheckpointStore
from w2vu_pipeline.pipeline.commands import Command, CommandRunner
from w2vu_pipeline.pipeline.config import PipelineConfig, ResolvedPaths

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageContext:
    """Everything a step action may touch, passed explicitly."""

    config: PipelineConfig
    paths: ResolvedPaths
    commands: CommandRunner

    def run(self, *args: object, **options: Any) -> None:
        """Run an external command; a non-zero exit raises CommandError."""
        command = Command(args=tuple(str(a) for a in args), **options)
        returncode = self.commands.run(command)
        if returncode != 0:
            raise CommandError(command.args, returncode)

    def require(self, path: Path, what: str = "") -> Path:
        if not path.exists():
            label = f"{what}: " if what else ""
            raise MissingArtifactError(path, f"{label}expected {path} to exist")
        return path


StepAction = Callable[[StageContext], None]


@dataclass(frozen=True)
class Step:
    name: str
    action: StepAction
    description: str = ""


class StepOutcome(str, Enum):
    SKIPPED = "skipped"
    COMPLETED = "completed"


@dataclass
class StepRunner:
    """Runs a step at most once to completion across pipeline invocations.

    The completion check happens before any state is written. A failing
    step stays IN_PROGRESS so the next invocation retries it.
    """

    checkpoint: CheckpointStore
    context: StageContext

    def run(self, step: Step) -> StepOutcome:
        if self.checkpoint.is_completed(step.name):
            logger.info("Skipping %s (already completed)", step.name)
            return StepOutcome.SKIPPED

        logger.info("Starting %s%s", step.name, f": {step.description}" if step.description else "")
        self.checkpoint.mark_in_progress(step.name)
        try:
            step.action(self.context)
        except CommandError as exc:
            logger.error("ERROR: %s failed: %s", step.name, exc)
            raise StepFailedError(step.name, exc.returncode, " ".join(exc.cmd)) from exc
        except MissingArtifactError as exc:
            logger.error("ERROR: %s is missing an artifact: %s", step.name, exc)
            raise
        except OSError as exc:
            logger.error("ERROR: %s failed: %s", step.name, exc)
            raise StepFailedError(step.name, None, str(exc)) from exc

        self.checkpoint.mark_completed(step.name)
        logger.info("%s completed successfully", step.name)
        return StepOutcome.COMPLETED
