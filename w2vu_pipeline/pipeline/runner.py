from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from w2vu_pipeline.common.logging_config import configure_logging
from w2vu_pipeline.errors import ConfigurationError, PipelineError
from w2vu_pipeline.pipeline.checkpointing import CheckpointStore, StepStatus
from w2vu_pipeline.pipeline.commands import CommandRunner, SubprocessRunner, build_tool_env
from w2vu_pipeline.pipeline.config import PipelineConfig, ResolvedPaths
from w2vu_pipeline.pipeline.progress_ui import Ui
from w2vu_pipeline.pipeline.stages import STAGES
from w2vu_pipeline.pipeline.steps import StageContext, Step, StepOutcome, StepRunner

logger = logging.getLogger(__name__)


def stage_status(checkpoint: CheckpointStore) -> list[tuple[str, str, StepStatus]]:
    """(stage, step, status) for every known step, in run order."""
    return [(stage, step.name, checkpoint.status(step.name)) for stage, steps in STAGES.items() for step in steps]


@dataclass
class PipelineRunner:
    config: PipelineConfig
    paths: ResolvedPaths
    ui: Ui
    checkpoint: CheckpointStore
    commands: CommandRunner

    @classmethod
    def from_config_path(cls, config_path: Path, ui: Ui, *, log_level: int = logging.INFO) -> "PipelineRunner":
        cfg = PipelineConfig.load(config_path)
        paths = cfg.resolve()
        paths.ensure_dirs()

        configure_logging(log_level, log_dir=str(paths.logs_dir))
        return cls(
            config=cfg,
            paths=paths,
            ui=ui,
            checkpoint=CheckpointStore(paths.checkpoint_file),
            commands=SubprocessRunner(base_env=build_tool_env(paths)),
        )

    def run(self, stage: str) -> dict[str, StepOutcome]:
        steps = STAGES.get(stage)
        if steps is None:
            raise ConfigurationError(f"Unknown stage: {stage} (expected one of {', '.join(STAGES)})")
        return self.run_steps(stage, steps)

    def run_steps(self, label: str, steps: Sequence[Step]) -> dict[str, StepOutcome]:
        """Run steps in order, stopping at the first failure."""
        self.paths.ensure_dirs()
        step_runner = StepRunner(
            checkpoint=self.checkpoint,
            context=StageContext(config=self.config, paths=self.paths, commands=self.commands),
        )
        logger.info("Starting stage '%s' for dataset %s", label, self.config.dataset.name)

        outcomes: dict[str, StepOutcome] = {}
        task = self.ui.progress.add_task(f"Stage {label}", total=len(steps))
        for step in steps:
            self.ui.progress.update(task, description=f"Stage {label}: {step.name}")
            try:
                outcome = step_runner.run(step)
            except PipelineError:
                self.ui.log(f"[red]Stage '{label}' halted at step '{step.name}'.[/red]")
                raise
            if outcome is StepOutcome.SKIPPED:
                self.ui.log(f"[green]Skipping {step.name} (already completed).[/green]")
            outcomes[step.name] = outcome
            self.ui.progress.advance(task)

        self.ui.progress.update(task, description=f"Stage {label}")
        logger.info("Stage '%s' completed successfully!", label)
        return outcomes

    def status(self) -> list[tuple[str, str, StepStatus]]:
        return stage_status(self.checkpoint)
