from __future__ import annotations

import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

import pytest
from rich.console import Console

from w2vu_pipeline.pipeline.commands import Command
from w2vu_pipeline.pipeline.config import PipelineConfig, ToolchainConfig
from w2vu_pipeline.pipeline.progress_ui import Ui, progress_ui
from w2vu_pipeline.pipeline.steps import StageContext


@dataclass
class FakeRunner:
    """Records commands instead of running them.

    failing maps an executable (first argument) to the exit status it returns.
    """

    failing: dict[str, int] = field(default_factory=dict)
    calls: list[Command] = field(default_factory=list)

    def run(self, command: Command) -> int:
        self.calls.append(command)
        return self.failing.get(command.args[0], 0)

    def executables(self) -> list[str]:
        return [c.args[0] for c in self.calls]


@pytest.fixture
def config(tmp_path: Path) -> PipelineConfig:
    return PipelineConfig(toolchain=ToolchainConfig(root_dir=str(tmp_path / "root")))


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def ctx(config: PipelineConfig, runner: FakeRunner) -> StageContext:
    paths = config.resolve()
    paths.ensure_dirs()
    return StageContext(config=config, paths=paths, commands=runner)


@pytest.fixture
def quiet_ui() -> Iterator[Ui]:
    with progress_ui(Console(file=io.StringIO())) as ui:
        yield ui
