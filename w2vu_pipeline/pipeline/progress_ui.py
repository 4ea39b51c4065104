from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)


@dataclass(frozen=True)
class Ui:
    console: Console
    progress: Progress

    def log(self, message: str) -> None:
        self.console.print(message)


@contextmanager
def progress_ui(console: Console | None = None) -> Iterator[Ui]:
    console = console or Console()
    # steps run for hours with no intermediate progress, so no ETA column
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    )
    with progress:
        yield Ui(console=console, progress=progress)
