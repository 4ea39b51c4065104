from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator

from w2vu_pipeline.errors import CheckpointError

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    ABSENT = "ABSENT"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


_RECORDED = (StepStatus.IN_PROGRESS, StepStatus.COMPLETED)


def _parse_line(line: str) -> tuple[str, StepStatus] | None:
    name, sep, status = line.strip().rpartition(":")
    if not sep or not name:
        return None
    try:
        parsed = StepStatus(status)
    except ValueError:
        return None
    if parsed not in _RECORDED:
        return None
    return name, parsed


def _atomic_write_lines(path: Path, lines: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    os.replace(tmp, path)


@dataclass
class CheckpointStore:
    """Append-only log of step transitions, one ``name:STATUS`` per line.

    Replay rule: a step is completed once any COMPLETED line exists for it
    (completion never reverts); otherwise it is in progress if an
    IN_PROGRESS line exists; otherwise it is absent. Lines that do not
    parse are ignored. A missing file is an empty store.

    Single-writer: no locking is done.
    """

    path: Path

    def _transitions(self) -> Iterator[tuple[str, StepStatus]]:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as fh:
            for line in fh:
                parsed = _parse_line(line)
                if parsed is not None:
                    yield parsed

    def is_completed(self, name: str) -> bool:
        return any(n == name and s is StepStatus.COMPLETED for n, s in self._transitions())

    def is_in_progress(self, name: str) -> bool:
        """True if the latest IN_PROGRESS mark for name is not followed by COMPLETED.

        Only used for operator inspection after a crash; the runner does
        not act on it.
        """
        in_progress = False
        for n, s in self._transitions():
            if n != name:
                continue
            in_progress = s is StepStatus.IN_PROGRESS
        return in_progress

    def status(self, name: str) -> StepStatus:
        seen = StepStatus.ABSENT
        for n, s in self._transitions():
            if n != name:
                continue
            if s is StepStatus.COMPLETED:
                return StepStatus.COMPLETED
            seen = StepStatus.IN_PROGRESS
        return seen

    def snapshot(self) -> dict[str, StepStatus]:
        """Replayed status of every recorded step, in first-seen order."""
        out: dict[str, StepStatus] = {}
        for n, s in self._transitions():
            if out.get(n) is StepStatus.COMPLETED:
                continue
            out[n] = s
        return out

    def mark_in_progress(self, name: str) -> None:
        """Replace stale IN_PROGRESS marks for name with a fresh one.

        Best-effort: a failed write is logged and swallowed so bookkeeping
        never stops the pipeline.
        """
        marker = f"{name}:{StepStatus.IN_PROGRESS.value}"
        try:
            if self.path.exists():
                kept = [
                    line.rstrip("\n")
                    for line in self.path.read_text(encoding="utf-8").splitlines()
                    if line.strip() != marker
                ]
                _atomic_write_lines(self.path, kept + [marker])
            else:
                self._append(marker)
        except OSError as exc:
            logger.warning("Could not record '%s' in %s: %s", marker, self.path, exc)
            return
        logger.info("Marked step '%s' as in progress", name)

    def mark_completed(self, name: str) -> None:
        marker = f"{name}:{StepStatus.COMPLETED.value}"
        try:
            self._append(marker)
        except OSError as exc:
            raise CheckpointError(f"Could not record '{marker}' in {self.path}: {exc}") from exc
        logger.info("Marked step '%s' as completed", name)

    def compact(self) -> int:
        """Rewrite the log with one line per step; returns lines dropped."""
        if not self.path.exists():
            return 0
        before = len(self.path.read_text(encoding="utf-8").splitlines())
        state = self.snapshot()
        _atomic_write_lines(self.path, [f"{n}:{s.value}" for n, s in state.items()])
        return before - len(state)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
