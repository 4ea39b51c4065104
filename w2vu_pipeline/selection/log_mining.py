"""Pick the best decoding trial out of a Kaldi self-training run log.

The self-training and decode scripts print one line per trial, e.g.::

    INFO:root:/st/out/exp/tri3b/decode_valid/scoring/7.0.5.tra.txt: score 0.5, wer 21.33%, ...

The score is a word/phone error rate, so lower is better.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TRIAL_MARKER = "INFO:root:"
_SCORE_RE = re.compile(r"wer ([0-9.]+)%")
_PATH_RE = re.compile(re.escape(TRIAL_MARKER) + r"([^:]+):")
_RESULT_SUFFIX = ".tra.txt"


@dataclass(frozen=True)
class TrialResult:
    score: float
    path: str


def parse_trials(log_text: str) -> list[TrialResult]:
    trials: list[TrialResult] = []
    for line in log_text.splitlines():
        if TRIAL_MARKER not in line:
            continue
        score_match = _SCORE_RE.search(line)
        path_match = _PATH_RE.search(line)
        if score_match is None or path_match is None:
            continue
        try:
            score = float(score_match.group(1))
        except ValueError:
            continue
        trials.append(TrialResult(score=score, path=path_match.group(1)))
    return trials


def select_best(log_text: str) -> str | None:
    """Path of the lowest-scoring trial, or None when no trial was logged.

    Ties go to the trial logged first.
    """
    trials = parse_trials(log_text)
    if not trials:
        return None
    return min(trials, key=lambda t: t.score).path


def select_best_from_file(path: Path) -> str | None:
    if not path.is_file():
        logger.warning("Run log %s does not exist yet", path)
        return None
    return select_best(path.read_text(encoding="utf-8", errors="replace"))


@dataclass(frozen=True)
class DecodeParams:
    """Trial identifiers recovered from a result path.

    The recipe lays results out as ``<exp>/<decode dir>/scoring/<lmparam>.tra.txt``.
    """

    dec_exp: str
    dec_lmparam: str

    @classmethod
    def from_result_path(cls, path: str) -> "DecodeParams":
        parts = path.split("/")
        if len(parts) < 4:
            raise ValueError(f"Result path has too few segments to identify a trial: {path}")
        lmparam = parts[-1]
        if lmparam.endswith(_RESULT_SUFFIX):
            lmparam = lmparam[: -len(_RESULT_SUFFIX)]
        return cls(dec_exp=parts[-4], dec_lmparam=lmparam)
