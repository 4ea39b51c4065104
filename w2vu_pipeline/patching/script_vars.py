from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Mapping

from w2vu_pipeline.errors import ConfigPatchError
from w2vu_pipeline.patching.script_edits import write_atomic

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FORBIDDEN = ("\n", "\r", "\0")


def _validate(name: str, value: str) -> None:
    if not _NAME_RE.match(name):
        raise ConfigPatchError(f"Not a valid variable name: {name!r}")
    if any(ch in value for ch in _FORBIDDEN):
        raise ConfigPatchError(f"Value for {name} spans lines or contains NUL: {value!r}")


def update_variables(path: Path, assignments: Mapping[str, object]) -> list[str]:
    """Rewrite existing ``name=...`` lines to ``name=value``.

    Update-only: names with no matching line are skipped, never appended.
    Values are inserted verbatim, so '/', '&' and '\\' need no escaping.
    When no line changes the file is not rewritten.

    Returns the names that matched at least one line.
    """
    if not path.is_file():
        raise ConfigPatchError(f"Script not found: {path}")

    pairs = {name: str(value) for name, value in assignments.items()}
    for name, value in pairs.items():
        _validate(name, value)

    with path.open("r", encoding="utf-8", newline="") as fh:
        lines = fh.read().splitlines(keepends=True)

    matched: list[str] = []
    changed = False
    for name, value in pairs.items():
        prefix = f"{name}="
        hit = False
        for i, line in enumerate(lines):
            if not line.startswith(prefix):
                continue
            hit = True
            body = line.rstrip("\r\n")
            new_line = f"{prefix}{value}{line[len(body):]}"
            if new_line != line:
                lines[i] = new_line
                changed = True
        if hit:
            matched.append(name)
        else:
            logger.debug("%s has no '%s' line; left as is", path, prefix)

    if changed:
        write_atomic(path, "".join(lines))
        logger.info("Updated %s: %s", path, ", ".join(f"{n}={pairs[n]}" for n in matched))
    return matched
