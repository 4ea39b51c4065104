from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path

from w2vu_pipeline.errors import ConfigPatchError

logger = logging.getLogger(__name__)


def _read_lines(path: Path) -> list[str]:
    if not path.is_file():
        raise ConfigPatchError(f"File not found: {path}")
    with path.open("r", encoding="utf-8", newline="") as fh:
        return fh.read().splitlines(keepends=True)


def write_atomic(path: Path, text: str) -> None:
    """Replace path's content via a sibling temp file, keeping its mode."""
    tmp = path.with_name(path.name + ".tmp")
    try:
        with tmp.open("w", encoding="utf-8", newline="") as fh:
            fh.write(text)
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def _write(path: Path, text: str, *, backup: bool = False) -> None:
    if backup:
        bak = path.with_name(path.name + ".bak")
        shutil.copy2(path, bak)
        logger.info("Backup saved as %s", bak)
    write_atomic(path, text)


def _ending(line: str) -> str:
    return line[len(line.rstrip("\r\n")):]


def comment_out_line(path: Path, line: str) -> bool:
    """Prefix '# ' to every line exactly equal to line."""
    lines = _read_lines(path)
    target = line.rstrip("\r\n")
    hits = [i for i, current in enumerate(lines) if current.rstrip("\r\n") == target]
    if not hits:
        logger.info("Line not found in %s, no changes made: %s", path, target)
        return False
    for i in hits:
        lines[i] = "# " + lines[i]
    _write(path, "".join(lines), backup=True)
    logger.info("Commented out %d line(s) in %s", len(hits), path)
    return True


def insert_after_match(path: Path, pattern: str, block: str, marker: str) -> bool:
    """Insert block after each line matching pattern.

    Skipped when marker already occurs in the file, so repeated runs do
    not stack copies. A pattern with no match is an error.
    """
    lines = _read_lines(path)
    rx = re.compile(pattern)
    if not any(rx.search(line) for line in lines):
        raise ConfigPatchError(f"Pattern not found in {path}: {pattern}")
    if any(marker in line for line in lines):
        logger.info("%s already contains the inserted block", path)
        return False

    if not block.endswith("\n"):
        block += "\n"
    out: list[str] = []
    for line in lines:
        out.append(line)
        if rx.search(line):
            if not line.endswith("\n"):
                out[-1] = line + "\n"
            out.append(block)
    _write(path, "".join(out), backup=True)
    logger.info("Inserted block after %r in %s", pattern, path)
    return True


def replace_option_value(path: Path, option: str, value: object) -> int:
    """Rewrite the number following a command-line option, e.g. '--batch-size 64'."""
    lines = _read_lines(path)
    rx = re.compile(rf"({re.escape(option)}\s+)[0-9]*\.?[0-9]+")
    text = "".join(lines)
    new_text, count = rx.subn(lambda m: f"{m.group(1)}{value}", text)
    if count == 0:
        logger.warning("Option %s not found in %s", option, path)
        return 0
    if new_text != text:
        _write(path, new_text, backup=True)
    logger.info("Updated %s to %s in %s (%d occurrence(s))", option, value, path, count)
    return count


def replace_function_return(path: Path, function: str, new_return: str) -> bool:
    """Replace the first return statement of a Python function.

    Scans from the 'def <function>' line to the first line mentioning
    'return'; the replacement is indented by four spaces.
    """
    lines = _read_lines(path)
    start = next((i for i, line in enumerate(lines) if f"def {function}" in line), None)
    if start is None:
        raise ConfigPatchError(f"Function {function} not found in {path}")

    return_rx = re.compile(r"^ *return .*")
    for i in range(start, len(lines)):
        body = lines[i].rstrip("\r\n")
        if "return" not in body:
            continue
        if not return_rx.match(body):
            break
        replacement = f"    {new_return}"
        if body == replacement:
            return False
        lines[i] = replacement + _ending(lines[i])
        _write(path, "".join(lines))
        logger.info("Updated return statement in %s(): %s", function, new_return)
        return True
    raise ConfigPatchError(f"No return statement found for {function} in {path}")


def replace_literal(path: Path, old: str, new: str) -> int:
    lines = _read_lines(path)
    text = "".join(lines)
    count = text.count(old)
    if count:
        _write(path, text.replace(old, new))
        logger.info("Replaced %d occurrence(s) of %r in %s", count, old, path)
    return count


def substitute_pattern(path: Path, pattern: str, replacement: str) -> int:
    lines = _read_lines(path)
    text = "".join(lines)
    new_text, count = re.subn(pattern, replacement, text)
    if new_text != text:
        _write(path, new_text)
        logger.info("Rewrote %d match(es) of %r in %s", count, pattern, path)
    return count
