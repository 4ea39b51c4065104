from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol

from w2vu_pipeline.errors import MissingArtifactError
from w2vu_pipeline.pipeline.config import ResolvedPaths

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Command:
    """One blocking invocation of an external tool."""

    args: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_path: Path | None = None
    stdout_path: Path | None = None
    merge_stderr: bool = False
    tee: bool = False  # echo captured output to the console as well

    def display(self) -> str:
        text = " ".join(shlex.quote(a) for a in self.args)
        if self.stdin_path is not None:
            text += f" < {self.stdin_path}"
        if self.stdout_path is not None:
            text += f" > {self.stdout_path}"
        return text


class CommandRunner(Protocol):
    def run(self, command: Command) -> int:
        """Run command to completion and return its exit status."""
        ...


def build_tool_env(paths: ResolvedPaths, base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment shared by every external tool invocation.

    Prefixing PATH with the virtualenv's bin directory stands in for
    sourcing its activate script.
    """
    env = dict(os.environ if base is None else base)

    def _prefix(var: str, *parts: Path) -> None:
        existing = env.get(var, "")
        joined = os.pathsep.join(str(p) for p in parts)
        env[var] = f"{joined}{os.pathsep}{existing}" if existing else joined

    env["FAIRSEQ_ROOT"] = str(paths.fairseq_root)
    env["KALDI_ROOT"] = str(paths.kaldi_root)
    env["KENLM_ROOT"] = str(paths.kenlm_bin)
    env["HYDRA_FULL_ERROR"] = "1"
    _prefix("PYTHONPATH", paths.fairseq_root)
    _prefix("LD_LIBRARY_PATH", paths.kaldi_root / "src" / "lib", paths.kenlm_bin / "lib")
    if paths.venv_path is not None:
        env["VIRTUAL_ENV"] = str(paths.venv_path)
        _prefix("PATH", paths.venv_path / "bin")
    return env


@dataclass
class SubprocessRunner:
    base_env: Mapping[str, str]

    def run(self, command: Command) -> int:
        env = dict(self.base_env)
        env.update(command.env)
        args = list(command.args)
        logger.info("Running: %s", command.display())
        if command.cwd is not None and not command.cwd.is_dir():
            raise MissingArtifactError(command.cwd, f"Working directory for {args[0]} does not exist: {command.cwd}")

        stdin = command.stdin_path.open("rb") if command.stdin_path is not None else None
        stderr = subprocess.STDOUT if command.merge_stderr else None
        try:
            if command.stdout_path is None:
                return subprocess.run(args, cwd=command.cwd, env=env, stdin=stdin, stderr=stderr).returncode

            command.stdout_path.parent.mkdir(parents=True, exist_ok=True)
            with command.stdout_path.open("wb") as out:
                if not command.tee:
                    return subprocess.run(
                        args, cwd=command.cwd, env=env, stdin=stdin, stdout=out, stderr=stderr
                    ).returncode

                proc = subprocess.Popen(
                    args, cwd=command.cwd, env=env, stdin=stdin, stdout=subprocess.PIPE, stderr=stderr
                )
                assert proc.stdout is not None
                for chunk in iter(proc.stdout.readline, b""):
                    out.write(chunk)
                    sys.stdout.buffer.write(chunk)
                    sys.stdout.flush()
                proc.stdout.close()
                return proc.wait()
        except FileNotFoundError as exc:
            logger.error("Executable not found for %s: %s", args[0], exc)
            return 127
        finally:
            if stdin is not None:
                stdin.close()
