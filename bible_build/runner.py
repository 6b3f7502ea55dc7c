"""
External command execution.

Every stage takes a ``runner`` keyword so tests can substitute the toolchains.
A runner is called as ``runner(cmd, cwd=..., env=...)`` and either returns or
raises ``CommandError``.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Callable, Mapping, Optional

from bible_build.errors import CommandError, InputError


Runner = Callable[..., None]


def run_command(cmd: list[str], *, cwd: Path, env: Optional[Mapping[str, str]] = None) -> None:
    try:
        subprocess.run([str(c) for c in cmd], cwd=str(cwd), env=dict(env) if env is not None else None, check=True)
    except FileNotFoundError as e:
        raise InputError(f"Missing tool: {cmd[0]} (is it installed and on PATH?)") from e
    except subprocess.CalledProcessError as e:
        raise CommandError([str(c) for c in cmd], e.returncode, cwd=str(cwd)) from e


def tool_env(home: Path, extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Ambient environment with HOME pinned to a per-build directory."""
    home.mkdir(parents=True, exist_ok=True)
    env = dict(os.environ)
    env["HOME"] = str(home)
    if extra:
        env.update(extra)
    return env
