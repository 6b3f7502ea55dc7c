"""
Development supervisor: the Tailwind watcher and the live server as sibling
child processes under one stop event.

- the project root is checked before anything starts;
- the stylesheet is generated once, synchronously, if it does not exist, so
  the first page served never references a missing file;
- SIGINT/SIGTERM set the stop event; further signals are no-ops;
- on stop the watcher is terminated first, then the server, each escalated to
  a kill after a grace period; the supervisor then exits 0;
- a child exiting on its own does not stop its sibling; the session ends when
  both have exited.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import Mapping, Optional, Sequence

from bible_build.config import PipelineConfig
from bible_build.console import log
from bible_build.errors import SupervisorError
from bible_build.pipeline import css_generator
from bible_build.runner import Runner, run_command, tool_env


STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class DevSession:
    def __init__(
        self,
        watcher_cmd: Sequence[str],
        server_cmd: Sequence[str],
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        grace: float = 5.0,
    ) -> None:
        self.commands = {"watcher": list(watcher_cmd), "server": list(server_cmd)}
        self.cwd = Path(cwd)
        self.env = dict(env) if env is not None else None
        self.grace = grace
        self.processes: dict[str, asyncio.subprocess.Process] = {}
        self.stopped_by_request = False
        self._stop: Optional[asyncio.Event] = None

    def request_stop(self) -> None:
        """Ask the session to shut down. Safe to call any number of times."""
        if self.stopped_by_request:
            return
        self.stopped_by_request = True
        log("Stopping development server...")
        if self._stop is not None:
            self._stop.set()

    async def _start(self, name: str) -> None:
        cmd = self.commands[name]
        log(f"Starting {name}: {' '.join(cmd)}")
        try:
            self.processes[name] = await asyncio.create_subprocess_exec(*cmd, cwd=str(self.cwd), env=self.env)
        except FileNotFoundError as e:
            raise SupervisorError(f"Missing tool for {name}: {cmd[0]} (is it on PATH?)") from e

    async def _terminate(self, name: str) -> None:
        proc = self.processes.get(name)
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    async def run(self) -> int:
        self._stop = asyncio.Event()
        if self.stopped_by_request:
            self._stop.set()
        exit_codes: list[int] = []
        try:
            await self._start("watcher")
            await self._start("server")

            waits = {asyncio.ensure_future(p.wait()): name for name, p in self.processes.items()}
            stop_wait = asyncio.ensure_future(self._stop.wait())
            try:
                while waits:
                    done, _ = await asyncio.wait({stop_wait, *waits}, return_when=asyncio.FIRST_COMPLETED)
                    if stop_wait in done:
                        break
                    for task in done:
                        name = waits.pop(task)
                        code = task.result()
                        log(f"{name} exited with code {code}")
                        exit_codes.append(code)
            finally:
                stop_wait.cancel()
                for task in waits:
                    task.cancel()
        finally:
            await self._terminate("watcher")
            await self._terminate("server")

        if self.stopped_by_request:
            return 0
        return next((c for c in exit_codes if c != 0), 0)


def check_project_root(config: PipelineConfig) -> None:
    if not config.client_root.is_dir():
        raise SupervisorError(
            f"Please run this from the project root directory (no {config.client_dir}/ in {config.project_root})"
        )


def server_command(config: PipelineConfig, *, port: int, open_browser: bool, quiet: bool = False) -> list[str]:
    cmd = [sys.executable, "-m", "bible_build", "--project-root", str(config.project_root)]
    if quiet:
        cmd.append("--quiet")
    cmd.extend(["serve", "--port", str(port)])
    if open_browser:
        cmd.append("--open")
    return cmd


async def _supervise(session: DevSession) -> int:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in STOP_SIGNALS:
        try:
            loop.add_signal_handler(sig, session.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C surfaces as KeyboardInterrupt.
            pass
    try:
        return await session.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def run_dev(
    config: PipelineConfig,
    *,
    port: Optional[int] = None,
    open_browser: bool = False,
    runner: Runner = run_command,
    quiet: bool = False,
    server_cmd: Optional[Sequence[str]] = None,
    watcher_cmd: Optional[Sequence[str]] = None,
    grace: float = 5.0,
) -> int:
    check_project_root(config)
    home = Path(config.home_dir)
    css = css_generator(config, config.client_root)
    css.ensure_output(home=home, runner=runner)

    session = DevSession(
        watcher_cmd or css.command(watch=True),
        server_cmd or server_command(config, port=port or config.dev_port, open_browser=open_browser, quiet=quiet),
        cwd=config.client_root,
        env=tool_env(home),
        grace=grace,
    )
    try:
        return asyncio.run(_supervise(session))
    except KeyboardInterrupt:
        return 0
