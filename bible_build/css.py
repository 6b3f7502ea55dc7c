"""
Tailwind stylesheet generation.

The tool is invoked as ``tailwindcss -i <entry> -o <output> --config <config>``,
once for packaging or with ``--watch`` under the dev supervisor.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path

from bible_build.console import log
from bible_build.errors import CommandError, InputError, StylesheetError
from bible_build.runner import Runner, run_command, tool_env


@dataclasses.dataclass(frozen=True)
class CssGenerator:
    root: Path
    entry: str
    output: str
    config: str
    tool: str = "tailwindcss"

    @property
    def entry_path(self) -> Path:
        return self.root / self.entry

    @property
    def output_path(self) -> Path:
        return self.root / self.output

    @property
    def config_path(self) -> Path:
        return self.root / self.config

    def command(self, *, watch: bool = False) -> list[str]:
        cmd = [self.tool, "-i", f"./{self.entry}", "-o", f"./{self.output}", "--config", f"./{self.config}"]
        if watch:
            cmd.append("--watch")
        return cmd

    def check_inputs(self) -> None:
        if not self.entry_path.is_file():
            raise InputError(f"Missing stylesheet entry: {self.entry_path}")
        if not self.config_path.is_file():
            raise InputError(f"Missing stylesheet config: {self.config_path}")

    def generate(self, *, home: Path, runner: Runner = run_command) -> Path:
        self.check_inputs()
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        log(f"Building Tailwind CSS -> {self.output}")
        try:
            runner(self.command(), cwd=self.root, env=tool_env(home))
        except CommandError as e:
            raise StylesheetError(f"Stylesheet generation failed: {e}") from e
        if not self.output_path.is_file():
            raise StylesheetError(f"{self.tool} did not produce {self.output_path}")
        return self.output_path

    def ensure_output(self, *, home: Path, runner: Runner = run_command) -> Path:
        """Generate the stylesheet once if it does not exist yet."""
        if self.output_path.is_file():
            return self.output_path
        log("Generating initial Tailwind CSS...")
        return self.generate(home=home, runner=runner)
