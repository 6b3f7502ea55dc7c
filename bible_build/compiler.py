"""
Compile the project's own code against a verified dependency cache.

Compilation happens in a workspace: a materialized copy of the SourceSet
(``src/``) next to a cargo target directory (``target/``) seeded from the
dependency cache entry. Nothing outside the SourceSet is visible to cargo.
"""

from __future__ import annotations

import dataclasses
import shutil
from pathlib import Path
from typing import Optional

from bible_build.console import log
from bible_build.deps_cache import CacheEntry
from bible_build.errors import CheckError, CommandError, CompilationError
from bible_build.model import BuildTarget, CompiledArtifacts
from bible_build.runner import Runner, run_command, tool_env
from bible_build.sources import SourceSet


SEED_MARKER = ".deps-entry"


@dataclasses.dataclass(frozen=True)
class Workspace:
    root: Path

    @property
    def src(self) -> Path:
        return self.root / "src"

    @property
    def target_dir(self) -> Path:
        return self.root / "target"


def prepare_workspace(sources: SourceSet, workdir: Path, entry: CacheEntry) -> Workspace:
    """
    Materialize ``sources`` into ``workdir/src`` and seed ``workdir/target`` from ``entry``.

    A target directory already seeded from the same entry is kept, so repeated builds in a
    long-lived workspace stay incremental; one seeded from another entry is replaced.
    """
    ws = Workspace(Path(workdir))
    sources.materialize(ws.src)

    marker = ws.root / SEED_MARKER
    seeded_from = marker.read_text(encoding="utf-8").strip() if marker.exists() else None
    if seeded_from != entry.path.name:
        shutil.rmtree(ws.target_dir, ignore_errors=True)
        shutil.copytree(entry.target_dir, ws.target_dir, symlinks=True)
        marker.write_text(entry.path.name + "\n", encoding="utf-8")
    return ws


def _cargo_env(ws: Workspace, home: Path) -> dict[str, str]:
    return tool_env(home, {"CARGO_TARGET_DIR": str(ws.target_dir)})


def compile_target(
    ws: Workspace,
    sources: SourceSet,
    target: BuildTarget,
    entry: CacheEntry,
    *,
    home: Path,
    profile: str = "release",
    package: Optional[str] = None,
    artifact: Optional[str] = None,
    runner: Runner = run_command,
) -> CompiledArtifacts:
    """
    Build ``package`` for ``target``. ``artifact`` names the produced crate when it differs
    from the package selection (defaults to the package).
    """
    entry.verify(sources, target, profile=profile, package=package)

    cmd = ["cargo", "build", "--locked"]
    if profile == "release":
        cmd.append("--release")
    cmd.extend(target.cargo_target_args())
    if package:
        cmd.extend(["--package", package])

    log(f"Compiling {package or sources.root.name} for {target.value} ({profile})...")
    try:
        runner(cmd, cwd=ws.src, env=_cargo_env(ws, home))
    except CommandError as e:
        raise CompilationError(f"{target.value} compilation failed: {e}") from e

    name = artifact or package or sources.root.name
    compiled = CompiledArtifacts(target=target, package=name, profile=profile, target_dir=ws.target_dir)
    produced = compiled.wasm_path if target is BuildTarget.WASM else compiled.binary_path
    if not produced.exists():
        raise CompilationError(f"Build did not produce {produced}")
    log(f"OK: compiled {produced.name}")
    return compiled


def check_commands(profile: str = "release") -> list[tuple[str, list[str]]]:
    clippy = ["cargo", "clippy", "--all-targets", "--locked"]
    if profile == "release":
        clippy.append("--release")
    return [
        ("clippy", clippy + ["--", "--deny", "warnings"]),
        ("fmt", ["cargo", "fmt", "--check"]),
    ]


def run_checks(
    ws: Workspace,
    sources: SourceSet,
    entry: CacheEntry,
    *,
    home: Path,
    profile: str = "release",
    runner: Runner = run_command,
) -> None:
    """
    Run the gating checks. Every gate runs; any failure raises ``CheckError`` naming all
    failed gates.
    """
    entry.verify(sources, BuildTarget.NATIVE, profile=profile, package=entry.key.package)
    env = _cargo_env(ws, home)
    failed: list[str] = []
    for name, cmd in check_commands(profile):
        log(f"Checking {name}...")
        try:
            runner(cmd, cwd=ws.src, env=env)
        except CommandError as e:
            failed.append(f"{name} (exit code {e.returncode})")
            continue
        log(f"OK: {name}")
    if failed:
        raise CheckError(f"Gating checks failed: {', '.join(failed)}")
