"""
Dependency-only builds and the compiled-dependency cache.

An entry is keyed by (target, digest of the manifest files), refined by the
cargo profile and package selection. Only a manifest change produces a new
key, so edits to application code reuse the expensive third-party build.

Layout under the cache root::

    deps/<target>-<profile>-<digest>/cache.json   key record, no timestamps
    deps/<target>-<profile>-<digest>/target/      CARGO_TARGET_DIR contents

A miss compiles the dependency graph against stub sources in a temporary
sibling directory, which is renamed into place only when every step succeeded.
"""

from __future__ import annotations

import dataclasses
import json
import os
import shutil
import tomllib
from pathlib import Path
from typing import Optional

from bible_build.console import log
from bible_build.errors import CacheIntegrityError, CommandError, CompilationError, InputError
from bible_build.model import BuildTarget
from bible_build.runner import Runner, run_command, tool_env
from bible_build.sources import SourceSet


CACHE_META = "cache.json"

_MAIN_STUB = "fn main() {}\n"
_LIB_STUB = ""


@dataclasses.dataclass(frozen=True)
class CacheKey:
    target: BuildTarget
    manifest_digest: str
    profile: str = "release"
    package: Optional[str] = None

    @property
    def entry_name(self) -> str:
        suffix = f"-{self.package}" if self.package else ""
        return f"{self.target.value}-{self.profile}{suffix}-{self.manifest_digest[:32]}"

    def to_json(self) -> dict[str, Optional[str]]:
        return {
            "target": self.target.value,
            "manifest_digest": self.manifest_digest,
            "profile": self.profile,
            "package": self.package,
        }

    @classmethod
    def for_sources(
        cls, sources: SourceSet, target: BuildTarget, *, profile: str = "release", package: Optional[str] = None
    ) -> "CacheKey":
        return cls(target, sources.manifests().digest, profile, package)


@dataclasses.dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    path: Path

    @property
    def target_dir(self) -> Path:
        return self.path / "target"

    def verify(self, sources: SourceSet, target: BuildTarget, *, profile: str, package: Optional[str] = None) -> None:
        """Refuse to compile ``sources`` for ``target`` against a cache built from other manifests."""
        if self.key.target is not target:
            raise CacheIntegrityError(
                f"Dependency cache {self.path.name} was built for {self.key.target.value}, not {target.value}"
            )
        if self.key.profile != profile or self.key.package != package:
            raise CacheIntegrityError(
                f"Dependency cache {self.path.name} was built for profile={self.key.profile} "
                f"package={self.key.package}, not profile={profile} package={package}"
            )
        current = sources.manifests().digest
        if current != self.key.manifest_digest:
            raise CacheIntegrityError(
                f"Dependency cache {self.path.name} is stale: manifests digest {current[:16]} "
                f"does not match cached {self.key.manifest_digest[:16]}; rebuild dependencies first"
            )
        if not self.target_dir.is_dir():
            raise CacheIntegrityError(f"Dependency cache {self.path} has no target directory")


class DependencyCache:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def entry_path(self, key: CacheKey) -> Path:
        return self.root / key.entry_name

    def lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        path = self.entry_path(key)
        if not path.exists():
            return None
        meta_path = path / CACHE_META
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CacheIntegrityError(f"Unreadable dependency cache metadata {meta_path}; remove {path}") from e
        if meta != key.to_json():
            raise CacheIntegrityError(f"Dependency cache {path} does not match its key; remove it and rebuild")
        return CacheEntry(key, path)


def _cargo(sub: str, target: BuildTarget, profile: str, package: Optional[str]) -> list[str]:
    cmd = ["cargo", sub, "--locked"]
    if profile == "release":
        cmd.append("--release")
    cmd.extend(target.cargo_target_args())
    if package:
        cmd.extend(["--package", package])
    return cmd


def dependency_commands(target: BuildTarget, *, profile: str, package: Optional[str] = None) -> list[list[str]]:
    cmds = [_cargo("check", target, profile, package), _cargo("build", target, profile, package)]
    if target.runs_tests:
        cmds.append(_cargo("test", target, profile, package) + ["--no-run"])
    return cmds


def _declared_target_paths(manifest: Path) -> tuple[set[str], set[str]]:
    """Explicit ``path =`` entries from a manifest, as (library roots, other roots)."""
    try:
        data = tomllib.loads(manifest.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise InputError(f"Malformed manifest {manifest}: {e}") from e
    libs: set[str] = set()
    others: set[str] = set()
    lib = data.get("lib")
    if isinstance(lib, dict) and isinstance(lib.get("path"), str):
        libs.add(lib["path"])
    for section in ("bin", "example", "test", "bench"):
        for entry in data.get(section, []) or []:
            if isinstance(entry, dict) and isinstance(entry.get("path"), str):
                others.add(entry["path"])
    package = data.get("package")
    if isinstance(package, dict) and isinstance(package.get("build"), str):
        others.add(package["build"])
    return libs, others


def _is_target_root(rel: str) -> bool:
    parts = rel.split("/")
    if parts in (["src", "lib.rs"], ["src", "main.rs"], ["build.rs"]):
        return True
    if parts[0] == "src" and len(parts) >= 3 and parts[1] == "bin":
        return True
    return parts[0] in ("examples", "tests", "benches") and rel.endswith(".rs")


def write_stub_sources(dest: Path, sources: SourceSet) -> list[str]:
    """
    Give every crate in a manifest-only tree stub target files.

    Stubs replace each library, binary, example, test, bench and build-script root
    found in ``sources``. Returns the stubbed paths, relative to ``dest``.
    """
    stubbed: list[str] = []
    all_paths = set(sources.paths)
    for manifest in sources.manifests().paths:
        if not manifest.endswith("Cargo.toml"):
            continue
        crate = manifest[: -len("Cargo.toml")]
        declared_libs, declared_others = _declared_target_paths(sources.root / manifest)
        libs = {crate + p for p in declared_libs} | {crate + "src/lib.rs"}
        roots = {crate + p for p in declared_libs | declared_others}
        roots.update(p for p in all_paths if p.startswith(crate) and _is_target_root(p[len(crate):]))
        for rel in sorted(roots):
            stub = dest / rel
            stub.parent.mkdir(parents=True, exist_ok=True)
            stub.write_text(_LIB_STUB if rel in libs else _MAIN_STUB, encoding="utf-8")
            stubbed.append(rel)
    return stubbed


def build_dependencies(
    sources: SourceSet,
    target: BuildTarget,
    *,
    cache: DependencyCache,
    home: Path,
    profile: str = "release",
    package: Optional[str] = None,
    runner: Runner = run_command,
) -> CacheEntry:
    """Return the cache entry for ``sources``' manifests, compiling dependencies on a miss."""
    manifests = sources.manifests()
    if not any(p.endswith("Cargo.toml") for p in manifests.paths):
        raise InputError(f"No Cargo.toml under {sources.root}")
    if not any(p.endswith("Cargo.lock") for p in manifests.paths):
        raise InputError(f"No Cargo.lock under {sources.root}; locked builds need a lock file")

    key = CacheKey.for_sources(sources, target, profile=profile, package=package)
    entry = cache.lookup(key)
    if entry is not None:
        log(f"OK: dependency cache hit {entry.path.name}")
        return entry

    log(f"Building {target.value} dependencies ({key.entry_name})...")
    final = cache.entry_path(key)
    tmp = cache.root / f".tmp-{key.entry_name}-{os.getpid()}"
    shutil.rmtree(tmp, ignore_errors=True)
    try:
        src = manifests.materialize(tmp / "src")
        write_stub_sources(src, sources)
        env = tool_env(home, {"CARGO_TARGET_DIR": str(tmp / "target")})
        for cmd in dependency_commands(target, profile=profile, package=package):
            try:
                runner(cmd, cwd=src, env=env)
            except CommandError as e:
                raise CompilationError(f"Dependency build failed for {target.value}: {e}") from e

        shutil.rmtree(src)
        (tmp / "target").mkdir(exist_ok=True)
        (tmp / CACHE_META).write_text(json.dumps(key.to_json(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.rename(tmp, final)
    finally:
        shutil.rmtree(tmp, ignore_errors=True)

    log(f"OK: cached dependencies in {final}")
    return CacheEntry(key, final)
