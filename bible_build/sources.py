"""
Source selection: reduce a crate directory to the files a build may read.

A file is selected when it is
- a cargo source (``*.rs``, ``Cargo.toml``, ``Cargo.lock``, cargo config,
  toolchain file), or
- matched by the extension allow-list (markup, styles, scripts, config, text,
  images), or
- inside an optional directory (e.g. ``assets/``) or an optional file, either
  of which may be absent.

Build output directories are never walked. The resulting ``SourceSet`` is
identified by a digest over (relative path, content hash) pairs, independent of
where the tree lives on disk, so unrelated files never change it.
"""

from __future__ import annotations

import dataclasses
import hashlib
import os
import shutil
from pathlib import Path
from typing import Callable, Iterable, Iterator

from bible_build.errors import InputError


MANIFEST_NAMES = frozenset({"Cargo.toml", "Cargo.lock", "rust-toolchain", "rust-toolchain.toml"})
CARGO_CONFIG_NAMES = frozenset({"config", "config.toml"})
DEFAULT_EXCLUDES = ("target", "dist", ".git", "node_modules")


@dataclasses.dataclass(frozen=True, order=True)
class SourceFile:
    path: str  # posix, relative to the SourceSet root
    digest: str


def _file_digest(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()


def is_manifest(rel: str) -> bool:
    parts = rel.split("/")
    if parts[-1] in MANIFEST_NAMES:
        return True
    return len(parts) >= 2 and parts[-2] == ".cargo" and parts[-1] in CARGO_CONFIG_NAMES


def is_cargo_source(rel: str) -> bool:
    return rel.endswith(".rs") or is_manifest(rel)


@dataclasses.dataclass(frozen=True)
class SourceSet:
    root: Path
    files: tuple[SourceFile, ...]

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self) -> Iterator[SourceFile]:
        return iter(self.files)

    def __contains__(self, rel: object) -> bool:
        return any(f.path == rel for f in self.files)

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    @property
    def digest(self) -> str:
        h = hashlib.sha256()
        for f in self.files:
            h.update(f.path.encode("utf-8"))
            h.update(b"\0")
            h.update(f.digest.encode("ascii"))
            h.update(b"\n")
        return h.hexdigest()

    def restrict(self, predicate: Callable[[str], bool]) -> "SourceSet":
        return SourceSet(self.root, tuple(f for f in self.files if predicate(f.path)))

    def manifests(self) -> "SourceSet":
        """The dependency-defining subset: everything that can change the resolved crate graph."""
        return self.restrict(is_manifest)

    def materialize(self, dest: Path, *, keep: Iterable[str] = ()) -> Path:
        """
        Copy the set into ``dest`` so that ``dest`` holds exactly these files.

        Top-level entries named in ``keep`` (e.g. a cargo ``target`` directory) survive;
        everything else already in ``dest`` is removed first. Content is re-hashed while
        copying so a file edited after selection is caught instead of silently built.
        """
        dest = Path(dest)
        keep = set(keep)
        if dest.exists():
            for child in dest.iterdir():
                if child.name in keep:
                    continue
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        dest.mkdir(parents=True, exist_ok=True)

        for f in self.files:
            src = self.root / f.path
            dst = dest / f.path
            dst.parent.mkdir(parents=True, exist_ok=True)
            try:
                shutil.copyfile(src, dst)
            except FileNotFoundError as e:
                raise InputError(f"Source file disappeared during build: {src}") from e
            if _file_digest(dst) != f.digest:
                raise InputError(f"Source file changed during build: {src}")
        return dest


def _walk(root: Path, start: Path, excludes: set[str], exclude_paths: frozenset[Path] = frozenset()) -> Iterator[str]:
    for dirpath, dirnames, filenames in os.walk(start):
        # Sorting in place keeps traversal deterministic across filesystems.
        dirnames[:] = sorted(
            d
            for d in dirnames
            if d not in excludes
            and not (d.startswith(".") and d != ".cargo")
            and Path(dirpath, d) not in exclude_paths
        )
        for name in sorted(filenames):
            full = Path(dirpath) / name
            if full.is_file():
                yield full.relative_to(root).as_posix()


def select_sources(
    root: Path,
    *,
    extensions: Iterable[str] = (),
    optional_dirs: Iterable[str] = (),
    optional_files: Iterable[str] = (),
    excludes: Iterable[str] = DEFAULT_EXCLUDES,
    exclude_paths: Iterable[Path] = (),
) -> SourceSet:
    root = Path(root).resolve()
    if not root.is_dir():
        raise InputError(f"Missing source root: {root}")

    exts = {"." + e.lower().lstrip(".") for e in extensions}
    exclude_names = set(excludes)
    # Output locations match by full path, never by name.
    skip_paths = frozenset(Path(p).resolve() for p in exclude_paths)

    selected: set[str] = set()
    for rel in _walk(root, root, exclude_names, skip_paths):
        if is_cargo_source(rel) or Path(rel).suffix.lower() in exts:
            selected.add(rel)

    for d in optional_dirs:
        base = root / d
        if not base.is_dir():
            continue
        for rel in _walk(root, base, set(), skip_paths):
            selected.add(rel)

    for name in optional_files:
        if (root / name).is_file():
            selected.add(Path(name).as_posix())

    files = tuple(sorted(SourceFile(rel, _file_digest(root / rel)) for rel in selected))
    return SourceSet(root, files)
