"""
Content-hash pinning for external build tools.

A pinned tool is fetched as a crate archive, checked against ``source_hash``,
unpacked, has its dependency tree vendored and checked against ``deps_hash``,
and only then built offline from the vendored tree. Either mismatch is fatal
and leaves nothing usable in the tool store.

Store layout::

    tools/<name>-<version>/pin.json     the pin the tool was built from
    tools/<name>-<version>/bin/<binary>
"""

from __future__ import annotations

import hashlib
import io
import json
import os
import shutil
import tarfile
import tomllib
from pathlib import Path
from typing import Callable, Optional

import requests

from bible_build.console import log
from bible_build.errors import CommandError, CompilationError, InputError, ToolIntegrityError
from bible_build.model import PinnedTool, sri_sha256
from bible_build.runner import Runner, run_command, tool_env


CRATE_URL = "https://static.crates.io/crates/{name}/{name}-{version}.crate"
PIN_STAMP = "pin.json"

# Crate name -> installed executable, where they differ.
TOOL_BINARIES = {"wasm-bindgen-cli": "wasm-bindgen"}

# Pinned tool -> runtime crate whose version it must equal in the client's Cargo.lock.
LOCKED_COMPANIONS = {"wasm-bindgen-cli": "wasm-bindgen"}

Fetcher = Callable[[str, str], bytes]


def fetch_crate(name: str, version: str, *, timeout: float = 60.0) -> bytes:
    url = CRATE_URL.format(name=name, version=version)
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise InputError(f"Failed to fetch {name} {version} from {url}: {e}") from e
    return resp.content


def tree_hash(root: Path) -> str:
    """SRI digest of a directory tree: sorted relative paths and their contents."""
    h = hashlib.sha256()
    for path in sorted(p for p in Path(root).rglob("*") if p.is_file()):
        rel = path.relative_to(root).as_posix()
        h.update(rel.encode("utf-8"))
        h.update(b"\0")
        h.update(hashlib.sha256(path.read_bytes()).digest())
    return sri_sha256(h.digest())


def binary_name(tool_name: str) -> str:
    return TOOL_BINARIES.get(tool_name, tool_name)


def _mismatch(what: str, tool: PinnedTool, expected: str, got: str) -> ToolIntegrityError:
    return ToolIntegrityError(
        f"Hash mismatch for {tool.name} {tool.version} {what}:\n  expected: {expected}\n  got:      {got}"
    )


def _unpack(data: bytes, dest: Path, name: str, version: str) -> Path:
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tf:
        tf.extractall(dest, filter="data")
    crate_dir = dest / f"{name}-{version}"
    if not (crate_dir / "Cargo.toml").is_file():
        raise ToolIntegrityError(f"Archive for {name} {version} has no {crate_dir.name}/Cargo.toml")
    return crate_dir


def _vendor(crate_dir: Path, vendor_dir: Path, *, home: Path, runner: Runner) -> None:
    try:
        runner(
            ["cargo", "vendor", "--locked", "--versioned-dirs", str(vendor_dir)],
            cwd=crate_dir,
            env=tool_env(home),
        )
    except CommandError as e:
        raise InputError(f"Failed to vendor dependencies of {crate_dir.name}: {e}") from e


def _point_cargo_at_vendor(crate_dir: Path, vendor_dir: Path) -> None:
    cargo_dir = crate_dir / ".cargo"
    cargo_dir.mkdir(exist_ok=True)
    (cargo_dir / "config.toml").write_text(
        "[source.crates-io]\n"
        'replace-with = "vendored-sources"\n\n'
        "[source.vendored-sources]\n"
        f"directory = {json.dumps(str(vendor_dir))}\n",
        encoding="utf-8",
    )


def compute_pin(
    name: str,
    version: str,
    *,
    scratch: Path,
    home: Path,
    fetch: Fetcher = fetch_crate,
    runner: Runner = run_command,
) -> PinnedTool:
    """Fetch a tool and report the hashes to pin it with. Nothing is kept."""
    tmp = Path(scratch) / f".pin-{name}-{version}-{os.getpid()}"
    shutil.rmtree(tmp, ignore_errors=True)
    try:
        data = fetch(name, version)
        crate_dir = _unpack(data, tmp / "src", name, version)
        _vendor(crate_dir, tmp / "vendor", home=home, runner=runner)
        return PinnedTool(name, version, sri_sha256(data), tree_hash(tmp / "vendor"))
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


class ToolStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def tool_dir(self, tool: PinnedTool) -> Path:
        return self.root / tool.key

    def binary(self, tool: PinnedTool) -> Path:
        return self.tool_dir(tool) / "bin" / binary_name(tool.name)

    def lookup(self, tool: PinnedTool) -> Optional[Path]:
        stamp = self.tool_dir(tool) / PIN_STAMP
        if not stamp.is_file() or not self.binary(tool).is_file():
            return None
        try:
            recorded = json.loads(stamp.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        if recorded != tool.to_json():
            return None
        return self.binary(tool)

    def resolve(
        self,
        tool: PinnedTool,
        *,
        home: Path,
        fetch: Fetcher = fetch_crate,
        runner: Runner = run_command,
    ) -> Path:
        """Return the verified tool binary, fetching and building it on first use."""
        found = self.lookup(tool)
        if found is not None:
            log(f"OK: {tool.name} {tool.version} (pinned, cached)")
            return found

        log(f"Fetching {tool.name} {tool.version}...")
        final = self.tool_dir(tool)
        tmp = self.root / f".tmp-{tool.key}-{os.getpid()}"
        shutil.rmtree(tmp, ignore_errors=True)
        try:
            data = fetch(tool.name, tool.version)
            got = sri_sha256(data)
            if got != tool.source_hash:
                raise _mismatch("source", tool, tool.source_hash, got)

            crate_dir = _unpack(data, tmp / "src", tool.name, tool.version)
            vendor_dir = tmp / "vendor"
            _vendor(crate_dir, vendor_dir, home=home, runner=runner)
            got = tree_hash(vendor_dir)
            if got != tool.deps_hash:
                raise _mismatch("dependencies", tool, tool.deps_hash, got)

            _point_cargo_at_vendor(crate_dir, vendor_dir)
            log(f"Building {tool.name} {tool.version}...")
            try:
                runner(
                    ["cargo", "install", "--path", str(crate_dir), "--root", str(tmp / "install"),
                     "--locked", "--offline"],
                    cwd=crate_dir,
                    env=tool_env(home, {"CARGO_TARGET_DIR": str(tmp / "target")}),
                )
            except CommandError as e:
                raise CompilationError(f"Building {tool.name} {tool.version} failed: {e}") from e

            built = tmp / "install" / "bin" / binary_name(tool.name)
            if not built.is_file():
                raise CompilationError(f"Building {tool.name} did not produce {built.name}")

            shutil.rmtree(final, ignore_errors=True)
            final.mkdir(parents=True)
            shutil.move(str(tmp / "install" / "bin"), str(final / "bin"))
            (final / PIN_STAMP).write_text(json.dumps(tool.to_json(), indent=2) + "\n", encoding="utf-8")
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

        log(f"OK: {tool.name} {tool.version} verified and built")
        return self.binary(tool)


def check_lock_agreement(lock_path: Path, tool: PinnedTool) -> None:
    """
    The glue generator must match the runtime crate version the client links,
    otherwise the generated bindings do not fit the module.
    """
    companion = LOCKED_COMPANIONS.get(tool.name)
    if companion is None:
        return
    if not lock_path.is_file():
        raise InputError(f"Missing lock file: {lock_path}")
    try:
        lock = tomllib.loads(lock_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise InputError(f"Malformed lock file {lock_path}: {e}") from e

    versions = sorted({p.get("version") for p in lock.get("package", []) if p.get("name") == companion})
    if not versions:
        raise ToolIntegrityError(f"{lock_path} does not lock {companion}; cannot pair it with {tool.name}")
    if versions != [tool.version]:
        raise ToolIntegrityError(
            f"{tool.name} is pinned at {tool.version} but {lock_path.name} locks {companion} "
            f"{', '.join(versions)}; update the pin or the lock file"
        )
