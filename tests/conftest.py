"""Shared fixtures: a throwaway project tree and a fake toolchain."""

from __future__ import annotations

import io
import json
import tarfile
import tomllib
from pathlib import Path

import pytest

from bible_build.config import load_config
from bible_build.console import set_quiet
from bible_build.errors import CommandError
from bible_build.model import PinnedTool, sri_sha256
from bible_build.pinning import binary_name, tree_hash


GLUE_VERSION = "0.2.100"

VENDORED = {
    "wasm-bindgen-shared-0.2.100/src/lib.rs": "pub fn shared() {}\n",
    "wasm-bindgen-shared-0.2.100/.cargo-checksum.json": '{"files":{},"package":"abc"}\n',
}

INDEX_HTML = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Bible</title>
<link data-trunk rel="css" href="style/output.css"/>
<link data-trunk rel="rust" data-wasm-opt="z"/>
<link data-trunk rel="copy-dir" href="assets"/>
</head>
<body></body>
</html>
"""


def _opt(cmd: list[str], flag: str) -> str | None:
    return cmd[cmd.index(flag) + 1] if flag in cmd else None


class FakeToolchain:
    """
    Stands in for cargo, wasm-bindgen and tailwindcss.

    Records every call and produces the files the real tool would. ``fail`` maps a
    key ("build", "clippy", "fmt", "vendor", "tailwindcss", ...) to an exit code.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], Path, dict]] = []
        self.fail: dict[str, int] = {}

    @staticmethod
    def key(cmd: list[str]) -> str:
        tool = Path(cmd[0]).name
        if tool == "cargo":
            return cmd[1]
        return tool

    def keys(self) -> list[str]:
        return [self.key(cmd) for cmd, _, _ in self.calls]

    def __call__(self, cmd, *, cwd, env=None) -> None:
        cmd = [str(c) for c in cmd]
        env = dict(env or {})
        cwd = Path(cwd)
        self.calls.append((cmd, cwd, env))
        key = self.key(cmd)
        if key in self.fail:
            raise CommandError(cmd, self.fail[key], cwd=str(cwd))

        if key == "build":
            self._cargo_build(cmd, cwd, env)
        elif key == "vendor":
            out = Path(cmd[-1])
            for rel, text in VENDORED.items():
                (out / rel).parent.mkdir(parents=True, exist_ok=True)
                (out / rel).write_text(text, encoding="utf-8")
        elif key == "install":
            root = Path(_opt(cmd, "--root"))
            name = tomllib.loads((cwd / "Cargo.toml").read_text(encoding="utf-8"))["package"]["name"]
            (root / "bin").mkdir(parents=True, exist_ok=True)
            (root / "bin" / binary_name(name)).write_text("#!/bin/sh\n", encoding="utf-8")
        elif key == "wasm-bindgen":
            out_dir = Path(_opt(cmd, "--out-dir"))
            name = _opt(cmd, "--out-name")
            wasm = Path(cmd[-1])
            (out_dir / f"{name}.js").write_text(f"// glue for {wasm.name}\nexport default function init() {{}}\n", encoding="utf-8")
            (out_dir / f"{name}_bg.wasm").write_bytes(wasm.read_bytes())
        elif key == "tailwindcss":
            entry = cwd / _opt(cmd, "-i")
            out = cwd / _opt(cmd, "-o")
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text("/* generated */\n" + entry.read_text(encoding="utf-8"), encoding="utf-8")

    def _cargo_build(self, cmd: list[str], cwd: Path, env: dict) -> None:
        target_dir = Path(env["CARGO_TARGET_DIR"])
        profile = "release" if "--release" in cmd else "debug"
        triple = _opt(cmd, "--target")
        package = _opt(cmd, "--package")
        if package is None:
            package = tomllib.loads((cwd / "Cargo.toml").read_text(encoding="utf-8"))["package"]["name"]
        out = target_dir / triple / profile if triple else target_dir / profile
        out.mkdir(parents=True, exist_ok=True)
        # Stands for compiled third-party crates; survives into the cache entry.
        (target_dir / "deps.marker").write_text("deps\n", encoding="utf-8")
        if triple:
            (out / f"{package.replace('-', '_')}.wasm").write_bytes(b"\0asm" + package.encode("utf-8"))
        else:
            (out / package).write_text("#!/bin/sh\necho ok\n", encoding="utf-8")


def make_crate_archive(name: str, version: str) -> bytes:
    files = {
        "Cargo.toml": f'[package]\nname = "{name}"\nversion = "{version}"\n',
        "Cargo.lock": "version = 3\n",
        "src/main.rs": "fn main() {}\n",
    }
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz", format=tarfile.PAX_FORMAT) as tf:
        for rel, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(f"{name}-{version}/{rel}")
            info.size = len(data)
            info.mtime = 0
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def vendored_hash(tmp_path: Path) -> str:
    out = tmp_path / "vendor-reference"
    for rel, text in VENDORED.items():
        (out / rel).parent.mkdir(parents=True, exist_ok=True)
        (out / rel).write_text(text, encoding="utf-8")
    return tree_hash(out)


class FakeRegistry:
    def __init__(self) -> None:
        self.archives: dict[tuple[str, str], bytes] = {}
        self.fetched: list[tuple[str, str]] = []

    def add(self, name: str, version: str) -> bytes:
        data = make_crate_archive(name, version)
        self.archives[(name, version)] = data
        return data

    def __call__(self, name: str, version: str) -> bytes:
        self.fetched.append((name, version))
        return self.archives[(name, version)]


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def make_client(root: Path, *, assets: bool = True) -> Path:
    site = root / "site"
    write(site / "Cargo.toml", '[package]\nname = "bible"\nversion = "0.1.0"\nedition = "2021"\n\n'
          '[dependencies]\nwasm-bindgen = "=0.2.100"\n')
    write(site / "Cargo.lock", 'version = 3\n\n[[package]]\nname = "bible"\nversion = "0.1.0"\n\n'
          f'[[package]]\nname = "wasm-bindgen"\nversion = "{GLUE_VERSION}"\n')
    write(site / "build.rs", "fn main() { println!(\"cargo:rerun-if-changed=src/stv.json\"); }\n")
    write(site / "src" / "main.rs", "mod app;\nfn main() { app::run(); }\n")
    write(site / "src" / "app.rs", "pub fn run() {}\n")
    write(site / "src" / "stv.json", '{"books": []}\n')
    write(site / "index.html", INDEX_HTML)
    write(site / "style" / "tailwind.css", "@tailwind base;\n")
    write(site / "tailwind.config.js", "module.exports = { content: ['./src/**/*.rs'] };\n")
    if assets:
        (site / "assets").mkdir(parents=True, exist_ok=True)
        (site / "assets" / "logo.png").write_bytes(b"\x89PNG fake")
        write(site / "assets" / "fonts" / "LICENSE", "OFL\n")
    return site


def make_verify(root: Path, *, corpus: bool = True) -> Path:
    crate = root / "bible-verify"
    write(crate / "Cargo.toml", '[package]\nname = "bible-verify"\nversion = "0.1.0"\nedition = "2021"\n')
    write(crate / "Cargo.lock", 'version = 3\n\n[[package]]\nname = "bible-verify"\nversion = "0.1.0"\n')
    write(crate / "src" / "main.rs", "mod types;\nfn main() {}\n")
    write(crate / "src" / "types.rs", "pub struct Bible;\n")
    if corpus:
        write(crate / "kjv.json", '{"books": []}\n')
    return crate


@pytest.fixture(autouse=True)
def _loud():
    set_quiet(False)
    yield
    set_quiet(False)


@pytest.fixture
def toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture
def registry() -> FakeRegistry:
    reg = FakeRegistry()
    reg.add("wasm-bindgen-cli", GLUE_VERSION)
    return reg


@pytest.fixture
def glue_pin(registry, tmp_path) -> PinnedTool:
    return PinnedTool(
        name="wasm-bindgen-cli",
        version=GLUE_VERSION,
        source_hash=sri_sha256(registry.archives[("wasm-bindgen-cli", GLUE_VERSION)]),
        deps_hash=vendored_hash(tmp_path),
    )


@pytest.fixture
def project(tmp_path, glue_pin) -> Path:
    root = tmp_path / "project"
    make_client(root)
    make_verify(root)
    write(root / "bible-build.json", json.dumps({"tools": {glue_pin.name: glue_pin.to_json()}}, indent=2))
    return root


@pytest.fixture
def config(project):
    return load_config(project, environ={})
