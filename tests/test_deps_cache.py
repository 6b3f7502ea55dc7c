"""Tests for dependency-only builds and cache keying."""

import json

import pytest

from bible_build.config import DEFAULT_EXTENSIONS
from bible_build.deps_cache import (
    CACHE_META,
    CacheKey,
    DependencyCache,
    build_dependencies,
    dependency_commands,
    write_stub_sources,
)
from bible_build.errors import CacheIntegrityError, CompilationError, InputError
from bible_build.model import BuildTarget
from bible_build.sources import select_sources

from conftest import make_client, write


def _sources(site):
    return select_sources(site, extensions=DEFAULT_EXTENSIONS, optional_dirs=("assets",))


@pytest.fixture
def site(tmp_path):
    return make_client(tmp_path / "project")


@pytest.fixture
def cache(tmp_path):
    return DependencyCache(tmp_path / "cache" / "deps")


def _build(site, cache, toolchain, tmp_path, target=BuildTarget.WASM, package="bible"):
    return build_dependencies(
        _sources(site), target, cache=cache, home=tmp_path / "home", package=package, runner=toolchain
    )


class TestCacheKeying:

    def test_identical_manifests_hit(self, site, cache, toolchain, tmp_path):
        first = _build(site, cache, toolchain, tmp_path)
        calls = len(toolchain.calls)
        second = _build(site, cache, toolchain, tmp_path)
        assert second.path == first.path
        assert len(toolchain.calls) == calls, "a cache hit must not run cargo"

    def test_code_edit_hits(self, site, cache, toolchain, tmp_path):
        first = _build(site, cache, toolchain, tmp_path)
        write(site / "src" / "app.rs", "pub fn run() { let _ = 1; }\n")
        write(site / "index.html", "<html></html>\n")
        calls = len(toolchain.calls)
        assert _build(site, cache, toolchain, tmp_path).path == first.path
        assert len(toolchain.calls) == calls

    def test_one_character_manifest_edit_misses(self, site, cache, toolchain, tmp_path):
        first = _build(site, cache, toolchain, tmp_path)
        text = (site / "Cargo.toml").read_text(encoding="utf-8")
        (site / "Cargo.toml").write_text(text.replace("0.1.0", "0.1.1"), encoding="utf-8")
        calls = len(toolchain.calls)
        second = _build(site, cache, toolchain, tmp_path)
        assert second.path != first.path
        assert len(toolchain.calls) > calls

    def test_targets_get_separate_entries(self, site, cache, toolchain, tmp_path):
        wasm = _build(site, cache, toolchain, tmp_path, BuildTarget.WASM)
        native = _build(site, cache, toolchain, tmp_path, BuildTarget.NATIVE, package=None)
        assert wasm.path != native.path
        assert sorted(p.name for p in cache.root.iterdir()) == sorted([wasm.path.name, native.path.name])

    def test_entry_metadata(self, site, cache, toolchain, tmp_path):
        entry = _build(site, cache, toolchain, tmp_path)
        meta = json.loads((entry.path / CACHE_META).read_text(encoding="utf-8"))
        assert meta == {
            "target": "wasm",
            "manifest_digest": _sources(site).manifests().digest,
            "profile": "release",
            "package": "bible",
        }
        assert (entry.target_dir / "deps.marker").exists()


class TestDependencyBuild:

    def test_wasm_skips_tests(self, site, cache, toolchain, tmp_path):
        _build(site, cache, toolchain, tmp_path, BuildTarget.WASM)
        assert toolchain.keys() == ["check", "build"]
        for cmd, _, env in toolchain.calls:
            assert cmd[cmd.index("--target") + 1] == "wasm32-unknown-unknown"
            assert "--locked" in cmd
            assert env["HOME"] == str(tmp_path / "home")

    def test_native_compiles_tests_without_running(self, site, cache, toolchain, tmp_path):
        _build(site, cache, toolchain, tmp_path, BuildTarget.NATIVE, package=None)
        assert toolchain.keys() == ["check", "build", "test"]
        assert toolchain.calls[-1][0][-1] == "--no-run"

    def test_commands_for_debug_profile(self):
        cmds = dependency_commands(BuildTarget.NATIVE, profile="debug")
        assert all("--release" not in c for c in cmds)

    def test_dependency_build_sees_only_manifests_and_stubs(self, site, cache, toolchain, tmp_path):
        seen = {}

        def spy(cmd, *, cwd, env=None):
            if not seen:
                seen["files"] = sorted(p.relative_to(cwd).as_posix() for p in cwd.rglob("*") if p.is_file())
                seen["main"] = (cwd / "src" / "main.rs").read_text(encoding="utf-8")
            toolchain(cmd, cwd=cwd, env=env)

        build_dependencies(_sources(site), BuildTarget.WASM, cache=cache, home=tmp_path / "home",
                           package="bible", runner=spy)
        assert seen["files"] == ["Cargo.lock", "Cargo.toml", "build.rs", "src/main.rs"]
        assert seen["main"] == "fn main() {}\n"

    def test_failed_build_leaves_no_entry(self, site, cache, toolchain, tmp_path):
        toolchain.fail["build"] = 101
        with pytest.raises(CompilationError, match="Dependency build failed"):
            _build(site, cache, toolchain, tmp_path)
        assert list(cache.root.iterdir()) == []

    def test_missing_lock_file(self, site, cache, toolchain, tmp_path):
        (site / "Cargo.lock").unlink()
        with pytest.raises(InputError, match="Cargo.lock"):
            _build(site, cache, toolchain, tmp_path)


class TestStubs:

    def test_stubs_follow_declared_paths(self, tmp_path):
        crate = tmp_path / "crate"
        write(crate / "Cargo.toml", '[package]\nname = "x"\nbuild = "tools/gen.rs"\n\n'
              '[lib]\npath = "core/mod.rs"\n\n[[bin]]\nname = "cli"\npath = "cli/main.rs"\n')
        write(crate / "Cargo.lock", "version = 3\n")
        write(crate / "core" / "mod.rs", "pub mod a;\n")
        write(crate / "cli" / "main.rs", "fn main() { x::a::go(); }\n")
        write(crate / "tools" / "gen.rs", "fn main() {}\n")
        write(crate / "tests" / "it.rs", "#[test] fn t() {}\n")
        dest = tmp_path / "dest"
        stubbed = write_stub_sources(dest, select_sources(crate))
        assert stubbed == ["cli/main.rs", "core/mod.rs", "tests/it.rs", "tools/gen.rs"]
        assert (dest / "core" / "mod.rs").read_text(encoding="utf-8") == ""
        assert (dest / "cli" / "main.rs").read_text(encoding="utf-8") == "fn main() {}\n"


class TestVerify:

    def test_matching_entry_verifies(self, site, cache, toolchain, tmp_path):
        entry = _build(site, cache, toolchain, tmp_path)
        entry.verify(_sources(site), BuildTarget.WASM, profile="release", package="bible")

    def test_stale_entry_is_rejected(self, site, cache, toolchain, tmp_path):
        entry = _build(site, cache, toolchain, tmp_path)
        write(site / "Cargo.toml", (site / "Cargo.toml").read_text(encoding="utf-8") + "# edit\n")
        with pytest.raises(CacheIntegrityError, match="stale"):
            entry.verify(_sources(site), BuildTarget.WASM, profile="release", package="bible")

    def test_wrong_target_is_rejected(self, site, cache, toolchain, tmp_path):
        entry = _build(site, cache, toolchain, tmp_path)
        with pytest.raises(CacheIntegrityError, match="built for wasm"):
            entry.verify(_sources(site), BuildTarget.NATIVE, profile="release", package="bible")

    def test_tampered_metadata_is_rejected(self, site, cache, toolchain, tmp_path):
        entry = _build(site, cache, toolchain, tmp_path)
        (entry.path / CACHE_META).write_text('{"target": "native"}', encoding="utf-8")
        with pytest.raises(CacheIntegrityError):
            cache.lookup(CacheKey.for_sources(_sources(site), BuildTarget.WASM, package="bible"))
