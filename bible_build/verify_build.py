"""
Native build of the standalone ``bible-verify`` binary.

Shares source selection and dependency caching with the client pipeline but
nothing else. The reference corpus (``kjv.json``) is optional: when present it
joins the SourceSet, when absent the build still succeeds.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from bible_build.compiler import compile_target, prepare_workspace
from bible_build.config import PipelineConfig
from bible_build.console import log
from bible_build.deps_cache import DependencyCache, build_dependencies
from bible_build.model import BuildTarget
from bible_build.runner import Runner, run_command
from bible_build.sources import SourceSet, select_sources


def select_verify_sources(config: PipelineConfig) -> SourceSet:
    return select_sources(
        config.verify_root,
        optional_files=(config.verify_data_file,),
        excludes=config.output_excludes,
        exclude_paths=config.output_paths,
    )


def build_verify(config: PipelineConfig, *, runner: Runner = run_command) -> Path:
    home = Path(config.home_dir)
    sources = select_verify_sources(config)
    if config.verify_data_file not in sources:
        log(f"NOTE: {config.verify_data_file} not found; building without the reference corpus")

    entry = build_dependencies(
        sources,
        BuildTarget.NATIVE,
        cache=DependencyCache(Path(config.cache_dir) / "deps"),
        home=home,
        profile=config.profile,
        runner=runner,
    )
    ws = prepare_workspace(sources, Path(config.cache_dir) / "work" / f"verify-{config.profile}", entry)
    compiled = compile_target(
        ws,
        sources,
        BuildTarget.NATIVE,
        entry,
        home=home,
        profile=config.profile,
        artifact=config.verify_package,
        runner=runner,
    )

    bin_dir = Path(config.verify_output_dir) / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    dst = bin_dir / config.verify_package
    shutil.copy2(compiled.binary_path, dst)
    log(f"OK: wrote {dst}")
    return dst
