"""
The client pipelines: ``build`` (packaged static site) and ``check`` (gates).

Stages run strictly in sequence; each consumes the previous stage's output and
the first failure aborts the run.
"""

from __future__ import annotations

from pathlib import Path

from bible_build.bundler import package_bundle
from bible_build.compiler import compile_target, prepare_workspace, run_checks
from bible_build.config import PipelineConfig
from bible_build.css import CssGenerator
from bible_build.deps_cache import DependencyCache, build_dependencies
from bible_build.model import BuildTarget, OutputBundle
from bible_build.pinning import Fetcher, ToolStore, check_lock_agreement, fetch_crate
from bible_build.runner import Runner, run_command
from bible_build.sources import SourceSet, select_sources


def select_client_sources(config: PipelineConfig) -> SourceSet:
    return select_sources(
        config.client_root,
        extensions=config.source_extensions,
        optional_dirs=(config.assets_dir,),
        excludes=config.output_excludes,
        exclude_paths=config.output_paths,
    )


def css_generator(config: PipelineConfig, root: Path) -> CssGenerator:
    return CssGenerator(
        root=root,
        entry=config.style_entry,
        output=config.style_output,
        config=config.style_config,
        tool=config.css_tool,
    )


def dependency_cache(config: PipelineConfig) -> DependencyCache:
    return DependencyCache(Path(config.cache_dir) / "deps")


def tool_store(config: PipelineConfig) -> ToolStore:
    return ToolStore(Path(config.cache_dir) / "tools")


def work_dir(config: PipelineConfig, name: str) -> Path:
    return Path(config.cache_dir) / "work" / name


def build_client(
    config: PipelineConfig,
    *,
    runner: Runner = run_command,
    fetch: Fetcher = fetch_crate,
    output_dir: Path | None = None,
    work_name: str | None = None,
    sources: SourceSet | None = None,
) -> OutputBundle:
    """Build and publish the client bundle. ``sources`` is a selection the caller already made."""
    home = Path(config.home_dir)
    if sources is None:
        sources = select_client_sources(config)

    # Tool integrity is settled before any compilation starts.
    tool = config.glue_tool()
    check_lock_agreement(sources.root / "Cargo.lock", tool)
    glue = tool_store(config).resolve(tool, home=home, fetch=fetch, runner=runner)

    entry = build_dependencies(
        sources,
        BuildTarget.WASM,
        cache=dependency_cache(config),
        home=home,
        profile=config.profile,
        package=config.client_package,
        runner=runner,
    )
    ws = prepare_workspace(sources, work_dir(config, work_name or f"wasm-{config.profile}"), entry)
    compiled = compile_target(
        ws,
        sources,
        BuildTarget.WASM,
        entry,
        home=home,
        profile=config.profile,
        package=config.client_package,
        runner=runner,
    )
    stylesheet = css_generator(config, ws.src).generate(home=home, runner=runner)
    return package_bundle(
        compiled,
        glue_tool=glue,
        site_root=ws.src,
        stylesheet=stylesheet,
        output_dir=Path(output_dir or config.output_dir),
        work_dir=Path(config.cache_dir) / "bundle",
        home=home,
        template=config.html_template,
        assets_dir=config.assets_dir,
        runner=runner,
    )


def check_client(config: PipelineConfig, *, runner: Runner = run_command) -> None:
    home = Path(config.home_dir)
    sources = select_client_sources(config)
    entry = build_dependencies(
        sources,
        BuildTarget.NATIVE,
        cache=dependency_cache(config),
        home=home,
        profile=config.profile,
        runner=runner,
    )
    ws = prepare_workspace(sources, work_dir(config, f"native-{config.profile}"), entry)
    run_checks(ws, sources, entry, home=home, profile=config.profile, runner=runner)
