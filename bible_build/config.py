"""
Pipeline configuration.

Layers, lowest precedence first:
- defaults matching the repository layout (client crate in ``site/``,
  verification crate in ``bible-verify/``);
- ``bible-build.json`` at the project root (optional);
- environment variables ``BIBLE_BUILD_CACHE_DIR``, ``BIBLE_BUILD_HOME``,
  ``CLIENT_DIST``.

CLI flags are applied on top by ``bible_build.cli``.
"""

from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from bible_build.errors import InputError
from bible_build.model import PinnedTool


CONFIG_FILE_NAME = "bible-build.json"

ENV_CACHE_DIR = "BIBLE_BUILD_CACHE_DIR"
ENV_HOME = "BIBLE_BUILD_HOME"
ENV_CLIENT_DIST = "CLIENT_DIST"

DEFAULT_EXTENSIONS = ("html", "scss", "css", "js", "json", "txt", "png")
GLUE_TOOL_NAME = "wasm-bindgen-cli"


@dataclasses.dataclass
class PipelineConfig:
    project_root: Path
    client_dir: str = "site"
    client_package: str = "bible"
    html_template: str = "index.html"
    assets_dir: str = "assets"
    style_entry: str = "style/tailwind.css"
    style_output: str = "style/output.css"
    style_config: str = "tailwind.config.js"
    css_tool: str = "tailwindcss"
    source_extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    verify_dir: str = "bible-verify"
    verify_package: str = "bible-verify"
    verify_data_file: str = "kjv.json"
    release: bool = True
    dev_port: int = 8080
    output_dir: Optional[Path] = None
    verify_output_dir: Optional[Path] = None
    cache_dir: Optional[Path] = None
    home_dir: Optional[Path] = None
    tools: dict[str, PinnedTool] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        self.project_root = Path(self.project_root).resolve()
        if self.output_dir is None:
            self.output_dir = self.project_root / "dist"
        if self.verify_output_dir is None:
            self.verify_output_dir = self.project_root / "result-verify"
        if self.cache_dir is None:
            self.cache_dir = self.project_root / ".bible-build"
        if self.home_dir is None:
            self.home_dir = self.cache_dir / "home"

    @property
    def client_root(self) -> Path:
        return self.project_root / self.client_dir

    @property
    def verify_root(self) -> Path:
        return self.project_root / self.verify_dir

    @property
    def profile(self) -> str:
        return "release" if self.release else "debug"

    @property
    def output_excludes(self) -> tuple[str, ...]:
        """Directory names that hold build output and never count as sources."""
        return ("target", "dist", ".git", "node_modules", ".bible-build", "result-verify")

    @property
    def output_paths(self) -> tuple[Path, ...]:
        """Configured output locations; excluded from a source walk only where they fall inside it."""
        return tuple(Path(p).resolve() for p in (self.output_dir, self.cache_dir, self.verify_output_dir))

    def glue_tool(self) -> PinnedTool:
        try:
            return self.tools[GLUE_TOOL_NAME]
        except KeyError:
            raise InputError(
                f"No pin declared for {GLUE_TOOL_NAME} in {CONFIG_FILE_NAME}; "
                f"run `bible-build pin {GLUE_TOOL_NAME} <version>` and record the result under \"tools\""
            ) from None


_PATH_FIELDS = {"output_dir", "verify_output_dir", "cache_dir", "home_dir"}
_STR_FIELDS = {
    "client_dir",
    "client_package",
    "html_template",
    "assets_dir",
    "style_entry",
    "style_output",
    "style_config",
    "css_tool",
    "verify_dir",
    "verify_package",
    "verify_data_file",
}


def _parse_tools(raw: Any, source: Path) -> dict[str, PinnedTool]:
    if not isinstance(raw, dict):
        raise InputError(f"{source}: \"tools\" must be an object")
    tools: dict[str, PinnedTool] = {}
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            raise InputError(f"{source}: tools.{name} must be an object")
        missing = [k for k in ("version", "source_hash", "deps_hash") if not entry.get(k)]
        if missing:
            raise InputError(f"{source}: tools.{name} is missing {', '.join(missing)}")
        tools[name] = PinnedTool(
            name=name,
            version=str(entry["version"]),
            source_hash=str(entry["source_hash"]),
            deps_hash=str(entry["deps_hash"]),
        )
    return tools


def _apply_file(values: dict[str, Any], raw: dict[str, Any], *, project_root: Path, source: Path) -> None:
    for key, value in raw.items():
        if key == "tools":
            values["tools"] = _parse_tools(value, source)
        elif key in _PATH_FIELDS:
            if not isinstance(value, str):
                raise InputError(f"{source}: {key} must be a string path")
            values[key] = project_root / value
        elif key in _STR_FIELDS:
            if not isinstance(value, str) or not value:
                raise InputError(f"{source}: {key} must be a non-empty string")
            values[key] = value
        elif key == "source_extensions":
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise InputError(f"{source}: source_extensions must be a list of strings")
            values[key] = tuple(v.lstrip(".") for v in value)
        elif key == "release":
            if not isinstance(value, bool):
                raise InputError(f"{source}: release must be true or false")
            values[key] = value
        elif key == "dev_port":
            if not isinstance(value, int) or isinstance(value, bool):
                raise InputError(f"{source}: dev_port must be an integer")
            values[key] = value
        else:
            raise InputError(f"{source}: unknown setting {key!r}")


def load_config(project_root: Path, *, environ: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    project_root = Path(project_root).resolve()
    if not project_root.is_dir():
        raise InputError(f"Missing project root: {project_root}")
    env = os.environ if environ is None else environ

    values: dict[str, Any] = {}
    config_path = project_root / CONFIG_FILE_NAME
    if config_path.exists():
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise InputError(f"{config_path}: invalid JSON ({e})") from e
        if not isinstance(raw, dict):
            raise InputError(f"{config_path}: top level must be an object")
        _apply_file(values, raw, project_root=project_root, source=config_path)

    if env.get(ENV_CACHE_DIR):
        values["cache_dir"] = Path(env[ENV_CACHE_DIR]).resolve()
    if env.get(ENV_HOME):
        values["home_dir"] = Path(env[ENV_HOME]).resolve()
    if env.get(ENV_CLIENT_DIST):
        values["output_dir"] = Path(env[ENV_CLIENT_DIST]).resolve()

    return PipelineConfig(project_root=project_root, **values)


def write_pin(project_root: Path, tool: PinnedTool) -> Path:
    """Record ``tool`` under "tools" in the project's config file, keeping other settings."""
    config_path = Path(project_root) / CONFIG_FILE_NAME
    data: dict[str, Any] = {}
    if config_path.exists():
        data = json.loads(config_path.read_text(encoding="utf-8"))
    data.setdefault("tools", {})[tool.name] = tool.to_json()
    config_path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return config_path
