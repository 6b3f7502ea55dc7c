"""
Core records shared by the pipeline stages.
"""

from __future__ import annotations

import base64
import dataclasses
import enum
import hashlib
from pathlib import Path


WASM_TRIPLE = "wasm32-unknown-unknown"


class BuildTarget(enum.Enum):
    NATIVE = "native"
    WASM = "wasm"

    @property
    def triple(self) -> str | None:
        """Explicit cargo target triple, or None for the host."""
        return WASM_TRIPLE if self is BuildTarget.WASM else None

    @property
    def runs_tests(self) -> bool:
        # Test binaries cannot execute for wasm32 in this pipeline.
        return self is BuildTarget.NATIVE

    def cargo_target_args(self) -> list[str]:
        return ["--target", self.triple] if self.triple else []

    def artifact_dir(self, target_dir: Path, profile: str) -> Path:
        """Where cargo writes final artifacts for this target and profile."""
        if self.triple:
            return target_dir / self.triple / profile
        return target_dir / profile


def sri_sha256(data: bytes) -> str:
    """Subresource-integrity style digest: ``sha256-<base64>``."""
    return "sha256-" + base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


@dataclasses.dataclass(frozen=True)
class PinnedTool:
    """
    An external tool fixed by version and two content hashes.

    ``source_hash`` covers the downloaded source archive, ``deps_hash`` covers the
    vendored dependency tree the tool is built from.
    """

    name: str
    version: str
    source_hash: str
    deps_hash: str

    @property
    def key(self) -> str:
        return f"{self.name}-{self.version}"

    def to_json(self) -> dict[str, str]:
        return {"version": self.version, "source_hash": self.source_hash, "deps_hash": self.deps_hash}


@dataclasses.dataclass(frozen=True)
class CompiledArtifacts:
    target: BuildTarget
    package: str
    profile: str
    target_dir: Path

    @property
    def artifact_dir(self) -> Path:
        return self.target.artifact_dir(self.target_dir, self.profile)

    @property
    def wasm_path(self) -> Path:
        # cargo normalizes dashes in crate names to underscores for the module file.
        return self.artifact_dir / f"{self.package.replace('-', '_')}.wasm"

    @property
    def binary_path(self) -> Path:
        return self.artifact_dir / self.package


@dataclasses.dataclass(frozen=True)
class OutputBundle:
    root: Path
    module_name: str
    stylesheet_name: str
    entry_page: str = "index.html"
    fallback_page: str = "404.html"

    @property
    def wasm_path(self) -> Path:
        return self.root / f"{self.module_name}_bg.wasm"

    @property
    def glue_path(self) -> Path:
        return self.root / f"{self.module_name}.js"

    @property
    def stylesheet_path(self) -> Path:
        return self.root / self.stylesheet_name

    @property
    def entry_path(self) -> Path:
        return self.root / self.entry_page

    @property
    def fallback_path(self) -> Path:
        return self.root / self.fallback_page
