"""
Fuse the compiled WASM module, its JS glue and the generated stylesheet into a
static site directory.

Order:
1. run the pinned glue generator (``wasm-bindgen --target web``) on the module;
2. assemble ``index.html`` from the template, resolving ``data-trunk``
   directives (``css``, ``rust``, ``copy-dir``, ``copy-file``, ``icon``);
3. copy ``index.html`` to ``404.html`` so static hosts answer unknown routes
   with the app;
4. swap the assembled directory into the published location.

Everything is assembled in a staging directory beside the published path and
renamed into place last, so a failed build never touches the published tree.
Output contains no timestamps; identical inputs give identical bytes.
"""

from __future__ import annotations

import html
import os
import re
import shutil
from pathlib import Path
from typing import Optional

from bible_build.console import log
from bible_build.errors import CommandError, PackagingError
from bible_build.model import CompiledArtifacts, OutputBundle
from bible_build.runner import Runner, run_command, tool_env


_DIRECTIVE_RE = re.compile(r"<link\b[^>]*\bdata-trunk\b[^>]*/?>", re.IGNORECASE)
_ATTR_RE = re.compile(r"""([a-zA-Z_:][-a-zA-Z0-9_:.]*)\s*(?:=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>/]+)))?""")
_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)


def _attrs(tag: str) -> dict[str, str]:
    inner = re.sub(r"^<link\b|/?>$", "", tag.strip(), flags=re.IGNORECASE)
    found: dict[str, str] = {}
    for m in _ATTR_RE.finditer(inner):
        value = next((v for v in m.groups()[1:] if v is not None), "")
        found[m.group(1).lower()] = html.unescape(value)
    return found


def loader_tags(module: str) -> str:
    return (
        f'<link rel="preload" href="/{module}_bg.wasm" as="fetch" type="application/wasm" crossorigin="">\n'
        f'<link rel="modulepreload" href="/{module}.js">\n'
        f"<script type=\"module\">import init from '/{module}.js';init('/{module}_bg.wasm');</script>"
    )


def _stylesheet_tag(name: str) -> str:
    return f'<link rel="stylesheet" href="/{name}">'


def _insert_before_head_close(page: str, snippet: str) -> str:
    m = _HEAD_CLOSE_RE.search(page)
    if m is None:
        return page + snippet + "\n"
    return page[: m.start()] + snippet + "\n" + page[m.start():]


def _copy_into(src: Path, staging: Path) -> str:
    dst = staging / src.name
    if src.is_dir():
        shutil.copytree(src, dst, dirs_exist_ok=True)
    else:
        shutil.copyfile(src, dst)
    return src.name


def assemble_html(
    template: str,
    *,
    site_root: Path,
    staging: Path,
    module: str,
    stylesheet: Path,
    assets_dir: Optional[str] = None,
) -> str:
    """
    Rewrite ``template`` into the entry page, copying every referenced file into ``staging``.

    ``stylesheet`` is the generated stylesheet; it is linked even when the template does not
    reference it. ``assets_dir`` is copied when present on disk and absent otherwise.
    """
    linked_styles: set[str] = set()
    copied_dirs: set[str] = set()
    has_loader = False

    def rewrite(m: re.Match[str]) -> str:
        nonlocal has_loader
        attrs = _attrs(m.group(0))
        rel = attrs.get("rel", "").lower()
        href = attrs.get("href")

        if rel == "rust":
            has_loader = True
            return loader_tags(module)
        if not href:
            raise PackagingError(f"data-trunk rel={rel!r} directive without href in template")

        src = site_root / href
        if rel == "copy-dir":
            if not src.is_dir():
                log(f"SKIP {href}/ (not present)")
                return ""
            copied_dirs.add(_copy_into(src, staging))
            return ""
        if not src.is_file():
            raise PackagingError(f"Template references missing file: {src}")
        if rel in ("css", "scss"):
            name = _copy_into(src, staging)
            linked_styles.add(name)
            return _stylesheet_tag(name)
        if rel == "icon":
            return f'<link rel="icon" href="/{_copy_into(src, staging)}">'
        if rel == "copy-file":
            _copy_into(src, staging)
            return ""
        raise PackagingError(f"Unsupported data-trunk directive rel={rel!r}")

    page = _DIRECTIVE_RE.sub(rewrite, template)

    if stylesheet.name not in linked_styles:
        _copy_into(stylesheet, staging)
        page = _insert_before_head_close(page, _stylesheet_tag(stylesheet.name))
    if not has_loader:
        page = _insert_before_head_close(page, loader_tags(module))
    if assets_dir and Path(assets_dir).name not in copied_dirs and (site_root / assets_dir).is_dir():
        _copy_into(site_root / assets_dir, staging)
    return page


def publish(staging: Path, output_dir: Path) -> None:
    """Replace ``output_dir`` with ``staging`` by renames on the same filesystem."""
    backup = output_dir.parent / f".{output_dir.name}.old-{os.getpid()}"
    shutil.rmtree(backup, ignore_errors=True)
    if output_dir.exists():
        os.rename(output_dir, backup)
    try:
        os.rename(staging, output_dir)
    except OSError:
        if backup.exists():
            os.rename(backup, output_dir)
        raise
    shutil.rmtree(backup, ignore_errors=True)


def package_bundle(
    compiled: CompiledArtifacts,
    *,
    glue_tool: Path,
    site_root: Path,
    stylesheet: Path,
    output_dir: Path,
    work_dir: Path,
    home: Path,
    template: str = "index.html",
    assets_dir: Optional[str] = "assets",
    runner: Runner = run_command,
) -> OutputBundle:
    module = compiled.package.replace("-", "_")
    wasm = compiled.wasm_path
    template_path = site_root / template
    for required, what in ((wasm, "compiled module"), (stylesheet, "generated stylesheet"), (template_path, "HTML template")):
        if not required.is_file():
            raise PackagingError(f"Missing {what}: {required}")

    output_dir = Path(output_dir).resolve()
    output_dir.parent.mkdir(parents=True, exist_ok=True)
    work_dir.mkdir(parents=True, exist_ok=True)
    staging = output_dir.parent / f".{output_dir.name}.staging-{os.getpid()}"
    shutil.rmtree(staging, ignore_errors=True)
    staging.mkdir()

    bundle = OutputBundle(root=staging, module_name=module, stylesheet_name=stylesheet.name)
    try:
        log(f"Generating JS glue for {wasm.name}...")
        try:
            runner(
                [str(glue_tool), "--target", "web", "--no-typescript",
                 "--out-dir", str(staging), "--out-name", module, str(wasm)],
                cwd=work_dir,
                env=tool_env(home),
            )
        except CommandError as e:
            raise PackagingError(f"Glue generation failed: {e}") from e
        for produced in (bundle.glue_path, bundle.wasm_path):
            if not produced.is_file():
                raise PackagingError(f"Glue generator did not produce {produced.name}")

        page = assemble_html(
            template_path.read_text(encoding="utf-8"),
            site_root=site_root,
            staging=staging,
            module=module,
            stylesheet=stylesheet,
            assets_dir=assets_dir,
        )
        if not bundle.stylesheet_path.is_file():
            raise PackagingError(f"Stylesheet {bundle.stylesheet_name} was not copied into the bundle")
        data = page.encode("utf-8")
        bundle.entry_path.write_bytes(data)
        shutil.copyfile(bundle.entry_path, bundle.fallback_path)
        if bundle.fallback_path.read_bytes() != data:
            raise PackagingError(f"{bundle.fallback_page} differs from {bundle.entry_page}")

        publish(staging, output_dir)
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    log(f"OK: wrote {output_dir}")
    return OutputBundle(root=output_dir, module_name=module, stylesheet_name=stylesheet.name)
