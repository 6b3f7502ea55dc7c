"""
Command-line interface.

Usage:
    bible-build build [--debug]
    bible-build build-verify [--debug]
    bible-build check
    bible-build dev [--port 8080] [--open]
    bible-build serve [--port 8080] [--open]
    bible-build pin wasm-bindgen-cli 0.2.100 [--write]
    bible-build sources [--manifests] [--verify]
    bible-build env    (alias: shell)

Exit codes: 0 on success, otherwise the code of the first failing stage
(see ``bible_build.errors``).
"""

from __future__ import annotations

import argparse
import json
import shlex
import signal
import sys
from pathlib import Path

from bible_build import __version__
from bible_build.config import ENV_CACHE_DIR, ENV_CLIENT_DIST, ENV_HOME, PipelineConfig, load_config, write_pin
from bible_build.console import fail, log, set_quiet
from bible_build.errors import PipelineError
from bible_build.pinning import compute_pin


def _config(args: argparse.Namespace) -> PipelineConfig:
    config = load_config(Path(args.project_root or Path.cwd()))
    if getattr(args, "debug", False):
        config.release = False
    return config


def cmd_build(args: argparse.Namespace) -> int:
    from bible_build.pipeline import build_client

    bundle = build_client(_config(args))
    print(str(bundle.root))
    return 0


def cmd_build_verify(args: argparse.Namespace) -> int:
    from bible_build.verify_build import build_verify

    print(str(build_verify(_config(args))))
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    from bible_build.pipeline import check_client

    check_client(_config(args))
    log("OK: all checks passed")
    return 0


def cmd_dev(args: argparse.Namespace) -> int:
    from bible_build.supervisor import run_dev

    return run_dev(_config(args), port=args.port, open_browser=args.open, quiet=args.quiet)


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def cmd_serve(args: argparse.Namespace) -> int:
    from bible_build.live_server import LiveServer

    config = _config(args)
    signal.signal(signal.SIGTERM, _raise_interrupt)
    server = LiveServer(config, port=args.port or config.dev_port)
    return server.serve_forever(open_browser=args.open)


def cmd_pin(args: argparse.Namespace) -> int:
    config = _config(args)
    tool = compute_pin(args.name, args.version, scratch=Path(config.cache_dir), home=Path(config.home_dir))
    print(json.dumps({tool.name: tool.to_json()}, indent=2))
    if args.write:
        log(f"OK: wrote {write_pin(config.project_root, tool)}")
    return 0


def cmd_sources(args: argparse.Namespace) -> int:
    config = _config(args)
    if args.verify:
        from bible_build.verify_build import select_verify_sources

        sources = select_verify_sources(config)
    else:
        from bible_build.pipeline import select_client_sources

        sources = select_client_sources(config)
    if args.manifests:
        sources = sources.manifests()
    for f in sources:
        print(f"{f.digest[:12]}  {f.path}")
    print(f"{len(sources)} files, digest {sources.digest}")
    return 0


def cmd_env(args: argparse.Namespace) -> int:
    config = _config(args)
    for name, value in (
        (ENV_CLIENT_DIST, config.output_dir),
        (ENV_CACHE_DIR, config.cache_dir),
        (ENV_HOME, config.home_dir),
    ):
        print(f"export {name}={shlex.quote(str(value))}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bible-build", description="Build the Bible web client and tools.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--project-root", default=None, help="Project root (default: current directory).")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print results and failures.")
    subparsers = parser.add_subparsers(dest="command")

    p = subparsers.add_parser("build", help="Build the packaged client into CLIENT_DIST.")
    p.add_argument("--debug", action="store_true", help="Build debug (default is release).")
    p.set_defaults(func=cmd_build)

    p = subparsers.add_parser("build-verify", help="Build the bible-verify binary.")
    p.add_argument("--debug", action="store_true", help="Build debug (default is release).")
    p.set_defaults(func=cmd_build_verify)

    p = subparsers.add_parser("check", help="Run clippy (deny warnings) and rustfmt gates.")
    p.set_defaults(func=cmd_check)

    for name, help_text, func in (
        ("dev", "Run the Tailwind watcher and the live server together.", cmd_dev),
        ("serve", "Serve the client with rebuild and live reload.", cmd_serve),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("--port", type=int, default=None, help="Port to serve on (default: 8080).")
        p.add_argument("--open", action="store_true", help="Open a browser.")
        p.set_defaults(func=func)

    p = subparsers.add_parser("pin", help="Fetch a tool and print the hashes to pin it with.")
    p.add_argument("name")
    p.add_argument("version")
    p.add_argument("--write", action="store_true", help="Record the pin in bible-build.json.")
    p.set_defaults(func=cmd_pin)

    p = subparsers.add_parser("sources", help="List the selected source files and their digest.")
    p.add_argument("--manifests", action="store_true", help="Only the dependency manifests.")
    p.add_argument("--verify", action="store_true", help="The bible-verify crate instead of the client.")
    p.set_defaults(func=cmd_sources)

    p = subparsers.add_parser("env", aliases=["shell"], help="Print shell exports for the build locations.")
    p.set_defaults(func=cmd_env)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    set_quiet(args.quiet)
    try:
        return args.func(args)
    except PipelineError as e:
        fail(str(e))
        return e.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
