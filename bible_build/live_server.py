"""
Live-reloading development server.

Builds the client in the debug profile into a private bundle directory, serves
it over HTTP and rebuilds whenever the client SourceSet digest changes. Pages
get a small script that polls a version endpoint and reloads after each
successful rebuild. A failed rebuild is reported and the last good bundle stays
served. Unknown routes are answered with the fallback page, as a static host
would.
"""

from __future__ import annotations

import dataclasses
import json
import threading
import webbrowser
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import urlsplit

from bible_build.config import PipelineConfig
from bible_build.console import fail, log
from bible_build.errors import PipelineError
from bible_build.pinning import Fetcher, fetch_crate
from bible_build.pipeline import build_client, select_client_sources
from bible_build.runner import Runner, run_command


VERSION_PATH = "/__bible_build/version"

RELOAD_SCRIPT = (
    "<script>(function(){var v=null;setInterval(function(){"
    f"fetch('{VERSION_PATH}').then(function(r){{return r.json()}}).then(function(d){{"
    "if(v!==null&&d.version!==v){location.reload()}v=d.version}).catch(function(){})"
    "},1000)})();</script>"
)


def inject_reload(page: bytes) -> bytes:
    marker = b"</body>"
    idx = page.lower().rfind(marker)
    script = RELOAD_SCRIPT.encode("utf-8")
    if idx < 0:
        return page + script
    return page[:idx] + script + page[idx:]


class LiveServer:
    def __init__(
        self,
        config: PipelineConfig,
        *,
        port: int,
        poll_interval: float = 1.0,
        runner: Runner = run_command,
        fetch: Fetcher = fetch_crate,
    ) -> None:
        self.config = dataclasses.replace(config, release=False)
        self.port = port
        self.poll_interval = poll_interval
        self.dist = Path(config.cache_dir) / "serve" / "dist"
        self.version = 0
        self.built_digest: str | None = None
        self._runner = runner
        self._fetch = fetch
        self._lock = threading.Lock()
        self._stop = threading.Event()

    def rebuild(self) -> bool:
        """Build from a fresh selection; ``built_digest`` records what it was built from, pass or fail."""
        try:
            sources = select_client_sources(self.config)
        except PipelineError as e:
            fail(f"{e} (still serving the previous build)")
            return False
        self.built_digest = sources.digest
        try:
            build_client(
                self.config,
                runner=self._runner,
                fetch=self._fetch,
                output_dir=self.dist,
                work_name="serve",
                sources=sources,
            )
        except PipelineError as e:
            fail(f"{e} (still serving the previous build)")
            return False
        with self._lock:
            self.version += 1
        log(f"OK: rebuilt (version {self.version})")
        return True

    def current_digest(self) -> str | None:
        try:
            return select_client_sources(self.config).digest
        except PipelineError as e:
            fail(str(e))
            return None

    def watch(self) -> None:
        while not self._stop.wait(self.poll_interval):
            digest = self.current_digest()
            if digest is not None and digest != self.built_digest:
                log("Change detected, rebuilding...")
                self.rebuild()

    def stop(self) -> None:
        self._stop.set()

    def handler_class(self) -> type[SimpleHTTPRequestHandler]:
        server = self
        dist = self.dist

        class _LiveHandler(SimpleHTTPRequestHandler):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, directory=str(dist), **kwargs)

            def log_message(self, fmt, *args):
                return

            def end_headers(self):
                self.send_header("Cache-Control", "no-cache")
                super().end_headers()

            def _send(self, body: bytes, content_type: str) -> None:
                self.send_response(200)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def do_GET(self):
                path = urlsplit(self.path).path
                if path == VERSION_PATH:
                    with server._lock:
                        body = json.dumps({"version": server.version}).encode("utf-8")
                    self._send(body, "application/json")
                    return

                target = Path(self.translate_path(self.path))
                if target.is_dir():
                    target = target / "index.html"
                if not target.is_file():
                    target = dist / "404.html"
                    if not target.is_file():
                        self.send_error(503, "No successful build yet")
                        return
                if target.suffix == ".html":
                    self._send(inject_reload(target.read_bytes()), "text/html; charset=utf-8")
                    return
                super().do_GET()

        return _LiveHandler

    def serve_forever(self, *, open_browser: bool = False) -> int:
        self.rebuild()
        watcher = threading.Thread(target=self.watch, daemon=True)
        watcher.start()

        httpd = ThreadingHTTPServer(("127.0.0.1", self.port), self.handler_class())
        url = f"http://127.0.0.1:{httpd.server_address[1]}/"
        log(f"Serving {self.dist} at {url}")
        log("Press Ctrl+C to stop.")
        if open_browser:
            webbrowser.open(url)
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            log("Stopped.")
        finally:
            self.stop()
            httpd.server_close()
        return 0
