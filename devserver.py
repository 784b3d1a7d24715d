"""
Development server for the generated site.

Serves the site root over HTTP with live reload: HTML pages get the page
scripts applied and a small client snippet injected, which connects to a
websocket and reloads the page whenever the site root changes on disk.
"""
import json
import mimetypes
from pathlib import Path
from typing import Callable, Iterable, Optional

import tornado.web
import tornado.websocket
from tornado.ioloop import IOLoop
from watchdog.events import FileSystemEventHandler, PatternMatchingEventHandler
from watchdog.observers import Observer

from buildlog import log

LIVERELOAD_PATH = "/__livereload"

LIVERELOAD_SNIPPET = """<script>
(function () {
  var scheme = location.protocol === 'https:' ? 'wss://' : 'ws://';
  var socket = new WebSocket(scheme + location.host + '%s');
  socket.onmessage = function (event) {
    var message = JSON.parse(event.data);
    if (message.command === 'reload') {
      location.reload();
    }
  };
})();
</script>""" % LIVERELOAD_PATH


# -----------------------
# Paths and markup
# -----------------------

def resolve_site_path(root: Path, url_path: str, html_fallback: bool = True) -> Optional[Path]:
    """
    Map a request path onto a file under `root`.

    Directories serve their index.html. With `html_fallback`, an
    extensionless path that matches no file is served from "<path>.html"
    (so /about serves about.html). Paths escaping the root give None.
    """
    root = root.resolve()
    requested = (root / url_path.lstrip("/")).resolve()
    if requested != root and root not in requested.parents:
        return None

    if requested.is_dir():
        index = requested / "index.html"
        return index if index.is_file() else None
    if requested.is_file():
        return requested

    if html_fallback and not requested.suffix:
        page = requested.with_name(requested.name + ".html")
        if page.is_file():
            return page
    return None


def inject_snippet(html: str, snippet: str = LIVERELOAD_SNIPPET) -> str:
    """Insert the snippet before the last </body>, or append it."""
    pos = html.lower().rfind("</body>")
    if pos == -1:
        return html + snippet
    return html[:pos] + snippet + html[pos:]


# -----------------------
# Live reload
# -----------------------

class Debouncer:
    """
    Collapse bursts of calls into one call `delay` seconds after the last.
    trigger() must be called on the IOLoop thread.
    """

    def __init__(self, delay: float, callback: Callable[[str], None]):
        self.delay = delay
        self.callback = callback
        self._pending = None
        self._last = None

    def trigger(self, path: str):
        loop = IOLoop.current()
        if self._pending is not None:
            loop.remove_timeout(self._pending)
        self._last = path
        self._pending = loop.call_later(self.delay, self._fire)

    def _fire(self):
        self._pending = None
        self.callback(self._last)


class LiveReloadHub:
    """Connected browsers, and the reload broadcast."""

    def __init__(self):
        self.clients = set()

    def register(self, client):
        self.clients.add(client)

    def unregister(self, client):
        self.clients.discard(client)

    def reload(self, path: str = ""):
        message = json.dumps({"command": "reload", "path": path})
        for client in list(self.clients):
            try:
                client.write_message(message)
            except tornado.websocket.WebSocketClosedError:
                self.unregister(client)
        if self.clients:
            log(f"Reloading {len(self.clients)} browser(s)", label="Serve")


class LiveReloadSocket(tornado.websocket.WebSocketHandler):
    def initialize(self, hub: LiveReloadHub):
        self.hub = hub

    def open(self):
        self.hub.register(self)

    def on_message(self, message):
        pass

    def on_close(self):
        self.hub.unregister(self)


# -----------------------
# HTTP
# -----------------------

class SiteHandler(tornado.web.RequestHandler):
    def initialize(self, root: Path, html_fallback: bool = True,
                   page_scripts: Optional[Callable[[str], str]] = None,
                   snippet: str = LIVERELOAD_SNIPPET):
        self.root = root
        self.html_fallback = html_fallback
        self.page_scripts = page_scripts
        self.snippet = snippet

    def get(self, path: str):
        abspath = resolve_site_path(self.root, path, self.html_fallback)
        if abspath is None:
            raise tornado.web.HTTPError(404)

        if abspath.suffix == ".html":
            html = abspath.read_text(encoding="utf-8", errors="replace")
            if self.page_scripts is not None:
                html = self.page_scripts(html)
            body = inject_snippet(html, self.snippet).encode("utf-8")
            content_type = "text/html; charset=UTF-8"
        else:
            body = abspath.read_bytes()
            content_type = mimetypes.guess_type(abspath.name)[0] or "application/octet-stream"

        self.set_header("Content-Type", content_type)
        self.set_header("Cache-Control", "no-cache")
        self.write(body)


def make_app(root: Path, hub: LiveReloadHub, *, html_fallback: bool = True,
             page_scripts: Optional[Callable[[str], str]] = None) -> tornado.web.Application:
    return tornado.web.Application([
        (LIVERELOAD_PATH, LiveReloadSocket, {"hub": hub}),
        (r"/(.*)", SiteHandler, {
            "root": root,
            "html_fallback": html_fallback,
            "page_scripts": page_scripts,
        }),
    ])


# -----------------------
# File system watching
# -----------------------

class _OnLoop:
    """Forward watchdog events (observer thread) to a callback on the IOLoop."""

    def __init__(self, loop: IOLoop, callback: Callable[[str], None]):
        self.loop = loop
        self.callback = callback

    def on_any_event(self, event):
        if event.event_type in ("opened", "closed_no_write"):
            return
        self.loop.add_callback(self.callback, event.src_path)


class _AnyEventHandler(_OnLoop, FileSystemEventHandler):
    pass


class _PatternEventHandler(_OnLoop, PatternMatchingEventHandler):
    def __init__(self, loop, callback, patterns):
        PatternMatchingEventHandler.__init__(self, patterns=list(patterns), ignore_directories=True)
        _OnLoop.__init__(self, loop, callback)


def watch_path(path: Path, callback: Callable[[str], None],
               patterns: Optional[Iterable[str]] = None) -> Observer:
    """
    Start an observer on `path` (recursively). `callback(src_path)` runs on
    the current IOLoop for every change, optionally filtered by glob patterns.
    """
    loop = IOLoop.current()
    if patterns:
        handler = _PatternEventHandler(loop, callback, patterns)
    else:
        handler = _AnyEventHandler(loop, callback)

    observer = Observer()
    observer.schedule(handler, str(path), recursive=True)
    observer.daemon = True
    observer.start()
    return observer
