#!/usr/bin/env python3
"""
Build tasks for the blog.

    python sitebuild.py [TASK] [--config config.yml]

Tasks: clean, scripts, jekyll, serve, watch, default (the default runs
scripts, serve, jekyll and watch together and keeps running until
interrupted).
"""
import argparse
import asyncio
import inspect
import json
import shutil
import subprocess
import sys
from collections import namedtuple
from datetime import date
from pathlib import Path

import rjsmin           # pip install rjsmin
import yaml             # pip install pyyaml
from tornado.httpserver import HTTPServer
from tornado.ioloop import IOLoop
from tornado.netutil import bind_sockets

import devserver
from buildlog import log, warn
from pagescripts import PageScripts

BASE_DIR = Path(__file__).parent
CONFIG_FILE = BASE_DIR / "config.yml"

JEKYLL_LABEL = "Jekyll"
BANNER = "/*! {name} v{version} | (c) {year} {author} | {homepage} */\n"


class TaskError(Exception):
    """Unknown task, or a cycle in the task graph."""


class ScriptsError(Exception):
    """The scripts bundle could not be built."""


# -----------------------
# Config
# -----------------------

def _as_list(value):
    """A config value that can be a string or a list."""
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list):
        return [str(x) for x in value]
    return []


def default_config() -> dict:
    return {
        "site_root": "_site",
        "scripts_src": "_scripts",
        "scripts_glob": "*.js",
        "scripts_dest": "js",
        "bundle_name": "bundle.js",
        "libraries": [],
        "libraries_first": True,
        "manifest": "package.json",
        "minify": False,
        "transpile_command": [],
        "jekyll_command": "jekyll",
        "jekyll_args": ["build", "--watch", "--incremental", "--drafts"],
        "port": 4000,
        "html_fallback": True,
        "reload_delay": 0.2,
        "linkjuice": {
            "mount": ".single__content",
            "selectors": ["h2", "h3", "h4", "h5", "h6"],
            "icon": "#",
        },
        "topics": True,
    }


def load_config(config_path: Path) -> dict:
    """Load config.yml and apply defaults."""
    if not config_path.exists():
        print(f"Config file not found: {config_path}", file=sys.stderr)
        sys.exit(1)

    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        print(f"Config file must be a mapping of settings: {config_path}", file=sys.stderr)
        sys.exit(1)
    cfg = default_config()

    for key in ("site_root", "scripts_src", "scripts_glob", "scripts_dest",
                "bundle_name", "manifest", "jekyll_command"):
        if data.get(key):
            cfg[key] = str(data[key])

    # Commands can be written as one string; library paths are never split.
    for key in ("transpile_command", "jekyll_args"):
        if key in data:
            cfg[key] = _as_list(data[key])
    libraries = data.get("libraries")
    if isinstance(libraries, str):
        cfg["libraries"] = [libraries]
    elif libraries:
        cfg["libraries"] = _as_list(libraries)

    for key in ("libraries_first", "minify", "html_fallback", "topics"):
        if key in data:
            cfg[key] = bool(data[key])

    cfg["port"] = int(data.get("port", cfg["port"]))
    cfg["reload_delay"] = float(data.get("reload_delay", cfg["reload_delay"]))

    linkjuice = data.get("linkjuice") or {}
    if not isinstance(linkjuice, dict):
        warn(f"Ignoring linkjuice setting in {config_path}: expected a mapping")
        linkjuice = {}
    cfg["linkjuice"].update({k: v for k, v in linkjuice.items() if v is not None})

    return cfg


class BuildContext:
    """Config plus everything the long-running tasks leave behind."""

    def __init__(self, cfg: dict, project_root: Path):
        self.cfg = cfg
        self.root = project_root
        self.graph = build_task_graph()
        self.keep_alive = False
        self.observers = []
        self.children = []
        self.servers = []
        self.background = []
        self.hub = None
        self.port = None

    def path(self, key: str) -> Path:
        return (self.root / self.cfg[key]).resolve()

    def shutdown(self):
        for observer in self.observers:
            observer.stop()
        for observer in self.observers:
            observer.join()
        for server in self.servers:
            server.stop()
        for proc in self.children:
            if proc.returncode is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
        for task in self.background:
            task.cancel()


# -----------------------
# clean / scripts
# -----------------------

def clean(ctx: BuildContext):
    dest = ctx.path("scripts_dest")
    if dest.exists():
        try:
            shutil.rmtree(dest)
        except OSError as e:
            raise ScriptsError(f"Cannot delete {dest}: {e}") from e
        log(f"Deleted {dest}")


def read_manifest(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ScriptsError(f"Cannot read manifest {path}: {e}") from e

    author = data.get("author", "")
    # npm allows "author": {"name": ..., "email": ...}
    if isinstance(author, dict):
        author = author.get("name", "")
    return {
        "name": data.get("name", ""),
        "version": data.get("version", ""),
        "author": author,
        "homepage": data.get("homepage", ""),
    }


def make_banner(manifest: dict, year: int = None) -> str:
    return BANNER.format(year=year or date.today().year, **manifest)


def collect_script_sources(cfg: dict, project_root: Path) -> list:
    """
    Files to concatenate, in order. Libraries are kept in their configured
    order; local sources are sorted by path.
    """
    libraries = []
    for lib in cfg["libraries"]:
        lib_path = (project_root / lib).resolve()
        if not lib_path.is_file():
            raise ScriptsError(f"Library file not found: {lib_path}")
        libraries.append(lib_path)

    src_dir = (project_root / cfg["scripts_src"]).resolve()
    local = sorted(p for p in src_dir.rglob(cfg["scripts_glob"]) if p.is_file()) if src_dir.is_dir() else []

    if cfg["libraries_first"]:
        return libraries + local
    return local + libraries


def read_source(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ScriptsError(f"Cannot read {path}: {e}") from e


def concat_sources(paths: list) -> str:
    return "\n".join(read_source(p) for p in paths)


def transpile(code: str, command: list, cwd: Path) -> str:
    """Pipe the code through an external transpiler (stdin -> stdout)."""
    try:
        result = subprocess.run(
            command, input=code, capture_output=True, text=True,
            encoding="utf-8", errors="replace", cwd=str(cwd),
        )
    except OSError as e:
        raise ScriptsError(f"Cannot run transpiler {command[0]}: {e}") from e
    if result.returncode != 0:
        raise ScriptsError(f"Transpiler failed ({result.returncode}): {result.stderr.strip()}")
    return result.stdout


def build_scripts(cfg: dict, project_root: Path) -> Path:
    """Concatenate, transpile, minify and banner the scripts bundle."""
    sources = collect_script_sources(cfg, project_root)
    if not sources:
        warn(f"No scripts found in {project_root / cfg['scripts_src']}")

    code = concat_sources(sources)
    if cfg["transpile_command"]:
        code = transpile(code, cfg["transpile_command"], project_root)
    if cfg["minify"]:
        code = rjsmin.jsmin(code)

    banner = make_banner(read_manifest(project_root / cfg["manifest"]))

    dest_dir = (project_root / cfg["scripts_dest"]).resolve()
    out_path = dest_dir / cfg["bundle_name"]
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        out_path.write_text(banner + code, encoding="utf-8")
    except OSError as e:
        raise ScriptsError(f"Cannot write {out_path}: {e}") from e
    log(f"Wrote {out_path} ({len(sources)} file(s))")
    return out_path


async def scripts(ctx: BuildContext):
    # The transpiler can be slow; keep the server and websockets responsive.
    await IOLoop.current().run_in_executor(None, build_scripts, ctx.cfg, ctx.root)


async def rebuild_scripts(ctx: BuildContext):
    """Re-run `scripts`, logging build errors instead of raising them."""
    try:
        await run_task(ctx, "scripts")
    except ScriptsError as e:
        warn(f"scripts: {e}")


# -----------------------
# jekyll
# -----------------------

async def forward_stream(reader: asyncio.StreamReader, label: str):
    """Log every line of a child's output stream until it closes."""
    while True:
        line = await reader.readline()
        if not line:
            break
        message = line.decode("utf-8", errors="replace").rstrip()
        if message:
            log(message, label=label)


async def supervise(proc, label: str):
    await asyncio.gather(
        forward_stream(proc.stdout, label),
        forward_stream(proc.stderr, label),
    )
    code = await proc.wait()
    if code != 0:
        log(f"exited with status {code}", label=label)
    return code


async def jekyll(ctx: BuildContext):
    command = [ctx.cfg["jekyll_command"]] + ctx.cfg["jekyll_args"]
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(ctx.root),
            limit=2 ** 20,
        )
    except OSError as e:
        log(f"could not start {command[0]}: {e}", label=JEKYLL_LABEL)
        return None

    ctx.children.append(proc)
    ctx.background.append(asyncio.ensure_future(supervise(proc, JEKYLL_LABEL)))
    ctx.keep_alive = True
    return proc


# -----------------------
# serve / watch
# -----------------------

def serve(ctx: BuildContext):
    site_root = ctx.path("site_root")
    site_root.mkdir(parents=True, exist_ok=True)

    hub = devserver.LiveReloadHub()
    app = devserver.make_app(
        site_root,
        hub,
        html_fallback=ctx.cfg["html_fallback"],
        page_scripts=PageScripts(ctx.cfg),
    )
    sockets = bind_sockets(ctx.cfg["port"])
    server = HTTPServer(app)
    server.add_sockets(sockets)
    ctx.servers.append(server)
    ctx.hub = hub
    ctx.port = sockets[0].getsockname()[1]

    reload_later = devserver.Debouncer(ctx.cfg["reload_delay"], hub.reload)
    ctx.observers.append(devserver.watch_path(site_root, reload_later.trigger))
    ctx.keep_alive = True
    log(f"Serving {site_root} at http://localhost:{ctx.port}/", label="Serve")


def watch(ctx: BuildContext):
    src_dir = ctx.path("scripts_src")
    if not src_dir.is_dir():
        warn(f"Not watching {src_dir}: no such directory")
        return

    def on_change(path):
        log(f"Changed {path}", label="Watch")
        IOLoop.current().spawn_callback(rebuild_scripts, ctx)

    rebuild_later = devserver.Debouncer(ctx.cfg["reload_delay"], on_change)
    ctx.observers.append(
        devserver.watch_path(src_dir, rebuild_later.trigger, patterns=[ctx.cfg["scripts_glob"]])
    )
    ctx.keep_alive = True
    log(f"Watching {src_dir}/**/{ctx.cfg['scripts_glob']}", label="Watch")


# -----------------------
# Task graph
# -----------------------

Task = namedtuple("Task", ["name", "action", "deps", "long_running"], defaults=(False,))


def build_task_graph() -> dict:
    tasks = [
        Task("clean", clean, ()),
        Task("scripts", scripts, ("clean",)),
        Task("jekyll", jekyll, (), long_running=True),
        Task("serve", serve, (), long_running=True),
        Task("watch", watch, (), long_running=True),
        Task("default", None, ("scripts", "serve", "jekyll", "watch")),
    ]
    return {t.name: t for t in tasks}


def resolve_order(graph: dict, name: str) -> list:
    """Task names to run for `name`, prerequisites first, each once."""
    order = []
    visiting = set()

    def visit(task_name, chain):
        if task_name in order:
            return
        if task_name not in graph:
            raise TaskError(f"Unknown task: {task_name}")
        if task_name in visiting:
            raise TaskError("Task cycle: " + " -> ".join(chain + [task_name]))
        visiting.add(task_name)
        for dep in graph[task_name].deps:
            visit(dep, chain + [task_name])
        visiting.discard(task_name)
        order.append(task_name)

    visit(name, [])
    return order


async def run_task(ctx: BuildContext, name: str):
    """
    Run `name` after its prerequisites. When the run includes a long-running
    task, a failed build step is logged and the remaining tasks still start.
    """
    order = resolve_order(ctx.graph, name)
    keep_going = any(ctx.graph[n].long_running for n in order)

    for task_name in order:
        action = ctx.graph[task_name].action
        if action is None:
            continue
        log(f"Starting '{task_name}'...")
        try:
            result = action(ctx)
            if inspect.isawaitable(result):
                await result
        except ScriptsError as e:
            if not keep_going:
                raise
            warn(f"{task_name}: {e}")
            continue
        log(f"Finished '{task_name}'")


async def run(ctx: BuildContext, name: str):
    try:
        await run_task(ctx, name)
        if ctx.keep_alive:
            await asyncio.Event().wait()
    finally:
        ctx.shutdown()


# -----------------------
# main()
# -----------------------

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Build tasks for the blog")
    parser.add_argument("task", nargs="?", default="default",
                        help="clean, scripts, jekyll, serve, watch or default")
    parser.add_argument("--config", type=Path, default=CONFIG_FILE)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config_path = args.config.resolve()
    cfg = load_config(config_path)
    ctx = BuildContext(cfg, config_path.parent)

    try:
        asyncio.run(run(ctx, args.task))
    except (TaskError, ScriptsError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        log("Stopped")


if __name__ == "__main__":
    main()
