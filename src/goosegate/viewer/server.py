#!/usr/bin/env python3
"""
goosegate HTTP gateway - job API, preview hosting and live reload

Features:
- Bearer-token JSON API for starting, polling and stopping goose jobs
- Static hosting of the published preview root (main at /, branches at /.preview/<slug>/)
- Branch switcher and live-reload script injected into served HTML
- SSE /events stream announcing republished branches
"""

import hmac
import html
import json
import logging
import subprocess
from datetime import datetime, timezone
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlparse

from goosegate import __version__
from goosegate.core.config import GatewayConfig
from goosegate.core.errors import GooseGateError
from goosegate.core.jobs import BusyError, JobHandle, JobNotFoundError, JobSupervisor
from goosegate.core.paths import ensure_directory, is_subpath
from goosegate.core.publish import BranchPublisher, PathEscapeError, Publication
from goosegate.core.recipes import RecipeError, headless_run_args, write_runtime_recipe
from goosegate.core.repo import RepoError
from goosegate.core.sanitize import (
    UnsafeArgumentError,
    describe_policy,
    ensure_allowed_command,
    sanitize_args,
)
from goosegate.core.watcher import DEFAULT_DEBOUNCE_SECONDS, Debouncer, init_git_watcher
from goosegate.viewer.broadcast import LiveReloadBroadcaster, SSEClient

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15.0
MAX_BODY_BYTES = 2 * 1024 * 1024
CLI_TIMEOUT_SECONDS = 60


class PreviewManager:
    """Publish on boot and on every (debounced) git change, then notify viewers."""

    def __init__(
        self,
        scope_dir: Path,
        publisher: BranchPublisher,
        broadcaster: LiveReloadBroadcaster,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self.scope_dir = scope_dir
        self.publisher = publisher
        self.broadcaster = broadcaster
        self.debouncer = Debouncer(self.republish, delay=debounce_seconds)
        self._dispose_watcher: Optional[Callable[[], None]] = None

    def notify(self, publications: List[Publication]) -> None:
        for publication in publications:
            self.broadcaster.broadcast({"branch": publication.branch})

    def publish_current(self) -> Publication:
        publication = self.publisher.publish_current_branch(self.scope_dir)
        self.notify([publication])
        return publication

    def republish(self) -> Optional[Publication]:
        """Debounced watcher target; failures are logged, never raised."""
        try:
            publication = self.publish_current()
        except (GooseGateError, OSError) as e:
            logger.warning("republish failed: %s", e)
            return None
        logger.info("republished '%s' -> %s", publication.branch, publication.target_dir)
        return publication

    def start(self) -> None:
        try:
            publication = self.publish_current()
            logger.info("published branch '%s' -> %s", publication.branch, publication.target_dir)
            logger.info("preview URL: %s", publication.url)
        except (GooseGateError, OSError) as e:
            logger.warning("initial publish failed: %s", e)

        try:
            self._dispose_watcher = init_git_watcher(self.scope_dir, self.debouncer.trigger)
        except OSError as e:
            logger.warning("git watcher failed: %s", e)

    def stop(self) -> None:
        if self._dispose_watcher is not None:
            self._dispose_watcher()
            self._dispose_watcher = None
        self.debouncer.cancel()


class Gateway:
    """Everything the request handler needs, shared across handler threads."""

    def __init__(
        self,
        config: GatewayConfig,
        supervisor: Optional[JobSupervisor] = None,
        publisher: Optional[BranchPublisher] = None,
        broadcaster: Optional[LiveReloadBroadcaster] = None,
    ):
        self.config = config
        self.supervisor = supervisor or JobSupervisor(echo_to_console=config.echo_job_logs)
        self.publisher = publisher or BranchPublisher(
            config.preview_root,
            base_url=f"http://localhost:{config.port}",
        )
        self.broadcaster = broadcaster or LiveReloadBroadcaster()
        self.previews = PreviewManager(Path(config.scope_dir), self.publisher, self.broadcaster)
        # Multi-step git operations (publish-all, promote, undo) must not overlap.
        self.git_lock = Lock()

    def start_job(self, command: str, args: List[str]) -> JobHandle:
        ensure_allowed_command(command)
        return self.supervisor.start(
            command,
            sanitize_args(args),
            cwd=self.config.scope_dir,
            binary_path=self.config.goose_binary,
            log_max_bytes=self.config.log_max_bytes,
        )

    def run_cli(self, args: List[str]) -> str:
        """Run a short goose command synchronously (version, help)."""
        result = subprocess.run(
            [self.config.goose_binary, *args],
            capture_output=True,
            text=True,
            timeout=CLI_TIMEOUT_SECONDS,
        )
        return (result.stdout or result.stderr).strip()


def inject_preview_widget(page: str, branches: List[Dict], current_path: str = "/") -> str:
    """Add the branch switcher and live-reload client before </body>."""
    # Longest matching prefix wins so /.preview/x/ is not also marked as main.
    matches = [b["url"] for b in branches if current_path.startswith(b["url"])]
    active_url = max(matches, key=len) if matches else None
    links = "".join(
        '<a href="{url}" class="{cls}">{name}</a>'.format(
            url=html.escape(b["url"], quote=True),
            cls="active" if b["url"] == active_url else "",
            name=html.escape(b["name"]),
        )
        for b in branches
    )
    widget = f"""
  <style>
    ._gg_preview_nav{{position:fixed;right:16px;bottom:16px;z-index:99999;font:14px/1.3 -apple-system,Segoe UI,Roboto,Helvetica,Arial,sans-serif}}
    ._gg_preview_nav .box{{background:#111d28;color:#dfe9f1;border:1px solid #2a3b4a;border-radius:10px;padding:10px 12px}}
    ._gg_preview_nav .title{{font-weight:600;font-size:12px;text-transform:uppercase;opacity:.8;margin-bottom:6px}}
    ._gg_preview_nav a{{display:block;color:#bde0fe;text-decoration:none;padding:6px 4px;border-radius:6px}}
    ._gg_preview_nav .active{{color:#fff;background:#29557a}}
    ._gg_preview_nav .hint{{margin-top:8px;font-size:12px;opacity:0;transition:opacity .25s}}
  </style>
  <div class="_gg_preview_nav"><div class="box">
    <div class="title">Preview Branches</div>
    {links}
    <div class="hint" id="_gg_preview_hint"></div>
  </div></div>
  <script>
    (function(){{
      try{{
        var es=new EventSource('/events');
        es.addEventListener('reload',function(ev){{
          var data={{}}; try{{ data=JSON.parse(ev.data||'{{}}'); }}catch(_){{}}
          var el=document.getElementById('_gg_preview_hint');
          if(el){{ el.textContent='Updated '+(data.branch||'site')+', reloading'; el.style.opacity='1'; }}
          setTimeout(function(){{ location.reload(); }}, 650);
        }});
      }}catch(_){{}}
    }})();
  </script>"""
    if "</body>" in page:
        return page.replace("</body>", widget + "\n</body>", 1)
    return page + widget


class GatewayHandler(SimpleHTTPRequestHandler):
    """HTTP handler for the gateway API and the preview site."""

    protocol_version = "HTTP/1.1"

    def __init__(self, *args, gateway: Gateway, **kwargs):
        self.gateway = gateway
        super().__init__(*args, directory=str(gateway.config.preview_root), **kwargs)

    def handle(self):
        """Handle request with graceful connection error handling."""
        try:
            super().handle()
        except (ConnectionResetError, BrokenPipeError, ConnectionAbortedError):
            pass

    # -- routing -----------------------------------------------------------

    def do_GET(self):
        parsed = urlparse(self.path)
        path = parsed.path
        query = parse_qs(parsed.query)

        if path == "/status":
            self._send_json({
                "name": "goosegate",
                "status": "ok",
                "timeUtc": datetime.now(timezone.utc).isoformat(),
                "scopeDir": str(self.gateway.config.scope_dir),
            })
            return
        if path == "/events":
            self._handle_events()
            return
        if path.startswith("/api/"):
            if not self._check_auth():
                return
            self._dispatch(lambda: self._route_api_get(path, query))
            return

        self._serve_preview(path)

    def do_POST(self):
        parsed = urlparse(self.path)
        path = parsed.path
        if not path.startswith("/api/"):
            self.send_error(404, "Not Found")
            return
        if not self._check_auth():
            return
        body = self._read_json_body()
        if body is None:
            self._send_json({"ok": False, "error": "request body must be a JSON object"}, status=400)
            return
        self._dispatch(lambda: self._route_api_post(path, body))

    def do_OPTIONS(self):
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type, Authorization")
        self.send_header("Access-Control-Max-Age", "86400")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _route_api_get(self, path: str, query: Dict[str, List[str]]) -> Tuple[Dict, int]:
        gateway = self.gateway
        if path == "/api/config":
            return {"ok": True, "config": gateway.config.to_public_dict(), **describe_policy()}, 200
        if path == "/api/commands":
            return {"ok": True, **describe_policy()}, 200
        if path == "/api/jobs":
            return {"ok": True, "jobs": gateway.supervisor.list_jobs(), "runningJobId": gateway.supervisor.running_job_id()}, 200
        if path == "/api/previews":
            return {"ok": True, "previews": gateway.publisher.list_publications()}, 200
        if path == "/api/version":
            return {"ok": True, "version": gateway.run_cli(["--version"]), "gateway": __version__}, 200
        if path == "/api/help":
            command = _first(query, "command")
            args = [ensure_allowed_command(command), "--help"] if command else ["--help"]
            return {"ok": True, "help": gateway.run_cli(args)}, 200

        if path.startswith("/api/jobs/"):
            parts = path.split("/")
            # /api/jobs/{id}[/{action}]
            job_id = parts[3] if len(parts) >= 4 else ""
            action = parts[4] if len(parts) == 5 else None
            if len(parts) == 4:
                return {"ok": True, "job": gateway.supervisor.status(job_id)}, 200
            if action == "logs":
                chunk = gateway.supervisor.stream_logs(
                    job_id,
                    stream=_first(query, "stream") or "stdout",
                    offset=_int_param(query, "offset", 0),
                    max_bytes=_int_param(query, "max_bytes", 65536),
                )
                return {"ok": True, **chunk.to_dict()}, 200
            if action == "output":
                return {"ok": True, **gateway.supervisor.output(job_id)}, 200

        return {"ok": False, "error": "Not Found"}, 404

    def _route_api_post(self, path: str, body: Dict) -> Tuple[Dict, int]:
        gateway = self.gateway
        config = gateway.config

        if path == "/api/run":
            text = body.get("text")
            if not isinstance(text, str) or not text.strip():
                raise ValueError("text is required")
            recipe_path = write_runtime_recipe(config.scope_dir, text, config.recipe_template)
            handle = gateway.start_job("run", headless_run_args(recipe_path))
            return {"ok": True, **handle.to_dict(), "recipe": str(recipe_path)}, 200
        if path in ("/api/recipe/validate", "/api/recipe/deeplink"):
            recipe_file = body.get("file")
            if not isinstance(recipe_file, str) or not recipe_file:
                raise ValueError("file is required")
            action = path.rsplit("/", 1)[1]
            return {"ok": True, **gateway.start_job("recipe", [action, recipe_file]).to_dict()}, 200
        if path.startswith("/api/session/"):
            args = _session_args(path[len("/api/session/"):], body)
            if args is None:
                return {"ok": False, "error": "Not Found"}, 404
            return {"ok": True, **gateway.start_job("session", args).to_dict()}, 200

        if path.startswith("/api/jobs/") and path.endswith("/stop"):
            parts = path.split("/")
            if len(parts) == 5:
                signal_name = body.get("signal", "SIGTERM")
                if signal_name not in ("SIGINT", "SIGTERM"):
                    raise ValueError("signal must be SIGINT or SIGTERM")
                result = gateway.supervisor.stop(parts[3], signal_name)
                return result.to_dict(), 200

        if path == "/api/publish":
            with gateway.git_lock:
                publication = gateway.previews.publish_current()
            return {"ok": True, **publication.to_dict()}, 200
        if path == "/api/publish/all":
            with gateway.git_lock:
                publications = gateway.publisher.publish_all_branches(config.scope_dir)
                gateway.previews.notify(publications)
            return {"ok": True, "published": [p.to_dict() for p in publications]}, 200
        if path == "/api/promote":
            branch = body.get("branch")
            if not isinstance(branch, str) or not branch:
                raise ValueError("branch is required")
            with gateway.git_lock:
                publication = gateway.publisher.promote_branch(config.scope_dir, branch)
                gateway.previews.notify([publication])
            return {"ok": True, **publication.to_dict()}, 200
        if path == "/api/undo":
            with gateway.git_lock:
                publication = gateway.publisher.undo_last_promotion(config.scope_dir)
                gateway.previews.notify([publication])
            return {"ok": True, **publication.to_dict()}, 200

        return {"ok": False, "error": "Not Found"}, 404

    def _dispatch(self, route: Callable[[], Tuple[Dict, int]]) -> None:
        """Run a route and translate domain errors into JSON responses."""
        try:
            data, status = route()
        except BusyError as e:
            data, status = {"ok": False, "error": str(e), "code": "BUSY", "runningJobId": e.running_job_id}, 409
        except JobNotFoundError as e:
            data, status = {"ok": False, "error": str(e), "code": "NOT_FOUND"}, 404
        except (UnsafeArgumentError, RecipeError, ValueError) as e:
            data, status = {"ok": False, "error": str(e)}, 400
        except PathEscapeError as e:
            logger.error("publish aborted: %s", e)
            data, status = {"ok": False, "error": str(e)}, 500
        except RepoError as e:
            data, status = {"ok": False, "error": f"git: {e}"}, 500
        except (OSError, subprocess.SubprocessError) as e:
            data, status = {"ok": False, "error": str(e)}, 500
        except Exception as e:
            logger.exception("unhandled error for %s %s", self.command, self.path)
            data, status = {"ok": False, "error": f"Internal server error: {e}"}, 500
        self._send_json(data, status=status)

    # -- auth and bodies ---------------------------------------------------

    def _check_auth(self) -> bool:
        header = self.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else header
        token = token.strip()
        expected = self.gateway.config.auth_token
        if not token or not expected or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            self._send_json({"ok": False, "error": "Unauthorized"}, status=401)
            return False
        return True

    def _read_json_body(self) -> Optional[Dict]:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = 0
        if length <= 0:
            return {}
        if length > MAX_BODY_BYTES:
            return None
        raw = self.rfile.read(length)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def _send_json(self, data: Dict, status: int = 200):
        """Send JSON response"""
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    # -- live reload -------------------------------------------------------

    def _handle_events(self):
        """Hold an SSE connection open until the client or server goes away."""
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "keep-alive")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("X-Accel-Buffering", "no")
        self.end_headers()
        self.close_connection = True

        broadcaster = self.gateway.broadcaster
        client = SSEClient(self.wfile)
        broadcaster.subscribe(client)
        try:
            client.comment("connected")
            while not broadcaster.wait_closed(HEARTBEAT_SECONDS):
                client.comment("heartbeat")
        except (OSError, ValueError):
            pass
        finally:
            broadcaster.unsubscribe(client)

    # -- preview hosting ---------------------------------------------------

    def _serve_preview(self, url_path: str):
        root = Path(self.gateway.config.preview_root).resolve()
        relative = unquote(url_path).lstrip("/")
        file_path = (root / relative).resolve()
        if not is_subpath(root, file_path):
            self.send_error(403, "Forbidden")
            return

        page_path = file_path / "index.html" if file_path.is_dir() else file_path
        if page_path.suffix.lower() in (".html", ".htm") and page_path.is_file():
            if file_path.is_dir() and not url_path.endswith("/"):
                # Relative links inside the page need the trailing slash.
                self.send_response(301)
                self.send_header("Location", url_path + "/")
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            try:
                page = page_path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                self.send_error(404, "Not Found")
                return
            current = url_path if url_path.endswith("/") or not file_path.is_dir() else url_path + "/"
            body = inject_preview_widget(page, self.gateway.publisher.list_publications(), current).encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "text/html; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.send_header("Cache-Control", "no-cache")
            self.end_headers()
            self.wfile.write(body)
            return

        super().do_GET()

    def list_directory(self, path):
        """Published snapshots are sites, not file browsers."""
        self.send_error(404, "Not Found")
        return None

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def _first(query: Dict[str, List[str]], name: str) -> Optional[str]:
    values = query.get(name)
    return values[0] if values else None


def _int_param(query: Dict[str, List[str]], name: str, default: int) -> int:
    raw = _first(query, name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer") from e
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return value


def _session_args(action: str, body: Dict) -> Optional[List[str]]:
    """Build ``goose session`` arguments for an API action."""

    def opt(flag: str, key: str) -> List[str]:
        value = body.get(key)
        return [flag, str(value)] if value else []

    if action == "start":
        return ["--with-builtin", "developer", *opt("--name", "name")]
    if action == "resume":
        return ["--resume", "--with-builtin", "developer", *opt("--name", "name"), *opt("--id", "id")]
    if action == "list":
        args = ["list"]
        if body.get("verbose"):
            args.append("--verbose")
        fmt = body.get("format")
        if fmt is not None:
            if fmt not in ("text", "json"):
                raise ValueError("format must be text or json")
            args += ["--format", fmt]
        if body.get("ascending"):
            args.append("--ascending")
        return args
    if action == "export":
        return ["export", *opt("--id", "id"), *opt("--name", "name"), *opt("--path", "path"), *opt("--output", "output")]
    if action == "remove":
        return ["remove", *opt("--id", "id"), *opt("--name", "name"), *opt("--regex", "regex")]
    return None


def create_server(
    config: GatewayConfig,
    host: str = "0.0.0.0",
    port: Optional[int] = None,
    gateway: Optional[Gateway] = None,
) -> Tuple[ThreadingHTTPServer, Gateway]:
    """Build the gateway and an HTTP server bound to ``host:port``."""
    gateway = gateway or Gateway(config)
    ensure_directory(Path(config.scope_dir))
    ensure_directory(Path(config.preview_root))

    def handler(*args_handler, **kwargs_handler):
        return GatewayHandler(*args_handler, gateway=gateway, **kwargs_handler)

    # SSE connections are long-lived; use a threaded server so one open
    # preview tab doesn't block API requests.
    server = ThreadingHTTPServer((host, config.port if port is None else port), handler)
    return server, gateway


def serve(config: GatewayConfig, host: str = "0.0.0.0", port: Optional[int] = None) -> int:
    server, gateway = create_server(config, host, port)
    bound_port = server.server_address[1]
    logger.info("listening on http://%s:%s", host, bound_port)
    logger.info("scope directory: %s", config.scope_dir)
    logger.info("preview root: %s", config.preview_root)

    gateway.previews.start()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("shutting down")
    finally:
        gateway.previews.stop()
        gateway.broadcaster.close()
        server.server_close()
    return 0
