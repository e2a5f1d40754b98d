"""HTTP surface for the strangerd daemon.

Serves the last flushed contact snapshots and a status/login view.
Runs on the daemon's event loop next to the session supervisor.

Endpoints:
    GET /                  — status line (open)
    GET /qr, /pair         — login challenge page with QR image (open)
    GET /api/v1/status     — health check + stats as JSON (open)
    GET /download/qr       — current QR challenge as SVG (token required)
    GET /download/{fmt}    — json | csv | vcf snapshot (token required)
"""

from __future__ import annotations

import base64
import hmac
import html
import io
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import qrcode
import qrcode.image.svg
from aiohttp import web

from export import EXPORT_FORMATS, export_path

log = logging.getLogger(__name__)


class _RateLimiter:
    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        now = time.monotonic()
        # Periodic sweep: evict stale keys when dict grows large
        if len(self._hits) > 1000:
            stale = [k for k, v in self._hits.items()
                     if not v or now - v[-1] >= self.window]
            for k in stale:
                del self._hits[k]
        hits = self._hits[key]
        self._hits[key] = [t for t in hits if now - t < self.window]
        if len(self._hits[key]) >= self.max_requests:
            return False
        self._hits[key].append(now)
        return True


class AccessGate:
    """Shared-secret check for download requests.

    The token may come as ?token=... or as an Authorization: Bearer
    header. An empty configured secret authorizes nothing.
    """

    def __init__(self, token: str):
        self.token = token

    def authorize(self, request: web.Request) -> bool:
        if not self.token:
            return False
        candidates = []
        if "token" in request.query:
            candidates.append(request.query["token"])
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            candidates.append(auth[7:])
        expected = self.token.encode("utf-8")
        return any(hmac.compare_digest(c.encode("utf-8"), expected) for c in candidates)


@dataclass
class ExportFile:
    body: bytes
    content_type: str
    filename: str


class ExportReader:
    """Reads snapshot files as last written by a flush. Never writes."""

    def __init__(self, export_dir: Path):
        self.export_dir = Path(export_dir)

    def serve(self, fmt: str) -> ExportFile | None:
        """Current bytes of a snapshot, or None if unknown or not yet flushed."""
        if fmt not in EXPORT_FORMATS:
            return None
        _, content_type, filename = EXPORT_FORMATS[fmt]
        try:
            body = export_path(self.export_dir, fmt).read_bytes()
        except FileNotFoundError:
            return None
        return ExportFile(body=body, content_type=content_type, filename=filename)


def render_qr_svg(payload: str) -> bytes:
    """Render a QR challenge payload as a standalone SVG document."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=10,
        border=4,
        image_factory=qrcode.image.svg.SvgPathImage,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    buf = io.BytesIO()
    qr.make_image().save(buf)
    return buf.getvalue()


_CHALLENGE_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>strangerd login</title></head>
<body>
<p>{status}</p>
{body}
</body>
</html>
"""


class HTTPApi:
    """HTTP server exposing status and snapshot downloads."""

    _PROTECTED_PREFIX = "/download/"

    def __init__(
        self,
        host: str,
        port: int,
        gate: AccessGate,
        reader: ExportReader,
        get_status_text: Callable[[], str],
        get_challenge: Callable[[], tuple[str, str] | None] | None = None,
        get_status: Callable[[], dict] | None = None,
        rate_limit: int = 30,
        rate_window: int = 60,
    ):
        self.host = host
        self.port = port
        self.gate = gate
        self.reader = reader
        self._get_status_text = get_status_text
        self._get_challenge = get_challenge
        self._get_status = get_status
        self._runner: web.AppRunner | None = None
        self._rate_limiter = _RateLimiter(max_requests=rate_limit, window_seconds=rate_window)

    # ─── Lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware, self._rate_middleware])
        app.router.add_get("/", self._handle_root)
        app.router.add_get("/qr", self._handle_challenge)
        app.router.add_get("/pair", self._handle_challenge)
        app.router.add_get("/api/v1/status", self._handle_status)
        app.router.add_get("/download/qr", self._handle_qr_image)
        app.router.add_get("/download/{fmt}", self._handle_download)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("HTTP listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Graceful shutdown."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("HTTP server stopped")

    # ─── Middleware ───────────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        # Outermost: a bad token is always 401, whether or not the file
        # exists or the client is over its rate limit.
        if request.path.startswith(self._PROTECTED_PREFIX) and not self.gate.authorize(request):
            log.warning("Download refused: bad or missing token from %s %s",
                        request.remote, request.path)
            return web.json_response({"error": "unauthorized"}, status=401)
        return await handler(request)

    @web.middleware
    async def _rate_middleware(self, request: web.Request, handler):
        if request.path.startswith(self._PROTECTED_PREFIX):
            client_ip = request.remote or "unknown"
            if not self._rate_limiter.check(client_ip):
                return web.json_response(
                    {"error": "rate limit exceeded"}, status=429,
                )
        return await handler(request)

    # ─── Endpoints ────────────────────────────────────────────────

    async def _handle_root(self, request: web.Request) -> web.Response:
        """GET / — status line."""
        return web.Response(text=self._get_status_text())

    async def _handle_challenge(self, request: web.Request) -> web.Response:
        """GET /qr, /pair — current login challenge, if any."""
        challenge = self._get_challenge() if self._get_challenge else None
        if challenge is None:
            body = "<p>Login code not available. Check the logs for a new QR code.</p>"
        elif challenge[0] == "qr":
            svg = base64.b64encode(render_qr_svg(challenge[1])).decode("ascii")
            body = ("<p>Scan with WhatsApp (Linked devices &gt; Link a device):</p>\n"
                    f"<img id=\"challenge\" data-kind=\"qr\" alt=\"WhatsApp login QR code\" "
                    f"width=\"320\" height=\"320\" src=\"data:image/svg+xml;base64,{svg}\">\n"
                    "<p><a href=\"/download/qr\">Download QR image</a> (token required)</p>\n"
                    "<details><summary>QR payload</summary>"
                    f"<pre>{html.escape(challenge[1])}</pre></details>")
        else:
            body = ("<p>Pairing code:</p>\n"
                    f"<pre id=\"challenge\" data-kind=\"pairing_code\">"
                    f"{html.escape(challenge[1])}</pre>")
        page = _CHALLENGE_PAGE.format(
            status=html.escape(self._get_status_text()), body=body,
        )
        return web.Response(text=page, content_type="text/html")

    async def _handle_qr_image(self, request: web.Request) -> web.Response:
        """GET /download/qr — current QR challenge as an SVG file."""
        challenge = self._get_challenge() if self._get_challenge else None
        if challenge is None or challenge[0] != "qr":
            return web.json_response(
                {"error": "QR code not available. Check the logs for a new QR code."},
                status=404,
            )
        return web.Response(
            body=render_qr_svg(challenge[1]),
            content_type="image/svg+xml",
            headers={"Content-Disposition": 'attachment; filename="qr.svg"'},
        )

    async def _handle_status(self, request: web.Request) -> web.Response:
        """GET /api/v1/status — health check + stats."""
        status: dict[str, Any] = self._get_status() if self._get_status else {"status": "ok"}
        return web.json_response(status)

    async def _handle_download(self, request: web.Request) -> web.Response:
        """GET /download/{fmt} — last flushed snapshot."""
        fmt = request.match_info["fmt"]
        export = self.reader.serve(fmt)
        if export is None:
            if fmt not in EXPORT_FORMATS:
                return web.json_response({"error": f"unknown format {fmt!r}"}, status=404)
            return web.json_response({"error": "no contacts exported yet"}, status=404)
        log.info("Download: %s (%d bytes) to %s", export.filename, len(export.body), request.remote)
        return web.Response(
            body=export.body,
            content_type=export.content_type,
            charset="utf-8",
            headers={"Content-Disposition": f'attachment; filename="{export.filename}"'},
        )
