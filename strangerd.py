#!/usr/bin/env python3
"""strangerd — captures WhatsApp senders that are not in your address book.

Entry point. Wires config → credentials → supervisor → capture → export → HTTP.
Handles PID file, Unix signals, and the single event-dispatch loop.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import secrets
import signal
import sys
import time
from pathlib import Path
from typing import Any

# Add strangerd directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from capture import CaptureIngestor, Ledger
from channels import create_session_factory
from channels.http_api import AccessGate, ExportReader, HTTPApi
from config import DEFAULT_CONFIG_PATH, Config, ConfigError, load_config
from credentials import CredentialStore
from export import PersistenceBatcher, load_snapshot
from retry import RetryPolicy
from supervisor import Phase, SessionSupervisor

log = logging.getLogger("strangerd")

# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except PermissionError:
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except Exception:  # noqa: S110 — daemon shutdown cleanup; failure is benign
        pass


# ─── Daemon ──────────────────────────────────────────────────────

class StrangerDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.running = True
        self.start_time = time.time()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self.http_token = config.http_token
        self.ledger: Ledger | None = None
        self.batcher: PersistenceBatcher | None = None
        self.ingestor: CaptureIngestor | None = None
        self.supervisor: SessionSupervisor | None = None
        self._http_api: HTTPApi | None = None
        self._flush_task: asyncio.Task | None = None

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _init_ledger(self) -> None:
        records = load_snapshot(self.config.export_dir) if self.config.rehydrate else []
        self.ledger = Ledger(records)
        if records:
            log.info("Rehydrated %d previously captured contacts", len(records))
        self.batcher = PersistenceBatcher(
            self.ledger, self.config.export_dir, batch_size=self.config.batch_size,
        )

    def _init_supervisor(self) -> None:
        cfg = self.config
        self.supervisor = SessionSupervisor(
            session_factory=create_session_factory(cfg),
            credentials=CredentialStore(cfg.credentials_dir),
            emit=self.queue.put,
            reconnect_delay=cfg.reconnect_delay,
            auth_method=cfg.auth_method,
            pairing_phone=cfg.pairing_phone,
            on_logout=self._on_logout,
        )
        self.ingestor = CaptureIngestor(
            ledger=self.ledger,
            probe=self.supervisor.probe,
            batcher=self.batcher,
            excerpt_limit=cfg.excerpt_limit,
            placeholder_name=cfg.placeholder_name,
            retry=RetryPolicy(attempts=cfg.probe_attempts, delay=cfg.probe_delay),
        )
        self.supervisor.on_message = self.ingestor.ingest

    def _init_http(self) -> None:
        cfg = self.config
        if not self.http_token:
            self.http_token = secrets.token_urlsafe(16)
            log.warning("No [http] token configured; generated one for this run: %s",
                        self.http_token)
        self._http_api = HTTPApi(
            host=cfg.http_host,
            port=cfg.http_port,
            gate=AccessGate(self.http_token),
            reader=ExportReader(cfg.export_dir),
            get_status_text=self._build_status_text,
            get_challenge=self._current_challenge,
            get_status=self._build_status,
            rate_limit=cfg.http_rate_limit,
            rate_window=cfg.http_rate_window,
        )

    def _on_logout(self) -> None:
        if self.config.purge_exports_on_logout and self.batcher is not None:
            self.batcher.purge()

    # ─── Status ───────────────────────────────────────────────────

    def _build_status_text(self) -> str:
        """Status line for GET /."""
        if self.supervisor is None:
            return "Initializing..."
        text = self.supervisor.status_text()
        if self.supervisor.state.phase is Phase.OPEN and self.ledger:
            text += (f" Saved {len(self.ledger)} contacts."
                     " Download: /download/csv or /download/vcf")
        return text

    def _current_challenge(self) -> tuple[str, str] | None:
        if self.supervisor is None:
            return None
        st = self.supervisor.state
        if st.phase is not Phase.AWAITING_CHALLENGE or not st.challenge:
            return None
        return st.challenge_kind.value, st.challenge

    def _build_status(self) -> dict:
        """Build status dict for HTTP /api/v1/status and SIGUSR2."""
        sup = self.supervisor
        batcher = self.batcher
        ing = self.ingestor
        return {
            "status": "ok" if sup is not None and sup.state.phase is not Phase.LOGGED_OUT else "degraded",
            "pid": os.getpid(),
            "uptime_seconds": round(time.time() - self.start_time),
            "session": sup.state.phase.value if sup else "idle",
            "ready": bool(sup and sup.ready),
            "reconnect_pending": bool(sup and sup.reconnect_pending),
            "last_error": (sup.last_error if sup else "") or (batcher.last_error if batcher else ""),
            "contacts": len(self.ledger) if self.ledger is not None else 0,
            "pending_writes": batcher.pending if batcher else 0,
            "last_flush": batcher.last_flush_at if batcher else None,
            "flushes": batcher.flush_count if batcher else 0,
            "messages_seen": ing.seen if ing else 0,
            "skipped_known": ing.skipped_known if ing else 0,
            "probe_failures": ing.probe_failures if ing else 0,
            "queue_depth": self.queue.qsize(),
        }

    # ─── Event Loop ───────────────────────────────────────────────

    async def _event_loop(self) -> None:
        """Dispatch queued session events one at a time."""
        while self.running:
            try:
                item = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self.supervisor.dispatch(item)
            except Exception:
                log.exception("Event handler failed for %s", type(item).__name__)

            if self.supervisor.exhausted:
                log.info("Event source exhausted, shutting down")
                self.running = False
                break

    async def _periodic_flush(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.batcher.pending:
                self.batcher.flush()

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr1():
            log.info("SIGUSR1: flushing snapshots")
            self.batcher.flush(force=True)

        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            status_path = self.config.state_dir / "status.json"
            status_path.write_text(json.dumps(self._build_status(), indent=2))

        def handle_sigterm():
            log.info("SIGTERM: shutting down gracefully")
            self.running = False

        try:
            loop.add_signal_handler(signal.SIGUSR1, handle_sigusr1)
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run(self) -> None:
        """Main entry point — starts all components and runs until stopped."""
        cfg = self.config
        pid_path = cfg.state_dir / "strangerd.pid"

        self._setup_logging()
        log.info("Starting strangerd (session channel: %s)", cfg.session_channel)

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        try:
            self._init_ledger()
            self._init_supervisor()
            self._init_http()

            loop = asyncio.get_running_loop()
            self._setup_signals(loop)

            await self._http_api.start()
            await self.supervisor.start()

            if cfg.flush_interval > 0:
                self._flush_task = asyncio.create_task(self._periodic_flush(cfg.flush_interval))

            log.info("strangerd running (PID %d)", os.getpid())

            await self._event_loop()

        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            if self._flush_task is not None:
                self._flush_task.cancel()
            if self.supervisor is not None:
                try:
                    await self.supervisor.stop()
                except Exception:
                    log.exception("Supervisor shutdown failed")
            # Write out whatever the last batch left pending
            if self.batcher is not None:
                self.batcher.flush()
            if self._http_api is not None:
                await self._http_api.stop()
            _remove_pid_file(pid_path)
            log.info("strangerd stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="strangerd — capture WhatsApp senders missing from your contacts",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("STRANGERD_CONFIG"),
        help=f"Path to config file (default: $STRANGERD_CONFIG or {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--replay",
        metavar="FILE",
        help="Replay bridge events from a JSONL file instead of connecting",
    )
    args = parser.parse_args()

    # Build overrides from CLI args
    overrides: dict[str, Any] = {}
    if args.replay:
        overrides["session.channel"] = "replay"
        overrides["session.replay_file"] = args.replay

    try:
        config = load_config(
            args.config or DEFAULT_CONFIG_PATH,
            overrides=overrides,
            required=args.config is not None,
        )
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    daemon = StrangerDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass
    except Exception:
        # Already logged by run()
        sys.exit(1)


if __name__ == "__main__":
    main()
