"""Daemon process: the long-running memory and session server.

Usage: python -m ambient serve

Manages:
- Unix domain socket server (newline-delimited JSON)
- Scheduler (idle timeout, daily expiry sweep)
- PID file (prevent duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT, idle timeout, "shutdown" request)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
import time

from ambient.config import AmbientConfig, load_config
from ambient.core import ClientGone, Orchestrator
from ambient.protocol import (
    MAX_FRAME_BYTES,
    ProtocolError,
    Request,
    RequestType,
    Response,
    format_response,
    parse_request,
)
from ambient.scheduler.jobs import Scheduler

logger = logging.getLogger(__name__)


class AmbientDaemon:
    """Always-on daemon process."""

    def __init__(
        self,
        config: AmbientConfig | None = None,
        orchestrator: Orchestrator | None = None,
    ) -> None:
        self.config = config or load_config()
        self.orchestrator = orchestrator or Orchestrator(self.config)
        # Shared with the orchestrator so a "shutdown" request stops the daemon
        self._shutdown_event = self.orchestrator.shutdown_event
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[asyncio.Task] = set()
        self._last_activity = time.monotonic()

    @property
    def socket_path(self):
        return self.config.daemon.socket_path

    @property
    def pid_file(self):
        return self.config.daemon.pid_file

    def last_activity(self) -> float:
        return self._last_activity

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ── PID file management ──────────────────────────────────

    def _write_pid(self) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(os.getpid()))
        logger.info("PID file written: %s (pid=%d)", self.pid_file, os.getpid())

    def _remove_pid(self) -> None:
        if self.pid_file.exists():
            self.pid_file.unlink()

    def _check_existing(self) -> None:
        if not self.pid_file.exists():
            return
        try:
            pid = int(self.pid_file.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
        except (ProcessLookupError, ValueError):
            # Stale PID file
            self._remove_pid()
            return
        except PermissionError:
            pass  # exists, owned by someone else
        print(f"Ambient daemon already running (pid={pid}). Exiting.", file=sys.stderr)
        sys.exit(1)

    def _remove_stale_socket(self) -> None:
        if self.socket_path.exists():
            logger.info("Removing stale socket: %s", self.socket_path)
            self.socket_path.unlink()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    # ── Connections ──────────────────────────────────────────

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._last_activity = time.monotonic()
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)

        async def send(response: Response) -> None:
            if writer.is_closing():
                raise ClientGone("writer closed")
            logger.debug("→ %s %d bytes", response.type.value, len(response.data))
            writer.write(format_response(response))
            try:
                await writer.drain()
            except ConnectionError as e:
                raise ClientGone(str(e)) from e

        lines: asyncio.Queue[bytes | None] = asyncio.Queue()
        eof = asyncio.Event()

        async def read_lines() -> None:
            try:
                while True:
                    line = await reader.readline()
                    if not line:
                        break
                    lines.put_nowait(line)
            except (ConnectionError, ValueError) as e:
                # ValueError: frame larger than the stream limit
                logger.debug("Connection read error: %s", e)
            finally:
                eof.set()
                lines.put_nowait(None)

        reader_task = asyncio.create_task(read_lines())
        try:
            while True:
                line = await lines.get()
                if line is None:
                    break
                if not line.strip():
                    continue
                try:
                    request = parse_request(line)
                except ProtocolError as e:
                    logger.debug("Rejected frame: %s", e)
                    await send(Response.error(str(e)))
                    await send(Response.done())
                    continue
                logger.debug("← %s", request.type.value)
                await self._dispatch(request, send, eof)
        except ClientGone:
            logger.debug("Client went away")
        finally:
            reader_task.cancel()
            if task is not None:
                self._connections.discard(task)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def _dispatch(self, request: Request, send, eof: asyncio.Event) -> None:
        """Run one request. A query whose client disconnects is cancelled."""
        handler = asyncio.create_task(self.orchestrator.handle(request, send))
        if request.type is not RequestType.QUERY:
            await handler
            return

        watcher = asyncio.create_task(eof.wait())
        try:
            done, _ = await asyncio.wait({handler, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if handler not in done:
                logger.info("Client disconnected mid-query, stopping agent")
                handler.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await handler
                raise ClientGone("disconnected mid-query")
            handler.result()
        finally:
            watcher.cancel()
            if not handler.done():
                handler.cancel()

    # ── Main run loop ────────────────────────────────────────

    async def run(self) -> None:
        self._check_existing()

        # Migration and expiry sweep run before the socket opens
        await self.orchestrator.startup()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self._remove_stale_socket()
        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=str(self.socket_path), limit=MAX_FRAME_BYTES
        )
        os.chmod(self.socket_path, 0o600)
        self._write_pid()
        self._setup_signals()

        scheduler = Scheduler(self.orchestrator, self.config, self.last_activity)
        logger.info(
            "Ambient daemon running (pid %d, socket %s)", os.getpid(), self.socket_path
        )

        scheduler_task = asyncio.create_task(scheduler.start(self._shutdown_event))
        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self._stop(scheduler_task)

    async def _stop(self, scheduler_task: asyncio.Task) -> None:
        self._shutdown_event.set()
        await scheduler_task

        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)

        try:
            await self.orchestrator.shutdown()
        finally:
            if self._server is not None:
                self._server.close()
                await self._server.wait_closed()
            with contextlib.suppress(FileNotFoundError):
                self.socket_path.unlink()
            self._remove_pid()
            logger.info("Ambient daemon stopped.")
