"""Per-user storefront worker processes spoken to over JSON-RPC.

Each user with storefront credentials gets one long-lived child process
(the WooCommerce MCP server).  Requests are single JSON lines on the
child's stdin; responses come back as newline-delimited JSON on stdout
and are matched to the waiting caller by request id.

Lifecycle per user::

    absent ──start()/ensure_started()──▶ running ──stop() / process exit──▶ absent

``send_request`` never starts a worker on its own; the management API
requires an explicit ``start``.  The tool registry uses
``ensure_started`` so that chat turns provision the worker lazily.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from agent_workspace.config import STOREFRONT_WORKER_COMMAND, WORKER_REQUEST_TIMEOUT_SECONDS
from agent_workspace.errors import (
    WorkerAlreadyRunningError,
    WorkerExitedError,
    WorkerNotRunningError,
    WorkerRPCError,
    WorkerStartError,
    WorkerTimeoutError,
)
from agent_workspace.models import CredentialSet, utcnow
from agent_workspace.services.metrics import metrics
from agent_workspace.services.vault import STOREFRONT, CredentialVault

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024
STOP_GRACE_SECONDS = 5.0


def worker_environment(creds: CredentialSet) -> dict[str, str]:
    """Process-local configuration for the worker, built from decrypted secrets."""
    return {
        **os.environ,
        "WORDPRESS_SITE_URL": creds.require("site_url"),
        "WOOCOMMERCE_CONSUMER_KEY": creds.require("consumer_key"),
        "WOOCOMMERCE_CONSUMER_SECRET": creds.require("consumer_secret"),
        "WORDPRESS_USERNAME": creds.get("username") or "",
        "WORDPRESS_PASSWORD": creds.get("password") or "",
    }


class StorefrontWorker:
    """Handle on one running worker process.

    Owns the request-id counter and the map of in-flight requests.  Never
    shared between users.
    """

    def __init__(
        self,
        user_id: str,
        process: asyncio.subprocess.Process,
        *,
        timeout: float,
        on_exit: Callable[[StorefrontWorker], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self.process = process
        self.started_at: datetime = utcnow()
        self._timeout = timeout
        self._on_exit = on_exit
        self._next_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._buffer = b""
        self._stopping = False

        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._exit_task = asyncio.create_task(self._watch_exit())

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None and not self._stopping

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Requests ─────────────────────────────────────────────────────

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send one JSON-RPC request and wait for its response.

        Raises ``WorkerTimeoutError`` when no response arrives in time; the
        process is left running.  ``WorkerRPCError`` carries the worker's
        own error message.
        """
        if not self.running:
            raise WorkerExitedError("Storefront worker is no longer running.")

        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        line = json.dumps(
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}},
            ensure_ascii=False,
        )
        try:
            self.process.stdin.write(line.encode("utf-8") + b"\n")
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._pending.pop(request_id, None)
            raise WorkerExitedError("Storefront worker closed its input stream.") from exc

        try:
            return await asyncio.wait_for(future, timeout=self._timeout)
        except TimeoutError:
            logger.warning(
                "Storefront request %d (%s) for user %s timed out after %.0fs",
                request_id, method, self.user_id, self._timeout,
            )
            raise WorkerTimeoutError(method, self._timeout) from None
        finally:
            self._pending.pop(request_id, None)

    # ── Output handling ──────────────────────────────────────────────

    def feed(self, data: bytes) -> None:
        """Consume a chunk of stdout; one chunk may hold several responses."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        for line in lines:
            self._handle_line(line)

    def _handle_line(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed worker output (user %s): %.200s", self.user_id, text)
            return
        if not isinstance(message, dict):
            logger.warning("Skipping non-object worker output (user %s)", self.user_id)
            return

        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            logger.debug("Unmatched worker response id=%r (user %s)", message.get("id"), self.user_id)
            return

        error = message.get("error")
        if error:
            if isinstance(error, dict):
                future.set_exception(
                    WorkerRPCError(error.get("message") or "Storefront worker error", error.get("code"))
                )
            else:
                future.set_exception(WorkerRPCError(str(error)))
        else:
            future.set_result(message.get("result"))

    async def _read_stdout(self) -> None:
        stream = self.process.stdout
        while chunk := await stream.read(READ_CHUNK_BYTES):
            self.feed(chunk)
        if self._buffer:
            self._handle_line(self._buffer)
            self._buffer = b""

    async def _read_stderr(self) -> None:
        stream = self.process.stderr
        while line := await stream.readline():
            logger.info(
                "storefront worker [%s] stderr: %s",
                self.user_id, line.decode("utf-8", errors="replace").rstrip(),
            )

    async def _watch_exit(self) -> None:
        returncode = await self.process.wait()
        # Responses already written must reach their callers first.
        await asyncio.gather(self._stdout_task, self._stderr_task, return_exceptions=True)
        logger.info("Storefront worker for user %s exited with code %s", self.user_id, returncode)
        self.fail_pending(WorkerExitedError(f"Storefront worker exited with code {returncode}."))
        if self._on_exit is not None:
            self._on_exit(self)

    def fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    # ── Shutdown ─────────────────────────────────────────────────────

    async def terminate(self) -> None:
        self._stopping = True
        if self.process.returncode is None:
            try:
                self.process.terminate()
                await asyncio.wait_for(self.process.wait(), timeout=STOP_GRACE_SECONDS)
            except ProcessLookupError:
                pass
            except TimeoutError:
                logger.warning("Storefront worker for user %s ignored SIGTERM; killing", self.user_id)
                self.process.kill()
                await self.process.wait()
        await self._exit_task


class ProcessManager:
    """Registry of storefront workers, one per user.

    Constructed once by the application and injected into the tool
    registry and the management routes.
    """

    def __init__(
        self,
        vault: CredentialVault,
        *,
        command: Sequence[str] | None = None,
        timeout: float | None = None,
    ) -> None:
        self._vault = vault
        self._command = list(command or STOREFRONT_WORKER_COMMAND)
        self._timeout = WORKER_REQUEST_TIMEOUT_SECONDS if timeout is None else timeout
        self._workers: dict[str, StorefrontWorker] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialize start-up per user; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    def get(self, user_id: str) -> StorefrontWorker | None:
        worker = self._workers.get(user_id)
        return worker if worker is not None and worker.running else None

    def is_running(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self, user_id: str) -> StorefrontWorker:
        """Explicit start; fails if a worker is already running for the user."""
        async with self._user_lock(user_id):
            if self.get(user_id) is not None:
                raise WorkerAlreadyRunningError(user_id)
            return await self._spawn(user_id)

    async def ensure_started(self, user_id: str) -> StorefrontWorker:
        """Return the user's worker, starting it first if needed."""
        async with self._user_lock(user_id):
            worker = self.get(user_id)
            if worker is not None:
                return worker
            logger.info("Auto-starting storefront worker for user %s", user_id)
            return await self._spawn(user_id)

    async def _spawn(self, user_id: str) -> StorefrontWorker:
        creds = await self._vault.get_credentials(user_id, STOREFRONT)
        env = worker_environment(creds)
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            logger.error("Could not spawn storefront worker %s: %s", self._command, exc)
            raise WorkerStartError(f"Could not start the storefront worker: {exc.strerror or exc}") from exc

        worker = StorefrontWorker(user_id, process, timeout=self._timeout, on_exit=self._forget)
        self._workers[user_id] = worker
        logger.info("Started storefront worker for user %s (pid %d)", user_id, worker.pid)
        return worker

    def _forget(self, worker: StorefrontWorker) -> None:
        if self._workers.get(worker.user_id) is worker:
            del self._workers[worker.user_id]

    async def stop(self, user_id: str) -> bool:
        """Stop the user's worker.  Returns ``False`` if none was running."""
        worker = self._workers.pop(user_id, None)
        if worker is None:
            return False
        await worker.terminate()
        logger.info("Stopped storefront worker for user %s", user_id)
        return True

    async def stop_all(self) -> None:
        for user_id in list(self._workers):
            await self.stop(user_id)

    # ── Requests ─────────────────────────────────────────────────────

    async def send_request(
        self, user_id: str, method: str, params: dict[str, Any] | None = None,
    ) -> Any:
        worker = self.get(user_id)
        if worker is None:
            raise WorkerNotRunningError(user_id)
        with metrics.track("storefront", method):
            return await worker.request(method, params)

    def status(self, user_id: str) -> dict[str, Any]:
        worker = self.get(user_id)
        if worker is None:
            return {"running": False, "pid": None, "pendingRequests": 0, "startedAt": None}
        return {
            "running": True,
            "pid": worker.pid,
            "pendingRequests": worker.pending_count,
            "startedAt": worker.started_at.isoformat(),
        }
