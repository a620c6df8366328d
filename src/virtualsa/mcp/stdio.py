"""MCP backends run as local subprocesses speaking JSON-RPC over stdio.

Every call spawns its own process, performs the ``initialize`` handshake,
issues one ``tools/call`` and tears the process down again. Nothing is shared
between calls, so concurrent invocations of the same tool cannot interfere.
"""

import asyncio
import json
import os
import shlex
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from virtualsa.errors import (
    BackendAbortedError,
    BackendApplicationError,
    BackendError,
    BackendTimeoutError,
    BackendTransportError,
)
from virtualsa.mcp import jsonrpc
from virtualsa.mcp.base import (
    LOCAL,
    ToolBackend,
    ToolBackendClient,
    ToolSegment,
)

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_KILL_GRACE = 1.0
# MCP servers can answer with whole documents on a single line.
STDOUT_LINE_LIMIT = 16 * 1024 * 1024


@dataclass
class PendingRequest:
    request_id: str
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


class StdioJsonRpcChannel:
    """Correlates JSON-RPC requests and responses for one child process.

    Responses are matched strictly by id: a line whose id is unknown (or
    already answered) is logged and dropped.
    """

    def __init__(
        self,
        backend: str,
        process: Any,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ) -> None:
        self._backend = backend
        self._process = process
        self._request_timeout = request_timeout
        self._kill_grace = kill_grace
        self._pending: Dict[str, PendingRequest] = {}
        self._eof = False
        self._aborted = False
        self._close_task: Optional[asyncio.Task] = None
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = (
            asyncio.create_task(self._read_stderr())
            if getattr(process, "stderr", None) is not None
            else None
        )

    @property
    def pending_ids(self) -> List[str]:
        return list(self._pending)

    @property
    def closed(self) -> bool:
        return self._close_task is not None

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self._aborted:
            raise self._abort_error()
        if self._close_task is not None:
            raise BackendTransportError(self._backend, f"{self._backend} process is closed.")
        if self._eof:
            raise self._exit_error()

        request_id = jsonrpc.new_request_id()
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        timer = loop.call_later(self._request_timeout, self._expire, request_id)
        self._pending[request_id] = PendingRequest(request_id, method, future, timer)

        try:
            await self._write(jsonrpc.request(method, params, request_id))
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(f"[{self._backend}] write failed for {method}: {exc}")
            self._reject(request_id, self._exit_error())

        return await future

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        try:
            await self._write(jsonrpc.notification(method, params))
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(f"[{self._backend}] notification {method} not delivered: {exc}")

    def abort(self) -> None:
        """Reject everything outstanding and tear the process down."""
        self._aborted = True
        self.reject_all(self._abort_error())
        self._schedule_close()

    def _abort_error(self) -> BackendAbortedError:
        return BackendAbortedError(self._backend, f"{self._backend} request aborted.")

    def reject_all(self, error: BackendError) -> None:
        for request_id in list(self._pending):
            self._reject(request_id, error)

    async def close(self) -> None:
        self._schedule_close()
        await asyncio.shield(self._close_task)

    # ------------------------------------------------------------------

    async def _write(self, message: Mapping[str, Any]) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError("stdin is closed")
        stdin.write((json.dumps(message) + "\n").encode("utf-8"))
        await stdin.drain()

    def _resolve(self, message: Dict[str, Any]) -> bool:
        raw_id = message.get("id")
        if raw_id is None:
            return False
        entry = self._pending.pop(str(raw_id), None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(message)
        return True

    def _reject(self, request_id: str, error: BackendError) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_exception(error)

    def _expire(self, request_id: str) -> None:
        entry = self._pending.get(request_id)
        if entry is None:
            return
        logger.warning(
            f"[{self._backend}] {entry.method} timed out after {self._request_timeout}s"
        )
        self._reject(
            request_id,
            BackendTimeoutError(
                self._backend, f"{self._backend} request timed out: {entry.method}"
            ),
        )
        self._schedule_close()

    def _exit_error(self) -> BackendApplicationError:
        code = getattr(self._process, "returncode", None)
        suffix = f" (exit code {code})" if code is not None else ""
        return BackendApplicationError(
            self._backend, f"{self._backend} process exited before responding{suffix}."
        )

    async def _read_stdout(self) -> None:
        stdout = self._process.stdout
        # Set while the tail of an oversized line is still arriving.
        discarding = False
        while True:
            try:
                raw = await stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                if exc.partial and not discarding:
                    self._handle_line(exc.partial)
                break
            except asyncio.LimitOverrunError as exc:
                if not discarding:
                    logger.warning(f"[{self._backend}] dropping oversized stdout line")
                discarding = True
                await stdout.readexactly(exc.consumed)
                continue
            if discarding:
                discarding = False
                continue
            self._handle_line(raw)
        self._eof = True
        if self._pending:
            # Give the exit code a moment to be collected for the message.
            if getattr(self._process, "returncode", None) is None:
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=0.2)
                except asyncio.TimeoutError:
                    pass
            self.reject_all(self._exit_error())

    def _handle_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except ValueError:
            logger.warning(f"[{self._backend}] unable to parse line: {line[:200]}")
            return
        if not isinstance(message, dict) or not self._resolve(message):
            logger.debug(f"[{self._backend}] ignoring unmatched line: {line[:200]}")

    async def _read_stderr(self) -> None:
        while True:
            try:
                raw = await self._process.stderr.readline()
            except ValueError:
                logger.warning(f"[{self._backend}] dropping oversized stderr line")
                continue
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                logger.warning(f"[{self._backend}] stderr: {text}")

    def _schedule_close(self) -> None:
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._shutdown())

    async def _shutdown(self) -> None:
        self.reject_all(
            BackendApplicationError(
                self._backend, f"{self._backend} process terminated unexpectedly."
            )
        )
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self._process.wait(), timeout=self._kill_grace)
            except asyncio.TimeoutError:
                logger.warning(f"[{self._backend}] process ignored SIGTERM; killing")
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
                await self._process.wait()

        tasks = [t for t in (self._reader_task, self._stderr_task) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class StdioJsonRpcClient(ToolBackendClient):
    """Runs one MCP server process per tool call."""

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        *,
        tool_names: Optional[Mapping[str, str]] = None,
        env: Optional[Mapping[str, str]] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ) -> None:
        if not command:
            raise ValueError("StdioJsonRpcClient requires a non-empty command")
        super().__init__(
            ToolBackend(name=name, transport=LOCAL, endpoint_or_command=shlex.join(command))
        )
        self._command = list(command)
        self._tool_names = dict(tool_names or {})
        self._env = dict(env or {})
        self._request_timeout = request_timeout
        self._kill_grace = kill_grace

    def remote_tool_name(self, tool: str) -> str:
        return self._tool_names.get(tool, tool)

    def build_segments(self, tool: str, response: Dict[str, Any]) -> List[ToolSegment]:
        return jsonrpc.tool_result_segments(self.name, response)

    async def _spawn(self):
        env = {
            **os.environ,
            "NODE_DISABLE_COLORS": "1",
            "NO_COLOR": "1",
            "UV_FORCE_COLOR": "0",
            **self._env,
        }
        try:
            return await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STDOUT_LINE_LIMIT,
            )
        except OSError as exc:
            raise BackendTransportError(
                self.name, f"Failed to start {self.name} ({self._command[0]}): {exc}"
            ) from exc

    async def call(
        self,
        tool: str,
        arguments: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
    ) -> List[ToolSegment]:
        if signal is not None and signal.is_set():
            raise BackendAbortedError(self.name, f"{self.name} request aborted.")

        process = await self._spawn()
        logger.debug(f"[{self.name}] spawned pid={process.pid} for {tool}")
        channel = StdioJsonRpcChannel(
            self.name,
            process,
            request_timeout=self._request_timeout,
            kill_grace=self._kill_grace,
        )

        watcher: Optional[asyncio.Task] = None
        if signal is not None:

            async def _watch() -> None:
                await signal.wait()
                channel.abort()

            watcher = asyncio.create_task(_watch())

        try:
            init = await channel.request("initialize", jsonrpc.initialize_params())
            jsonrpc.raise_for_error(self.name, init, f"Failed to initialize {self.name}.")
            await channel.notify("notifications/initialized")
            response = await channel.request(
                "tools/call",
                jsonrpc.tool_call_params(self.remote_tool_name(tool), arguments),
            )
            return self.build_segments(tool, response)
        finally:
            if watcher is not None:
                watcher.cancel()
            await channel.close()
            logger.debug(f"[{self.name}] pid={process.pid} exited with {process.returncode}")
