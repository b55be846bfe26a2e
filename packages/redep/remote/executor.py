"""Deployment command execution for the redep server.

The configured command runs through a shell, so anyone holding the shared
secret can run arbitrary shell content on this host. That is the feature:
the secret is the trust boundary.
"""

import asyncio
import logging
import os
import signal
import time
from pathlib import Path

from ..exceptions import ConfigurationError, ExecutionTimeoutError, SpawnError
from ..shared.protocol import SPAWN_FAILED_EXIT_CODE, DeploymentResult

logger = logging.getLogger(__name__)


DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024  # per stream
READ_CHUNK_SIZE = 64 * 1024
KILL_GRACE_PERIOD = 5.0


def normalize_returncode(returncode: int) -> int:
    """Map asyncio's negative signal codes to the shell convention (128 + N)."""
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class BoundedBuffer:
    """Collects process output up to a byte limit and remembers overflow."""

    def __init__(self, limit: int):
        self.limit = limit
        self._chunks: list[bytes] = []
        self.size = 0
        self.total = 0
        self.truncated = False

    def feed(self, data: bytes) -> None:
        self.total += len(data)
        room = self.limit - self.size
        if room <= 0:
            self.truncated = self.truncated or bool(data)
            return
        if len(data) > room:
            data = data[:room]
            self.truncated = True
        self._chunks.append(data)
        self.size += len(data)

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


class CommandExecutor:
    """Runs the deployment command, one execution at a time.

    Requests that arrive while a deployment is running wait on an
    asyncio.Lock, which wakes waiters in FIFO order. Nothing is persisted:
    waiters are lost if the server process exits.
    """

    def __init__(
        self,
        shell: str | None = None,
        timeout: float | None = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        """Initialize the executor.

        Args:
            shell: Shell executable (defaults to the platform's /bin/sh)
            timeout: Maximum execution time in seconds (None = unlimited)
            max_output_bytes: Output kept per stream before truncating
        """
        self.shell = shell
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes
        self._lock = asyncio.Lock()
        self._waiting = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def waiting(self) -> int:
        return self._waiting

    async def execute(
        self,
        working_dir: str | Path,
        command: str,
        request_id: str = "",
    ) -> DeploymentResult:
        """Run `command` in `working_dir` and describe the outcome.

        Spawn failures and timeouts are reported in the result, not raised.

        Raises:
            ConfigurationError: If working_dir is missing or not a directory
        """
        work_dir = Path(working_dir)
        if not work_dir.is_dir():
            raise ConfigurationError(
                f"Working directory does not exist or is not a directory: {work_dir}",
                missing_keys=["working_dir"]
            )

        if self._lock.locked():
            logger.info(f"Deployment {request_id} queued behind a running deployment")

        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1

        try:
            return await self._execute_locked(work_dir, command, request_id)
        finally:
            self._lock.release()

    async def _execute_locked(self, work_dir: Path, command: str, request_id: str) -> DeploymentResult:
        logger.info(f"Running deployment {request_id} in {work_dir}")
        start_time = time.monotonic()

        try:
            returncode, stdout, stderr, truncated = await self._run(work_dir, command)
            error = None
        except SpawnError as e:
            logger.error(f"Deployment {request_id} could not start: {e}")
            returncode, stdout, stderr, truncated = SPAWN_FAILED_EXIT_CODE, "", str(e), False
            error = f"spawn_error: {e}"
        except ExecutionTimeoutError as e:
            logger.warning(f"Deployment {request_id} killed: {e}")
            returncode, stdout, stderr, truncated = e.returncode, e.stdout, e.stderr, e.truncated
            error = f"timeout: {e}"

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(f"Deployment {request_id} finished with exit code {returncode} in {duration_ms}ms")

        return DeploymentResult(
            request_id=request_id,
            success=(returncode == 0 and error is None),
            exit_code=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            truncated=truncated,
            error=error,
        )

    async def _run(self, work_dir: Path, command: str) -> tuple[int, str, str, bool]:
        """Spawn the shell, collect bounded output, enforce the timeout.

        Returns:
            Tuple of (returncode, stdout, stderr, truncated)
        """
        kwargs = {}
        if self.shell:
            kwargs["executable"] = self.shell

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(work_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,  # For process group signaling
                **kwargs,
            )
        except OSError as e:
            raise SpawnError(f"Failed to start shell: {e}") from e

        stdout = BoundedBuffer(self.max_output_bytes)
        stderr = BoundedBuffer(self.max_output_bytes)

        async def drain(stream: asyncio.StreamReader, buffer: BoundedBuffer):
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                buffer.feed(chunk)

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    drain(process.stdout, stdout),
                    drain(process.stderr, stderr),
                    process.wait(),
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            await self._kill_process(process)
            raise ExecutionTimeoutError(
                f"Command timed out after {self.timeout}s",
                timeout=self.timeout or 0.0,
                returncode=normalize_returncode(process.returncode),
                stdout=stdout.text(),
                stderr=stderr.text(),
                truncated=stdout.truncated or stderr.truncated,
            )

        return (
            normalize_returncode(process.returncode),
            stdout.text(),
            stderr.text(),
            stdout.truncated or stderr.truncated,
        )

    async def _kill_process(
        self,
        process: asyncio.subprocess.Process,
        sig: int = signal.SIGTERM,
    ):
        """Kill a process and its process group.

        Args:
            process: The process to kill
            sig: Signal to send first
        """
        try:
            os.killpg(os.getpgid(process.pid), sig)
        except (ProcessLookupError, OSError):
            pass

        # Wait briefly for graceful shutdown
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_PERIOD)
        except asyncio.TimeoutError:
            try:
                os.killpg(os.getpgid(process.pid), signal.SIGKILL)
            except (ProcessLookupError, OSError):
                pass
            await process.wait()
