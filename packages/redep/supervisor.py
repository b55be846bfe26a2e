"""Background lifecycle management for the redep server.

Two backends share one start/stop/status contract:

- Pm2Backend delegates to PM2 when it is installed
- NativeBackend spawns a detached `python -m redep listen` and keeps its
  PID in the config store

The persisted PID is never trusted blindly: every native operation probes
it first and clears it when the process is gone. There is no background
health-check loop, so staleness is only noticed when someone asks.
"""

import json
import logging
import os
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .config import ConfigStore, get_redep_home, require_server_config
from .exceptions import SupervisorError

logger = logging.getLogger(__name__)


PM2_APP_NAME = "redep-server"
PM2_TIMEOUT = 30  # seconds


class ManagedBy(str, Enum):
    """Who keeps the server process alive."""
    PM2 = "pm2"
    NATIVE = "native"


@dataclass
class DaemonState:
    """Persisted record of the background server."""
    pid: Optional[int]
    managed_by: ManagedBy
    started_at: Optional[str] = None

    @classmethod
    def load(cls, store: ConfigStore) -> Optional["DaemonState"]:
        pid = store.get("server_pid")
        managed_by = store.get("server_managed_by")
        if pid is None and managed_by is None:
            return None
        try:
            pid = int(pid) if pid is not None else None
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable server_pid {pid!r}")
            pid = None
        try:
            manager = ManagedBy(managed_by) if managed_by else ManagedBy.NATIVE
        except ValueError:
            manager = ManagedBy.NATIVE
        return cls(pid=pid, managed_by=manager, started_at=store.get("server_started_at"))

    def save(self, store: ConfigStore) -> None:
        if self.pid is None:
            store.delete("server_pid")
        else:
            store.set("server_pid", self.pid)
        store.set("server_managed_by", self.managed_by.value)
        store.set("server_started_at", self.started_at)

    @staticmethod
    def clear(store: ConfigStore) -> None:
        for key in ("server_pid", "server_managed_by", "server_started_at"):
            store.delete(key)


@dataclass
class ServerStatus:
    """Answer to a start/stop/status request."""
    running: bool
    managed_by: ManagedBy
    pid: Optional[int] = None
    message: str = ""
    stale_pid: Optional[int] = None  # Set when a dead PID was found and cleared


def is_pid_alive(pid: Optional[int]) -> bool:
    """Non-destructive liveness probe (signal 0)."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def listen_command(port: Optional[int] = None) -> list[str]:
    """Command line that runs the server in the foreground."""
    args = [sys.executable, "-m", "redep", "listen"]
    if port:
        args.extend(["--port", str(port)])
    return args


class SupervisorBackend(ABC):
    """Base class for the ways the server can be kept in the background."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def start(self, port: Optional[int] = None) -> ServerStatus:
        """Launch the server. Raises SupervisorError if this backend cannot."""

    @abstractmethod
    def stop(self) -> ServerStatus:
        """Stop the server. Raises SupervisorError if this backend cannot."""

    @abstractmethod
    def status(self) -> Optional[ServerStatus]:
        """Report the server state, or None if this backend does not know it."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


# ============================================================================
# PM2
# ============================================================================

class Pm2Backend(SupervisorBackend):
    """Runs the server under PM2 as `redep-server`."""

    def __init__(
        self,
        store: ConfigStore,
        pm2_bin: str = "pm2",
        app_name: str = PM2_APP_NAME,
        command_factory: Callable[[Optional[int]], list[str]] = listen_command,
    ):
        super().__init__("pm2")
        self.store = store
        self.pm2_bin = pm2_bin
        self.app_name = app_name
        self.command_factory = command_factory

    def _run(self, args: list[str], env: dict[str, str] | None = None) -> subprocess.CompletedProcess:
        """Invoke pm2. Raises SupervisorError when pm2 is missing or hangs."""
        try:
            return subprocess.run(
                [self.pm2_bin, *args],
                capture_output=True,
                text=True,
                timeout=PM2_TIMEOUT,
                env=env,
            )
        except FileNotFoundError as e:
            raise SupervisorError(f"{self.pm2_bin} not found") from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise SupervisorError(f"{self.pm2_bin} failed: {e}") from e

    def _describe(self) -> Optional[dict]:
        """The app's entry from `pm2 jlist`, or None if it is not registered."""
        result = self._run(["jlist"])
        if result.returncode != 0:
            raise SupervisorError(f"pm2 jlist exited with {result.returncode}")
        try:
            apps = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise SupervisorError(f"Unreadable pm2 jlist output: {e}") from e
        for app in apps:
            if app.get("name") == self.app_name:
                return app
        return None

    def status(self) -> Optional[ServerStatus]:
        app = self._describe()
        if app is None:
            return None
        state = (app.get("pm2_env") or {}).get("status", "unknown")
        pid = app.get("pid") or None
        running = state == "online"
        return ServerStatus(
            running=running,
            managed_by=ManagedBy.PM2,
            pid=pid if running else None,
            message=f"Server is {'RUNNING' if running else 'NOT running'} under PM2 ({state})",
        )

    def start(self, port: Optional[int] = None) -> ServerStatus:
        command = self.command_factory(port)
        env = os.environ.copy()
        if port:
            env["SERVER_PORT"] = str(port)

        args = [
            "start", command[0],
            "--name", self.app_name,
            "--interpreter", "none",
            "--", *command[1:],
        ]
        result = self._run(args, env=env)
        if result.returncode != 0:
            raise SupervisorError(f"pm2 start exited with {result.returncode}: {result.stderr.strip()}")

        DaemonState(pid=None, managed_by=ManagedBy.PM2, started_at=_now_iso()).save(self.store)
        return ServerStatus(
            running=True,
            managed_by=ManagedBy.PM2,
            message="Server started in background using PM2",
        )

    def stop(self) -> ServerStatus:
        result = self._run(["stop", self.app_name])
        if result.returncode != 0:
            raise SupervisorError(f"pm2 stop exited with {result.returncode}")
        state = DaemonState.load(self.store)
        if state is not None and state.managed_by == ManagedBy.PM2:
            DaemonState.clear(self.store)
        return ServerStatus(running=False, managed_by=ManagedBy.PM2, message="Server stopped (PM2)")


# ============================================================================
# Native
# ============================================================================

class NativeBackend(SupervisorBackend):
    """Self-managed detached process with its PID in the config store.

    State machine: ABSENT -> RUNNING -> (STOPPED | STALE) -> ABSENT.
    """

    def __init__(
        self,
        store: ConfigStore,
        command_factory: Callable[[Optional[int]], list[str]] = listen_command,
        log_path: Path | str | None = None,
    ):
        super().__init__("native")
        self.store = store
        self.command_factory = command_factory
        self.log_path = Path(log_path) if log_path else get_redep_home() / "server.log"

    def _live_state(self) -> tuple[Optional[DaemonState], Optional[int]]:
        """Load the native DaemonState, clearing it if its PID is dead.

        Returns:
            Tuple of (live state or None, stale pid that was cleared or None)
        """
        state = DaemonState.load(self.store)
        if state is None or state.managed_by != ManagedBy.NATIVE:
            return None, None
        if is_pid_alive(state.pid):
            return state, None
        logger.info(f"Clearing stale server PID {state.pid}")
        DaemonState.clear(self.store)
        return None, state.pid

    def status(self) -> ServerStatus:
        state, stale_pid = self._live_state()
        if state is not None:
            return ServerStatus(
                running=True,
                managed_by=ManagedBy.NATIVE,
                pid=state.pid,
                message=f"Server is RUNNING (PID {state.pid})",
            )
        if stale_pid is not None:
            return ServerStatus(
                running=False,
                managed_by=ManagedBy.NATIVE,
                stale_pid=stale_pid,
                message=f"Server is NOT running (Stale PID {stale_pid} found and cleared).",
            )
        return ServerStatus(running=False, managed_by=ManagedBy.NATIVE, message="Server is NOT running.")

    def start(self, port: Optional[int] = None) -> ServerStatus:
        state, _ = self._live_state()
        if state is not None:
            return ServerStatus(
                running=True,
                managed_by=ManagedBy.NATIVE,
                pid=state.pid,
                message=f"Server is already running with PID {state.pid}",
            )

        command = self.command_factory(port)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        kwargs = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        try:
            with open(self.log_path, "ab") as log_file:
                child = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    close_fds=True,
                    **kwargs,
                )
        except OSError as e:
            raise SupervisorError(f"Failed to spawn server process: {e}") from e

        DaemonState(pid=child.pid, managed_by=ManagedBy.NATIVE, started_at=_now_iso()).save(self.store)
        logger.debug(f"Spawned {command} as PID {child.pid}, logging to {self.log_path}")
        return ServerStatus(
            running=True,
            managed_by=ManagedBy.NATIVE,
            pid=child.pid,
            message=f"Server started in background (native) with PID {child.pid}",
        )

    def stop(self) -> ServerStatus:
        state = DaemonState.load(self.store)
        if state is None or state.managed_by != ManagedBy.NATIVE or state.pid is None:
            if state is not None and state.managed_by == ManagedBy.NATIVE:
                DaemonState.clear(self.store)
            return ServerStatus(running=False, managed_by=ManagedBy.NATIVE, message="No active server found.")

        try:
            os.kill(state.pid, signal.SIGTERM)
        except ProcessLookupError:
            DaemonState.clear(self.store)
            return ServerStatus(
                running=False,
                managed_by=ManagedBy.NATIVE,
                stale_pid=state.pid,
                message=f"Process {state.pid} not found. Cleaned up config.",
            )
        except OSError as e:
            raise SupervisorError(f"Failed to stop server (PID {state.pid}): {e}") from e

        DaemonState.clear(self.store)
        return ServerStatus(
            running=False,
            managed_by=ManagedBy.NATIVE,
            pid=state.pid,
            message=f"Server stopped (PID {state.pid})",
        )


# ============================================================================
# Supervisor
# ============================================================================

class ProcessSupervisor:
    """Keeps at most one background server alive, PM2 first, native second."""

    def __init__(
        self,
        store: ConfigStore,
        external: Optional[SupervisorBackend] = None,
        native: Optional[NativeBackend] = None,
    ):
        self.store = store
        self.external = external if external is not None else Pm2Backend(store)
        self.native = native if native is not None else NativeBackend(store)

    def status(self) -> ServerStatus:
        """Report whether the server is running.

        PM2 answers if it knows the app; otherwise the native PID is probed.
        """
        try:
            status = self.external.status()
        except SupervisorError as e:
            logger.debug(f"{self.external.name} unavailable for status: {e}")
            status = None
        if status is not None:
            return status
        return self.native.status()

    def start(self, port: Optional[int] = None) -> ServerStatus:
        """Launch the server in the background unless one is already running.

        Returns as soon as the process is launched; readiness is not awaited.

        Raises:
            ConfigurationError: If mandatory settings are missing
            SupervisorError: If neither backend could launch the server
        """
        require_server_config(self.store)

        current = self.status()
        if current.running:
            where = f"PID {current.pid}" if current.pid else current.managed_by.value
            current.message = f"Server is already running ({where})"
            return current

        try:
            return self.external.start(port)
        except SupervisorError as e:
            logger.info(f"{self.external.name} not usable ({e}), falling back to native background process...")

        return self.native.start(port)

    def stop(self) -> ServerStatus:
        """Stop the server via PM2, or by signalling the native PID."""
        try:
            return self.external.stop()
        except SupervisorError as e:
            logger.debug(f"{self.external.name} could not stop the server: {e}")
        return self.native.stop()
