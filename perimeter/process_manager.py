"""Supervision of long-running monitor processes.

Processes are started either detached (they outlive this program and are
found again through a PID side-file) or streaming (attached pipes whose
lines are relayed to registered callbacks as they arrive).
"""

import hashlib
import logging
import os
import re
import shlex
import signal
import subprocess
import tempfile
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import psutil

from .command import CommandRunner
from .models import ManagedProcess

logger = logging.getLogger(__name__)

EVENTS = ("output", "error", "data", "exit")
FILE_PREFIX = "perimeter_"
EXIT_CODE_HISTORY = 100
ERE_SPECIAL_RE = re.compile(r"([.^$*+?()\[\]{}|\\])")

Command = Union[str, List[str]]
Handler = Callable[[Any], None]


def safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]", "_", name)


def ere_escape(text: str) -> str:
    """Escape ``text`` for use as a POSIX extended regex (pgrep patterns)."""
    return ERE_SPECIAL_RE.sub(r"\\\1", text)


class _StreamHandle:
    """Live pipes and relay threads for a process started in streaming mode."""

    def __init__(self, popen: subprocess.Popen):
        self.popen = popen
        self.readers: List[threading.Thread] = []
        self.watcher: Optional[threading.Thread] = None
        self.timer: Optional[threading.Timer] = None


class BackgroundProcessManager:
    """Starts, tracks, signals and relays output of background processes."""

    def __init__(
        self,
        state_dir: Optional[Union[str, Path]] = None,
        settle_delay: float = 0.1,
        stop_grace_period: float = 0.5,
        runner: Optional[CommandRunner] = None,
    ):
        self.state_dir = Path(state_dir) if state_dir else Path(tempfile.gettempdir())
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.settle_delay = settle_delay
        self.stop_grace_period = stop_grace_period
        self.runner = runner or CommandRunner(default_timeout=5)
        self._handlers: Dict[Tuple[str, str], List[Handler]] = {}
        self._handles: Dict[str, _StreamHandle] = {}
        # Exit codes of finished streaming runs, so wait() works after cleanup
        self._exit_codes: "OrderedDict[str, Optional[int]]" = OrderedDict()
        self._dispatch_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Side files
    # ------------------------------------------------------------------

    def pid_file(self, name: str) -> Path:
        return self.state_dir / f"{FILE_PREFIX}{safe_name(name)}.pid"

    def process_file(self, name: str) -> Path:
        return self.state_dir / f"{FILE_PREFIX}{safe_name(name)}.process"

    def log_file(self, name: str) -> Path:
        """Where a detached process started with ``log_output`` writes its output."""
        return self.state_dir / f"{FILE_PREFIX}{safe_name(name)}.log"

    def _write_records(self, process: ManagedProcess) -> None:
        self.pid_file(process.name).write_text(str(process.pid))
        self.process_file(process.name).write_text(process.model_dump_json())

    def _remove_records(self, name: str) -> None:
        for path in (self.pid_file(name), self.process_file(name)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")

    def _read_pid(self, name: str) -> Optional[int]:
        path = self.pid_file(name)
        try:
            return int(path.read_text().strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable PID file {path}: {e}")
            return None

    def _name_for_pid(self, pid: int) -> Optional[str]:
        for path in self.state_dir.glob(f"{FILE_PREFIX}*.process"):
            try:
                process = ManagedProcess.model_validate_json(path.read_text())
            except (OSError, ValueError):
                continue
            if process.pid == pid:
                return process.name
        return None

    def _resolve(self, name_or_pid: Union[str, int]) -> Tuple[Optional[int], Optional[str]]:
        if isinstance(name_or_pid, int) or str(name_or_pid).isdigit():
            pid = int(name_or_pid)
            return pid, self._name_for_pid(pid)
        name = str(name_or_pid)
        return self._read_pid(name), name

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_running(self, pid: Optional[int]) -> bool:
        """Whether ``pid`` is a live process. Zombies count as dead."""
        if not pid or pid <= 0:
            return False
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Owned by another user, but it exists
            return True

    def get_pid(self, name: str) -> Optional[int]:
        """PID for a managed name, dropping the records if the process is gone."""
        pid = self._read_pid(name)
        if pid is None:
            return None
        if not self.is_running(pid):
            logger.debug(f"Removing stale PID file for {name} (pid {pid})")
            self._remove_records(name)
            return None
        return pid

    def get_process(self, name: str) -> Optional[ManagedProcess]:
        if self.get_pid(name) is None:
            return None
        try:
            return ManagedProcess.model_validate_json(self.process_file(name).read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable process record for {name}: {e}")
            return None

    def list_processes(self) -> List[ManagedProcess]:
        processes = []
        for path in sorted(self.state_dir.glob(f"{FILE_PREFIX}*.process")):
            try:
                process = ManagedProcess.model_validate_json(path.read_text())
            except (OSError, ValueError):
                continue
            if self.is_running(process.pid):
                processes.append(process)
            else:
                self._remove_records(process.name)
        return processes

    # ------------------------------------------------------------------
    # Event relay
    # ------------------------------------------------------------------

    def on(self, name: str, event: str, callback: Handler) -> None:
        """Register ``callback`` for ``event`` on the process called ``name``."""
        if event not in EVENTS:
            raise ValueError(f"Unknown process event '{event}', expected one of {EVENTS}")
        with self._dispatch_lock:
            self._handlers.setdefault((name, event), []).append(callback)

    def off(self, name: str, event: Optional[str] = None) -> None:
        with self._dispatch_lock:
            for key in list(self._handlers):
                if key[0] == name and (event is None or key[1] == event):
                    del self._handlers[key]

    def _fire(self, name: str, event: str, payload: Any) -> None:
        with self._dispatch_lock:
            handlers = list(self._handlers.get((name, event), []))
            for handler in handlers:
                try:
                    handler(payload)
                except Exception as e:
                    logger.error(f"Handler for {name}.{event} failed: {e}", exc_info=True)

    def _relay(self, name: str, kind: str, line: str) -> None:
        with self._dispatch_lock:
            self._fire(name, "output" if kind == "out" else "error", line)
            self._fire(name, "data", {"type": kind, "content": line})

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start(
        self,
        command: Command,
        name: Optional[str] = None,
        stream_output: bool = False,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        log_output: bool = False,
    ) -> Optional[int]:
        """Start ``command`` in the background and return its PID.

        Detached processes discard their output unless ``log_output`` is
        set, in which case it is appended to ``log_file(name)``.

        Returns None when the launch fails or, in detached mode, when the
        PID cannot be determined; the process must then be treated as
        unmanaged.
        """
        command_str = command if isinstance(command, str) else shlex.join(command)
        if not name:
            name = f"process-{hashlib.md5(command_str.encode()).hexdigest()}"

        existing = self.get_pid(name)
        if existing:
            logger.info(f"Process {name} already running with pid {existing}")
            return existing

        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)

        if stream_output:
            pid = self._start_streaming(name, command, command_str, merged_env, timeout)
        else:
            log_path = self.log_file(name) if log_output else None
            pid = self._start_detached(name, command_str, merged_env, timeout, log_path)
            if pid is not None:
                self._write_records(ManagedProcess(name=name, pid=pid, command=command_str))

        if pid is not None:
            logger.info(f"Started {name} (pid {pid}): {command_str}")
        return pid

    def _start_streaming(
        self,
        name: str,
        command: Command,
        command_str: str,
        env: Optional[Dict[str, str]],
        timeout: Optional[float],
    ) -> Optional[int]:
        args = ["sh", "-c", command] if isinstance(command, str) else list(command)
        try:
            popen = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=env,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start {name} ({' '.join(args)}): {e}")
            return None

        handle = _StreamHandle(popen)
        for stream, kind in ((popen.stdout, "out"), (popen.stderr, "err")):
            reader = threading.Thread(
                target=self._pump,
                args=(name, stream, kind),
                name=f"{name}-{kind}",
                daemon=True,
            )
            handle.readers.append(reader)

        handle.watcher = threading.Thread(
            target=self._watch_exit,
            args=(name, handle),
            name=f"{name}-exit",
            daemon=True,
        )
        if timeout:
            handle.timer = threading.Timer(timeout, self.stop, args=(name,))
            handle.timer.daemon = True

        with self._dispatch_lock:
            self._handles[name] = handle
            self._exit_codes.pop(name, None)
        # Records must exist before the exit watcher can clean them up
        self._write_records(ManagedProcess(
            name=name,
            pid=popen.pid,
            command=command_str,
            streaming=True,
        ))
        for reader in handle.readers:
            reader.start()
        handle.watcher.start()
        if handle.timer:
            handle.timer.start()
        return popen.pid

    def _pump(self, name: str, stream, kind: str) -> None:
        try:
            for line in iter(stream.readline, ""):
                self._relay(name, kind, line.rstrip("\r\n"))
        except (OSError, ValueError) as e:
            logger.debug(f"Stream {kind} of {name} closed: {e}")
        finally:
            stream.close()

    def _watch_exit(self, name: str, handle: _StreamHandle) -> None:
        for reader in handle.readers:
            reader.join()
        return_code = handle.popen.wait()
        if handle.timer:
            handle.timer.cancel()
        if handle.popen.stdin:
            try:
                handle.popen.stdin.close()
            except OSError:
                pass

        logger.info(f"Process {name} (pid {handle.popen.pid}) exited with code {return_code}")
        self._fire(name, "exit", return_code)

        if self._read_pid(name) == handle.popen.pid:
            self._remove_records(name)

        # A newer run under the same name owns the handle and handlers
        with self._dispatch_lock:
            if self._handles.get(name) is handle:
                self._exit_codes[name] = return_code
                while len(self._exit_codes) > EXIT_CODE_HISTORY:
                    self._exit_codes.popitem(last=False)
                del self._handles[name]
                self.off(name)

    def _start_detached(
        self,
        name: str,
        command: str,
        env: Optional[Dict[str, str]],
        timeout: Optional[float],
        log_path: Optional[Path] = None,
    ) -> Optional[int]:
        redirect = f" >> {shlex.quote(str(log_path))} 2>&1" if log_path else ""
        try:
            wrapper = subprocess.Popen(
                ["nohup", "sh", "-c", f"{command}{redirect} &"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                env=env,
            )
            wrapper.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Launcher for {name} did not return promptly")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start {name} ({command}): {e}")
            return None

        time.sleep(self.settle_delay)

        pid = self._find_pid(command)
        if pid is None:
            logger.warning(f"Started {name} but could not determine its PID: {command}")
            return None

        if timeout:
            self._schedule_kill(pid, timeout)
        return pid

    def _find_pid(self, command: str) -> Optional[int]:
        """Best-effort PID discovery for a detached command."""
        try:
            argv = shlex.split(command)
        except ValueError:
            argv = command.split()
        if not argv:
            return None
        pattern = " ".join(argv)

        result = self.runner.run(["pgrep", "-n", "-f", ere_escape(pattern)])
        if result.ok:
            pids = [int(p) for p in result.stdout.split() if p.isdigit()]
            if pids:
                return pids[-1]

        result = self.runner.run(["pidof", os.path.basename(argv[0])])
        if result.ok:
            pids = [int(p) for p in result.stdout.split() if p.isdigit()]
            if len(pids) == 1:
                return pids[0]

        result = self.runner.run(["ps", "-eo", "pid,args", "--sort=-start_time"])
        if result.ok:
            for line in result.stdout.splitlines()[1:]:
                fields = line.strip().split(None, 1)
                if len(fields) != 2 or not fields[0].isdigit():
                    continue
                if pattern in fields[1] and not fields[1].startswith(("ps ", "sh -c")):
                    return int(fields[0])
        return None

    def stop(self, name_or_pid: Union[str, int], force: bool = False) -> bool:
        """Stop a managed process by name or PID.

        Succeeds immediately when the process is unknown or already dead.
        A graceful stop escalates to SIGKILL if the process outlives the
        grace period. Returns whether the process is gone.
        """
        pid, name = self._resolve(name_or_pid)
        if pid is None or not self.is_running(pid):
            if name:
                self._remove_records(name)
            return True

        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            if name:
                self._remove_records(name)
            return True
        except PermissionError as e:
            logger.error(f"Cannot send {sig.name} to {name or pid} (pid {pid}): {e}")
            return False

        if self._wait_for_exit(pid, name, self.stop_grace_period):
            if name:
                self._remove_records(name)
                self._join_watcher(name)
            logger.info(f"Stopped {name or pid} (pid {pid}) with {sig.name}")
            return True

        if not force:
            logger.warning(f"{name or pid} (pid {pid}) ignored SIGTERM, sending SIGKILL")
            return self.stop(pid if name is None else name, force=True)

        logger.error(f"{name or pid} (pid {pid}) still alive after SIGKILL")
        return False

    def _join_watcher(self, name: str) -> None:
        """Let the exit watcher of a stopped streaming run finish its cleanup."""
        handle = self._handles.get(name)
        if handle and handle.watcher and handle.watcher is not threading.current_thread():
            handle.watcher.join(self.stop_grace_period)

    def _wait_for_exit(self, pid: int, name: Optional[str], timeout: float) -> bool:
        handle = self._handles.get(name) if name else None
        if handle and handle.popen.pid == pid:
            try:
                handle.popen.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                pass
        else:
            try:
                psutil.Process(pid).wait(timeout=timeout)
            except psutil.TimeoutExpired:
                pass
            except psutil.NoSuchProcess:
                return True
        return not self.is_running(pid)

    def schedule_termination(self, name_or_pid: Union[str, int], duration: float) -> bool:
        """Have an independent watcher process kill the target after ``duration`` seconds."""
        pid, name = self._resolve(name_or_pid)
        if pid is None or not self.is_running(pid):
            logger.warning(f"Cannot schedule termination of {name_or_pid}: not running")
            return False
        return self._schedule_kill(pid, duration)

    def _schedule_kill(self, pid: int, duration: float) -> bool:
        watcher = f"sleep {duration:g} && kill {pid} > /dev/null 2>&1"
        try:
            launcher = subprocess.Popen(
                ["nohup", "sh", "-c", f"{watcher} &"],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
            launcher.wait(timeout=5)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to schedule termination of pid {pid}: {e}")
            return False
        logger.info(f"Scheduled termination of pid {pid} in {duration:g}s")
        return True

    def send_input(self, name_or_pid: Union[str, int], text: str) -> bool:
        """Write ``text`` to the process's stdin.

        Uses the live pipe when this manager started the process in
        streaming mode, otherwise tries ``/proc/<pid>/fd/0``.
        """
        pid, name = self._resolve(name_or_pid)
        if pid is None or not self.is_running(pid):
            return False

        handle = self._handles.get(name) if name else None
        if handle and handle.popen.stdin and not handle.popen.stdin.closed:
            try:
                handle.popen.stdin.write(text)
                handle.popen.stdin.flush()
                return True
            except (OSError, ValueError) as e:
                logger.warning(f"Failed writing to stdin of {name}: {e}")
                return False

        try:
            with open(f"/proc/{pid}/fd/0", "w") as stdin:
                stdin.write(text)
            return True
        except OSError as e:
            logger.warning(f"Failed writing to stdin of pid {pid}: {e}")
            return False

    def wait(self, name: str, timeout: Optional[float] = None) -> Optional[int]:
        """Block until a streaming process exits and its output is relayed.

        Returns the exit code, or None if it is still running or unknown.
        The exit codes of recently finished runs stay available after the
        run has been cleaned up.
        """
        with self._dispatch_lock:
            handle = self._handles.get(name)
            if handle is None or handle.watcher is None:
                return self._exit_codes.get(name)
        handle.watcher.join(timeout)
        return handle.popen.returncode if not handle.watcher.is_alive() else None
