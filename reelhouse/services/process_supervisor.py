from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Mapping, Sequence

from ..errors import DuplicateTask, ProcessExitError, ProcessLaunchError, ProcessTimeout
from ..metrics import SUBPROCESS_COUNT

logger = logging.getLogger("reelhouse.supervisor")

MAX_LINE_BYTES = 8192
READER_JOIN_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class ExitResult:
    exit_code: int | None
    timed_out: bool = False
    cancelled: bool = False
    output_tail: tuple[str, ...] = ()
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def outcome(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return "timeout"
        if self.exit_code == 0:
            return "ok"
        return "exit_error"

    def describe(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return f"timed out after {self.duration:.1f}s"
        tail = " | ".join(self.output_tail[-5:])
        return f"exit code {self.exit_code}" + (f": {tail}" if tail else "")

    def raise_for_status(self, tool: str = "process") -> ExitResult:
        if self.timed_out:
            raise ProcessTimeout(f"{tool} {self.describe()}")
        if not self.ok:
            raise ProcessExitError(f"{tool} {self.describe()}", exit_code=self.exit_code)
        return self


class _ActiveProcess:
    __slots__ = ("proc", "cancelled")

    def __init__(self):
        self.proc: subprocess.Popen | None = None
        self.cancelled = False


class ProcessSupervisor:
    """
    Runs external tools to completion or timeout and keeps a registry of the
    ones in flight, keyed by a caller-supplied task key, so they can be
    killed from another thread.

    Output (stdout and stderr merged) is drained by a reader thread: every
    ``log_every``-th line is logged at DEBUG and only the last
    ``tail_lines`` lines are kept. A timed-out or cancelled process is
    killed together with its process group. The pipe, the reader thread and
    the registry entry are released on every exit path.
    """

    def __init__(self, *, log_every: int = 50, tail_lines: int = 20):
        self.log_every = max(1, log_every)
        self.tail_lines = max(1, tail_lines)
        self._lock = threading.Lock()
        self._active: dict[str, _ActiveProcess] = {}

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        task_key: str | None = None,
        cwd: str | None = None,
    ) -> ExitResult:
        tool = os.path.basename(command) or command
        key = task_key or f"{tool}-{uuid.uuid4().hex[:12]}"
        entry = _ActiveProcess()
        with self._lock:
            if key in self._active:
                raise DuplicateTask(f"A process is already running under task key {key}")
            self._active[key] = entry

        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                [command, *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=merged_env,
                cwd=cwd,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            with self._lock:
                self._active.pop(key, None)
            self._record(tool, "launch_error")
            logger.error("Failed to launch %s: %s", tool, exc, extra={"task_key": key})
            raise ProcessLaunchError(f"Failed to launch {tool}: {exc}") from exc

        with self._lock:
            entry.proc = proc
            cancelled_early = entry.cancelled
        if cancelled_early:
            _kill_process_group(proc)

        tail: deque[str] = deque(maxlen=self.tail_lines)
        reader = threading.Thread(
            target=self._pump_output,
            args=(proc, tail, key, tool),
            name=f"supervisor-{key}",
            daemon=True,
        )
        reader.start()

        timed_out = False
        try:
            try:
                exit_code = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.warning(
                    "%s exceeded its %ss timeout, killing it", tool, timeout, extra={"task_key": key}
                )
                _kill_process_group(proc)
                exit_code = proc.wait()
        except BaseException:
            _kill_process_group(proc)
            proc.wait()
            raise
        finally:
            with self._lock:
                self._active.pop(key, None)
            reader.join(timeout=READER_JOIN_TIMEOUT_SECONDS)
            if reader.is_alive():
                # something outside the process group still holds the pipe;
                # the reader closes it once that writer goes away
                logger.warning("Output reader for %s still running, leaving it", tool, extra={"task_key": key})
            elif proc.stdout is not None:
                proc.stdout.close()

        result = ExitResult(
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=entry.cancelled and not timed_out,
            output_tail=tuple(tail),
            duration=time.monotonic() - started,
        )
        self._record(tool, result.outcome)
        if result.ok:
            logger.debug("%s finished in %.1fs", tool, result.duration, extra={"task_key": key})
        elif result.cancelled:
            logger.info("%s was cancelled", tool, extra={"task_key": key})
        else:
            logger.warning(
                "%s failed (%s); last output: %s",
                tool,
                result.outcome,
                " | ".join(result.output_tail) or "<none>",
                extra={"task_key": key},
            )
        return result

    def _pump_output(self, proc: subprocess.Popen, tail: deque[str], key: str, tool: str) -> None:
        stream = proc.stdout
        if stream is None:
            return
        lineno = 0
        try:
            for raw in iter(lambda: stream.readline(MAX_LINE_BYTES), b""):
                lineno += 1
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                tail.append(line)
                if lineno % self.log_every == 0:
                    logger.debug("%s[%s]: %s", tool, lineno, line, extra={"task_key": key})
        except (OSError, ValueError):
            # pipe closed underneath us after a kill
            return
        finally:
            stream.close()

    def cancel(self, task_key: str) -> bool:
        with self._lock:
            entry = self._active.get(task_key)
            if entry is None:
                return False
            entry.cancelled = True
            proc = entry.proc
        if proc is not None:
            _kill_process_group(proc)
        logger.info("Cancellation requested", extra={"task_key": task_key})
        return True

    def cancel_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._active if key.startswith(prefix)]
        return sum(1 for key in keys if self.cancel(key))

    def is_running(self, task_key: str) -> bool:
        with self._lock:
            return task_key in self._active

    def active_tasks(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    @staticmethod
    def _record(tool: str, outcome: str) -> None:
        if SUBPROCESS_COUNT is not None:
            SUBPROCESS_COUNT.labels(tool, outcome).inc()


def _kill_process_group(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
        return
    except (AttributeError, ProcessLookupError, PermissionError):
        pass
    try:
        proc.kill()
    except ProcessLookupError:
        pass
