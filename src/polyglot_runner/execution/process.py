from __future__ import annotations

import codecs
import logging
import math
import os
import pwd
import queue
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Any, Iterator

from .types import ProcessChunk, ProcessResult, ProcessSpec, StreamName

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except Exception:  # pragma: no cover - platform specific
    _resource = None

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 4096
_POLL_SECONDS = 0.05
_REAPER_JOIN_SECONDS = 2.0


def resolve_identity(user_name: str) -> tuple[int, int] | None:
    """Return `(uid, gid)` to drop to, or None when no drop is possible.

    Dropping only happens when the host process runs as root and the named
    account exists.

    Example:
        ```python
        identity = resolve_identity("nobody")
        ```
    """
    if not user_name or not hasattr(os, "geteuid"):
        return None
    if os.geteuid() != 0:
        return None
    try:
        entry = pwd.getpwnam(user_name)
    except KeyError:
        logger.warning("Unprivileged user %r does not exist; running as root", user_name)
        return None
    return entry.pw_uid, entry.pw_gid


def _identity_kwargs(spec: ProcessSpec) -> dict[str, Any]:
    """Return the Popen keyword arguments that drop privileges.

    Example:
        ```python
        kwargs = _identity_kwargs(spec)  # {} when no user is set
        ```
    """
    if spec.user is None:
        return {}
    kwargs: dict[str, Any] = {"user": spec.user, "extra_groups": []}
    if spec.group is not None:
        kwargs["group"] = spec.group
    return kwargs


def _clamp(limit: int, current_hard: int) -> tuple[int, int]:
    """Return `(soft, hard)` never above the current hard limit.

    Example:
        ```python
        _clamp(256 * 1024 * 1024, _resource.RLIM_INFINITY)
        ```
    """
    if current_hard in (-1, _resource.RLIM_INFINITY):
        target_hard = limit
    else:
        target_hard = min(limit, current_hard)
    return min(limit, target_hard), target_hard


def _apply_limits(pid: int, spec: ProcessSpec) -> list[str]:
    """Set CPU, address-space and file-size limits on a running child.

    Returns the limits that could not be applied.

    Example:
        ```python
        problems = _apply_limits(proc.pid, spec)
        ```
    """
    errors: list[str] = []
    if _resource is None or not hasattr(_resource, "prlimit"):
        errors.append("RLIMIT limits unavailable on this platform")
        return errors

    limits: list[tuple[str, int]] = [
        ("RLIMIT_CPU", int(math.ceil(spec.timeout_seconds)) + 1),
    ]
    if spec.memory_limit_mb:
        limits.append(("RLIMIT_AS", int(spec.memory_limit_mb) * 1024 * 1024))
    if spec.file_size_limit_mb:
        limits.append(("RLIMIT_FSIZE", int(spec.file_size_limit_mb) * 1024 * 1024))

    for name, value in limits:
        which = getattr(_resource, name)
        try:
            _, current_hard = _resource.prlimit(pid, which)
            _resource.prlimit(pid, which, _clamp(value, current_hard))
        except (ValueError, OSError) as exc:
            errors.append(f"{name} not applied: {exc}")
    return errors


def _kill_group(proc: subprocess.Popen[bytes]) -> None:
    """SIGKILL the child's whole process group.

    Example:
        ```python
        _kill_group(proc)
        ```
    """
    # The child leads its own session, so its pid is also the process group id.
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError as exc:
        logger.warning("Could not kill process group %s: %s", proc.pid, exc)


def _pump(pipe: IO[bytes], stream: StreamName, sink: queue.Queue[tuple[StreamName, bytes | None]]) -> None:
    """Copy raw chunks from `pipe` into `sink`, then post an EOF marker.

    Example:
        ```python
        threading.Thread(target=_pump, args=(proc.stdout, StreamName.STDOUT, sink)).start()
        ```
    """
    try:
        while True:
            data = pipe.read1(_CHUNK_SIZE)  # type: ignore[attr-defined]
            if not data:
                break
            sink.put((stream, data))
    except (OSError, ValueError):
        pass
    finally:
        sink.put((stream, None))


def _launch_error(argv: tuple[str, ...], exc: BaseException) -> str:
    """Describe a spawn failure for the client.

    Example:
        ```python
        _launch_error(("/usr/bin/gcc",), FileNotFoundError(2, "No such file or directory"))
        ```
    """
    # Only the binary name leaves this module; host paths stay in the log.
    name = Path(argv[0]).name if argv else "<empty>"
    reason = getattr(exc, "strerror", None) or type(exc).__name__
    return f"could not launch '{name}': {reason}"


class ProcessRunner:
    """Spawn and supervise one child process per call.

    Output is forwarded chunk by chunk in the order it arrives on the child's
    pipes. The whole process group is killed on timeout, on output overflow,
    when the consumer stops iterating, and after every normal exit.

    Example:
        ```python
        result = ProcessRunner().run(spec)
        ```
    """

    def __init__(self, *, poll_seconds: float = _POLL_SECONDS) -> None:
        """Set how often the supervisor checks a silent child.

        Example:
            ```python
            ProcessRunner(poll_seconds=0.01)
            ```
        """
        self._poll_seconds = poll_seconds

    def run(self, spec: ProcessSpec) -> ProcessResult:
        """Run to completion and return the buffered result.

        Example:
            ```python
            result = runner.run(spec)
            print(result.stdout)
            ```
        """
        for item in self.stream(spec):
            if isinstance(item, ProcessResult):
                return item
        raise RuntimeError("process stream ended without a result")

    def stream(self, spec: ProcessSpec) -> Iterator[ProcessChunk | ProcessResult]:
        """Yield output chunks as they arrive, then one final result.

        Example:
            ```python
            for item in runner.stream(spec):
                ...
            ```
        """
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                list(spec.argv),
                cwd=str(spec.cwd),
                env=dict(spec.env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
                close_fds=True,
                **_identity_kwargs(spec),
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            logger.warning("Failed to launch %s in %s: %s", spec.argv[:1], spec.cwd, exc)
            yield ProcessResult(
                argv=spec.argv,
                pid=None,
                returncode=None,
                launch_error=_launch_error(spec.argv, exc),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return

        for problem in _apply_limits(proc.pid, spec):
            logger.debug("pid %s: %s", proc.pid, problem)

        sink: queue.Queue[tuple[StreamName, bytes | None]] = queue.Queue()
        pumps = [
            threading.Thread(target=_pump, args=(proc.stdout, StreamName.STDOUT, sink), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, StreamName.STDERR, sink), daemon=True),
        ]
        for pump in pumps:
            pump.start()

        decoders = {
            name: codecs.getincrementaldecoder("utf-8")(errors="replace")
            for name in StreamName
        }
        collected: dict[StreamName, list[str]] = {name: [] for name in StreamName}
        budget = spec.max_output_bytes
        deadline = started + float(spec.timeout_seconds)
        open_pipes = len(pumps)
        timed_out = False
        output_exceeded = False
        returncode: int | None = None

        try:
            while open_pipes:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    break
                try:
                    stream, data = sink.get(timeout=min(remaining, self._poll_seconds))
                except queue.Empty:
                    if proc.poll() is not None:
                        # Leader is gone; orphaned descendants may still hold the pipes.
                        _kill_group(proc)
                    continue
                if data is None:
                    open_pipes -= 1
                    text = decoders[stream].decode(b"", final=True)
                else:
                    if budget is not None:
                        if len(data) > budget:
                            data = data[:budget]
                            output_exceeded = True
                        budget -= len(data)
                    text = decoders[stream].decode(data, final=output_exceeded)
                if text:
                    collected[stream].append(text)
                    yield ProcessChunk(stream, text)
                if output_exceeded:
                    break

            if not timed_out and not output_exceeded:
                try:
                    returncode = proc.wait(timeout=max(deadline - time.monotonic(), 0))
                except subprocess.TimeoutExpired:
                    timed_out = True
        finally:
            _kill_group(proc)
            proc.wait()
            for pump in pumps:
                pump.join(timeout=_REAPER_JOIN_SECONDS)
            for pipe in (proc.stdout, proc.stderr):
                if pipe is not None:
                    pipe.close()

        if timed_out:
            logger.info("pid %s exceeded %ss and was killed", proc.pid, spec.timeout_seconds)
        yield ProcessResult(
            argv=spec.argv,
            pid=proc.pid,
            returncode=proc.returncode if returncode is None else returncode,
            stdout="".join(collected[StreamName.STDOUT]),
            stderr="".join(collected[StreamName.STDERR]),
            timed_out=timed_out,
            output_exceeded=output_exceeded,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
