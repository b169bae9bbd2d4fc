"""Async subprocess utilities.

Provides non-blocking shell command execution for the command task path. Unlike
a plain ``communicate()`` call, output is consumed line by line so it can be
forwarded to the logger while the process is still running, and the caller is
told the pid as soon as the process exists so it can be tracked for cleanup.

Key Features:
    - Non-blocking execution compatible with asyncio
    - Streaming stdout/stderr callbacks plus full capture
    - Process runs in its own session so its whole process group can be
      terminated at once
    - Optional timeout with automatic process cleanup

Example:
    >>> from devflow.utils.async_subprocess import run_shell_command
    >>> stdout, stderr, code = await run_shell_command("pytest -q", cwd="/repo")
    >>> if code == 0:
    ...     print(stdout)

Thread Safety:
    Safe to call concurrently from multiple async tasks. Each call creates an
    independent subprocess with no shared state.
"""

import asyncio
import subprocess
from collections.abc import Callable, Mapping
from pathlib import Path

OutputCallback = Callable[[str, bool], None]

READ_CHUNK = 65536


def _emit(raw: bytes, is_stderr: bool, sink: list[str], on_output: OutputCallback | None) -> None:
    line = raw.decode("utf-8", errors="replace")
    sink.append(line)
    if on_output is not None:
        on_output(line.rstrip("\n"), is_stderr)


async def _pump(
    stream: asyncio.StreamReader | None,
    is_stderr: bool,
    sink: list[str],
    on_output: OutputCallback | None,
) -> None:
    # Read fixed-size chunks; readline() fails on lines longer than the reader limit
    if stream is None:
        return
    pending = b""
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw in complete:
            _emit(raw + b"\n", is_stderr, sink, on_output)
    if pending:
        _emit(pending, is_stderr, sink, on_output)


async def run_shell_command(
    command: str,
    *,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = False,
    timeout: float | None = None,
    on_start: Callable[[int], None] | None = None,
    on_output: OutputCallback | None = None,
) -> tuple[str, str, int]:
    """Run a shell command asynchronously, streaming its output.

    Args:
        command: Complete shell command string, passed to ``/bin/sh -c``.
        cwd: Working directory for the command. None uses the current one.
        env: Complete environment for the child. None inherits the parent's.
        check: If True, raise CalledProcessError on a non-zero exit code.
        timeout: Maximum seconds to wait. The process is killed if exceeded.
            None means wait indefinitely.
        on_start: Called with the pid right after the process is spawned.
        on_output: Called with ``(line, is_stderr)`` for every output line.

    Returns:
        Tuple of (stdout, stderr, return_code) with output decoded as UTF-8.

    Raises:
        subprocess.CalledProcessError: If check=True and the exit code is non-zero.
        TimeoutError: If the timeout is exceeded.
        OSError: If the shell itself cannot be spawned.

    Warning:
        The command is subject to shell parsing. Run untrusted input through
        the sanitizer before calling this function.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    if on_start is not None:
        on_start(process.pid)

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []

    try:
        await asyncio.wait_for(
            asyncio.gather(
                _pump(process.stdout, False, stdout_lines, on_output),
                _pump(process.stderr, True, stderr_lines, on_output),
                process.wait(),
            ),
            timeout=timeout,
        )
    except Exception:
        # Timeout or a failed read; do not leave the child running
        if process.returncode is None:
            process.kill()
        await process.wait()
        raise

    stdout = "".join(stdout_lines)
    stderr = "".join(stderr_lines)

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            command,
            stdout,
            stderr,
        )

    return stdout, stderr, process.returncode or 0
