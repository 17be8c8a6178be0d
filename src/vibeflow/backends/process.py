from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path

from vibeflow.models import ExecResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
_READ_CHUNK = 64 * 1024

Executor = Callable[..., Awaitable[ExecResult]]


async def _drain(
    stream: asyncio.StreamReader | None,
    sink: bytearray,
    limit: int,
    on_overflow: Callable[[], None],
) -> bool:
    if stream is None:
        return True
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return True
        room = limit - len(sink)
        if len(chunk) > room:
            sink.extend(chunk[: max(0, room)])
            on_overflow()
            return False
        sink.extend(chunk)


async def _feed(stdin: asyncio.StreamWriter | None, input_text: str | None) -> None:
    if stdin is None:
        return
    try:
        if input_text:
            stdin.write(input_text.encode("utf-8"))
            await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        pass
    finally:
        stdin.close()


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


def _decode(buffer: bytearray) -> str:
    return buffer.decode("utf-8", errors="replace")


async def execute(
    command: str,
    args: list[str] | tuple[str, ...] = (),
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
    timeout: float | None = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> ExecResult:
    """Run an external command and capture its output.

    Never raises for process failures: a non-zero exit is returned as-is, a spawn failure
    becomes exit code 1 with the error text in stderr, and a timeout or signal death is
    reported with exit code ``None``. Stdin is always closed (after writing ``input_text``
    when given) so commands that read stdin cannot hang. ``timeout`` applies only when it
    is a positive number. The child is killed if the caller is cancelled.
    """

    merged_env = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(cwd) if cwd is not None else None,
            env=merged_env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.debug("Failed to spawn %s: %s", command, exc)
        return ExecResult(stdout="", stderr=str(exc), exit_code=1)

    stdout = bytearray()
    stderr = bytearray()

    async def _collect() -> bool:
        _, stdout_ok, stderr_ok = await asyncio.gather(
            _feed(process.stdin, input_text),
            _drain(process.stdout, stdout, max_output_bytes, lambda: _kill(process)),
            _drain(process.stderr, stderr, max_output_bytes, lambda: _kill(process)),
        )
        overflow = not (stdout_ok and stderr_ok)
        await process.wait()
        return overflow

    try:
        if timeout is not None and timeout > 0:
            overflow = await asyncio.wait_for(_collect(), timeout=timeout)
        else:
            overflow = await _collect()
    except asyncio.CancelledError:
        _kill(process)
        await process.wait()
        raise
    except TimeoutError:
        _kill(process)
        await process.wait()
        message = f"Command timed out after {timeout:.1f}s: {command}"
        return ExecResult(
            stdout=_decode(stdout),
            stderr=(_decode(stderr) + "\n" + message).strip(),
            exit_code=None,
        )
    finally:
        _kill(process)

    if overflow:
        message = f"Output exceeded {max_output_bytes} bytes; command terminated: {command}"
        return ExecResult(
            stdout=_decode(stdout),
            stderr=(_decode(stderr) + "\n" + message).strip(),
            exit_code=1,
        )

    return_code = process.returncode
    return ExecResult(
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        exit_code=return_code if return_code is not None and return_code >= 0 else None,
    )


async def run_shell(
    command_text: str,
    *,
    cwd: str | Path | None = None,
    timeout: float | None = None,
    executor: Executor = execute,
) -> ExecResult:
    return await executor("sh", ["-c", command_text], cwd=cwd, timeout=timeout)


def command_exists(executable: str) -> bool:
    return bool(executable.strip()) and shutil.which(executable) is not None
