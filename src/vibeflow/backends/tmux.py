from __future__ import annotations

import asyncio
import logging
import re
import shlex
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from vibeflow.backends.base import (
    AgentBackend,
    AgentExecutionError,
    AgentRequest,
    EventHook,
    OutputFormat,
    SessionLimitError,
    SessionTerminatedError,
    SessionTimeoutError,
    TmuxUnavailableError,
)
from vibeflow.backends.process import Executor, execute
from vibeflow.models import ExecResult

logger = logging.getLogger(__name__)

SCRATCH_PREFIXES = (".vibe_prompt_", ".vibe_done_", ".vibe_output_")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_OUTPUT_SUFFIX: dict[str, str] = {"text": "txt", "json": "json"}

INSTALL_HINT = (
    "tmux is required for interactive sessions. Install it with `brew install tmux` "
    "or `sudo apt-get install tmux`, or run with --direct."
)


@dataclass(slots=True, frozen=True)
class SessionInfo:
    name: str
    created: float
    attached: bool = False


@dataclass(slots=True, frozen=True)
class ScratchFiles:
    prompt: Path
    sentinel: Path
    output: Path

    def remove(self) -> None:
        for path in (self.prompt, self.sentinel, self.output):
            path.unlink(missing_ok=True)


def sanitize_session_part(value: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("-", value.strip())
    return cleaned or "task"


def scratch_files(cwd: str | Path, task_id: str, output_format: OutputFormat = "text") -> ScratchFiles:
    root = Path(cwd)
    key = sanitize_session_part(task_id)
    suffix = _OUTPUT_SUFFIX.get(output_format, "txt")
    return ScratchFiles(
        prompt=root / f".vibe_prompt_{key}.txt",
        sentinel=root / f".vibe_done_{key}",
        output=root / f".vibe_output_{key}.{suffix}",
    )


def completion_instructions(request: AgentRequest, files: ScratchFiles) -> str:
    lines = ["", "", "[SYSTEM INSTRUCTION]"]
    if request.needs_output:
        kind = "valid JSON only" if request.output_format == "json" else "plain text"
        lines.append(f"Write your final result ({kind}) to this file: {files.output}")
    lines.append(
        f"When you are completely finished, create an empty file at: {files.sentinel}"
    )
    lines.append("Do not create that file before all work is done.")
    return "\n".join(lines) + "\n"


class TmuxSessionRunner(AgentBackend):
    """Runs one agent turn inside a detached, attachable tmux session.

    The prompt is pasted into the agent's terminal and completion is detected by polling
    for a sentinel file the agent is told to create. A human may attach to the session at
    any time without disturbing the polling loop.
    """

    def __init__(
        self,
        *,
        binary: str = "claude",
        tmux_binary: str = "tmux",
        session_prefix: str = "vibe-task",
        max_sessions: int = 10,
        poll_interval_seconds: float = 2.0,
        warmup_seconds: float = 3.0,
        stale_session_seconds: float = 3600.0,
        exit_grace_seconds: float = 1.5,
        timeout_seconds: float = 0.0,
        executor: Executor = execute,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        event_hook: EventHook | None = None,
    ) -> None:
        self.binary = binary
        self.tmux_binary = tmux_binary
        self.session_prefix = session_prefix
        self.max_sessions = max_sessions
        self.poll_interval_seconds = poll_interval_seconds
        self.warmup_seconds = warmup_seconds
        self.stale_session_seconds = stale_session_seconds
        self.exit_grace_seconds = exit_grace_seconds
        self.timeout_seconds = timeout_seconds
        self.executor = executor
        self.sleep = sleep
        self.clock = clock
        self.event_hook = event_hook

    def _emit(self, payload: dict) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _phase(self, task_id: str, session: str, phase: str, **extra: object) -> None:
        logger.debug("Session %s for %s: %s", session, task_id, phase)
        self._emit(
            {"event": "session_phase", "task_id": task_id, "session": session, "phase": phase, **extra}
        )

    async def _tmux(self, *args: str) -> ExecResult:
        return await self.executor(self.tmux_binary, list(args))

    def session_name(self, task_id: str) -> str:
        return f"{self.session_prefix}-{sanitize_session_part(task_id)}"

    async def check_available(self) -> None:
        result = await self._tmux("-V")
        if not result.ok:
            raise TmuxUnavailableError(f"{INSTALL_HINT} ({result.describe()})")

    async def list_sessions(self) -> list[SessionInfo]:
        result = await self._tmux(
            "list-sessions", "-F", "#{session_name}\t#{session_created}\t#{session_attached}"
        )
        if not result.ok:
            # tmux exits non-zero when no server is running.
            return []
        sessions: list[SessionInfo] = []
        for line in result.stdout.splitlines():
            parts = line.strip().split("\t")
            if not parts or not parts[0].startswith(f"{self.session_prefix}-"):
                continue
            try:
                created = float(parts[1]) if len(parts) > 1 else 0.0
            except ValueError:
                created = 0.0
            attached = len(parts) > 2 and parts[2].strip() not in ("", "0")
            sessions.append(SessionInfo(name=parts[0], created=created, attached=attached))
        return sessions

    async def session_exists(self, name: str) -> bool:
        result = await self._tmux("has-session", "-t", f"={name}")
        return result.ok

    async def kill_session(self, name: str) -> bool:
        result = await self._tmux("kill-session", "-t", f"={name}")
        return result.ok

    async def reap_stale_sessions(self) -> list[str]:
        if self.stale_session_seconds <= 0:
            return []
        cutoff = self.clock() - self.stale_session_seconds
        reaped: list[str] = []
        for session in await self.list_sessions():
            if session.created and session.created < cutoff:
                if await self.kill_session(session.name):
                    logger.warning("Reaped stale session %s", session.name)
                    reaped.append(session.name)
        return reaped

    async def cleanup_all(self) -> int:
        killed = 0
        for session in await self.list_sessions():
            if await self.kill_session(session.name):
                killed += 1
        return killed

    async def _start_session(self, name: str, cwd: str) -> None:
        await self.kill_session(name)
        agent = f"{shlex.quote(self.binary)} --dangerously-skip-permissions"
        inner = f"cd {shlex.quote(cwd)} && {agent}; read"
        result = await self._tmux("new-session", "-d", "-s", name, "-c", cwd, inner)
        if not result.ok:
            raise AgentExecutionError(
                f"Failed to create tmux session {name}: {result.describe()}",
                exit_code=result.exit_code,
            )

    async def _inject_prompt(self, name: str, files: ScratchFiles, prompt: str) -> None:
        # Dismiss the one-time permissions warning, if shown, before pasting.
        await self._tmux("send-keys", "-t", name, "Down", "Enter")
        await self.sleep(min(1.0, self.warmup_seconds))

        files.prompt.write_text(prompt, encoding="utf-8")
        loaded = await self._tmux("load-buffer", "-b", name, str(files.prompt))
        if not loaded.ok:
            raise AgentExecutionError(f"Failed to load prompt into tmux: {loaded.describe()}")
        pasted = await self._tmux("paste-buffer", "-d", "-b", name, "-t", name)
        if not pasted.ok:
            raise AgentExecutionError(f"Failed to paste prompt into {name}: {pasted.describe()}")
        await self.sleep(0.5)
        await self._tmux("send-keys", "-t", name, "Enter")

    async def _wait_for_completion(
        self,
        request: AgentRequest,
        name: str,
        files: ScratchFiles,
        timeout: float,
    ) -> None:
        started = self.clock()
        while True:
            if request.checkpoint is not None:
                await request.checkpoint()
            if files.sentinel.exists():
                return
            if not await self.session_exists(name):
                if files.sentinel.exists():
                    return
                self._phase(request.task_id, name, "SESSION_DIED")
                raise SessionTerminatedError(
                    f"Session {name} ended before {request.task_id} signalled completion"
                )
            if timeout > 0 and self.clock() - started >= timeout:
                self._phase(request.task_id, name, "TIMED_OUT", timeout_seconds=timeout)
                raise SessionTimeoutError(
                    f"Session {name} did not finish {request.task_id} within {timeout:.0f}s"
                )
            await self.sleep(self.poll_interval_seconds)

    async def _shutdown(self, name: str) -> None:
        if await self.session_exists(name):
            await self._tmux("send-keys", "-t", name, "/exit", "Enter")
            await self.sleep(self.exit_grace_seconds)
        await self.kill_session(name)

    async def run(self, request: AgentRequest) -> str | None:
        await self.check_available()
        await self.reap_stale_sessions()
        live = await self.list_sessions()
        name = self.session_name(request.task_id)
        others = [session for session in live if session.name != name]
        if len(others) >= self.max_sessions:
            raise SessionLimitError(
                f"{len(others)} agent sessions are active (limit {self.max_sessions}); try again later"
            )

        files = scratch_files(request.cwd, request.task_id, request.output_format)
        files.remove()
        timeout = request.timeout_seconds or self.timeout_seconds
        try:
            self._phase(request.task_id, name, "CREATING")
            await self._start_session(name, request.cwd)
            self._phase(request.task_id, name, "STARTED")
            await self.sleep(self.warmup_seconds)
            self._phase(request.task_id, name, "WARMUP")
            await self._inject_prompt(
                name, files, request.prompt + completion_instructions(request, files)
            )
            self._phase(request.task_id, name, "PROMPT_INJECTED")
            self._phase(request.task_id, name, "WAITING")
            await self._wait_for_completion(request, name, files, timeout)
            self._phase(request.task_id, name, "COMPLETED")
            await self._shutdown(name)

            if not request.needs_output or not files.output.exists():
                return None
            return files.output.read_text(encoding="utf-8", errors="replace").strip()
        except BaseException:
            await self.kill_session(name)
            raise
        finally:
            files.remove()
