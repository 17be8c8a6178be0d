from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from vibeflow.backends.base import VibeFlowError
from vibeflow.backends.process import Executor, execute
from vibeflow.models import ExecResult

logger = logging.getLogger(__name__)

CONFLICT_MARKER_PATTERN = r"^(<<<<<<< |>>>>>>> )"
SCRATCH_EXCLUDES = (".vibe_prompt_*", ".vibe_done_*", ".vibe_output_*")
_XML_COMMIT = re.compile(r"<!--\s*COMMIT:\s*([0-9a-fA-F]{7,40})\s*-->")


class GitError(VibeFlowError):
    """Raised when a git command fails."""


class GitRepository:
    def __init__(self, root: str | Path, *, executor: Executor = execute) -> None:
        self.root = Path(root).resolve()
        self.executor = executor

    async def _run_git(self, args: list[str], check: bool = True) -> ExecResult:
        result = await self.executor("git", ["--no-pager", *args], cwd=self.root)
        if check and not result.ok:
            raise GitError(f"git {' '.join(args)} failed: {result.describe()}")
        return result

    async def is_repository(self) -> bool:
        result = await self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        return result.ok and result.stdout.strip() == "true"

    async def init(self) -> None:
        await self._run_git(["init"])

    async def current_hash(self, ref: str = "HEAD") -> str | None:
        args = ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"]
        result = await self._run_git(args, check=False)
        value = result.stdout.strip()
        return value if result.ok and value else None

    async def head(self) -> str:
        value = await self.current_hash()
        if value is None:
            raise GitError(f"Repository at {self.root} has no commits")
        return value

    async def current_branch(self) -> str:
        result = await self._run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        return result.stdout.strip() if result.ok else ""

    async def ensure_initial_commit(self) -> str:
        existing = await self.current_hash()
        if existing is not None:
            return existing
        await self._run_git(["commit", "--allow-empty", "-m", "Initial commit"])
        logger.info("Created initial commit in %s", self.root)
        return await self.head()

    async def branch_exists(self, branch: str) -> bool:
        result = await self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return result.ok

    async def ensure_branch(self, branch: str) -> None:
        if await self.current_branch() == branch:
            return
        if await self.branch_exists(branch):
            await self._run_git(["checkout", branch])
        else:
            await self._run_git(["checkout", "-b", branch])
            logger.info("Created branch %s", branch)

    async def exclude_patterns(self, patterns: tuple[str, ...] | list[str]) -> None:
        result = await self._run_git(["rev-parse", "--git-common-dir"])
        common_dir = Path(result.stdout.strip())
        if not common_dir.is_absolute():
            common_dir = self.root / common_dir
        exclude = common_dir / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude.read_text(encoding="utf-8").splitlines() if exclude.exists() else []
        missing = [pattern for pattern in patterns if pattern not in existing]
        if not missing:
            return
        with exclude.open("a", encoding="utf-8") as handle:
            if existing and existing[-1].strip():
                handle.write("\n")
            handle.write("\n".join(missing) + "\n")

    async def merge(self, branch: str, message: str | None = None) -> ExecResult:
        args = ["merge", "--no-edit", branch]
        if message:
            args[1:1] = ["-m", message]
        return await self._run_git(args, check=False)

    async def abort_merge(self) -> None:
        if await self.merge_in_progress():
            await self._run_git(["merge", "--abort"], check=False)

    async def conflicted_files(self) -> list[str]:
        result = await self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def marker_files(self) -> list[str]:
        """Tracked files that still contain conflict markers in the working tree."""

        result = await self._run_git(["grep", "-l", "-E", CONFLICT_MARKER_PATTERN], check=False)
        # git grep exits 1 when nothing matches.
        if result.exit_code not in (0, 1):
            raise GitError(f"git grep failed: {result.describe()}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def merge_in_progress(self) -> bool:
        result = await self._run_git(
            ["rev-parse", "--verify", "--quiet", "MERGE_HEAD"], check=False
        )
        return result.ok and bool(result.stdout.strip())

    async def parents(self, ref: str = "HEAD") -> tuple[str, ...]:
        result = await self._run_git(["show", "-s", "--format=%P", ref], check=False)
        return tuple(result.stdout.split()) if result.ok else ()

    async def diff(self, *args: str) -> str:
        result = await self._run_git(["diff", *args], check=False)
        return result.stdout

    async def show_last_commit(self) -> str:
        result = await self._run_git(["show", "--stat", "--patch", "HEAD"], check=False)
        return result.stdout

    async def last_commit_diff(self) -> str:
        result = await self._run_git(["diff", "HEAD~1", "HEAD"], check=False)
        if result.ok:
            return result.stdout
        # Root commit has no parent.
        return await self.show_last_commit()

    async def last_commit_subject(self) -> str:
        result = await self._run_git(["log", "-1", "--pretty=%s"], check=False)
        return result.stdout.strip() if result.ok else ""

    async def last_commit_summary(self) -> str:
        result = await self._run_git(["log", "-1", "--pretty=%h %s%n%n%b", "--stat"], check=False)
        return result.stdout.strip() if result.ok else ""

    async def log_oneline(self, revision_range: str | None = None, limit: int | None = None) -> str:
        args = ["log", "--oneline"]
        if limit is not None:
            args.append(f"-{limit}")
        if revision_range:
            args.append(revision_range)
        result = await self._run_git(args, check=False)
        return result.stdout.strip()

    async def diff_stat(self, revision_range: str) -> str:
        result = await self._run_git(["diff", "--stat", revision_range], check=False)
        return result.stdout.strip()

    async def reset_hard(self, ref: str = "HEAD") -> None:
        await self._run_git(["reset", "--hard", ref])

    async def clean(self) -> None:
        await self._run_git(["clean", "-fd"])

    async def status_porcelain(self) -> list[str]:
        result = await self._run_git(["status", "--porcelain"], check=False)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def tracked_files(self) -> list[str]:
        result = await self._run_git(["ls-files"], check=False)
        return [line for line in result.stdout.splitlines() if line.strip()]


def index_commit_hash(content: str) -> str | None:
    """Return the commit hash embedded in a project index, JSON or XML form."""

    text = content.strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            metadata = payload.get("metadata")
            if isinstance(metadata, dict) and isinstance(metadata.get("gitHash"), str):
                return metadata["gitHash"]
            if isinstance(payload.get("gitHash"), str):
                return payload["gitHash"]
    match = re.search(r'"gitHash"\s*:\s*"([0-9a-fA-F]{7,40})"', text)
    if match:
        return match.group(1)
    match = _XML_COMMIT.search(text)
    return match.group(1) if match else None


def index_is_fresh(index_path: Path, head: str | None) -> bool:
    if head is None or not index_path.exists():
        return False
    embedded = index_commit_hash(index_path.read_text(encoding="utf-8", errors="replace"))
    if embedded is None:
        return False
    return head.startswith(embedded) or embedded.startswith(head)
