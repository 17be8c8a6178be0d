from __future__ import annotations

import fnmatch
import json
import logging
from typing import Any

from vibeflow.backends.base import AgentRequest, VibeFlowError
from vibeflow.context import RunContext
from vibeflow.models import SessionState
from vibeflow.plan import extract_json_object
from vibeflow.prompts import librarian_prompt
from vibeflow.repo.git import index_is_fresh

logger = logging.getLogger(__name__)


def ignore_globs(patterns: str) -> list[str]:
    return [item.strip() for item in patterns.split(",") if item.strip()]


def is_ignored(path: str, globs: list[str]) -> bool:
    parts = path.split("/")
    for pattern in globs:
        bare = pattern[3:] if pattern.startswith("**/") else pattern
        if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(path, bare):
            return True
        if any(fnmatch.fnmatch(part, bare) for part in parts):
            return True
    return False


def fallback_index(files: list[str]) -> dict[str, Any]:
    return {
        "name": "Project Index",
        "description": "Auto-generated project context index",
        "components": [],
        "files": files,
        "metadata": {},
    }


class Librarian:
    """Maintains the project index, stamped with the commit it describes."""

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx

    async def _indexable_files(self) -> list[str]:
        globs = ignore_globs(self.ctx.config.workflow.ignore_patterns)
        tracked = await self.ctx.repo.tracked_files()
        files = [path for path in tracked if not is_ignored(path, globs)]
        budget = self.ctx.config.max_context_chars
        kept: list[str] = []
        used = 0
        for path in files:
            used += len(path) + 1
            if used > budget:
                break
            kept.append(path)
        return kept

    async def refresh(self, session: SessionState, *, force: bool = False) -> bool:
        """Regenerate the index unless it already matches HEAD. Returns True if rewritten."""

        ctx = self.ctx
        phase_log = ctx.phase_logger("librarian")
        index_path = ctx.path(ctx.config.paths.index_file)
        head = await ctx.repo.current_hash()
        if not force and session.mode == "MAINTAIN" and index_is_fresh(index_path, head):
            phase_log.info("Index is up to date (%s)", (head or "")[:8])
            return False

        files = await self._indexable_files()
        data: dict[str, Any]
        try:
            output = await ctx.direct.run(
                AgentRequest(
                    task_id="librarian",
                    prompt=librarian_prompt(files=files, domain=session.domain),
                    cwd=str(ctx.root),
                    needs_output=True,
                )
            )
            data = extract_json_object(output or "")
        except (VibeFlowError, ValueError) as exc:
            if index_path.exists():
                phase_log.warning("Index refresh failed (%s); keeping the existing index", exc)
                return False
            phase_log.warning("Agent index unavailable (%s); writing a basic index", exc)
            data = fallback_index(files)

        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        metadata["gitHash"] = head
        data["metadata"] = metadata
        index_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        phase_log.info("Index written to %s (hash %s)", index_path, (head or "")[:8])
        return True
