from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vibeflow.backends.base import AgentRequest, VibeFlowError
from vibeflow.backends.tmux import sanitize_session_part
from vibeflow.context import RunContext
from vibeflow.logs import append_log
from vibeflow.plan import extract_json_object
from vibeflow.prompts import mediator_prompt, truncate
from vibeflow.repo.git import GitRepository

logger = logging.getLogger(__name__)


class MediatorClaim(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["RESOLVED", "FAILED"]
    message: str = ""
    commit_hash: str | None = Field(default=None, alias="commitHash")


@dataclass(slots=True, frozen=True)
class RepositoryState:
    """Ground truth about the integration branch after a mediation attempt."""

    pre_merge_head: str
    head: str | None
    unmerged_paths: tuple[str, ...] = ()
    marker_files: tuple[str, ...] = ()
    merge_in_progress: bool = False
    claimed_commit: str | None = None
    head_parents: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class MediationOutcome:
    resolved: bool
    reason: str
    commit: str | None = None


def evaluate_mediation(claim: MediatorClaim | None, state: RepositoryState) -> MediationOutcome:
    """Decide whether a mediation succeeded from repository state alone.

    The agent's claim only selects which commit to check. A ``RESOLVED`` claim is
    rejected whenever the repository disagrees with it.
    """

    if claim is None:
        return MediationOutcome(False, "Mediator produced no usable result")
    if claim.status != "RESOLVED":
        return MediationOutcome(False, f"Mediator reported failure: {claim.message}")
    if state.unmerged_paths:
        return MediationOutcome(
            False, "Unmerged paths remain: " + ", ".join(state.unmerged_paths)
        )
    if state.marker_files:
        return MediationOutcome(
            False, "Conflict markers remain in: " + ", ".join(state.marker_files)
        )
    if state.merge_in_progress:
        return MediationOutcome(False, "The merge was never concluded with a commit")
    if state.head is None or state.head == state.pre_merge_head:
        return MediationOutcome(False, "No new commit was created on the integration branch")
    if not (claim.commit_hash or "").strip():
        return MediationOutcome(False, "Mediator did not report a commit hash")
    if state.claimed_commit is None:
        return MediationOutcome(False, f"Reported commit {claim.commit_hash} does not exist")
    if state.claimed_commit != state.head:
        return MediationOutcome(
            False, f"Reported commit {claim.commit_hash} is not the commit at HEAD"
        )
    if state.pre_merge_head not in state.head_parents:
        return MediationOutcome(
            False, f"Reported commit {claim.commit_hash} does not build on the integration branch"
        )
    return MediationOutcome(True, claim.message or "Conflicts resolved", state.claimed_commit)


def parse_mediator_claim(text: str | None) -> MediatorClaim:
    if not text:
        raise ValueError("Mediator returned no output")
    try:
        return MediatorClaim.model_validate(extract_json_object(text))
    except ValidationError as exc:
        raise ValueError(f"Malformed mediator result: {exc.errors()}") from exc


async def capture_state(
    repo: GitRepository, pre_merge_head: str, claimed_hash: str | None
) -> RepositoryState:
    claimed_commit = None
    if claimed_hash and claimed_hash.strip():
        claimed_commit = await repo.current_hash(claimed_hash.strip())
    head = await repo.current_hash()
    return RepositoryState(
        pre_merge_head=pre_merge_head,
        head=head,
        unmerged_paths=tuple(await repo.conflicted_files()),
        marker_files=tuple(await repo.marker_files()),
        merge_in_progress=await repo.merge_in_progress(),
        claimed_commit=claimed_commit,
        head_parents=await repo.parents() if head is not None else (),
    )


class Mediator:
    """Asks a dedicated agent session to resolve a conflicted merge, then verifies it."""

    def __init__(self, ctx: RunContext) -> None:
        self.ctx = ctx

    async def resolve(self, branch: str, pre_merge_head: str) -> MediationOutcome:
        ctx = self.ctx
        repo = ctx.repo
        merge_log = ctx.phase_logger("merge")
        log_path = ctx.log_dir / f"mediator_{sanitize_session_part(branch)}.log"

        files = await repo.conflicted_files()
        merge_log.warning("Conflict merging %s (%d files); starting mediator", branch, len(files))
        prompt = mediator_prompt(
            branch=branch,
            files=files,
            conflict_diff=truncate(await repo.diff(), ctx.config.max_context_chars),
        )
        request = AgentRequest(
            task_id=f"mediator-{branch}",
            prompt=prompt,
            cwd=str(repo.root),
            needs_output=True,
            output_format="json",
        )

        claim: MediatorClaim | None = None
        try:
            claim = parse_mediator_claim(await ctx.backend.run(request))
        except (VibeFlowError, ValueError) as exc:
            merge_log.error("Mediator run failed for %s: %s", branch, exc)
            append_log(log_path, f"Mediator run failed: {exc}")

        state = await capture_state(repo, pre_merge_head, claim.commit_hash if claim else None)
        outcome = evaluate_mediation(claim, state)
        append_log(
            log_path,
            json.dumps(
                {
                    "branch": branch,
                    "claim": claim.model_dump(by_alias=True) if claim else None,
                    "resolved": outcome.resolved,
                    "reason": outcome.reason,
                    "commit": outcome.commit,
                }
            ),
        )
        if outcome.resolved:
            merge_log.info("Mediator resolved %s (%s)", branch, (outcome.commit or "")[:8])
        else:
            merge_log.error("Mediator verification failed for %s: %s", branch, outcome.reason)
        return outcome
