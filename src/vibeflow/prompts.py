from __future__ import annotations

import shlex

from vibeflow.models import SessionState, Task

TRUNCATION_NOTE = "\n... [truncated]\n"


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_NOTE


def commit_command(message: str) -> str:
    return f"git add -A && git commit -m {shlex.quote(message)}"


def task_prompt(task: Task, *, domain: str, index_text: str) -> str:
    return f"""
[INDEX]
{index_text or "No index available"}

[TASK] {task.name} ({task.id})
{task.description}

[WORKTREE] {task.worktree_path}
[DOMAIN] {domain}

[INSTRUCTIONS]
1. You are working in an isolated git worktree at {task.worktree_path}. Stay inside it.
2. Make sure .gitignore covers dependency and build output (node_modules/, venv/, __pycache__/, dist/, build/, .env).
3. Implement the task with your file editing tools. Reuse existing dependencies where possible.
4. When done, stage and commit everything:
   {commit_command(f"{task.commit_marker} - Initial implementation")}
""".lstrip()


def heal_prompt(task: Task, *, previous_commit: str, feedback: str) -> str:
    return f"""
[TASK] {task.name} ({task.id})
{task.description}

[PREVIOUS COMMIT]
{previous_commit or "No commit found"}

[REVIEW FEEDBACK]
{feedback or "The previous attempt failed without feedback."}

[INSTRUCTION]
Fix the issues identified above, working forward from the previous commit.
Then stage and commit everything:
   {commit_command(f"{task.commit_marker} - Fix attempt {task.attempts}")}
""".lstrip()


def review_prompt(
    task: Task,
    *,
    domain: str,
    diff_stat: str,
    diff: str,
    default_test_command: str,
) -> str:
    return f"""
[TASK REVIEW]
Task: {task.name} (ID: {task.id})
Description: {task.description}
Domain: {domain}
Worktree: {task.worktree_path}

Changes:
{diff_stat or "No changes"}

Diff:
{diff or "No diff available"}

[INSTRUCTIONS]
1. Review the change for correctness, security and style against the task description.
2. Determine the test command for this project (for example: {default_test_command}) and run it.
   If there are no tests for the change, report FAIL and say which tests are missing.
3. Do not modify or commit any files. Report what must be fixed instead.

[OUTPUT]
Write a JSON object with exactly this shape:
{{"status": "PASS" or "FAIL", "message": "summary of findings and test results", "testCommand": "the exact command you ran"}}
""".lstrip()


def mediator_prompt(*, branch: str, files: list[str], conflict_diff: str) -> str:
    listing = "\n".join(f"- {path}" for path in files) or "- (none reported)"
    return f"""
[ROLE] Merge mediator

[CONFLICT]
Merging branch: {branch}
Conflicted files:
{listing}

[DIFF WITH CONFLICT MARKERS]
{conflict_diff}

[TASK]
1. Resolve every conflict. Prefer the simplest code that keeps the intent of both sides.
2. Make sure no conflict markers (<<<<<<<, =======, >>>>>>>) remain in any file.
3. Stage the resolved files with git add.
4. Conclude the merge: git commit --no-edit
5. Confirm with: git log -1 --format=%H

[OUTPUT]
Write a JSON object with exactly this shape:
{{"status": "RESOLVED" or "FAILED", "message": "what you did", "commitHash": "hash of the merge commit"}}
""".lstrip()


def architect_prompt(*, domain: str, index_text: str, requirements: str, max_parallel: int) -> str:
    return f"""
Domain: {domain}

Project Index:
{index_text or "No index available"}

Requirements:
{requirements}

[CONSTRAINTS]
- At most {max_parallel} agents run in parallel.
- Each task must touch DIFFERENT files from the others.
- Each task needs an id, a short name and a detailed desc.

[OUTPUT FORMAT]
Return ONLY a JSON array in a markdown code block:
```json
[
  {{"id": "task_1", "name": "Short name", "desc": "Detailed description"}}
]
```
""".lstrip()


def architect_retry_prompt(*, error: str, original: str) -> str:
    return f"""
[SYSTEM]
The previous plan output was invalid.
Error: {error}

[ORIGINAL REQUEST]
{original}

[INSTRUCTION]
Output ONLY the corrected JSON array. Use the fields "id", "name" and "desc" exactly.
""".lstrip()


def librarian_prompt(*, files: list[str], domain: str) -> str:
    listing = "\n".join(files) or "(no tracked files)"
    return f"""
[ROLE] Repository librarian

Build a concise index of this repository (domain: {domain}).

Tracked files:
{listing}

[OUTPUT]
Print ONLY a JSON object of this shape:
{{"name": "...", "description": "...", "components": [{{"name": "...", "path": "...", "purpose": "..."}}], "files": ["..."]}}
""".lstrip()


def integration_heal_prompt(*, test_command: str, error_log: str) -> str:
    return f"""
[ROLE] System debugger

[CONTEXT]
Several feature branches were just merged. Their own reviews passed, but the project-wide
test command fails: {test_command}

[ERROR LOG]
{error_log}

[INSTRUCTION]
1. Find the root cause. It is most likely an interface mismatch between merged changes.
2. Fix the code in the current directory.
3. Commit: git add -A && git commit -m 'System Healer: Fixed integration issue'
""".lstrip()


def _task_lines(session: SessionState) -> str:
    return "\n".join(f"- {task.name} ({task.id}): {task.status}" for task in session.tasks)


def report_prompt(session: SessionState, *, git_log: str) -> str:
    return f"""
[ROLE] Session reporter

Summarize this development session in a short Markdown narrative.

Mode: {session.mode}
Domain: {session.domain}

Tasks:
{_task_lines(session) or "- none"}

Commits:
{git_log or "none"}

Cover the key changes, anything that failed, and follow-up recommendations.
""".lstrip()


def cto_prompt(*, commit_log: str, diff_stat: str) -> str:
    return f"""
[CTO ARCHITECTURAL REVIEW]

Review all changes made in this session.

Session commits:
{commit_log or "none"}

Change summary:
{diff_stat or "none"}

Look for architectural inconsistencies, redundant code written by parallel agents,
security risks, API design problems and style drift.

Write a Markdown report with an executive summary, a quality score from 1 to 10,
issues found (CRITICAL/HIGH/MEDIUM/LOW) and recommended follow-up work.
""".lstrip()


def readme_prompt(session: SessionState) -> str:
    return f"""
[ROLE] Technical writer

Update README.md (create it if missing) to reflect this session's changes.

Domain: {session.domain}
Mode: {session.mode}

Tasks:
{_task_lines(session) or "- none"}

Keep content that is still accurate. Edit README.md directly and commit it:
git add README.md && git commit -m 'docs: update README'
""".lstrip()
