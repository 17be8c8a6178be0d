from vibeflow.repo.git import GitError, GitRepository, index_commit_hash, index_is_fresh
from vibeflow.repo.worktrees import WorktreeError, WorktreeInfo, WorktreeManager

__all__ = [
    "GitError",
    "GitRepository",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "index_commit_hash",
    "index_is_fresh",
]
