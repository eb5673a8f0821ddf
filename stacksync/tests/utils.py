"""Shared builders for stacksync unit tests."""
import logging
from typing import Any, Dict, List, Optional

from stacksync.config import Config
from stacksync.git import branch_name_for
from stacksync.github import RemotePullRequest, format_body
from stacksync.metadata import CommitMetadata, encode
from stacksync.plan import required_base
from stacksync.typing import CommitHash, CommitID, StackEntry

logger = logging.getLogger(__name__)

BASE_HASH = "0" * 40


def make_config(repo: Optional[Dict[str, Any]] = None, tool: Optional[Dict[str, Any]] = None) -> Config:
    """Config for acme/widgets targeting main, overridable per section."""
    repo_config: Dict[str, Any] = {
        'github_remote': 'origin',
        'github_branch': 'main',
        'github_repo_owner': 'acme',
        'github_repo_name': 'widgets',
    }
    repo_config.update(repo or {})
    tool_config: Dict[str, Any] = {'retry_base_delay': 0}
    tool_config.update(tool or {})
    return Config({'repo': repo_config, 'user': {}, 'tool': {'stacksync': tool_config}})


def commit_hash(position: int, generation: int = 0) -> CommitHash:
    """Deterministic fake sha for the commit at position."""
    return CommitHash(f"{generation:02x}{position + 1:038x}")


def make_entry(position: int, pr_number: Optional[int] = None, modified: bool = False,
               title: Optional[str] = None, body: str = "", generation: int = 0) -> StackEntry:
    """A stack entry, tracked when pr_number is given.

    A tracked entry is in sync with its trailer unless modified is set.
    """
    commit_id = CommitID(f"{position + 1:08x}")
    content = f"{position + 1:040x}"
    metadata = None
    if pr_number is not None:
        sync_hash = "f" * 40 if modified else content
        metadata = CommitMetadata(commit_id, pr_number, sync_hash)
    title = title or f"Commit {position}"
    return StackEntry(
        position=position,
        commit_hash=commit_hash(position, generation),
        parent_hash=commit_hash(position - 1, generation) if position > 0 else CommitHash(BASE_HASH),
        tree_hash=f"{position + 1:040x}",
        message=f"{title}\n\n{body}\n" if body else f"{title}\n",
        title=title,
        body=body,
        content_hash=content,
        commit_id=commit_id,
        metadata=metadata,
    )


def make_stack(numbers: List[Optional[int]], **kwargs: Any) -> List[StackEntry]:
    """One entry per PR number, bottom first; None for an untracked entry."""
    return [make_entry(pos, number, **kwargs) for pos, number in enumerate(numbers)]


def synced_remote(config: Config, entries: List[StackEntry]) -> Dict[int, RemotePullRequest]:
    """Remote PRs exactly matching a fully tracked stack."""
    numbers = [e.pr_number for e in entries if e.pr_number is not None]
    remote: Dict[int, RemotePullRequest] = {}
    for entry in entries:
        if entry.pr_number is None:
            continue
        remote[entry.pr_number] = RemotePullRequest(
            number=entry.pr_number,
            state="OPEN",
            base_ref=required_base(config, entries, entry.position),
            head_ref=branch_name_for(config, entry.commit_id),
            head_oid=entry.commit_hash,
            head_message=encode(entry.message, entry.metadata) if entry.metadata else entry.message,
            title=entry.title,
            body=format_body(config, entry, numbers, entry.pr_number),
            mergeable="MERGEABLE",
            review_decision="APPROVED",
        )
    return remote
