"""Common types used across the codebase."""

from dataclasses import dataclass
from typing import Optional, Protocol, NewType, TYPE_CHECKING

if TYPE_CHECKING:
    from .metadata import CommitMetadata

# Create NewTypes for commit identifiers
CommitID = NewType('CommitID', str)
CommitHash = NewType('CommitHash', str)

class GitInterface(Protocol):
    """Protocol for running git commands."""
    def run_cmd(self, command: str) -> str: ...
    def must_git(self, command: str) -> str: ...

@dataclass
class StackEntry:
    """One commit of the local stack.

    Rebuilt from live history on every invocation. Position 0 is the bottom
    entry, the one closest to the target branch.
    """
    position: int
    commit_hash: CommitHash
    parent_hash: CommitHash
    tree_hash: str
    message: str
    title: str
    body: str
    content_hash: str
    # From the trailer when tracked, freshly generated otherwise
    commit_id: CommitID
    metadata: Optional['CommitMetadata'] = None

    @property
    def tracked(self) -> bool:
        """True once the commit carries a metadata trailer."""
        return self.metadata is not None

    @property
    def pr_number(self) -> Optional[int]:
        """Number of the PR this commit was last synced to."""
        if self.metadata is None:
            return None
        return self.metadata.pr_number

    def __str__(self) -> str:
        return f"#{self.position} {self.commit_hash[:8]} {self.title}"
