"""Error kinds raised by the stack synchronization engine.

Every failure the engine reports is a StackError subclass carrying a kind, so
results can be rendered and tested without string matching. Exceptions from
GitPython, PyGithub and requests are converted into these at the boundary of
the git and github modules.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classified failure kinds."""
    NOT_LINEAR_HISTORY = "NotLinearHistory"
    METADATA_CORRUPT = "MetadataCorrupt"
    REMOTE_MISSING = "RemoteMissing"
    REMOTE_DIVERGED = "RemoteDiverged"
    AUTH_FAILURE = "AuthFailure"
    TRANSIENT_NETWORK = "TransientNetworkError"
    NON_FAST_FORWARD = "NonFastForward"
    MERGE_FAILED = "MergeFailed"
    GIT_FAILURE = "GitFailure"
    REMOTE_FAILURE = "RemoteFailure"
    REPOSITORY_LOCKED = "RepositoryLocked"
    DIRTY_WORKING_TREE = "DirtyWorkingTree"
    ABORTED = "Aborted"


class StackError(Exception):
    """Base class for all classified errors."""
    kind: ErrorKind = ErrorKind.GIT_FAILURE
    retryable: bool = False
    fatal: bool = False

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.message = message
        # Number of attempts made before this error was surfaced
        self.attempts = attempts

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class NotLinearHistory(StackError):
    """The commit range is not a single chain of single-parent commits."""
    kind = ErrorKind.NOT_LINEAR_HISTORY


class MetadataCorrupt(StackError):
    """A commit's metadata trailer is malformed or duplicated."""
    kind = ErrorKind.METADATA_CORRUPT


class RemoteMissing(StackError):
    """A pull request referenced by a commit no longer exists."""
    kind = ErrorKind.REMOTE_MISSING


class RemoteDiverged(StackError):
    """A pull request was merged, closed or re-based outside of the tool."""
    kind = ErrorKind.REMOTE_DIVERGED


class AuthFailure(StackError):
    """The forge rejected our credentials. Never retried."""
    kind = ErrorKind.AUTH_FAILURE
    fatal = True


class TransientNetworkError(StackError):
    """Timeout, connection failure or 5xx. Retried with backoff."""
    kind = ErrorKind.TRANSIENT_NETWORK
    retryable = True


class NonFastForward(StackError):
    """The remote branch moved since we last looked at it."""
    kind = ErrorKind.NON_FAST_FORWARD


class MergeFailed(StackError):
    """The forge refused to merge (conflict, failing checks, stale head)."""
    kind = ErrorKind.MERGE_FAILED


class GitFailure(StackError):
    """A local git command failed."""
    kind = ErrorKind.GIT_FAILURE


class RemoteFailure(StackError):
    """The forge rejected a request for a non-transient reason."""
    kind = ErrorKind.REMOTE_FAILURE


class RepositoryLocked(StackError):
    """Another stacksync process holds the repository lock."""
    kind = ErrorKind.REPOSITORY_LOCKED
    fatal = True


class DirtyWorkingTree(StackError):
    """Tracked files have uncommitted changes."""
    kind = ErrorKind.DIRTY_WORKING_TREE
    fatal = True


class ExecutionAborted(StackError):
    """A fatal error stopped plan execution part way through.

    Carries the results of every operation that was decided before the abort so
    the caller can report exactly what completed.
    """
    kind = ErrorKind.ABORTED
    fatal = True

    def __init__(self, cause: StackError, results: Optional[list] = None):
        super().__init__(f"execution aborted by {cause}")
        self.cause = cause
        self.results = results or []
