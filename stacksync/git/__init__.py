"""Git interfaces and implementation."""

import os
import re
import fcntl
import shlex
import logging
import contextlib
from typing import Any, Dict, Iterator, List, Optional
import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from ..config.models import StackConfig
from ..errors import (DirtyWorkingTree, GitFailure, MetadataCorrupt, NonFastForward, NotLinearHistory,
                      RepositoryLocked, StackError, TransientNetworkError)
from ..changes import content_hash
from ..metadata import decode, new_commit_id, strip_metadata
from ..typing import CommitHash, CommitID, StackEntry
from ..util import short

# Get module logger
logger = logging.getLogger(__name__)

LOCK_FILE_NAME = 'stacksync.lock'

# Push rejections caused by the remote branch having moved
NON_FAST_FORWARD_MARKERS = ('stale info', 'non-fast-forward', 'fetch first', '[rejected]')
# Failures worth retrying
TRANSIENT_MARKERS = ('could not resolve host', 'connection timed out', 'connection reset',
                     'operation timed out', 'the remote end hung up unexpectedly',
                     'early eof', 'http 5', 'returned error: 5')

def classify_git_error(command: str, e: GitCommandError) -> StackError:
    """Convert a GitCommandError into a classified StackError."""
    stderr = str(e.stderr or '').strip()
    lowered = stderr.lower()
    message = f"git {command} failed: {stderr or e}"
    if command.startswith('push') and any(m in lowered for m in NON_FAST_FORWARD_MARKERS):
        return NonFastForward(message)
    if any(m in lowered for m in TRANSIENT_MARKERS):
        return TransientNetworkError(message)
    return GitFailure(message)

class RealGit:
    """Real Git implementation backed by GitPython."""
    def __init__(self, config: StackConfig, path: Optional[str] = None):
        """Initialize with config and the repository containing path (default: cwd)."""
        self.config: StackConfig = config
        try:
            self.repo = git.Repo(path or os.getcwd(), search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError):
            raise GitFailure(f"Not in a git repository: {path or os.getcwd()}")

    @property
    def working_dir(self) -> str:
        return str(self.repo.working_tree_dir)

    @property
    def git_dir(self) -> str:
        return str(self.repo.git_dir)

    def git(self, *args: str, env: Optional[Dict[str, str]] = None) -> str:
        """Run a git command given as separate arguments."""
        # Multi-line arguments (commit messages) are logged by their first line
        command = ' '.join(shlex.quote(a.split('\n')[0] + ('...' if '\n' in a else '')) for a in args)
        if self.config.tool.pretend and args and args[0] == 'push':
            # Pretend mode - just log
            logger.info(f"> git {command} (pretend)")
            return ""

        log = logger.info if self.config.user.log_git_commands else logger.debug
        log(f"> git {command}")
        git_command = args[0]
        kwargs: Dict[str, Any] = {}
        if env is not None:
            kwargs['env'] = env
        try:
            if git_command == 'push':
                # Own session, so Ctrl-C reaches us and not a push half way through
                result = self.repo.git.execute([self.repo.git.GIT_PYTHON_GIT_EXECUTABLE, *args],
                                               start_new_session=True, **kwargs)
            else:
                method = getattr(self.repo.git, git_command.replace('-', '_'))
                result = method(*args[1:], **kwargs)
        except GitCommandError as e:
            raise classify_git_error(command, e) from e
        return result if isinstance(result, str) else str(result)

    def run_cmd(self, command: str) -> str:
        """Run git command given as a shell-style string."""
        return self.git(*shlex.split(command.strip()))

    def must_git(self, command: str) -> str:
        """Run git command, failing on error."""
        return self.run_cmd(command)

    def rev_parse(self, ref: str) -> CommitHash:
        return CommitHash(self.git('rev-parse', '--verify', f"{ref}^{{commit}}").strip())

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return self.repo.is_ancestor(ancestor, descendant)

def branch_name_for(config: StackConfig, commit_id: CommitID) -> str:
    """Get the head branch name for a commit."""
    return f"{config.managed_branch_prefix()}{commit_id}"

def commit_id_from_branch(config: StackConfig, branch: str) -> Optional[CommitID]:
    """Inverse of branch_name_for, None for branches not managed by us."""
    prefix = config.managed_branch_prefix()
    if not branch.startswith(prefix):
        return None
    rest = branch[len(prefix):]
    if not re.match(r'^[0-9a-f]{8}$', rest):
        return None
    return CommitID(rest)

def split_message(message: str) -> Dict[str, str]:
    """Split a commit message into title and body, without the metadata trailer."""
    stripped = strip_metadata(message)
    title, _, rest = stripped.partition('\n')
    return {'title': title.strip(), 'body': rest.strip('\n').strip()}

def walk_stack(git_cmd: RealGit, base: str, tip: str = "HEAD") -> List[StackEntry]:
    """Walk the commits in base..tip, oldest first.

    Raises:
        NotLinearHistory: tip does not descend from base, or a commit in the
            range has zero or several parents
        MetadataCorrupt: a commit carries a malformed trailer
    """
    base_hash = git_cmd.rev_parse(base)
    tip_hash = git_cmd.rev_parse(tip)
    if not git_cmd.is_ancestor(base_hash, tip_hash):
        raise NotLinearHistory(f"{tip} ({short(tip_hash)}) is not a descendant of {base} ({short(base_hash)})")

    commits = list(git_cmd.repo.iter_commits(f"{base_hash}..{tip_hash}"))
    commits.reverse()
    logger.debug(f"walk_stack: {len(commits)} commits in {base}..{tip}")

    entries: List[StackEntry] = []
    expected_parent = base_hash
    for position, commit in enumerate(commits):
        if len(commit.parents) != 1:
            raise NotLinearHistory(f"commit {short(commit.hexsha)} has {len(commit.parents)} parents")
        parent_hash = CommitHash(commit.parents[0].hexsha)
        if parent_hash != expected_parent:
            raise NotLinearHistory(f"commit {short(commit.hexsha)} is not on a single chain from {base}")
        message = commit.message if isinstance(commit.message, str) else commit.message.decode('utf-8', 'replace')
        try:
            metadata = decode(message)
        except MetadataCorrupt as e:
            raise MetadataCorrupt(f"commit {short(commit.hexsha)}: {e.message}")
        diff = git_cmd.git('diff-tree', '-p', '--no-color', '--binary', parent_hash, commit.hexsha)
        parts = split_message(message)
        entries.append(StackEntry(
            position=position,
            commit_hash=CommitHash(commit.hexsha),
            parent_hash=parent_hash,
            tree_hash=commit.tree.hexsha,
            message=message,
            title=parts['title'],
            body=parts['body'],
            content_hash=content_hash(diff, message),
            commit_id=metadata.commit_id if metadata else new_commit_id(),
            metadata=metadata,
        ))
        expected_parent = CommitHash(commit.hexsha)

    for entry in entries:
        logger.debug(f"  {entry} id={entry.commit_id} pr={entry.pr_number}")
    return entries

def _commit_env(git_cmd: RealGit, commit_hash: str) -> Dict[str, str]:
    """Author and committer identity of a commit, for recreating it."""
    fields = git_cmd.git('show', '-s', '--date=raw',
                         '--format=%an%x00%ae%x00%ad%x00%cn%x00%ce%x00%cd', commit_hash).split('\0')
    env = dict(os.environ)
    env.update({
        'GIT_AUTHOR_NAME': fields[0],
        'GIT_AUTHOR_EMAIL': fields[1],
        'GIT_AUTHOR_DATE': fields[2],
        'GIT_COMMITTER_NAME': fields[3],
        'GIT_COMMITTER_EMAIL': fields[4],
        'GIT_COMMITTER_DATE': fields[5],
    })
    return env

def rewrite_stack_messages(git_cmd: RealGit, entries: List[StackEntry],
                           messages: Dict[int, str]) -> Dict[int, CommitHash]:
    """Replace the messages of some entries, recreating everything above them.

    Trees, authors and dates are kept. HEAD must still point at the top entry;
    the branch is moved with a compare-and-swap update-ref so a concurrent
    change to HEAD fails instead of being overwritten.

    Args:
        entries: The whole stack, oldest first
        messages: New message by entry position

    Returns:
        New commit hash by position, for every recreated entry
    """
    if not messages or not entries:
        return {}
    old_tip = entries[-1].commit_hash
    head = git_cmd.rev_parse('HEAD')
    if head != old_tip:
        raise GitFailure(f"HEAD moved from {short(old_tip)} to {short(head)} during sync")

    lowest = min(messages)
    new_hashes: Dict[int, CommitHash] = {}
    parent = entries[lowest].parent_hash
    for entry in entries[lowest:]:
        message = messages.get(entry.position, entry.message)
        new_hash = git_cmd.git('commit-tree', entry.tree_hash, '-p', parent,
                               '-m', message.rstrip('\n'),
                               env=_commit_env(git_cmd, entry.commit_hash)).strip()
        new_hashes[entry.position] = CommitHash(new_hash)
        parent = CommitHash(new_hash)

    git_cmd.git('update-ref', '-m', 'stacksync: write metadata', 'HEAD', parent, old_tip)
    return new_hashes

def push_branch(git_cmd: RealGit, remote: str, commit_hash: str, branch: str,
                expected_oid: Optional[str] = None, force: bool = False) -> None:
    """Push a commit to a remote branch.

    With expected_oid the push only succeeds if the remote branch is still at
    that oid (empty string: the branch must not exist). A rejected lease raises
    NonFastForward.
    """
    refspec = f"{commit_hash}:refs/heads/{branch}"
    if force:
        git_cmd.git('push', '--force', remote, refspec)
    elif expected_oid is not None:
        git_cmd.git('push', f"--force-with-lease=refs/heads/{branch}:{expected_oid}", remote, refspec)
    else:
        git_cmd.git('push', remote, refspec)

def check_no_uncommitted_changes(git_cmd: RealGit) -> None:
    """Refuse to rewrite the stack over staged or unstaged changes.

    Untracked files do not count.

    Raises:
        DirtyWorkingTree: tracked files have uncommitted changes
    """
    status = git_cmd.git('status', '--porcelain', '--untracked-files=no')
    if status.strip():
        logger.debug(f"Uncommitted changes:\n{status}")
        raise DirtyWorkingTree("There are uncommitted changes. Stash or amend them first")

def fetch(git_cmd: RealGit, remote: str) -> None:
    git_cmd.git('fetch', '--prune', remote)

def rebase_onto(git_cmd: RealGit, upstream: str, old_base: str) -> None:
    """Rebase the current branch, dropping commits up to old_base.

    On conflict the rebase is aborted and the branch left as it was.
    """
    try:
        git_cmd.git('rebase', '--autostash', '--onto', upstream, old_base)
    except GitFailure:
        try:
            git_cmd.git('rebase', '--abort')
        except GitFailure as e:
            logger.error(f"Failed to abort rebase: {e}")
        raise

@contextlib.contextmanager
def repo_lock(git_dir: str) -> Iterator[None]:
    """Hold an exclusive, non-blocking lock on the repository.

    Raises:
        RepositoryLocked: another process holds the lock
    """
    path = os.path.join(git_dir, LOCK_FILE_NAME)
    with open(path, 'a+') as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise RepositoryLocked(f"another stacksync process holds {path}")
        logger.debug(f"Acquired {path}")
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            logger.debug(f"Released {path}")
