"""Landing the bottom of the stack.

Each entry moves through Pending -> ReadyToLand -> Merging -> Landed or
MergeFailed. Only the bottom entry can become ReadyToLand. After a merge the
remaining entries are rebased onto the updated target and the stack is synced
again, which retargets the new bottom PR.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..changes import ChangeKind
from ..config.models import StackConfig
from ..errors import GitFailure, StackError
from ..executor import Executor, OperationStatus
from ..git import RealGit, fetch, rebase_onto
from ..github import RemotePullRequest
from ..plan import Operation, OperationKind, operation_id
from ..typing import StackEntry
from ..util import short

logger = logging.getLogger(__name__)

class LandState(str, Enum):
    PENDING = "Pending"
    READY_TO_LAND = "ReadyToLand"
    MERGING = "Merging"
    LANDED = "Landed"
    MERGE_FAILED = "MergeFailed"

@dataclass
class LandStatus:
    position: int
    state: LandState
    reason: str = ""
    pr_number: Optional[int] = None

    def __str__(self) -> str:
        pr = f" PR #{self.pr_number}" if self.pr_number else ""
        reason = f": {self.reason}" if self.reason else ""
        return f"#{self.position}{pr} {self.state.value}{reason}"

def pending_reason(config: StackConfig, entry: StackEntry, change: ChangeKind,
                   pr: Optional[RemotePullRequest]) -> Optional[str]:
    """Why the bottom entry cannot land yet, None if it is ready."""
    if change != ChangeKind.UNCHANGED:
        return "local commit has changes that are not synced, run `stacksync sync`"
    if pr is None or pr.missing:
        return "no pull request"
    if not pr.is_open:
        return f"pull request is {pr.state.lower()}"
    if pr.base_ref != config.target_branch:
        return f"base is {pr.base_ref}, not {config.target_branch}"
    if pr.head_oid != entry.commit_hash:
        return f"remote head {short(pr.head_oid)} differs from local {short(entry.commit_hash)}"
    if pr.draft:
        return "pull request is a draft"
    if pr.mergeable == "CONFLICTING":
        return "pull request has conflicts"
    if config.repo.require_checks and not pr.checks_passed:
        return f"checks are {(pr.checks or 'unknown').lower()}"
    if config.repo.require_approval and not pr.approved:
        return "pull request is not approved"
    return None

def evaluate_stack(config: StackConfig, entries: List[StackEntry], changes: List[ChangeKind],
                   remote: Dict[int, RemotePullRequest]) -> List[LandStatus]:
    """Land state of every entry; only the bottom one can be ready."""
    statuses: List[LandStatus] = []
    for entry, change in zip(entries, changes):
        pr = remote.get(entry.pr_number) if entry.pr_number is not None else None
        number = pr.number if pr is not None and not pr.missing else None
        if entry.position > 0:
            statuses.append(LandStatus(entry.position, LandState.PENDING, "not the bottom entry", number))
            continue
        reason = pending_reason(config, entry, change, pr)
        if reason is None:
            statuses.append(LandStatus(entry.position, LandState.READY_TO_LAND, pr_number=number))
        else:
            statuses.append(LandStatus(entry.position, LandState.PENDING, reason, number))
    return statuses

@dataclass
class LandOutcome:
    status: LandStatus
    # Result of re-syncing the remainder, set once the entry has landed
    resync: object = None
    # Set when the entry landed but the cascade onto the target failed
    error: Optional[StackError] = None

class LandEngine:
    """Merges the bottom entry and cascades the rest of the stack onto the target."""
    def __init__(self, config: StackConfig, git_cmd: RealGit, executor: Executor,
                 resync: Callable[[], object]):
        self.config = config
        self.git_cmd = git_cmd
        self.executor = executor
        self.resync = resync

    def land_bottom(self, entries: List[StackEntry], changes: List[ChangeKind],
                    remote: Dict[int, RemotePullRequest]) -> LandOutcome:
        """Try to land entries[0]."""
        if not entries:
            return LandOutcome(LandStatus(0, LandState.PENDING, "stack is empty"))
        status = evaluate_stack(self.config, entries, changes, remote)[0]
        if status.state != LandState.READY_TO_LAND:
            logger.info(f"Cannot land {entries[0]}: {status.reason}")
            return LandOutcome(status)

        bottom = entries[0]
        status.state = LandState.MERGING
        logger.info(f"Landing {bottom} as PR #{status.pr_number}")
        merge_op = Operation(
            id=operation_id(OperationKind.MERGE, bottom.position),
            position=bottom.position,
            kind=OperationKind.MERGE,
            pr_number=status.pr_number,
            expected_oid=bottom.commit_hash,
            reason=self.config.repo.merge_method,
        )
        result = self.executor.execute([merge_op])[0]
        if result.status == OperationStatus.PRETEND:
            status.state = LandState.LANDED
            status.reason = "pretend"
            return LandOutcome(status)
        if not result.succeeded:
            status.state = LandState.MERGE_FAILED
            status.reason = str(result.error) if result.error else result.status.value
            logger.error(f"Merge of PR #{status.pr_number} failed: {status.reason}")
            return LandOutcome(status)

        status.state = LandState.LANDED
        remote_name = self.config.repo.github_remote
        try:
            fetch(self.git_cmd, remote_name)
            rebase_onto(self.git_cmd, self.config.upstream_ref, bottom.commit_hash)
        except GitFailure as e:
            logger.error(f"PR #{status.pr_number} landed but restacking failed: {e}")
            return LandOutcome(status, error=e)
        if len(entries) == 1:
            return LandOutcome(status)
        return LandOutcome(status, resync=self.resync())
