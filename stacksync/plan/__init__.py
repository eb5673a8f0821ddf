"""Reconciliation planning.

Turns the local stack, its change classification and a snapshot of the remote
PRs into the operations needed to make the remote match the stack. Planning is
pure: no git or network access happens here.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..changes import ChangeKind
from ..config.models import StackConfig
from ..git import branch_name_for, commit_id_from_branch
from ..errors import MetadataCorrupt
from ..github import RemotePullRequest, render_body, strip_stack_section
from ..metadata import decode, strip_metadata
from ..typing import StackEntry
from ..util import short

logger = logging.getLogger(__name__)

class OperationKind(str, Enum):
    CREATE = "Create"
    UPDATE_BRANCH = "UpdateBranch"
    UPDATE_BASE = "UpdateBase"
    UPDATE_DESCRIPTION = "UpdateDescription"
    MERGE = "Merge"
    SKIP = "Skip"

@dataclass(frozen=True)
class Operation:
    """One remote change for one stack entry."""
    id: str
    position: int
    kind: OperationKind
    depends_on: Tuple[str, ...] = ()
    branch: str = ""
    base: str = ""
    pr_number: Optional[int] = None
    # Remote head oid the branch must still have when we push over it
    expected_oid: Optional[str] = None
    reason: str = ""

    def __str__(self) -> str:
        target = f"#{self.pr_number}" if self.pr_number else self.branch
        return f"{self.id} {target}"

def operation_id(kind: OperationKind, position: int) -> str:
    return f"{kind.value}#{position}"

@dataclass
class ReconciliationPlan:
    """Ordered operations plus what was deliberately left alone."""
    operations: List[Operation] = field(default_factory=list)
    # position -> reason, for entries that need nothing
    skipped: Dict[int, str] = field(default_factory=dict)
    # position -> reason, for entries changed on GitHub behind our back
    diverged: Dict[int, str] = field(default_factory=dict)
    # position -> description of the diverged entry blocking it
    blocked: Dict[int, str] = field(default_factory=dict)
    # position -> reason, for PR branches whose head someone else pushed
    foreign_heads: Dict[int, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def by_id(self) -> Dict[str, Operation]:
        return {op.id: op for op in self.operations}

    def for_position(self, position: int) -> List[Operation]:
        return [op for op in self.operations if op.position == position]

    def of_kind(self, kind: OperationKind) -> List[Operation]:
        return [op for op in self.operations if op.kind == kind]

    def describe(self) -> List[str]:
        lines = [str(op) for op in self.operations]
        for position, reason in sorted(self.diverged.items()):
            lines.append(f"diverged #{position}: {reason}")
        for position, reason in sorted(self.blocked.items()):
            lines.append(f"blocked #{position}: {reason}")
        for position, reason in sorted(self.foreign_heads.items()):
            lines.append(f"foreign head #{position}: {reason}")
        return lines

def required_base(config: StackConfig, entries: List[StackEntry], position: int) -> str:
    """Base branch an entry's PR must have: the branch below, or the target."""
    if position == 0:
        return config.target_branch
    return branch_name_for(config, entries[position - 1].commit_id)

def divergence_reason(config: StackConfig, entry: StackEntry, pr: RemotePullRequest) -> Optional[str]:
    """Why a PR can no longer be managed from the stack, None if it still can."""
    if pr.state == "MERGED":
        return f"PR #{pr.number} was merged outside of stacksync"
    if pr.state == "CLOSED":
        return f"PR #{pr.number} was closed"
    expected_head = branch_name_for(config, entry.commit_id)
    if pr.head_ref != expected_head:
        return f"PR #{pr.number} head is {pr.head_ref}, expected {expected_head}"
    if pr.base_ref != config.target_branch and commit_id_from_branch(config, pr.base_ref) is None:
        return f"PR #{pr.number} was re-based onto {pr.base_ref}"
    return None

def foreign_head_reason(entry: StackEntry, pr: RemotePullRequest) -> Optional[str]:
    """Why the PR branch head was not pushed by stacksync, None if it was.

    A head we pushed carries the entry's commit-id trailer. A Create that
    stopped before metadata was written leaves the untracked commit, which is
    recognised by its message.
    """
    if not pr.head_oid or pr.head_oid == entry.commit_hash:
        return None
    try:
        metadata = decode(pr.head_message)
    except MetadataCorrupt as e:
        return f"PR #{pr.number} head {short(pr.head_oid)} has an unreadable trailer: {e.message}"
    if metadata is not None:
        if metadata.commit_id == entry.commit_id:
            return None
    elif pr.head_message and strip_metadata(pr.head_message) == strip_metadata(entry.message):
        return None
    return f"PR #{pr.number} head {short(pr.head_oid)} was not pushed by stacksync"

def description_drift(config: StackConfig, entry: StackEntry, pr: RemotePullRequest,
                      numbers: List[int]) -> Optional[str]:
    """What an existing PR's title or description needs updated, None if nothing.

    Text a reviewer may have edited on GitHub is only overwritten with the
    commit message when update_message is set. The stack list is always ours.
    """
    remote_text = strip_stack_section(pr.body)
    if config.tool.update_message:
        if pr.title != entry.title:
            return "title"
        text = entry.body
    else:
        text = remote_text
    if pr.body.strip() != render_body(config, text, numbers, pr.number).strip():
        return "body" if text.strip() != remote_text else "stack list"
    return None

def plan_reconciliation(entries: List[StackEntry], changes: List[ChangeKind],
                        remote: Dict[int, RemotePullRequest], config: StackConfig) -> ReconciliationPlan:
    """Compute the operations that bring the remote in line with the stack.

    Operations are emitted in dependency order: every Create (bottom to top),
    then per entry its UpdateBranch and UpdateBase, then the description
    updates which need every PR number of the stack.
    """
    plan = ReconciliationPlan()
    if len(entries) != len(changes):
        raise ValueError("entries and changes must be index-aligned")

    # First pass: what exists remotely and whether it is still ours
    prs: Dict[int, Optional[RemotePullRequest]] = {}
    needs_pr: Dict[int, bool] = {}
    first_diverged: Optional[int] = None
    for entry in entries:
        pr = remote.get(entry.pr_number) if entry.pr_number is not None else None
        if entry.pr_number is not None and (pr is None or pr.missing):
            warning = f"{entry}: PR #{entry.pr_number} no longer exists, creating a new one"
            logger.warning(warning)
            plan.warnings.append(warning)
            pr = None
        prs[entry.position] = pr
        needs_pr[entry.position] = pr is None
        if pr is not None and first_diverged is None:
            reason = divergence_reason(config, entry, pr)
            if reason is not None:
                plan.diverged[entry.position] = reason
                first_diverged = entry.position

    managed = [e for e in entries if first_diverged is None or e.position < first_diverged]
    if first_diverged is not None:
        for entry in entries[first_diverged + 1:]:
            plan.blocked[entry.position] = f"stacked on diverged entry #{first_diverged}"

    # Entries whose commit is recreated when metadata is written
    rewritten = {e.position for e in managed
                 if needs_pr[e.position] or changes[e.position] != ChangeKind.UNCHANGED}
    lowest_rewrite = min(rewritten) if rewritten else None

    creates: List[Operation] = []
    branch_ops: List[Operation] = []
    description_ops: List[Operation] = []
    branch_op_at: Dict[int, str] = {}

    for entry in managed:
        pos = entry.position
        if needs_pr[pos]:
            deps = (operation_id(OperationKind.CREATE, pos - 1),) if pos > 0 and needs_pr[pos - 1] else ()
            creates.append(Operation(
                id=operation_id(OperationKind.CREATE, pos),
                position=pos,
                kind=OperationKind.CREATE,
                depends_on=deps,
                branch=branch_name_for(config, entry.commit_id),
                base=required_base(config, entries, pos),
                reason="no pull request" if entry.pr_number is None else "pull request missing",
            ))

    create_ids = tuple(op.id for op in creates)

    for entry in managed:
        pos = entry.position
        pr = prs[pos]
        branch = branch_name_for(config, entry.commit_id)
        base = required_base(config, entries, pos)
        reasons: List[str] = []
        if changes[pos] != ChangeKind.UNCHANGED:
            reasons.append(changes[pos].value.lower())
        if needs_pr[pos]:
            reasons.append("metadata written")
        elif lowest_rewrite is not None and lowest_rewrite < pos:
            reasons.append("restacked on rewritten parent")
        elif pr is not None and pr.head_oid != entry.commit_hash:
            reasons.append("remote head differs")

        entry_ops: List[Operation] = []
        if reasons:
            foreign = foreign_head_reason(entry, pr) if pr is not None else None
            if foreign is not None:
                # UpdateBranch refuses the push when it runs
                warning = f"{entry}: {foreign}, refusing to push over it"
                logger.warning(warning)
                plan.warnings.append(warning)
                plan.foreign_heads[pos] = foreign
            deps: List[str] = []
            if needs_pr[pos]:
                deps.append(operation_id(OperationKind.CREATE, pos))
            lower = [p for p in branch_op_at if p < pos]
            if lower:
                deps.append(branch_op_at[max(lower)])
            op = Operation(
                id=operation_id(OperationKind.UPDATE_BRANCH, pos),
                position=pos,
                kind=OperationKind.UPDATE_BRANCH,
                depends_on=tuple(deps),
                branch=branch,
                base=base,
                pr_number=pr.number if pr else None,
                expected_oid=pr.head_oid if pr else entry.commit_hash,
                reason=", ".join(reasons),
            )
            entry_ops.append(op)
            branch_op_at[pos] = op.id

        if pr is not None and pr.base_ref != base:
            deps = []
            below = branch_op_at.get(pos - 1)
            if below is None and pos > 0 and needs_pr[pos - 1]:
                below = operation_id(OperationKind.CREATE, pos - 1)
            if below is not None:
                deps.append(below)
            if pos in branch_op_at:
                deps.append(branch_op_at[pos])
            entry_ops.append(Operation(
                id=operation_id(OperationKind.UPDATE_BASE, pos),
                position=pos,
                kind=OperationKind.UPDATE_BASE,
                depends_on=tuple(deps),
                branch=branch,
                base=base,
                pr_number=pr.number,
                reason=f"base {pr.base_ref} -> {base}",
            ))
        branch_ops.extend(entry_ops)

    # Descriptions carry the stack list, so they depend on every PR number
    known_numbers = [prs[e.position].number for e in managed if prs[e.position] is not None]  # type: ignore[union-attr]
    total_prs = len(managed)
    stack_list_changes = bool(creates) and total_prs > 1 and config.repo.show_stack_in_description
    for entry in managed:
        pos = entry.position
        pr = prs[pos]
        if pr is not None and not config.tool.update_message and (
                pr.title != entry.title or strip_stack_section(pr.body) != entry.body.strip()):
            warning = (f"{entry}: PR #{pr.number} title or description differs from the commit message, "
                       "use --update-message to overwrite it")
            logger.warning(warning)
            plan.warnings.append(warning)
        if pr is None:
            if not stack_list_changes:
                continue
            reason = "stack list"
        elif stack_list_changes:
            reason = "stack list"
        else:
            reason = description_drift(config, entry, pr, known_numbers)
            if reason is None:
                continue
        deps = tuple(create_ids)
        description_ops.append(Operation(
            id=operation_id(OperationKind.UPDATE_DESCRIPTION, pos),
            position=pos,
            kind=OperationKind.UPDATE_DESCRIPTION,
            depends_on=deps,
            branch=branch_name_for(config, entry.commit_id),
            pr_number=pr.number if pr else None,
            reason=reason,
        ))

    plan.operations = creates + branch_ops + description_ops

    touched = {op.position for op in plan.operations}
    for entry in managed:
        if entry.position not in touched:
            plan.skipped[entry.position] = "in sync"

    for line in plan.describe():
        logger.debug(f"plan: {line}")
    return plan
