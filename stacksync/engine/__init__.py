"""Stack synchronization pipeline.

walk -> detect changes -> fetch remote state -> plan -> execute, under the
repository lock. Land re-runs the same pipeline after every merge.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from ..changes import ChangeKind, detect_changes
from ..config.models import StackConfig
from ..errors import ExecutionAborted, NonFastForward
from ..executor import Executor, OperationResult, OperationStatus
from ..git import (RealGit, check_no_uncommitted_changes, push_branch, repo_lock, rewrite_stack_messages,
                   walk_stack)
from ..github import GitHubClient, RemotePullRequest, format_body, render_body, strip_stack_section
from ..land import LandEngine, LandOutcome, LandState, LandStatus, evaluate_stack
from ..metadata import CommitMetadata, encode
from ..plan import Operation, OperationKind, ReconciliationPlan, plan_reconciliation
from ..retry import RetryPolicy
from ..typing import CommitHash, StackEntry
from ..util import ensure, short

logger = logging.getLogger(__name__)

@dataclass
class EntryReport:
    """Outcome of a run for one stack entry."""
    position: int
    commit_hash: str
    title: str
    change: ChangeKind
    pr_number: Optional[int]
    outcome: str
    detail: str = ""
    failed: bool = False

@dataclass
class SyncReport:
    entries: List[StackEntry]
    changes: List[ChangeKind]
    plan: ReconciliationPlan
    results: List[OperationResult] = field(default_factory=list)
    pr_numbers: Dict[int, int] = field(default_factory=dict)
    aborted: Optional[ExecutionAborted] = None
    pretend: bool = False

    def results_for(self, position: int) -> List[OperationResult]:
        return [r for r in self.results if r.operation.position == position]

    def entry_reports(self) -> List[EntryReport]:
        reports: List[EntryReport] = []
        for entry, change in zip(self.entries, self.changes):
            pos = entry.position
            number = self.pr_numbers.get(pos, entry.pr_number)
            results = self.results_for(pos)
            failed = [r for r in results if r.status == OperationStatus.FAILED]
            skipped = [r for r in results if r.status == OperationStatus.SKIPPED]
            cancelled = [r for r in results if r.status == OperationStatus.CANCELLED]
            if pos in self.plan.diverged:
                report = EntryReport(pos, entry.commit_hash, entry.title, change, number,
                                     "RemoteDiverged", self.plan.diverged[pos], failed=True)
            elif pos in self.plan.blocked:
                report = EntryReport(pos, entry.commit_hash, entry.title, change, number,
                                     "blocked", self.plan.blocked[pos], failed=True)
            elif failed:
                errors = "; ".join(f"{r.operation.kind.value}: {r.error}" for r in failed)
                report = EntryReport(pos, entry.commit_hash, entry.title, change, number,
                                     "failed", errors, failed=True)
            elif skipped:
                report = EntryReport(pos, entry.commit_hash, entry.title, change, number,
                                     "skipped", f"blocked by {skipped[0].blocked_by}", failed=True)
            elif cancelled:
                report = EntryReport(pos, entry.commit_hash, entry.title, change, number,
                                     "cancelled", ", ".join(r.operation.kind.value for r in cancelled),
                                     failed=True)
            elif results:
                kinds = ", ".join(r.operation.kind.value for r in results)
                outcome = "would update" if self.pretend else "updated"
                report = EntryReport(pos, entry.commit_hash, entry.title, change, number, outcome, kinds)
            else:
                report = EntryReport(pos, entry.commit_hash, entry.title, change, number,
                                     OperationKind.SKIP.value, self.plan.skipped.get(pos, ""))
            reports.append(report)
        return reports

    @property
    def failed(self) -> bool:
        return self.aborted is not None or any(r.failed for r in self.entry_reports())

@dataclass
class StatusReport:
    entries: List[StackEntry]
    changes: List[ChangeKind]
    remote: Dict[int, RemotePullRequest]
    plan: ReconciliationPlan
    land: List[LandStatus]

@dataclass
class LandReport:
    outcomes: List[LandOutcome] = field(default_factory=list)

    @property
    def landed(self) -> int:
        return sum(1 for o in self.outcomes if o.status.state == LandState.LANDED)

    @property
    def failed(self) -> bool:
        for outcome in self.outcomes:
            if outcome.status.state == LandState.MERGE_FAILED or outcome.error is not None:
                return True
            resync = outcome.resync
            if isinstance(resync, SyncReport) and resync.failed:
                return True
        return False

class SyncSession:
    """Carries out plan operations for one pipeline run.

    Created PR numbers and rewritten commit hashes are recorded here so later
    operations see them.
    """
    def __init__(self, config: StackConfig, git_cmd: RealGit, github: GitHubClient,
                 entries: List[StackEntry], plan: ReconciliationPlan,
                 remote: Dict[int, RemotePullRequest]):
        self.config = config
        self.git_cmd = git_cmd
        self.github = github
        self.entries = entries
        self.managed = [e.position for e in entries
                        if e.position not in plan.diverged and e.position not in plan.blocked]
        self.remote = remote
        self.foreign_heads = dict(plan.foreign_heads)
        self._lock = threading.Lock()
        self.pr_numbers: Dict[int, int] = {}
        for entry in entries:
            pr = remote.get(entry.pr_number) if entry.pr_number is not None else None
            if pr is not None and not pr.missing:
                self.pr_numbers[entry.position] = pr.number
        self.commit_hashes: Dict[int, CommitHash] = {e.position: e.commit_hash for e in entries}

    def stack_numbers(self) -> List[int]:
        with self._lock:
            return [self.pr_numbers[p] for p in self.managed if p in self.pr_numbers]

    def create(self, op: Operation) -> RemotePullRequest:
        entry = self.entries[op.position]
        push_branch(self.git_cmd, self.config.repo.github_remote, self.commit_hashes[op.position],
                    op.branch, force=True)
        body = format_body(self.config, entry, self.stack_numbers(), None)
        pr = self.github.create_pull_request(title=entry.title, body=body, base=op.base, head=op.branch,
                                             draft=self.config.tool.draft)
        with self._lock:
            self.pr_numbers[op.position] = pr.number
        logger.info(f"Created PR #{pr.number} for {entry}")
        return pr

    def update_branch(self, op: Operation) -> CommitHash:
        if op.position in self.foreign_heads:
            raise NonFastForward(f"{self.foreign_heads[op.position]}, not pushing over it")
        commit_hash = self.commit_hashes[op.position]
        push_branch(self.git_cmd, self.config.repo.github_remote, commit_hash, op.branch,
                    expected_oid=op.expected_oid or "")
        return commit_hash

    def update_base(self, op: Operation) -> None:
        self.github.update_pull_request(ensure(op.pr_number), base=op.base)

    def update_description(self, op: Operation) -> None:
        entry = self.entries[op.position]
        with self._lock:
            number = op.pr_number or self.pr_numbers[op.position]
        pr = self.remote.get(number)
        if pr is None or pr.missing or self.config.tool.update_message:
            title: Optional[str] = entry.title
            text = entry.body
        else:
            # Keep what reviewers see, only the stack list is ours
            title, text = None, strip_stack_section(pr.body)
        body = render_body(self.config, text, self.stack_numbers(), number)
        self.github.update_pull_request(number, title=title, body=body)

    def merge(self, op: Operation) -> None:
        self.github.merge_pull_request(ensure(op.pr_number), self.config.repo.merge_method,
                                       ensure(op.expected_oid))

    def write_metadata(self) -> None:
        """Record PR numbers and content hashes in the commit messages.

        Only entries with a PR get a trailer; an entry whose Create failed stays
        untracked and is created again by the next sync.
        """
        messages: Dict[int, str] = {}
        for pos in self.managed:
            entry = self.entries[pos]
            number = self.pr_numbers.get(pos)
            if number is None:
                continue
            metadata = CommitMetadata(entry.commit_id, number, entry.content_hash)
            if metadata != entry.metadata:
                messages[pos] = encode(entry.message, metadata)
        if not messages:
            return
        logger.info(f"Writing metadata to {len(messages)} commit(s)")
        new_hashes = rewrite_stack_messages(self.git_cmd, self.entries, messages)
        self.commit_hashes.update(new_hashes)
        for pos, commit_hash in sorted(new_hashes.items()):
            logger.debug(f"  #{pos} {short(self.entries[pos].commit_hash)} -> {short(commit_hash)}")

class StackedPR:
    """Stack synchronization engine."""

    def __init__(self, config: StackConfig, github: GitHubClient, git_cmd: RealGit,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize with config, GitHub and git clients."""
        self.config = config
        self.github = github
        self.git_cmd = git_cmd
        self.sleep = sleep
        self.pretend: bool = config.tool.pretend
        self.concurrency: int = config.tool.concurrency  # Get from tool config
        self.retry_policy = RetryPolicy(max_attempts=config.tool.retry_attempts,
                                        base_delay=config.tool.retry_base_delay)
        self._executor: Optional[Executor] = None
        self._cancel_requested = False

    def cancel(self) -> None:
        """Stop between operations; what already ran is kept and reported."""
        self._cancel_requested = True
        if self._executor is not None:
            self._executor.cancel()

    def _new_executor(self, session: SyncSession) -> Executor:
        executor = Executor(session, concurrency=self.concurrency, retry_policy=self.retry_policy,
                            pretend=self.pretend, sleep=self.sleep)
        if self._cancel_requested:
            executor.cancel()
        self._executor = executor
        return executor

    def snapshot(self) -> Tuple[List[StackEntry], List[ChangeKind], Dict[int, RemotePullRequest]]:
        """Walk the stack and fetch its PRs.

        Linearity and metadata are validated before any network call.
        """
        entries = walk_stack(self.git_cmd, self.config.upstream_ref)
        changes = detect_changes(entries)
        numbers = [e.pr_number for e in entries if e.pr_number is not None]
        remote = self.github.fetch_pull_requests(numbers) if numbers else {}
        return entries, changes, remote

    def sync_stack(self) -> SyncReport:
        """Make every PR of the stack match its local commit."""
        with repo_lock(self.git_cmd.git_dir):
            check_no_uncommitted_changes(self.git_cmd)
            return self._sync()

    def _sync(self) -> SyncReport:
        entries, changes, remote = self.snapshot()
        logger.info(f"Stack has {len(entries)} commit(s) on {self.config.upstream_ref}")
        plan = plan_reconciliation(entries, changes, remote, self.config)
        for warning in plan.warnings:
            logger.warning(warning)
        for position, reason in sorted(plan.diverged.items()):
            logger.warning(f"{entries[position]}: {reason}")

        session = SyncSession(self.config, self.git_cmd, self.github, entries, plan, remote)
        report = SyncReport(entries, changes, plan, pretend=self.pretend)
        if plan.is_empty:
            logger.info("Stack is in sync, nothing to do")
            report.pr_numbers = dict(session.pr_numbers)
            return report

        executor = self._new_executor(session)
        creates = plan.of_kind(OperationKind.CREATE)
        rest = [op for op in plan.operations if op.kind != OperationKind.CREATE]
        create_results: List[OperationResult] = []
        try:
            create_results = executor.execute(creates)
        except ExecutionAborted as e:
            report.aborted = e
            create_results = e.results
        finally:
            # PRs that were opened must be recorded even if the run stops here
            if not self.pretend:
                session.write_metadata()

        if report.aborted is None:
            try:
                report.results = create_results + executor.execute(rest, prior_results=create_results)
            except ExecutionAborted as e:
                report.aborted = e
                report.results = create_results + e.results
        else:
            report.results = create_results

        report.pr_numbers = dict(session.pr_numbers)
        return report

    def status(self) -> StatusReport:
        """What sync would do and whether the bottom entry can land."""
        entries, changes, remote = self.snapshot()
        plan = plan_reconciliation(entries, changes, remote, self.config)
        land = evaluate_stack(self.config, entries, changes, remote)
        return StatusReport(entries, changes, remote, plan, land)

    def land(self, count: int = 1) -> LandReport:
        """Land up to count entries from the bottom, restacking after each."""
        report = LandReport()
        with repo_lock(self.git_cmd.git_dir):
            check_no_uncommitted_changes(self.git_cmd)
            for _ in range(max(count, 1)):
                if self._cancel_requested:
                    break
                entries, changes, remote = self.snapshot()
                session = SyncSession(self.config, self.git_cmd, self.github, entries,
                                      ReconciliationPlan(), remote)
                engine = LandEngine(self.config, self.git_cmd, self._new_executor(session), self._sync)
                outcome = engine.land_bottom(entries, changes, remote)
                report.outcomes.append(outcome)
                if outcome.status.state != LandState.LANDED or outcome.error is not None or self.pretend:
                    break
                resync = outcome.resync
                if not isinstance(resync, SyncReport) or resync.failed or not resync.entries:
                    break
        return report

