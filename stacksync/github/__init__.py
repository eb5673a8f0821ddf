"""GitHub interfaces and implementation."""

import os
import time
import logging
import contextlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Protocol, cast

import requests
from github import GithubException, BadCredentialsException, UnknownObjectException, RateLimitExceededException

from ..config.models import MergeMethod, StackConfig
from ..errors import (AuthFailure, MergeFailed, RemoteFailure, RemoteMissing, StackError,
                      TransientNetworkError)
from ..retry import RetryPolicy, call_with_retry
from ..typing import StackEntry
from ..util import ensure
from .types import (
    GraphQLResponseType, GitHubRequester, PRNode,
    build_pull_requests_query, parse_graphql_response, pr_alias
)

# Get module logger
logger = logging.getLogger(__name__)

# What GitHubClient needs from PyGithub; the e2e fake implements the same surface
class GitHubRefProtocol(Protocol):
    ref: str
    sha: str

class GitHubUserProtocol(Protocol):
    login: str

class GitHubReviewProtocol(Protocol):
    state: str  # APPROVED, CHANGES_REQUESTED, COMMENTED, DISMISSED
    user: GitHubUserProtocol

class GitHubCombinedStatusProtocol(Protocol):
    state: str
    total_count: int

class GitHubGitCommitProtocol(Protocol):
    message: str

class GitHubCommitProtocol(Protocol):
    sha: str
    commit: GitHubGitCommitProtocol

    def get_combined_status(self) -> GitHubCombinedStatusProtocol: ...

class GitHubMergeStatusProtocol(Protocol):
    merged: bool
    message: str

class GitHubPullRequestProtocol(Protocol):
    number: int
    title: str
    body: Optional[str]
    state: str  # open, closed
    base: GitHubRefProtocol
    head: GitHubRefProtocol
    mergeable: Optional[bool]
    merged: bool
    draft: bool

    def edit(self, title: Optional[str] = None, body: Optional[str] = None,
             state: Optional[str] = None, base: Optional[str] = None) -> None: ...

    def get_reviews(self) -> List[GitHubReviewProtocol]: ...

    def merge(self, merge_method: str = "merge", sha: str = "") -> GitHubMergeStatusProtocol: ...

class GitHubRepoProtocol(Protocol):
    def get_pull(self, number: int) -> GitHubPullRequestProtocol: ...

    def create_pull(self, title: str, body: str, base: str, head: str,
                    draft: bool = False) -> GitHubPullRequestProtocol: ...

    def get_pulls(self, state: str = "open", head: str = "") -> List[GitHubPullRequestProtocol]:
        """Pull requests, optionally filtered by an owner:branch head."""
        ...

    def get_commit(self, sha: str) -> GitHubCommitProtocol: ...

class PyGithubProtocol(Protocol):
    """A PyGithub client, real or fake.

    The GraphQL requester is reached through the private _Github__requester
    attribute, which both implementations expose.
    """
    def get_repo(self, full_name_or_id: str) -> GitHubRepoProtocol: ...

def find_github_token(host: str = "github.com") -> Optional[str]:
    """Find GitHub token from env var or gh CLI config."""
    import yaml
    from pathlib import Path

    # First try environment variable
    token = os.environ.get("GITHUB_TOKEN")
    if token:
        return token

    # Then try gh CLI config at ~/.config/gh/hosts.yml
    gh_config_path = Path.home() / ".config" / "gh" / "hosts.yml"
    try:
        if gh_config_path.exists():
            with open(gh_config_path, "r") as f:
                gh_config = yaml.safe_load(f)
            if gh_config and host in gh_config:
                host_config: Dict[str, object] = gh_config[host]
                token = host_config.get("oauth_token")
                if isinstance(token, str):
                    return token
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error reading gh CLI config: {e}")
    return None

@dataclass
class RemotePullRequest:
    """Remote state of one pull request."""
    number: int
    state: str = "OPEN"  # OPEN, MERGED, CLOSED
    base_ref: str = ""
    head_ref: str = ""
    head_oid: str = ""
    # Message of the head commit, to tell our pushes from anyone else's
    head_message: str = ""
    title: str = ""
    body: str = ""
    mergeable: str = "UNKNOWN"  # MERGEABLE, CONFLICTING, UNKNOWN
    review_decision: Optional[str] = None  # APPROVED, CHANGES_REQUESTED, REVIEW_REQUIRED
    checks: Optional[str] = None  # SUCCESS, FAILURE, PENDING, ERROR; None without checks
    draft: bool = False
    missing: bool = False

    @classmethod
    def missing_pr(cls, number: int) -> 'RemotePullRequest':
        return cls(number=number, state="", missing=True)

    @classmethod
    def from_graphql(cls, node: PRNode) -> 'RemotePullRequest':
        state = "MERGED" if node.merged else node.state.upper()
        return cls(
            number=node.number,
            state=state,
            base_ref=node.baseRefName,
            head_ref=node.headRefName,
            head_oid=node.headRefOid,
            head_message=node.head_message(),
            title=node.title,
            body=node.body or "",
            mergeable=(node.mergeable or "UNKNOWN").upper(),
            review_decision=node.reviewDecision,
            checks=node.check_state(),
            draft=node.isDraft,
        )

    @property
    def is_open(self) -> bool:
        return not self.missing and self.state == "OPEN"

    @property
    def checks_passed(self) -> bool:
        return self.checks is None or self.checks == "SUCCESS"

    @property
    def approved(self) -> bool:
        return self.review_decision == "APPROVED"

    def __str__(self) -> str:
        if self.missing:
            return f"PR #{self.number} (missing)"
        return f"PR #{self.number} [{self.state}] {self.head_ref} -> {self.base_ref}"

def _error_message(e: GithubException) -> str:
    data = e.data
    if isinstance(data, dict) and data.get('message'):
        message = str(data['message'])
        errors = data.get('errors')
        if isinstance(errors, list) and errors:
            details = [str(err.get('message', err)) if isinstance(err, dict) else str(err) for err in errors]
            message += f" ({'; '.join(details)})"
        return message
    return str(e)

def classify_github_error(description: str, e: Exception) -> StackError:
    """Convert a PyGithub or requests exception into a classified StackError."""
    if isinstance(e, BadCredentialsException):
        return AuthFailure(f"{description}: bad credentials")
    if isinstance(e, RateLimitExceededException):
        return TransientNetworkError(f"{description}: rate limited")
    if isinstance(e, UnknownObjectException):
        return RemoteMissing(f"{description}: not found")
    if isinstance(e, GithubException):
        status = e.status
        message = f"{description}: {status} {_error_message(e)}"
        if status == 401:
            return AuthFailure(message)
        if status == 403:
            if 'rate limit' in message.lower():
                return TransientNetworkError(message)
            return AuthFailure(message)
        if status == 404:
            return RemoteMissing(message)
        if status is not None and status >= 500:
            return TransientNetworkError(message)
        return RemoteFailure(message)
    if isinstance(e, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return TransientNetworkError(f"{description}: {e}")
    return RemoteFailure(f"{description}: {e}")

@contextlib.contextmanager
def github_errors(description: str) -> Iterator[None]:
    """Classify errors raised by PyGithub inside the block."""
    try:
        yield
    except (GithubException, requests.exceptions.RequestException) as e:
        raise classify_github_error(description, e) from e

def format_stack_markdown(numbers: List[int], current: Optional[int]) -> str:
    """Format stack of PRs as markdown, top of the stack first."""
    lines: List[str] = []
    for number in reversed(numbers):
        suffix = " ⬅" if number == current else ""
        lines.append(f"- #{number}{suffix}")
    return "\n".join(lines)

STACK_HEADER = "**Stack**:"
STACK_SEPARATOR = "\n\n---\n\n"

def strip_stack_section(body: str) -> str:
    """The part of a PR description above the stack list we append."""
    body = body.strip()
    if body.startswith(STACK_HEADER):
        return ""
    index = body.rfind(STACK_SEPARATOR + STACK_HEADER)
    if index >= 0:
        return body[:index].strip()
    return body

def render_body(config: StackConfig, text: str, numbers: List[int], current: Optional[int]) -> str:
    """Description text plus the stack list when the stack has several PRs."""
    text = text.strip()
    if not config.repo.show_stack_in_description or len(numbers) <= 1:
        return text

    stack_markdown = format_stack_markdown(numbers, current)
    warning = ("\n\n⚠️ *Part of a stack managed by stacksync. "
               "Land it with `stacksync land` so the PRs above are rebased.*")
    if not text:
        return f"{STACK_HEADER}\n{stack_markdown}{warning}"
    return f"{text}{STACK_SEPARATOR}{STACK_HEADER}\n{stack_markdown}{warning}"

def format_body(config: StackConfig, entry: StackEntry, numbers: List[int],
                current: Optional[int]) -> str:
    """Format PR body: the commit body plus the stack when it has several PRs."""
    return render_body(config, entry.body, numbers, current)

class GitHubClient:
    """GitHub client implementation."""
    def __init__(self, config: StackConfig, github_client: PyGithubProtocol,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """Initialize with config and GitHub client implementation.

        Args:
            config: The configuration
            github_client: GitHub client implementation (real or fake)
            retry_policy: Retry bounds for batched fetches, from the tool config by default
            sleep: Injected for tests
        """
        self.config = config
        self.client = github_client
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.tool.retry_attempts,
            base_delay=config.tool.retry_base_delay,
        )
        self.sleep = sleep
        self._repo: Optional[GitHubRepoProtocol] = None

    @property
    def repo_full_name(self) -> str:
        owner = self.config.repo.github_repo_owner
        name = self.config.repo.github_repo_name
        if not owner or not name:
            raise RemoteFailure("GitHub repository owner/name not configured and not derivable from the remote")
        return f"{owner}/{name}"

    @property
    def repo(self) -> GitHubRepoProtocol:
        """Get GitHub repository."""
        if self._repo is None:
            with github_errors(f"get repository {self.repo_full_name}"):
                self._repo = self.client.get_repo(self.repo_full_name)
        return self._repo

    @property
    def graphql_url(self) -> str:
        host = self.config.repo.github_host
        if host == "github.com":
            return "https://api.github.com/graphql"
        return f"https://{host}/api/graphql"

    def fetch_pull_requests(self, numbers: List[int]) -> Dict[int, RemotePullRequest]:
        """Fetch the state of every PR in numbers.

        One batched GraphQL query, retried on transient failures. If GraphQL
        keeps failing for a non-fatal reason the PRs are fetched one by one
        over REST. PRs that do not exist come back with missing=True.
        """
        wanted = sorted(set(numbers))
        if not wanted:
            return {}
        logger.info(f"> github fetch pull requests {', '.join(f'#{n}' for n in wanted)}")
        try:
            result, _ = call_with_retry(lambda: self._fetch_graphql(wanted), self.retry_policy,
                                        "GraphQL fetch", sleep=self.sleep)
            return result
        except StackError as e:
            if e.fatal:
                raise
            logger.warning(f"GraphQL query failed: {e}")
            logger.info("Falling back to REST API")
        return self._fetch_rest(wanted)

    def _fetch_graphql(self, numbers: List[int]) -> Dict[int, RemotePullRequest]:
        # Access private requester - need cast since it's not part of the protocol
        req = cast(GitHubRequester, getattr(self.client, '_Github__requester'))
        owner, name = self.repo_full_name.split('/', 1)
        with github_errors("GraphQL fetch"):
            result: GraphQLResponseType = req.requestJsonAndCheck(
                "POST",
                self.graphql_url,
                input={
                    "query": build_pull_requests_query(numbers),
                    "variables": {"owner": owner, "name": name},
                }
            )
        _headers, resp = result
        try:
            graphql_resp = parse_graphql_response(resp)
        except TypeError as e:
            raise RemoteFailure(str(e))

        for error in graphql_resp.errors or []:
            if error.type == 'NOT_FOUND' and error.path and len(error.path) > 1:
                continue  # A missing PR; its alias is null
            if error.type == 'RATE_LIMITED':
                raise TransientNetworkError(f"GraphQL: {error.message}")
            raise RemoteFailure(f"GraphQL: {error.message}")

        if graphql_resp.data is None or graphql_resp.data.repository is None:
            raise RemoteFailure(f"GraphQL: repository {owner}/{name} not accessible")
        repository = graphql_resp.data.repository

        prs: Dict[int, RemotePullRequest] = {}
        for number in numbers:
            node = repository.get(pr_alias(number))
            if node is None:
                logger.debug(f"PR #{number} does not exist")
                prs[number] = RemotePullRequest.missing_pr(number)
            else:
                prs[number] = RemotePullRequest.from_graphql(node)
                logger.debug(f"  {prs[number]}")
        return prs

    def _fetch_rest(self, numbers: List[int]) -> Dict[int, RemotePullRequest]:
        def fetch_one(number: int) -> RemotePullRequest:
            result, _ = call_with_retry(lambda: self.get_pull_request(number), self.retry_policy,
                                        f"get PR #{number}", sleep=self.sleep)
            return result

        workers = max(1, min(len(numbers), self.config.tool.concurrency or 4))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(fetch_one, numbers))
        return {pr.number: pr for pr in results}

    def get_pull_request(self, number: int) -> RemotePullRequest:
        """Fetch one PR over REST."""
        logger.debug(f"> github get #{number}")
        try:
            with github_errors(f"get PR #{number}"):
                gh_pr = self.repo.get_pull(number)
                state = "MERGED" if gh_pr.merged else gh_pr.state.upper()
                if gh_pr.mergeable is None:
                    mergeable = "UNKNOWN"
                else:
                    mergeable = "MERGEABLE" if gh_pr.mergeable else "CONFLICTING"
                review_decision = self._review_decision(gh_pr.get_reviews())
                commit = self.repo.get_commit(gh_pr.head.sha)
                status = commit.get_combined_status()
                checks = status.state.upper() if status.total_count else None
                return RemotePullRequest(
                    number=gh_pr.number,
                    state=state,
                    base_ref=gh_pr.base.ref,
                    head_ref=gh_pr.head.ref,
                    head_oid=gh_pr.head.sha,
                    head_message=commit.commit.message,
                    title=gh_pr.title,
                    body=gh_pr.body or "",
                    mergeable=mergeable,
                    review_decision=review_decision,
                    checks=checks,
                    draft=gh_pr.draft,
                )
        except RemoteMissing:
            return RemotePullRequest.missing_pr(number)

    @staticmethod
    def _review_decision(reviews: List[GitHubReviewProtocol]) -> Optional[str]:
        """Approximate GraphQL's reviewDecision from the latest review per user."""
        latest: Dict[str, str] = {}
        for review in reviews:
            if review.state in ("APPROVED", "CHANGES_REQUESTED", "DISMISSED"):
                latest[review.user.login] = review.state
        states = set(latest.values())
        if "CHANGES_REQUESTED" in states:
            return "CHANGES_REQUESTED"
        if "APPROVED" in states:
            return "APPROVED"
        return None

    def create_pull_request(self, title: str, body: str, base: str, head: str,
                            draft: bool = False) -> RemotePullRequest:
        """Open a pull request from head into base, as a draft if asked to."""
        kind = "draft " if draft else ""
        logger.info(f"> github create {kind}{head} -> {base} : {title}")
        try:
            with github_errors(f"create PR for {head}"):
                gh_pr = self.repo.create_pull(title=title, body=body, base=base, head=head, draft=draft)
        except RemoteFailure as e:
            # A retried create whose first attempt went through
            if "already exists" not in e.message:
                raise
            logger.warning(f"PR already exists for branch {head}, attempting to find it")
            existing = self.find_pull_request_for_branch(head)
            if existing is None:
                raise
            logger.info(f"Found existing PR #{existing.number} for branch {head}")
            return existing
        return RemotePullRequest(
            number=gh_pr.number,
            state="OPEN",
            base_ref=base,
            head_ref=head,
            head_oid=gh_pr.head.sha,
            title=title,
            body=body,
            draft=draft,
        )

    def find_pull_request_for_branch(self, branch: str) -> Optional[RemotePullRequest]:
        """Find the open pull request whose head is branch."""
        owner = self.config.repo.github_repo_owner
        with github_errors(f"find PR for {branch}"):
            pulls = list(self.repo.get_pulls(state='open', head=f"{owner}:{branch}"))
        logger.debug(f"GitHub returned {len(pulls)} PRs for head {owner}:{branch}")
        for pr in pulls:
            if pr.head.ref == branch:
                return self.get_pull_request(pr.number)
        return None

    def update_pull_request(self, number: int, base: Optional[str] = None,
                            title: Optional[str] = None, body: Optional[str] = None) -> None:
        """Change base, title and/or body of a pull request."""
        changes = {k: v for k, v in (('base', base), ('title', title), ('body', body)) if v is not None}
        if not changes:
            return
        logger.info(f"> github update #{number} : {', '.join(sorted(changes))}")
        with github_errors(f"update PR #{number}"):
            gh_pr = self.repo.get_pull(number)
            gh_pr.edit(**changes)

    def merge_pull_request(self, number: int, merge_method: MergeMethod, sha: str) -> None:
        """Merge a pull request, provided its head is still sha.

        Raises:
            MergeFailed: GitHub refused the merge
        """
        logger.info(f"> github merge #{number} ({merge_method}) at {sha[:8]}")
        try:
            with github_errors(f"merge PR #{number}"):
                gh_pr = self.repo.get_pull(number)
                status = gh_pr.merge(merge_method=merge_method, sha=sha)
        except (RemoteFailure, RemoteMissing) as e:
            raise MergeFailed(e.message)
        if not ensure(status).merged:
            raise MergeFailed(f"merge PR #{number}: {status.message}")
