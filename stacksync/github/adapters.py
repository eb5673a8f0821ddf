"""PyGithub objects behind the protocols GitHubClient is written against."""

from typing import Any, Dict, List, Optional

from github import Auth, Github
from github.GithubObject import NotSet
from github.PullRequest import PullRequest
from github.PullRequestMergeStatus import PullRequestMergeStatus
from github.Repository import Repository

from . import GitHubCommitProtocol, GitHubPullRequestProtocol, GitHubRepoProtocol, GitHubReviewProtocol
from .types import GitHubRequester, GraphQLResponseType

def _not_set(value: Optional[str]) -> Any:
    """PyGithub leaves a parameter out only when it is NotSet."""
    return NotSet if value is None or value == "" else value

class PullRequestAdapter:
    """A PyGithub PullRequest with None/empty arguments mapped to NotSet."""

    def __init__(self, pr: PullRequest) -> None:
        self._pr = pr

    def __getattr__(self, name: str) -> Any:
        # number, title, body, state, base, head, mergeable, merged
        return getattr(self._pr, name)

    def edit(self, title: Optional[str] = None, body: Optional[str] = None,
             state: Optional[str] = None, base: Optional[str] = None) -> None:
        # An empty body is a real edit, so only None is left out here
        self._pr.edit(title=_not_set(title),
                      body=NotSet if body is None else body,
                      state=_not_set(state),
                      base=_not_set(base))

    def get_reviews(self) -> List[GitHubReviewProtocol]:
        return list(self._pr.get_reviews())

    def merge(self, merge_method: str = "merge", sha: str = "") -> PullRequestMergeStatus:
        return self._pr.merge(merge_method=merge_method, sha=_not_set(sha))

class RepositoryAdapter:
    """A PyGithub Repository returning adapted pull requests."""

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    def get_pull(self, number: int) -> GitHubPullRequestProtocol:
        return PullRequestAdapter(self._repo.get_pull(number))

    def create_pull(self, title: str, body: str, base: str, head: str,
                    draft: bool = False) -> GitHubPullRequestProtocol:
        return PullRequestAdapter(self._repo.create_pull(base=base, head=head, title=title, body=body,
                                                         draft=draft))

    def get_pulls(self, state: str = "open", head: str = "") -> List[GitHubPullRequestProtocol]:
        return [PullRequestAdapter(pr) for pr in self._repo.get_pulls(state=state, head=_not_set(head))]

    def get_commit(self, sha: str) -> GitHubCommitProtocol:
        return self._repo.get_commit(sha)

class GithubAdapter:
    """The PyGithub client, exposing its requester for GraphQL queries."""

    def __init__(self, github: Github) -> None:
        self._github = github

    def get_repo(self, full_name_or_id: str) -> GitHubRepoProtocol:
        return RepositoryAdapter(self._github.get_repo(full_name_or_id))

    @property
    def _Github__requester(self) -> GitHubRequester:
        return _GraphQLRequester(getattr(self._github, '_Github__requester'))

class _GraphQLRequester:
    def __init__(self, requester: GitHubRequester) -> None:
        self._requester = requester

    def requestJsonAndCheck(self, verb: str, url: str, parameters: Optional[Dict[str, object]] = None,
                            headers: Optional[Dict[str, str]] = None,
                            input: Optional[Dict[str, object]] = None) -> GraphQLResponseType:
        response_headers, data = self._requester.requestJsonAndCheck(
            verb, url, parameters=parameters, headers=headers, input=input)
        return response_headers or {}, data

def create_github(token: str, host: str = "github.com", timeout: float = 15.0) -> GithubAdapter:
    """Build a real PyGithub client for host.

    PyGithub's own retries are disabled; retries happen in stacksync.retry so
    they can be counted and reported.
    """
    base_url = "https://api.github.com" if host == "github.com" else f"https://{host}/api/v3"
    github = Github(auth=Auth.Token(token), base_url=base_url, timeout=int(timeout), retry=None)
    return GithubAdapter(github)
