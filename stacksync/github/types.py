"""Type definitions for GitHub API responses."""

from typing import Dict, List, Protocol, Optional, Tuple, Union
from pydantic import BaseModel, ValidationError

# GraphQL response types with Pydantic models
class StatusCheckRollup(BaseModel):
    state: Optional[str] = None

class PRCommitNode(BaseModel):
    oid: str
    message: str = ""
    statusCheckRollup: Optional[StatusCheckRollup] = None

class PRCommitData(BaseModel):
    commit: PRCommitNode

class PRCommits(BaseModel):
    nodes: List[PRCommitData] = []

class PRNode(BaseModel):
    number: int
    state: str
    merged: bool = False
    title: str
    body: str = ""
    baseRefName: str
    headRefName: str
    headRefOid: str
    mergeable: Optional[str] = None
    reviewDecision: Optional[str] = None
    isDraft: bool = False
    commits: PRCommits = PRCommits()

    def check_state(self) -> Optional[str]:
        """Aggregated check state of the head commit, None if it has no checks."""
        if not self.commits.nodes:
            return None
        rollup = self.commits.nodes[-1].commit.statusCheckRollup
        return rollup.state if rollup else None

    def head_message(self) -> str:
        """Message of the head commit, empty if it was not returned."""
        for data in self.commits.nodes:
            if data.commit.oid == self.headRefOid:
                return data.commit.message
        return ""

class GraphQLErrorLocation(BaseModel):
    line: int
    column: int

class GraphQLError(BaseModel):
    message: str
    type: Optional[str] = None
    locations: Optional[List[GraphQLErrorLocation]] = None
    path: Optional[List[Union[str, int]]] = None
    extensions: Optional[Dict[str, object]] = None

class GraphQLRepositoryData(BaseModel):
    # One aliased field per requested PR: {"pr12": {...} | None}
    repository: Optional[Dict[str, Optional[PRNode]]] = None

class GraphQLResponse(BaseModel):
    data: Optional[GraphQLRepositoryData] = None
    errors: Optional[List[GraphQLError]] = None

# Type for PyGithub GraphQL response
# First element is headers dict, second is the response data
GraphQLResponseType = Tuple[Dict[str, object], Dict[str, object]]

def pr_alias(number: int) -> str:
    """GraphQL alias under which a PR is requested."""
    return f"pr{number}"

def build_pull_requests_query(numbers: List[int]) -> str:
    """One query fetching every PR in numbers by aliased field."""
    fields = []
    for number in numbers:
        fields.append(f"""
            {pr_alias(number)}: pullRequest(number: {int(number)}) {{
              number
              state
              merged
              title
              body
              baseRefName
              headRefName
              headRefOid
              mergeable
              reviewDecision
              isDraft
              commits(last: 1) {{
                nodes {{
                  commit {{
                    oid
                    message
                    statusCheckRollup {{
                      state
                    }}
                  }}
                }}
              }}
            }}""")
    return ("query Query($owner: String!, $name: String!) {\n"
            "  repository(owner: $owner, name: $name) {"
            + "".join(fields) +
            "\n  }\n}")

def parse_graphql_response(response: Dict[str, object]) -> GraphQLResponse:
    """Parse GraphQL response into Pydantic model."""
    try:
        return GraphQLResponse.model_validate(response)
    except ValidationError as e:
        raise TypeError(f"Invalid GraphQL response: {e}")

class GitHubRequester(Protocol):
    """Type for PyGithub requester to handle GraphQL calls.

    This types the internal _Github__requester that's needed for GraphQL.
    We use a Protocol since the requester is a private implementation detail.
    """
    def requestJsonAndCheck(
        self,
        verb: str,
        url: str,
        parameters: Optional[Dict[str, object]] = None,
        headers: Optional[Dict[str, str]] = None,
        input: Optional[Dict[str, object]] = None
    ) -> GraphQLResponseType:
        ...
