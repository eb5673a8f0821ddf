"""Pydantic models for config types."""

from typing import Literal, Optional
from pydantic import BaseModel, Field

MergeMethod = Literal['merge', 'squash', 'rebase']

class RepoConfig(BaseModel):
    """Repository configuration."""
    github_remote: str = "origin"
    github_branch: str = "main"
    github_repo_owner: Optional[str] = None
    github_repo_name: Optional[str] = None
    github_host: str = "github.com"
    branch_prefix: str = "stacksync"
    merge_method: MergeMethod = "squash"
    require_checks: bool = True
    require_approval: bool = True
    show_stack_in_description: bool = True

    class Config:
        """Pydantic config."""
        extra = "allow"  # Unknown keys in .stacksync.yaml are ignored

class UserConfig(BaseModel):
    """User configuration."""
    log_git_commands: bool = True

    class Config:
        """Pydantic config."""
        extra = "allow"

class ToolConfig(BaseModel):
    """Tool configuration."""
    concurrency: int = 0
    pretend: bool = False
    # Open new pull requests as drafts
    draft: bool = False
    # Overwrite PR titles and descriptions with the commit message
    update_message: bool = False
    request_timeout: float = 15.0
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)

    class Config:
        """Pydantic config."""
        extra = "allow"

class StackConfig(BaseModel):
    """Full stacksync configuration."""
    repo: RepoConfig = Field(default_factory=RepoConfig)
    user: UserConfig = Field(default_factory=UserConfig)
    tool: ToolConfig = Field(default_factory=ToolConfig)

    class Config:
        """Pydantic config."""
        extra = "allow"

    @property
    def target_branch(self) -> str:
        """Branch the bottom of the stack merges into."""
        return self.repo.github_branch

    @property
    def upstream_ref(self) -> str:
        """Remote-tracking ref of the target branch, the default stack base."""
        return f"{self.repo.github_remote}/{self.repo.github_branch}"

    def managed_branch_prefix(self) -> str:
        """Prefix shared by every head branch this tool creates for the target."""
        return f"{self.repo.branch_prefix}/{self.repo.github_branch}/"
