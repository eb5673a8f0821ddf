"""Config module."""

from typing import Dict, Any
from .models import RepoConfig, UserConfig, StackConfig, ToolConfig

class Config(StackConfig):
    """Config object holding repository, user and tool config.

    Built from the nested dict produced by the config parser, validating each
    section with its Pydantic model.
    """
    def __init__(self, config: Dict[str, Dict[str, Any]]):
        """Initialize with parsed config dict."""
        repo_config = config.get('repo', {})
        user_config = config.get('user', {})
        tool_section = config.get('tool', {})
        tool_config = tool_section.get('stacksync', {})

        super().__init__(
            repo=RepoConfig.model_validate(repo_config),
            user=UserConfig.model_validate(user_config),
            tool=ToolConfig.model_validate(tool_config),
        )

def default_config() -> Config:
    """Get default config without parsing git."""
    return Config({
        'repo': {
            'github_remote': 'origin',
            'github_branch': 'main',
        },
        'user': {},
        'tool': {
            'stacksync': {
                'concurrency': 0
            }
        }
    })
