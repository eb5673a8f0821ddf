"""Config parser logic."""

import os
import re
from typing import Any, Dict, Optional, Tuple
import logging
import yaml

from ...errors import StackError
from ...typing import GitInterface

# Get module logger
logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = '.stacksync.yaml'

RawConfig = Dict[str, Dict[str, Any]]

REMOTE_URL_RE = re.compile(r'^(?:[a-z+]+://)?(?:[^@/]+@)?([^:/]+)[:/](?:\d+/)?(.+?)/([^/]+?)(?:\.git)?/?$')

def parse_remote_url(remote_url: str) -> Optional[Tuple[str, str, str]]:
    """Split a GitHub remote URL into (host, owner, name).

    Handles git@host:owner/repo.git and https://host/owner/repo(.git).
    """
    match = REMOTE_URL_RE.match(remote_url.strip())
    if not match:
        return None
    host, owner, name = match.groups()
    return host, owner.split('/')[-1], name

def load_config_file(repo_root: str) -> Dict[str, Any]:
    """Read .stacksync.yaml from the repository root, empty if absent."""
    path = os.path.join(repo_root, CONFIG_FILE_NAME)
    try:
        with open(path, 'r') as f:
            logger.info(f"Found {CONFIG_FILE_NAME}, loading...")
            loaded = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug(f"No {CONFIG_FILE_NAME} found, using defaults")
        return {}
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{CONFIG_FILE_NAME} must contain a mapping, got {type(loaded).__name__}")
    logger.debug(f"Config from {CONFIG_FILE_NAME}: {loaded}")
    return loaded

def parse_config(git_cmd: GitInterface, repo_root: str) -> RawConfig:
    """Parse config from defaults, the repository config file and the git remote."""
    config: RawConfig = {
        'repo': {
            'github_remote': 'origin',
            'github_branch': 'main',
            'github_host': 'github.com',
        },
        'user': {},
        'tool': {
            'stacksync': {
                'concurrency': 0,
                'pretend': False,
            }
        }
    }

    file_config = load_config_file(repo_root)
    for section in ('repo', 'user'):
        if isinstance(file_config.get(section), dict):
            config[section].update(file_config[section])
    tool_section = file_config.get('tool')
    if isinstance(tool_section, dict) and isinstance(tool_section.get('stacksync'), dict):
        config['tool']['stacksync'].update(tool_section['stacksync'])

    # Derive owner/name from the remote URL when not configured
    repo = config['repo']
    if not repo.get('github_repo_owner') or not repo.get('github_repo_name'):
        remote = repo['github_remote']
        try:
            remote_url = git_cmd.run_cmd(f"remote get-url {remote}")
        except StackError as e:
            logger.warning(f"Failed to read url of remote '{remote}': {e}")
            return config
        parsed = parse_remote_url(remote_url)
        if parsed is None:
            logger.warning(f"Cannot derive repository owner/name from remote url {remote_url}")
            return config
        host, owner, name = parsed
        if not repo.get('github_repo_owner'):
            repo['github_repo_owner'] = owner
        if not repo.get('github_repo_name'):
            repo['github_repo_name'] = name
        configured_host = isinstance(file_config.get('repo'), dict) and 'github_host' in file_config['repo']
        if not configured_host and '.' in host and not remote_url.startswith(('file://', '/')):
            repo['github_host'] = host

    return config
