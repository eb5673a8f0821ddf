"""Test helpers for e2e tests."""
import os
import shlex
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, List, Optional

import yaml

from stacksync.config import Config, default_config
from stacksync.config.config_parser import CONFIG_FILE_NAME, parse_config
from stacksync.engine import StackedPR
from stacksync.git import RealGit
from stacksync.github import GitHubClient
from stacksync.tests.e2e.fake_pygithub import FakeGithub, FakeRepository

log = logging.getLogger(__name__)

@dataclass
class RepoContext:
    """Test repository context with helpers for test operations."""
    owner: str
    name: str
    repo_dir: str
    remote_dir: str
    fake: FakeGithub

    @property
    def fake_repo(self) -> FakeRepository:
        return self.fake.get_repo(f"{self.owner}/{self.name}")

    def git(self, cmd: str) -> str:
        return run_cmd(f"git {cmd}", cwd=self.repo_dir)

    def remote_git(self, cmd: str) -> str:
        return run_cmd(f"git {cmd}", cwd=self.remote_dir)

    def make_commit(self, file: str, content: str, msg: str) -> str:
        """Write file and commit it on the current branch."""
        full_path = os.path.join(self.repo_dir, file)
        with open(full_path, "w") as f:
            f.write(f"{file}\n{content}\n")
        self.git(f"add {shlex.quote(file)}")
        self.git(f"commit -m {shlex.quote(msg)}")
        return self.git("rev-parse HEAD")

    def stack_hashes(self) -> List[str]:
        """Commits of the stack, oldest first."""
        out = self.git("rev-list --reverse origin/main..HEAD")
        return out.split() if out else []

    def remote_head(self, branch: str) -> str:
        return self.remote_git(f"rev-parse refs/heads/{branch}")

    def engine(self, pretend: bool = False, **tool: Any) -> StackedPR:
        """Build the sync engine the way the CLI does, against the fake GitHub.

        Keyword arguments override tool settings, as the sync flags do.
        """
        bootstrap = RealGit(default_config(), self.repo_dir)
        raw = parse_config(bootstrap, bootstrap.working_dir)
        if pretend:
            raw['tool']['stacksync']['pretend'] = True
        raw['tool']['stacksync'].update(tool)
        config = Config(raw)
        git_cmd = RealGit(config, self.repo_dir)
        github = GitHubClient(config, self.fake, sleep=lambda s: None)
        return StackedPR(config, github, git_cmd, sleep=lambda s: None)

    def dump_git_state(self) -> None:
        """Dump git state for debugging."""
        try:
            log.info("=== Git State Debug Info ===")
            log.info(self.git("log --oneline --decorate -n 5"))
            log.info(self.remote_git("for-each-ref --format='%(refname) %(objectname:short)'"))
        except subprocess.CalledProcessError as e:
            log.error(f"Failed to dump git state: {e}")

def run_cmd(cmd: str, cwd: Optional[str] = None, check: bool = True) -> str:
    """Run a command with consistent output capture and logging.

    Raises:
        subprocess.CalledProcessError: If command fails and check=True
    """
    log.info(f"Running command: {cmd}")
    result = subprocess.run(shlex.split(cmd), cwd=cwd, capture_output=True, text=True)
    if result.returncode != 0:
        log.info(f"Command failed ({result.returncode}): {result.stderr.strip()}")
        if check:
            raise subprocess.CalledProcessError(result.returncode, cmd, result.stdout, result.stderr)
    return result.stdout.strip()

def create_repo_context(owner: str, name: str, tmp_path: Path) -> Generator[RepoContext, None, None]:
    """Create a working copy whose origin is a local bare repository.

    The working copy is left on a `stack` branch at origin/main, with
    .stacksync.yaml committed on main.
    """
    remote_dir = tmp_path / "remote.git"
    repo_dir = tmp_path / name
    remote_dir.mkdir()
    repo_dir.mkdir()

    run_cmd("git init --bare -b main", cwd=str(remote_dir))
    run_cmd("git init -b main", cwd=str(repo_dir))
    run_cmd("git config user.name 'Test User'", cwd=str(repo_dir))
    run_cmd("git config user.email test@example.com", cwd=str(repo_dir))
    run_cmd(f"git remote add origin {remote_dir}", cwd=str(repo_dir))

    (repo_dir / "README.md").write_text(f"# {name} test repository\n")
    config_dict = {
        'repo': {
            'github_remote': 'origin',
            'github_branch': 'main',
            'github_repo_owner': owner,
            'github_repo_name': name,
        },
    }
    with open(repo_dir / CONFIG_FILE_NAME, "w") as f:
        yaml.dump(config_dict, f)
    run_cmd(f"git add README.md {CONFIG_FILE_NAME}", cwd=str(repo_dir))
    run_cmd("git commit -m 'Initial commit'", cwd=str(repo_dir))
    run_cmd("git push origin main", cwd=str(repo_dir))
    run_cmd("git fetch origin", cwd=str(repo_dir))
    run_cmd("git checkout -b stack origin/main", cwd=str(repo_dir))

    ctx = RepoContext(owner=owner, name=name, repo_dir=str(repo_dir), remote_dir=str(remote_dir),
                      fake=FakeGithub(remote_dir))
    yield ctx
