"""CLI entry point."""

import os
import sys
import signal
import click
import yaml
import logging
from types import FrameType
from typing import Any, Dict, Optional, Tuple
from click import Context
from pydantic import ValidationError

from ... import setup_logging
from ...config import Config, default_config
from ...config.config_parser import CONFIG_FILE_NAME, parse_config
from ...engine import StackedPR
from ...errors import StackError
from ...git import RealGit
from ...github import GitHubClient, find_github_token
from ...pretty import (print_header, print_json, print_land_report, print_status_report,
                       print_sync_report, status_data)
from ...typing import GitInterface

# Get module logger
logger = logging.getLogger(__name__)

class AliasedGroup(click.Group):
    """Command group with support for aliases."""

    def __init__(self, name: Optional[str] = None, commands: Optional[Dict[str, click.Command]] = None, **attrs: Any) -> None:
        """Initialize with aliases map."""
        super().__init__(name, commands, **attrs)
        self.aliases: Dict[str, str] = {}

    def add_alias(self, alias: str, command: str) -> None:
        """Add an alias for a command."""
        self.aliases[alias] = command

    def get_command(self, ctx: Context, cmd_name: str) -> Optional[click.Command]:
        """Get a command by name, supporting aliases."""
        if cmd_name in self.aliases:
            cmd_name = self.aliases[cmd_name]
        return super().get_command(ctx, cmd_name)

@click.group(cls=AliasedGroup)
@click.version_option(package_name="stacksync")
@click.pass_context
def cli(ctx: Context) -> None:
    """stacksync - keep a stack of commits in sync with stacked pull requests."""
    ctx.ensure_object(dict)

def restore_git_state(git_cmd: GitInterface, git_dir: str) -> None:
    """Abort a rebase left in progress by an interrupted land."""
    if not any(os.path.isdir(os.path.join(git_dir, d)) for d in ("rebase-merge", "rebase-apply")):
        return
    logger.info("Attempting to restore repository state...")
    try:
        git_cmd.must_git("rebase --abort")
        logger.info("Aborted in-progress rebase")
    except StackError as e:
        logger.error(f"Failed to abort rebase: {e}")
        logger.error("Repository may be in an inconsistent state")
        logger.error("To manually restore: git rebase --abort")

def setup_git(directory: Optional[str] = None, pretend: bool = False) -> Tuple[Config, RealGit, GitHubClient]:
    """Setup Git command, config and GitHub client."""
    if directory:
        os.chdir(directory)

    try:
        git_cmd = RealGit(default_config())
    except StackError as e:
        logger.error(f"{e}")
        sys.exit(2)

    try:
        cfg = parse_config(git_cmd, git_cmd.working_dir)
        config = Config(cfg)
    except (ValidationError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Invalid {CONFIG_FILE_NAME}: {e}")
        sys.exit(2)
    if pretend:
        config.tool.pretend = True
    git_cmd = RealGit(config, git_cmd.working_dir)

    from ...github.adapters import create_github

    token = find_github_token(config.repo.github_host)
    if not token:
        error_msg = "No GitHub token found. Try one of:\n1. Set GITHUB_TOKEN env var\n2. Log in with 'gh auth login'"
        logger.error(error_msg)
        sys.exit(2)

    github_client = create_github(token, config.repo.github_host, config.tool.request_timeout)
    github = GitHubClient(config, github_client)
    return config, git_cmd, github

def install_interrupt_handler(stackedpr: StackedPR) -> None:
    """First Ctrl-C stops between operations, the second one aborts."""
    def handler(signum: int, frame: Optional[FrameType]) -> None:
        signal.signal(signal.SIGINT, signal.default_int_handler)
        logger.warning("Interrupted, stopping after in-flight operations (Ctrl-C again to abort)")
        stackedpr.cancel()

    signal.signal(signal.SIGINT, handler)

def common_options(func: Any) -> Any:
    func = click.option('-v', '--verbose', count=True,
                        help="Increase verbosity (can be used multiple times for more verbosity)")(func)
    func = click.option('-C', '--directory', type=click.Path(exists=True, file_okay=False, dir_okay=True),
                        help='Run as if stacksync was started in DIRECTORY instead of the current working directory')(func)
    return func

@cli.command(name="sync", help="Create and update pull requests so they match the local stack")
@common_options
@click.option('--pretend', is_flag=True, help="Don't actually push or create/update pull requests, just show what would happen")
@click.option('--draft', is_flag=True, help="Open new pull requests as drafts")
@click.option('--update-message', is_flag=True,
              help="Overwrite pull request titles and descriptions with the commit messages")
@click.pass_context
def sync(ctx: Context, directory: Optional[str], verbose: int, pretend: bool,
         draft: bool, update_message: bool) -> None:
    """Sync command."""
    setup_logging(verbose)
    config, git_cmd, github = setup_git(directory, pretend)
    if draft:
        config.tool.draft = True
    if update_message:
        config.tool.update_message = True
    stackedpr = StackedPR(config, github, git_cmd)
    install_interrupt_handler(stackedpr)

    try:
        report = stackedpr.sync_stack()
    except StackError as e:
        logger.error(f"{e}")
        sys.exit(1)

    print_header("Pretend sync" if config.tool.pretend else "Sync", use_emoji=False)
    print_sync_report(report)
    if report.failed:
        sys.exit(1)

@cli.command(name="land", help="Merge the bottom pull request and restack the rest onto the target branch")
@common_options
@click.option('--count', '-c', type=click.IntRange(min=1), default=1, show_default=True,
              help="Land up to this many pull requests from the bottom of the stack")
@click.option('--pretend', is_flag=True, help="Don't actually merge, just show what would happen")
@click.pass_context
def land(ctx: Context, directory: Optional[str], verbose: int, count: int, pretend: bool) -> None:
    """Land command."""
    setup_logging(verbose)
    config, git_cmd, github = setup_git(directory, pretend)
    stackedpr = StackedPR(config, github, git_cmd)
    install_interrupt_handler(stackedpr)

    try:
        report = stackedpr.land(count)
    except StackError as e:
        logger.error(f"Error during land: {e}")
        restore_git_state(git_cmd, git_cmd.git_dir)
        sys.exit(1)

    print_header("Land", use_emoji=False)
    print_land_report(report)
    if report.failed:
        sys.exit(1)

@cli.command(name="status", help="Show the stack, its pull requests and what sync would change")
@common_options
@click.option('--json', 'as_json', is_flag=True, help="Print the status as JSON")
@click.pass_context
def status(ctx: Context, directory: Optional[str], verbose: int, as_json: bool) -> None:
    """Status command."""
    setup_logging(verbose)
    config, git_cmd, github = setup_git(directory)
    stackedpr = StackedPR(config, github, git_cmd)

    try:
        report = stackedpr.status()
    except StackError as e:
        logger.error(f"{e}")
        sys.exit(1)

    if as_json:
        print_json(status_data(report))
        return
    print_header(f"Stack on {config.upstream_ref}", use_emoji=False)
    print_status_report(report)
    if report.plan.diverged:
        sys.exit(1)


def main() -> None:
    """Main entry point."""
    # Add command aliases
    cli.add_alias('up', 'sync')
    cli.add_alias('st', 'status')
    cli(obj={})

if __name__ == "__main__":
    main()
