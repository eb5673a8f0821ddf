"""Unit tests for config loading."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from stacksync.config import Config, default_config
from stacksync.config.config_parser import CONFIG_FILE_NAME, load_config_file, parse_config, parse_remote_url
from stacksync.errors import GitFailure


class TestRemoteUrl:

    @pytest.mark.parametrize("url,expected", [
        ("git@github.com:acme/widgets.git", ("github.com", "acme", "widgets")),
        ("https://github.com/acme/widgets", ("github.com", "acme", "widgets")),
        ("https://github.com/acme/widgets.git", ("github.com", "acme", "widgets")),
        ("ssh://git@git.example.com:22/acme/widgets.git", ("git.example.com", "acme", "widgets")),
    ])
    def test_parse_remote_url(self, url: str, expected) -> None:
        assert parse_remote_url(url) == expected

    def test_unparseable_url(self) -> None:
        assert parse_remote_url("not a url") is None


class TestParseConfig:

    def test_defaults(self) -> None:
        config = default_config()
        assert config.target_branch == "main"
        assert config.upstream_ref == "origin/main"
        assert config.managed_branch_prefix() == "stacksync/main/"
        assert config.repo.merge_method == "squash"
        assert config.tool.retry_attempts == 3

    def test_owner_and_name_from_remote(self, tmp_path: Path) -> None:
        git_cmd = MagicMock()
        git_cmd.run_cmd.return_value = "git@git.example.com:acme/widgets.git"
        config = Config(parse_config(git_cmd, str(tmp_path)))
        git_cmd.run_cmd.assert_called_once_with("remote get-url origin")
        assert config.repo.github_repo_owner == "acme"
        assert config.repo.github_repo_name == "widgets"
        assert config.repo.github_host == "git.example.com"

    def test_config_file(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILE_NAME).write_text(
            "repo:\n"
            "  github_remote: upstream\n"
            "  github_branch: develop\n"
            "  github_repo_owner: acme\n"
            "  github_repo_name: widgets\n"
            "  merge_method: rebase\n"
            "  require_approval: false\n"
            "tool:\n"
            "  stacksync:\n"
            "    concurrency: 4\n"
        )
        git_cmd = MagicMock()
        config = Config(parse_config(git_cmd, str(tmp_path)))
        git_cmd.run_cmd.assert_not_called()
        assert config.upstream_ref == "upstream/develop"
        assert config.repo.merge_method == "rebase"
        assert config.repo.require_approval is False
        assert config.tool.concurrency == 4

    def test_configured_host_wins(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILE_NAME).write_text("repo:\n  github_host: ghe.internal\n")
        git_cmd = MagicMock()
        git_cmd.run_cmd.return_value = "git@github.com:acme/widgets.git"
        config = Config(parse_config(git_cmd, str(tmp_path)))
        assert config.repo.github_host == "ghe.internal"

    def test_unreadable_remote_keeps_defaults(self, tmp_path: Path) -> None:
        git_cmd = MagicMock()
        git_cmd.run_cmd.side_effect = GitFailure("No such remote 'origin'")
        config = Config(parse_config(git_cmd, str(tmp_path)))
        assert config.repo.github_repo_owner is None

    def test_config_file_must_be_mapping(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILE_NAME).write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_config_file(str(tmp_path))

    def test_empty_config_file(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILE_NAME).write_text("")
        assert load_config_file(str(tmp_path)) == {}

    def test_invalid_values_are_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Config({'repo': {'merge_method': 'octopus'}, 'user': {}})
        with pytest.raises(ValidationError):
            Config({'repo': {}, 'user': {}, 'tool': {'stacksync': {'retry_attempts': 0}}})
