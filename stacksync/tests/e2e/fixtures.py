"""Test fixtures for end-to-end tests against a local remote and fake GitHub."""

import logging
from pathlib import Path
from typing import Generator

import pytest

from stacksync.tests.e2e.test_helpers import RepoContext, create_repo_context

logger = logging.getLogger(__name__)

@pytest.fixture
def repo_ctx(tmp_path: Path) -> Generator[RepoContext, None, None]:
    """Working copy with a bare origin and an in-memory GitHub."""
    logger.info(f"Creating test repository in {tmp_path}")
    yield from create_repo_context("acme", "widgets", tmp_path)
