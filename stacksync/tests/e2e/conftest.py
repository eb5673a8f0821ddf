"""Configuration for pytest."""

# Import fixtures to make them available to all tests
from stacksync.tests.e2e.fixtures import repo_ctx  # noqa: F401
