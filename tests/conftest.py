"""Test configuration."""

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

project_dir = Path(__file__).parent.parent

# Load .env.test when present, and always run in testing mode
env_test_file = project_dir / ".env.test"
if env_test_file.exists():
    load_dotenv(env_test_file, override=True)
os.environ["TESTING"] = "true"

from media_relay.core.logging import configure_logging  # noqa: E402

fixture = pytest.fixture

pytest_plugins: list[str] = [
    "tests.fixtures.db",
    "tests.fixtures.storage",
    "tests.fixtures.runtime",
]


@fixture(scope="session")
def project_root() -> Path:
    """Get the project root directory."""
    return project_dir


@fixture(scope="session", autouse=True)
def configure_test_logging() -> None:
    """Use key/value logs during tests."""
    configure_logging(testing=True, level="debug")
