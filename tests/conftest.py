"""
Pytest configuration and shared fixtures for provisioning server tests.
"""

import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add src to path for imports, and this directory for the shared fakes
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeRegistry, RecordingSleep  # noqa: E402


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_file(temp_dir: Path) -> Path:
    """Create a temporary config file."""
    config_path = temp_dir / "config.yaml"
    config_path.write_text("""
registry:
  host: localhost
  port: 5432
  database: controllers_test
  username: postgres
  password: postgres
  owner_id: owner-1
provisioning:
  settle_delay_seconds: 30
logging:
  level: DEBUG
  file: null
  timezone: America/New_York
""")
    return config_path


# ============================================================================
# Provisioning Fixtures
# ============================================================================

@pytest.fixture
def provisioning_config() -> dict:
    """Orchestrator settings with the production timings."""
    return {
        'settle_delay_seconds': 45,
        'max_credential_attempts': 3,
        'max_discovery_attempts': 3,
        'discovery_timeout_seconds': 15,
        'discovery_retry_delays': [2, 15],
        'manual_verify_attempts': 3,
        'manual_retry_delay_seconds': 10,
        'session_ttl_seconds': 900,
    }


@pytest.fixture
def registry() -> FakeRegistry:
    """In-memory device registry."""
    return FakeRegistry()


@pytest.fixture
def sleeper() -> RecordingSleep:
    """Sleep replacement that returns immediately and records the delays."""
    return RecordingSleep()
