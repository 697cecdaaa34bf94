"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from access_controller.config import Config  # noqa: E402
from access_controller.security import FORBIDDEN_CREDENTIAL_ENV_VARS  # noqa: E402

ORGANIZATION_URL = "https://dev.azure.com/contoso"
TENANT_ID = "72f988bf-86f1-41af-91ab-2d7cd011db47"
SUBSCRIPTION_ID = "11111111-2222-3333-4444-555555555555"


@pytest.fixture(autouse=True)
def clean_credential_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer credentials and policy overrides out of tests."""
    for var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("ALLOW_HIGH_PRIVILEGE_ROLES", raising=False)
    monkeypatch.delenv("ALLOW_BROAD_RBAC_SCOPES", raising=False)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Empty directory for service connection definitions."""
    directory = tmp_path / "config"
    directory.mkdir()
    return directory


@pytest.fixture
def make_config(config_dir: Path):
    """Factory for valid configurations."""

    def _make(**overrides: object) -> Config:
        values: dict[str, object] = {
            "organization_url": ORGANIZATION_URL,
            "project": "platform",
            "tenant_id": TENANT_ID,
            "config_dir": config_dir,
        }
        values.update(overrides)
        return Config(**values)

    return _make
