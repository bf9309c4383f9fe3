"""Global pytest configuration and fixtures."""

import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from infrahub_backup.backup.exporters.watchdog import WATCHDOG_ASSETS
from infrahub_backup.config import InfrahubOpsConfig


@pytest.fixture
def watchdog_assets(tmp_path):
    """Directory holding placeholder watchdog binaries for every architecture."""
    asset_dir = tmp_path / "watchdog"
    asset_dir.mkdir()
    for name in WATCHDOG_ASSETS.values():
        (asset_dir / name).write_bytes(b"\x7fELF watchdog")
    return asset_dir


@pytest.fixture
def ops_config(tmp_path, watchdog_assets):
    """Configuration with no quiesce delay and a short task wait."""
    return InfrahubOpsConfig(
        backup_dir=str(tmp_path / "backups"),
        quiesce_delay=0,
        task_wait_timeout=0.2,
        watchdog_asset_dir=str(watchdog_assets),
    )
