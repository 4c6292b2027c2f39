"""
Shared test fixtures and configuration for vdiwave tests.

This module provides common fixtures used across all test types:
- Clone and pool builders
- A fake broker implementing inventory, replica lookup and commands
- Isolation of the user config directory
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

import pytest

from vdiwave.broker_client import TOKEN_ENV_VAR
from vdiwave.config_manager import ConfigManager
from vdiwave.inventory import Clone, FullClonePool, LinkedClonePool, filter_idle_clones
from vdiwave.schedule_executor import CommandResult

# ============================================================================
# BUILDERS
# ============================================================================


def make_clones(pool_id: str, count: int, prefix: str | None = None) -> list[Clone]:
    """Create count idle clones named <prefix>-NNN in pool_id."""
    prefix = prefix or pool_id
    return [
        Clone(id=f"{pool_id}-vm-{i:03d}", name=f"{prefix}-{i:03d}", pool_id=pool_id)
        for i in range(count)
    ]


def make_pool(
    pool_id: str,
    image: str = "/dc/vm/gold-win11",
    snapshot: str = "/base/2026-10",
) -> LinkedClonePool:
    """Create a linked-clone pool."""
    return LinkedClonePool(
        id=pool_id,
        name=pool_id.capitalize(),
        parent_image_path=image,
        parent_snapshot_path=snapshot,
    )


# ============================================================================
# FAKE BROKER
# ============================================================================


class FakeBroker:
    """In-memory broker implementing all three scheduler collaborators.

    Records every replica lookup and command so tests can assert on them.
    """

    def __init__(
        self,
        pools: Sequence[LinkedClonePool | FullClonePool] = (),
        clones: Sequence[Clone] = (),
        provisioned: Iterable[tuple[str, str]] = (),
    ):
        self.pools = list(pools)
        self.clones = list(clones)
        self.provisioned = set(provisioned)
        self.replica_queries: list[tuple[str, str]] = []
        self.commands: list[dict] = []
        self.fail_pools: set[str] = set()
        self.replica_errors: set[tuple[str, str]] = set()

    def list_pools(self):
        return list(self.pools)

    def list_clones(self, pool_ids=None):
        clones = self.clones
        if pool_ids is not None:
            wanted = set(pool_ids)
            clones = [c for c in clones if c.pool_id in wanted]
        return filter_idle_clones(clones)

    def find_snapshot_clones(self, image_path, snapshot_path):
        key = (image_path, snapshot_path)
        self.replica_queries.append(key)
        if key in self.replica_errors:
            raise ConnectionError("composer database unavailable")
        return ["replica-clone"] if key in self.provisioned else []

    def recompose(self, clones, image_path, snapshot_path, when, force_logoff=False, stop_on_error=False):
        return self._record(
            "recompose",
            clones,
            when,
            force_logoff,
            stop_on_error,
            image_path=image_path,
            snapshot_path=snapshot_path,
        )

    def refresh(self, clones, when, force_logoff=False, stop_on_error=False):
        return self._record("refresh", clones, when, force_logoff, stop_on_error)

    def _record(self, operation, clones, when, force_logoff, stop_on_error, **extra):
        pool_id = clones[0].pool_id
        self.commands.append(
            {
                "operation": operation,
                "pool_id": pool_id,
                "clones": [c.name for c in clones],
                "when": when,
                "force_logoff": force_logoff,
                "stop_on_error": stop_on_error,
                **extra,
            }
        )
        if pool_id in self.fail_pools:
            raise RuntimeError(f"broker rejected {operation} for {pool_id}")
        return CommandResult(attempted=len(clones), successful=len(clones) - 1, unchanged=1)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def protect_production_config(tmp_path, monkeypatch):
    """Point ~/.vdiwave at a temporary directory for every test.

    CRITICAL PROTECTION: Tests should NEVER read or modify the real
    ~/.vdiwave/config.toml, and never pick up a real broker token.
    """
    config_dir = tmp_path / ".vdiwave"
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_DIR", config_dir)
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_dir / "config.toml")
    monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)
    return config_dir


@pytest.fixture
def clone_factory():
    """Factory for idle clones: clone_factory(pool_id, count)."""
    return make_clones


@pytest.fixture
def pool_factory():
    """Factory for linked-clone pools: pool_factory(pool_id, image=..., snapshot=...)."""
    return make_pool


@pytest.fixture
def broker_factory():
    """The FakeBroker class, for tests that need a custom inventory."""
    return FakeBroker


@pytest.fixture
def fixed_now():
    """Fixed reference time for slot calculations."""
    return datetime(2026, 10, 19, 22, 0, tzinfo=timezone.utc)


@pytest.fixture
def fake_broker():
    """Broker with three linked-clone pools and one full-clone pool.

    - sales: 65 clones, replica provisioned
    - support: 10 clones on a new snapshot (no replica)
    - lab: 45 clones sharing the sales image/snapshot
    - kiosk: full-clone pool (never eligible)
    """
    pools = [
        make_pool("sales"),
        make_pool("support", snapshot="/base/2026-11"),
        make_pool("lab"),
        FullClonePool(id="kiosk", name="Kiosk"),
    ]
    clones = (
        make_clones("sales", 65)
        + make_clones("support", 10)
        + make_clones("lab", 45)
        + make_clones("kiosk", 5)
    )
    return FakeBroker(
        pools=pools,
        clones=clones,
        provisioned=[("/dc/vm/gold-win11", "/base/2026-10")],
    )
