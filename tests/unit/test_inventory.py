"""Unit tests for inventory module."""

from vdiwave.inventory import (
    Clone,
    FullClonePool,
    InventorySource,
    LinkedClonePool,
    PoolPersistence,
    filter_idle_clones,
    group_clones_by_pool,
    sort_clones,
)


class TestPoolVariants:
    """Tests for the tagged pool variants."""

    def test_linked_clone_pool(self):
        """Test that linked-clone pools carry parent paths."""
        pool = LinkedClonePool("sales", "Sales", "/dc/vm/gold", "/base/1")
        assert pool.is_linked_clone
        assert pool.parent_snapshot_path == "/base/1"
        assert pool.persistence is PoolPersistence.NON_PERSISTENT

    def test_full_clone_pool(self):
        """Test that full-clone pools have no snapshot attribute."""
        pool = FullClonePool("kiosk", "Kiosk")
        assert not pool.is_linked_clone
        assert not hasattr(pool, "parent_snapshot_path")

    def test_persistence_parse(self):
        """Test broker persistence strings."""
        assert PoolPersistence.parse("Persistent") is PoolPersistence.PERSISTENT
        assert PoolPersistence.parse("dedicated") is PoolPersistence.PERSISTENT
        assert PoolPersistence.parse("floating") is PoolPersistence.NON_PERSISTENT
        assert PoolPersistence.parse(None) is PoolPersistence.NON_PERSISTENT

    def test_fake_broker_is_inventory_source(self, fake_broker):
        """Test protocol conformance of the fake broker."""
        assert isinstance(fake_broker, InventorySource)


class TestCloneHelpers:
    """Tests for clone filtering, grouping and sorting."""

    def test_filter_idle_clones(self):
        """Test that busy and out-of-pool clones are dropped."""
        clones = [
            Clone(id="1", name="a", pool_id="p"),
            Clone(id="2", name="b", pool_id="p", pending_task="provisioning"),
            Clone(id="3", name="c", pool_id="p", in_pool=False),
        ]
        assert [c.id for c in filter_idle_clones(clones)] == ["1"]

    def test_group_clones_by_pool(self, clone_factory):
        """Test grouping by pool id."""
        groups = group_clones_by_pool(clone_factory("a", 2) + clone_factory("b", 3))
        assert {k: len(v) for k, v in groups.items()} == {"a": 2, "b": 3}

    def test_sort_clones_by_name(self):
        """Test stable name ordering."""
        clones = [Clone(id=str(i), name=n, pool_id="p") for i, n in enumerate(["vm-10", "vm-02", "vm-01"])]
        assert [c.name for c in sort_clones(clones)] == ["vm-01", "vm-02", "vm-10"]

    def test_sort_single_clone(self):
        """Test a scalar clone becomes a one-element list."""
        clone = Clone(id="1", name="solo", pool_id="p")
        assert sort_clones(clone) == [clone]
