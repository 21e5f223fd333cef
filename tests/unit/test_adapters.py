import pytest

from countersign.adapters import AdapterRegistry, CallableEntityAdapter, StaticEntityAdapter
from countersign.errors import SnapshotUnavailable


def test_registry_returns_copy_of_snapshot():
    records = StaticEntityAdapter({"7": {"total": 50}})
    registry = AdapterRegistry({"purchase_order": records})

    snapshot = registry.get_snapshot("purchase_order", "7")
    snapshot["total"] = 999

    assert registry.get_snapshot("purchase_order", "7") == {"total": 50}
    assert registry.entity_types() == ["purchase_order"]


def test_unknown_entity_type():
    with pytest.raises(SnapshotUnavailable) as excinfo:
        AdapterRegistry().get_snapshot("appointment", "1")
    assert excinfo.value.code == "snapshot_unavailable"
    assert excinfo.value.retriable


def test_adapter_failures_become_snapshot_unavailable():
    def broken(entity_id):
        raise TimeoutError("upstream timed out")

    registry = AdapterRegistry(
        {
            "expense_report": CallableEntityAdapter(broken),
            "pos_discount": CallableEntityAdapter(lambda entity_id: None),
            "purchase_order": StaticEntityAdapter(),
        }
    )
    for entity_type in ("expense_report", "pos_discount", "purchase_order"):
        with pytest.raises(SnapshotUnavailable):
            registry.get_snapshot(entity_type, "1")


def test_static_adapter_updates_in_place():
    records = StaticEntityAdapter()
    records.put(3, {"total": 10, "supplier": "ACME"})
    records.update(3, total=20)
    assert records.get_snapshot("purchase_order", "3") == {"total": 20, "supplier": "ACME"}
