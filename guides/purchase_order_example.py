"""Walk a purchase order through a two-step approval."""

from pathlib import Path

from countersign import (
    ActionRequest,
    InMemoryDirectory,
    StartApprovalRequest,
    StaticEntityAdapter,
    build_service,
    load_definitions,
)
from countersign.config import CountersignConfig


def main():
    """Register the guide definitions and approve one large order."""
    # Org chart and business records the engine reads from
    directory = InMemoryDirectory(
        roles={"finance": ["frank", "fiona", "fred"], "purchasing_leads": ["lena"]},
        managers={"dave": "mia"},
    )
    orders = StaticEntityAdapter({"PO-1001": {"total": 25000, "supplier": "ACME"}})

    service = build_service(
        CountersignConfig(),
        adapters={"purchase_order": orders},
        directory=directory,
    )
    for definition in load_definitions(Path(__file__).with_name("purchase_order.yaml")):
        service.definitions.register(definition)

    if service.requires_approval("purchase_order", "PO-1001") is None:
        print("No approval needed")
        return

    instance = service.start_approval(
        StartApprovalRequest(entity_type="purchase_order", entity_id="PO-1001", requester="dave")
    )
    print(f"Started {instance.id} at {instance.current_step_id}: {instance.resolved_approvers}")

    instance = service.approve(ActionRequest(instance_id=instance.id, actor="mia"))
    print(f"Manager approved, now at {instance.current_step_id}: {instance.resolved_approvers}")

    for actor in ("frank", "fiona"):
        instance = service.approve(ActionRequest(instance_id=instance.id, actor=actor))
    print(f"Final state: {instance.state.value}")

    for event in service.get_history(instance.id):
        print(f"  #{event.sequence} {event.action.value} by {event.actor}")

    service.close()


if __name__ == "__main__":
    main()
