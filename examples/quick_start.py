#!/usr/bin/env python3
"""
Quick Start Example - CRM Compliance Engine

This is a demonstration file prioritizing readability over production
readiness. It uses a throwaway SQLite database in a temporary directory.

The example seeds the default retention policies, adds a customer, exports
the customer's data and finally erases the customer after verifying the
deletion request.
"""

import tempfile
from pathlib import Path

from crm_compliance import ComplianceConfig, ComplianceEngine
from crm_compliance.storage.schema import leads, users


def main() -> None:
    """Quick demonstration of the compliance engine."""
    print("CRM Compliance Engine - Quick Start Example\n")

    workdir = Path(tempfile.mkdtemp(prefix="crm-compliance-"))
    config = ComplianceConfig(
        environment="development",
        database_url=f"sqlite:///{workdir / 'crm.db'}",
        export_dir=str(workdir / "exports"),
    )

    engine = ComplianceEngine.from_config(config)
    engine.initialize(seed_defaults=True)

    try:
        # 1. Retention policies
        for policy in engine.list_policies():
            days = "forever" if policy.retains_forever else f"{policy.retention_days} days"
            print(f"✓ Policy {policy.table_name}: {days}")
        print()

        # 2. A customer with some CRM activity
        customer = engine.storage.create(
            users,
            {"email": "jane.doe@example.com", "first_name": "Jane", "last_name": "Doe"},
        )
        engine.storage.create(leads, {"first_name": "Acme", "created_by": customer["id"]})

        # 3. Export the customer's data
        ticket = engine.request_export(customer["id"], export_format="json")
        status = engine.privacy.wait_for_export(ticket.export_id, timeout=30)
        print(f"✓ Export {ticket.export_id}: {status['status']}")
        print(f"  File: {workdir / 'exports' / status['file_path']}\n")

        # 4. Erase the customer; the token normally reaches them by email
        deletion = engine.request_deletion(customer["email"], "full", reason="Demo")
        token = deletion.verification_url.split("token=")[1]
        result = engine.verify_deletion(deletion.deletion_id, token)
        print(f"✓ {result.message}")

        overview = engine.get_compliance_status(customer["id"])
        print(f"  Customer status: {overview.status}")
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
