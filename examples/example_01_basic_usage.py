"""Example 01: Basic Usage - adstore Fundamentals.

This example demonstrates the fundamental operations:
- Opening a repository over a local SQLite database
- Provisioning a company and creating campaigns under it
- Filter-scoped saves that leave other property categories untouched
- Associations, status changes and reading historical versions
- Writing an entity as JSON
"""

import os

from adstore import (
    Entity,
    EntityFilter,
    EntityId,
    EntityProperty,
    RequestContext,
    entity_to_json,
    open_repository,
)
from adstore.registry import CAMPAIGN, COMPANY, PARTNER


def main():
    """Run the basic usage example."""
    print("=" * 80)
    print("ADSTORE BASIC USAGE EXAMPLE")
    print("=" * 80)

    # Step 1: Open the repository
    # Index and payloads share one SQLite file. Use a local path (not /tmp).
    os.makedirs("tmp", exist_ok=True)
    repo = open_repository("tmp/basic_usage.db")
    print("\n✓ Repository opened: tmp/basic_usage.db")

    # Step 2: Provision a company
    # Every new entity is created in the table owned by the company named in the context.
    company_id = EntityId.new()
    ctx = RequestContext(
        external_company_id=str(company_id),
        user_id="example",
        entity_filter=EntityFilter.everything(),
    )
    company = repo.add_company(
        ctx, Entity(external_entity_id=company_id, entity_category=COMPANY, external_name="Acme")
    )
    print(f"✓ Company {company.external_name} stored in table {company.key.table}")

    # Step 3: Create entities
    partner = repo.save_entity(ctx, repo.registry.create(PARTNER, "Agency"))
    campaign = repo.registry.create(
        CAMPAIGN,
        "Spring Launch",
        external_type="Display",
        properties=[EntityProperty.system("Pacing", "even")],
        Budget=1000.0,
    )
    campaign = repo.save_entity(ctx, campaign.associate("Partners", [partner]))
    print(f"✓ Campaign saved at version {campaign.local_version}")

    # Step 4: Filter-scoped update
    # Only Default properties are replaced; the System property survives.
    default_only = ctx.evolve(entity_filter=EntityFilter.client_default())
    campaign = repo.save_entity(
        default_only, campaign.evolve(properties=(EntityProperty("Budget", 1500.0),))
    )
    current = repo.get_entity(ctx, campaign.external_entity_id)
    print(f"✓ Version {current.local_version}: Budget={current.property_value('Budget')}, "
          f"Pacing={current.property_value('Pacing')}")

    # Step 5: Historical reads
    pinned = ctx.evolve(entity_filter=EntityFilter.everything().with_version(0))
    original = repo.get_entity(pinned, campaign.external_entity_id)
    print(f"✓ Version 0 Budget: {original.property_value('Budget')}")
    for key in repo.get_entity_history(ctx, campaign.external_entity_id):
        print(f"  v{key.local_version}: {key.table}/{key.partition}/{key.row_id}")

    # Step 6: Status
    # Deactivating the partner hides it from the campaign's current associations.
    repo.set_entity_status(ctx, [partner.external_entity_id], False)
    current = repo.get_entity(ctx, campaign.external_entity_id)
    print(f"✓ Associations after deactivating partner: {len(current.associations)}")

    # Step 7: JSON
    print("\nClient view:")
    print(entity_to_json(current))

    repo.close()


if __name__ == "__main__":
    main()
