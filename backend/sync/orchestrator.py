"""Full sync — every step for one merchant, in dependency order."""

import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.sync import sync_catalog
from catalog.vendors import sync_vendors
from inventory.committed import sync_committed_inventory
from inventory.counts import sync_inventory
from inventory.locations import sync_locations
from sales.velocity import sync_sales_velocity_all_periods

logger = structlog.get_logger()

# Locations and vendors first: catalog variations link to vendors, and every
# inventory and sales query is scoped to active locations.
FULL_SYNC_STEPS = (
    ("locations", sync_locations),
    ("vendors", sync_vendors),
    ("catalog", sync_catalog),
    ("inventory", sync_inventory),
    ("committed_inventory", sync_committed_inventory),
    ("sales_velocity", sync_sales_velocity_all_periods),
)


async def run_full_sync(db: AsyncSession, merchant_id: uuid.UUID, client) -> dict:
    """Run every step; a failed step is recorded and the rest still run."""
    log = logger.bind(merchant_id=str(merchant_id))
    steps: dict[str, dict] = {}
    errors: list[dict[str, str]] = []

    for name, step in FULL_SYNC_STEPS:
        try:
            steps[name] = await step(db, merchant_id, client)
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            log.error("full_sync.step_failed", step=name, error=str(exc), exc_info=True)
            errors.append({"step": name, "error": str(exc)})

    log.info("full_sync.completed", steps=list(steps), failed=[e["step"] for e in errors])
    return {"steps": steps, "errors": errors}
