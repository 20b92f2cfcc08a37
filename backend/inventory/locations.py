"""Location sync — mirrors Square locations and their active flag."""

import uuid
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Location
from db.session import upsert

logger = structlog.get_logger()


def map_location(location: dict, merchant_id: uuid.UUID) -> dict:
    """Map a Square Location to a locations row."""
    status = location.get("status")
    return {
        "merchant_id": merchant_id,
        "square_id": location["id"],
        "name": location.get("name", "Unknown"),
        "status": status,
        "active": status == "ACTIVE",
        "timezone": location.get("timezone"),
    }


async def sync_locations(db: AsyncSession, merchant_id: uuid.UUID, client) -> dict:
    if not merchant_id:
        raise ValueError("merchant_id is required for sync_locations")

    locations = await client.list_locations()
    for location in locations:
        values = map_location(location, merchant_id)
        stmt = upsert(db, Location).values(id=uuid.uuid4(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["merchant_id", "square_id"],
            set_={
                "name": values["name"],
                "status": values["status"],
                "active": values["active"],
                "timezone": values["timezone"],
                "updated_at": datetime.utcnow(),
            },
        )
        await db.execute(stmt)

    await db.commit()
    active = sum(1 for loc in locations if loc.get("status") == "ACTIVE")
    logger.info("locations.synced", merchant_id=str(merchant_id), count=len(locations), active=active)
    return {"count": len(locations), "active": active}
