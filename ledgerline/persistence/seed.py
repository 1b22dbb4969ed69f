from __future__ import annotations

from sqlalchemy import select

from ..seed import load_inventory_seed
from .db import Database
from .models import InventoryRow


def seed_inventory_if_empty(db: Database, seed_path: str) -> None:
    items = load_inventory_seed(seed_path)
    if not items:
        return

    with db.session() as session:
        existing = session.execute(select(InventoryRow.product_id).limit(1)).first()
        if existing:
            return
        session.add_all(
            [
                InventoryRow(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    stock_count=item.stock_count,
                    reserved_count=0,
                )
                for item in items
            ]
        )
