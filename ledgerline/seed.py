from __future__ import annotations

import json
from pathlib import Path
from typing import List

from pydantic import BaseModel

from .domain import InventoryRecord, LineItem


class InventorySeed(BaseModel):
    items: List[InventoryRecord]


class CartSeedEntry(BaseModel):
    cart_id: str
    user_id: str
    currency: str
    items: List[LineItem]


class CartSeed(BaseModel):
    carts: List[CartSeedEntry]


def load_inventory_seed(path: str) -> List[InventoryRecord]:
    if not path:
        return []
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    seed = InventorySeed(**data)
    return seed.items


def load_cart_seed(path: str) -> List[CartSeedEntry]:
    if not path:
        return []
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return CartSeed(**data).carts
