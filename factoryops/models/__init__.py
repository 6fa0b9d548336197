"""
Database models
"""
from factoryops.models.production_order import ProductionOrderRecord
from factoryops.models.inventory import (
    InventoryItem,
    InventoryBatch,
    MaterialAllocation,
    InventoryTransaction,
)

__all__ = [
    "ProductionOrderRecord",
    "InventoryItem",
    "InventoryBatch",
    "MaterialAllocation",
    "InventoryTransaction",
]
