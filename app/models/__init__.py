from .inbound_item import IngestedItem, ItemStatus

__all__ = [
    "IngestedItem",
    "ItemStatus",
]
