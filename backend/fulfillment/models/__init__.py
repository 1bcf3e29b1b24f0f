from .tenancy import Store
from .catalog import Product, Carrier, CarrierZone
from .orders import OrderStatus, Order, OrderLineItem
from .inventory import InventoryMovement
from .sessions import (
    WorkSession, SessionOrder, SessionReservation, SessionSequence,
    PickingItem, PackingProgress, ReturnItem,
)
from .settlements import Settlement

__all__ = [
    'Store',
    'Product', 'Carrier', 'CarrierZone',
    'OrderStatus', 'Order', 'OrderLineItem',
    'InventoryMovement',
    'WorkSession', 'SessionOrder', 'SessionReservation', 'SessionSequence',
    'PickingItem', 'PackingProgress', 'ReturnItem',
    'Settlement',
]
