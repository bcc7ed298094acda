from .catalog import Product, ProductVariant
from .cart import Cart, CartItem
from .customers import CustomerAddress
from .inventory import InventoryItem, InventoryMovement
from .orders import Order, OrderItem, OrderStatusHistory
from .payments import Payment, BankTransferProof

__all__ = [
    'Product', 'ProductVariant',
    'Cart', 'CartItem',
    'CustomerAddress',
    'InventoryItem', 'InventoryMovement',
    'Order', 'OrderItem', 'OrderStatusHistory',
    'Payment', 'BankTransferProof',
]
