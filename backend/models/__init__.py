from models.users import User
from models.product import Product, ProductVariant
from models.cart import Cart, CartItem
from models.order import Order, OrderItem, OrderStatusLog, OrderStatus, PaymentMethod, PaymentStatus
from models.stock import StockMovement, StockAlert, MovementType
from models.idempotency import IdempotencyKey
from models.log import Log
