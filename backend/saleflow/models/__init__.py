from .inventory import Product, StockMovement
from .sales import Sale, SaleItem, SalePayment, SaleRefund, SaleRefundLine
from .orders import Order, OrderItem, OrderStatusHistory, OrderPaymentTransaction
from .customers import Customer, CustomerCreditTransaction
from .payments import MpesaTransaction
from .sequences import Counter

__all__ = [
    'Product', 'StockMovement',
    'Sale', 'SaleItem', 'SalePayment', 'SaleRefund', 'SaleRefundLine',
    'Order', 'OrderItem', 'OrderStatusHistory', 'OrderPaymentTransaction',
    'Customer', 'CustomerCreditTransaction',
    'MpesaTransaction',
    'Counter',
]
