from .catalog import Unit, Product
from .auth import User, SessionToken
from .inventory import Conversion, ConversionLog, StockEntry, CONVERSION_TYPES
from .transactions import Transaction, TransactionItem, TransactionSequence, TRANSACTION_TYPES, PAYMENT_METHODS

__all__ = [
    'Unit', 'Product',
    'User', 'SessionToken',
    'Conversion', 'ConversionLog', 'StockEntry',
    'Transaction', 'TransactionItem', 'TransactionSequence',
    'CONVERSION_TYPES', 'TRANSACTION_TYPES', 'PAYMENT_METHODS',
]
