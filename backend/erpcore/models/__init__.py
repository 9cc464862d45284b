from .master import Client, Warehouse, Product, PriceListEntry
from .documents import DocumentHeader, DocumentLine, SequenceCounter, SubmissionOutbox
from .inventory import LedgerEntry, StockBalance

__all__ = [
    'Client', 'Warehouse', 'Product', 'PriceListEntry',
    'DocumentHeader', 'DocumentLine', 'SequenceCounter', 'SubmissionOutbox',
    'LedgerEntry', 'StockBalance',
]
