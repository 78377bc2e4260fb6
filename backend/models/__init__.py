"""Models package for the tabular data exchange system."""
from backend.models.schema import (
    Base, DataDictionary, DataDictionaryItem, Employee, Order, OrderDetail, Product
)
from backend.models.job import JobProgress, JobRun

__all__ = [
    'Base', 'DataDictionary', 'DataDictionaryItem', 'Employee', 'Order', 'OrderDetail', 'Product',
    'JobProgress', 'JobRun'
]
