"""
Ingestion Module
"""
from .transactions import LoadResult, TransactionIn, TransactionLoader

__all__ = ["LoadResult", "TransactionIn", "TransactionLoader"]
