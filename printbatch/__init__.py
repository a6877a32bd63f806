"""
Print Batching Pipeline

Line item enrichment, print batch assignment, order status aggregation
and Royal Mail manifest reconciliation over a tabular workbook.
"""

__version__ = "1.0.0"
