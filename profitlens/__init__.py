"""
ProfitLens Analytics Engine

Chunked loading, cost allocation and metric rollups for e-commerce P&L.
"""

__version__ = "1.0.0"
