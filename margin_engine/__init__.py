"""
Seller Margin Engine

Margin, ROI and COGS applicability for marketplace sellers.
"""

__version__ = "1.0.0"
