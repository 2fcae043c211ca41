"""
Billing & webhook consistency worker for a Shopify embedded app
"""

__version__ = "1.0.0"
