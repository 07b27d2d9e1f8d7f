"""OPMS catalog module -- operational tables and the outbox-aware write path.

Provides SQLAlchemy models (Vendor, VendorMapping, Product, Item,
ProductPrice) and OpmsRepository, whose writes record change-detection
rows in the same transaction as the business change.
"""
