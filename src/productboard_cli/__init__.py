"""Bulk CSV import, export and cleanup for Productboard."""

__version__ = "0.4.0"
