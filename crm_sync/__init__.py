"""
CRM realtime data synchronization.

Mirrors remote table changes for clients, proposals and organizations into a
per-entity sync status store, with manual refresh through a pluggable storage
backend.
"""

__version__ = "0.1.0"
