"""Tenant-scoped SQLite store and HTTP surface for lines and contacts."""
