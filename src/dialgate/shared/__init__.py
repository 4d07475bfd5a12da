"""
Shared utilities and infrastructure components.

Logging, errors, phone normalization, time helpers, keyed locks and the
async database manager used by the SQL state store.
"""
