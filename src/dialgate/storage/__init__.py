"""
State persistence.

Components stay authoritative in memory; stores only hold snapshots.
"""

__all__: list[str] = []
