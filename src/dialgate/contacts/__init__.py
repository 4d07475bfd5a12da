"""
Contact targets.

Lightweight package: only the Target dataclass lives here.
"""

__all__: list[str] = []
