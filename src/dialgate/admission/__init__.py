"""
Per-target admission control.
"""

__all__: list[str] = []
