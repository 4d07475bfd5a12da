"""
Retry state and scheduling.

NOTE: keep this package __init__ lightweight; import submodules directly.
"""

__all__: list[str] = []
