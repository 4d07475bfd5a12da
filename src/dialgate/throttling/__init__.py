"""
Throughput limiting for attempt starts.
"""

__all__: list[str] = []
