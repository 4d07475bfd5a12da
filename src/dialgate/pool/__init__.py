"""
Originating resource selection and health tracking.
"""

__all__: list[str] = []
