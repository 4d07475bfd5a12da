"""
Telephony package.

Keep package import side-effects to a minimum to avoid circular imports.
Do not import adapters here.
"""

__all__ = [
    "interface",
    "events",
    "mock_adapter",
]
