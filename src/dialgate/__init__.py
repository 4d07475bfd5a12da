"""
dialgate: admission control and scheduling for outbound dialing.

Keep this module free of imports so that submodules can be loaded on their
own without pulling in SQLAlchemy or the dispatcher graph.
"""

__version__ = "0.1.0"

__all__: list[str] = ["__version__"]
