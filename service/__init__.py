"""
Runtime wiring for the tool server's resilience subsystem.
"""

from .runtime import ResilienceRuntime

__all__ = ["ResilienceRuntime"]
