"""
Load generator for the library service.

Drives concurrent virtual users that create books over REST or gRPC, sampling
an author id from a fixed pool for every request and checking the response
status of each call.
"""

from .main import main, run_scenario

__all__ = ["main", "run_scenario"]
