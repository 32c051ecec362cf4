"""
flagkit - feature flag and progressive rollout engine.
"""

__version__ = "0.1.0"
