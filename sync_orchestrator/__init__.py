"""Sync orchestrator for ads and commerce platform data"""

__version__ = "0.1.0"
