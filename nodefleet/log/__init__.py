"""
Logging module for the supervisor.
This module provides the function that configures console and Loki logging.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
