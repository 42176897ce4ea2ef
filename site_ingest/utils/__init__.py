"""
Utility functions
"""
from .logger import setup_logging, get_request_logger

__all__ = [
    "setup_logging",
    "get_request_logger",
]
