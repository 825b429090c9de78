"""
keybridge CLI module.

This module provides the command-line interface for keybridge.
"""

from .main import cli, main

__all__ = ["cli", "main"]
