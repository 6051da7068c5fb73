"""
CLI module for the IaC Migrator.

This module provides command-line interface functionality
using Click and Rich.
"""

from iac_migrator.cli.main import main

__all__ = ["main"]
