"""
Core module for the IaC Migrator.

This module contains the error type shared by every component.
"""

from iac_migrator.core.exceptions import ErrorKind, MigrationError

__all__ = [
    "ErrorKind",
    "MigrationError",
]
