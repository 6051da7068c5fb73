"""
Utilities module for the IaC Migrator.

This module contains utility functions and helper classes
used throughout the application.
"""

from iac_migrator.utils.helpers import (
    format_duration,
    generate_migration_id,
    load_config_file,
    utc_now,
)
from iac_migrator.utils.logging import (
    MigrationLogger,
    get_logger,
    setup_logging,
)

__all__ = [
    # Helper functions
    "format_duration",
    "generate_migration_id",
    "load_config_file",
    "utc_now",
    # Logging utilities
    "setup_logging",
    "get_logger",
    "MigrationLogger",
]
