"""
Infrastructure-as-Code Migrator

Orchestrates long-running migrations of Serverless/CloudFormation stacks to
generated CDK code, with resumable state, backups, rollback and review
checkpoints.
"""

__version__ = "0.1.0"
__author__ = "IaC Migrator Team"

from iac_migrator.models.config import MigrationConfig
from iac_migrator.models.state import MigrationState, MigrationStatus, MigrationStep

__all__ = [
    "MigrationConfig",
    "MigrationState",
    "MigrationStatus",
    "MigrationStep",
]
