"""
Configuration models for the IaC Migrator.

This module defines the Pydantic model describing one migration: where the
Serverless project lives, where generated CDK code goes, which stack is
targeted, and how the orchestrator persists its state.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from iac_migrator.utils.helpers import load_config_file


class CdkLanguage(str, Enum):
    """Languages the generated CDK application can be written in."""
    TYPESCRIPT = "typescript"
    PYTHON = "python"
    JAVA = "java"
    CSHARP = "csharp"


class MigrationConfig(BaseModel):
    """Configuration captured when a migration is initialized."""
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    source_dir: str = Field(..., description="Serverless project directory")
    target_dir: str = Field(..., description="Directory for the generated CDK application")
    stack_name: str = Field(..., description="CloudFormation stack being migrated")
    stage: str = "dev"
    region: str = "us-east-1"
    account_id: Optional[str] = None
    profile: Optional[str] = None
    cdk_language: CdkLanguage = CdkLanguage.TYPESCRIPT
    dry_run: bool = False
    auto_approve: bool = False
    state_dir: Optional[str] = None
    backup_dir: Optional[str] = None
    keep_backups: Optional[int] = Field(default=20, ge=1)
    step_timeout: Optional[float] = Field(default=None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('source_dir', 'target_dir', 'stack_name')
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('Value must not be blank')
        return v

    @field_validator('account_id')
    @classmethod
    def account_id_format(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and (len(v) != 12 or not v.isdigit()):
            raise ValueError('AWS account ID must be 12 digits')
        return v

    @classmethod
    def from_file(cls, file_path: Union[str, Path]) -> "MigrationConfig":
        """Load a configuration from a YAML or JSON file."""
        return cls.model_validate(load_config_file(file_path))

    def resolve_state_dir(self, working_dir: Optional[Union[str, Path]] = None) -> Path:
        """Directory holding the state snapshot for this migration."""
        if self.state_dir:
            return Path(self.state_dir)
        return Path(working_dir or Path.cwd()) / ".migration-state"
