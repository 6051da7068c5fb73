"""
Durable state storage for migrations.

The StateManager keeps one live snapshot of a migration's state on disk.
Before every overwrite the previous snapshot is copied into a timestamped
backup, so any save can be undone by restoring a backup.
"""

import json
import logging
import os
import shutil
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import List, Optional, Union

from pydantic import TypeAdapter, ValidationError

from iac_migrator.core.exceptions import ErrorKind, MigrationError
from iac_migrator.models.state import BackupInfo, MigrationState
from iac_migrator.orchestrator.checkpoints import CheckpointExecution
from iac_migrator.utils.helpers import utc_now

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"
BACKUP_PREFIX = "state-"
BACKUP_SUFFIX = ".json"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"

_history_adapter = TypeAdapter(List[CheckpointExecution])


class StateManager:
    """
    Persists a single migration state snapshot with mandatory backups.

    The state directory holds ``state.json`` plus a ``checkpoints/`` folder
    for checkpoint history. Backups go to ``backups/`` inside the state
    directory unless another location is configured.

    Write failures propagate unchanged: losing track of progress in a
    destructive migration is not something to recover from locally.
    """

    def __init__(
        self,
        state_dir: Union[str, Path],
        backup_dir: Optional[Union[str, Path]] = None
    ):
        self.state_dir = Path(state_dir)
        self.state_file = self.state_dir / STATE_FILE_NAME
        self.backup_dir = Path(backup_dir) if backup_dir else self.state_dir / "backups"
        self.checkpoint_dir = self.state_dir / "checkpoints"

    def has_state(self) -> bool:
        """Whether a snapshot has been written."""
        return self.state_file.exists()

    async def save_state(self, state: MigrationState) -> Optional[BackupInfo]:
        """
        Persist ``state`` as the live snapshot.

        The existing snapshot, if any, is first copied to a new backup.

        Returns:
            The backup created from the previous snapshot, or None on first save
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)

        backup = None
        if self.state_file.exists():
            backup = self._backup_current_snapshot()

        state.touch()
        self._write_atomic(self.state_file, state.model_dump_json(indent=2))
        logger.debug(f"Saved state {state.id} at step {state.current_step.value}")
        return backup

    async def load_state(self) -> Optional[MigrationState]:
        """
        Load the live snapshot.

        Returns:
            The stored state, or None if nothing has been saved yet

        Raises:
            MigrationError: with kind STATE_CORRUPT if the snapshot cannot be parsed
        """
        if not self.state_file.exists():
            return None
        return self._read_state_file(self.state_file)

    async def list_backups(self) -> List[BackupInfo]:
        """List backups, newest first."""
        if not self.backup_dir.exists():
            return []

        backups = []
        for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"):
            created_at = self._parse_backup_timestamp(path.name)
            if created_at is None:
                logger.warning(f"Ignoring backup with unrecognized name: {path.name}")
                continue
            backups.append(BackupInfo(
                identifier=path.name,
                created_at=created_at,
                path=str(path)
            ))

        return sorted(backups, key=lambda b: b.identifier, reverse=True)

    async def restore_from_backup(self, identifier: str) -> MigrationState:
        """
        Read a backup without touching the live snapshot.

        The caller decides whether to commit the returned state with save_state.
        """
        path = self.backup_dir / Path(identifier).name
        if not path.exists():
            raise MigrationError(
                f"Backup not found: {identifier}",
                kind=ErrorKind.BACKUP_NOT_FOUND,
                details={"identifier": identifier, "backup_dir": str(self.backup_dir)}
            )
        return self._read_state_file(path)

    async def cleanup_old_backups(self, keep_count: int) -> int:
        """
        Delete all but the newest ``keep_count`` backups.

        Returns:
            Number of backups removed
        """
        if keep_count < 0:
            raise ValueError("keep_count must not be negative")

        backups = await self.list_backups()
        removed = 0
        for backup in backups[keep_count:]:
            Path(backup.path).unlink()
            removed += 1

        if removed:
            logger.info(f"Removed {removed} old state backups, kept {min(keep_count, len(backups))}")
        return removed

    async def save_checkpoint_history(
        self,
        migration_id: str,
        executions: List[CheckpointExecution]
    ):
        """Write the checkpoint execution history of a migration."""
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        history_file = self.checkpoint_dir / f"history-{migration_id}.json"
        content = _history_adapter.dump_json(executions, indent=2).decode("utf-8")
        self._write_atomic(history_file, content)

    async def load_checkpoint_history(self, migration_id: str) -> List[CheckpointExecution]:
        """Read the checkpoint execution history of a migration, if any."""
        history_file = self.checkpoint_dir / f"history-{migration_id}.json"
        if not history_file.exists():
            return []

        try:
            return _history_adapter.validate_json(history_file.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise MigrationError(
                f"Checkpoint history is corrupt: {history_file}",
                kind=ErrorKind.STATE_CORRUPT,
                details={"path": str(history_file), "error": str(e)}
            )

    def _backup_current_snapshot(self) -> BackupInfo:
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        created_at = self._next_backup_time()
        identifier = f"{BACKUP_PREFIX}{created_at.strftime(BACKUP_TIMESTAMP_FORMAT)}{BACKUP_SUFFIX}"
        destination = self.backup_dir / identifier
        shutil.copy2(self.state_file, destination)

        return BackupInfo(identifier=identifier, created_at=created_at, path=str(destination))

    def _next_backup_time(self) -> datetime:
        """A backup timestamp strictly later than every existing backup."""
        now = utc_now()
        if not self.backup_dir.exists():
            return now

        newest = None
        for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"):
            created_at = self._parse_backup_timestamp(path.name)
            if created_at and (newest is None or created_at > newest):
                newest = created_at

        if newest is not None and now <= newest:
            return newest + timedelta(microseconds=1)
        return now

    @staticmethod
    def _parse_backup_timestamp(name: str) -> Optional[datetime]:
        if not (name.startswith(BACKUP_PREFIX) and name.endswith(BACKUP_SUFFIX)):
            return None
        stamp = name[len(BACKUP_PREFIX):-len(BACKUP_SUFFIX)]
        try:
            return datetime.strptime(stamp, BACKUP_TIMESTAMP_FORMAT).replace(tzinfo=UTC)
        except ValueError:
            return None

    @staticmethod
    def _read_state_file(path: Path) -> MigrationState:
        try:
            content = path.read_text(encoding="utf-8")
            return MigrationState.model_validate(json.loads(content))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            raise MigrationError(
                f"State file is corrupt and cannot be loaded: {path}. "
                f"Restore a backup to continue.",
                kind=ErrorKind.STATE_CORRUPT,
                details={"path": str(path), "error": str(e)}
            )

    @staticmethod
    def _write_atomic(path: Path, content: str):
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
