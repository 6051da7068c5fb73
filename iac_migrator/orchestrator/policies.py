"""
Built-in review policy.

Factories for the default checkpoints and verification probes. Each call
builds fresh objects, so every orchestrator gets its own registry.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from iac_migrator.models.state import MigrationState, MigrationStatus, MigrationStep, ProbeResult
from iac_migrator.orchestrator.checkpoints import (
    Checkpoint,
    CheckpointAction,
    CheckpointResult,
    resolve,
)
from iac_migrator.orchestrator.executors import VerificationProbe
from iac_migrator.orchestrator.state_machine import MigrationStateMachine

logger = logging.getLogger(__name__)

Approver = Callable[[Checkpoint, MigrationState, str], Union[bool, Awaitable[bool]]]

MAX_LISTED_ITEMS = 5


def _payload(state: MigrationState, step: MigrationStep) -> Dict[str, Any]:
    data = state.get_step_result(step)
    return data if isinstance(data, dict) else {}


def _summarize(items: List[str]) -> str:
    shown = ", ".join(items[:MAX_LISTED_ITEMS])
    if len(items) > MAX_LISTED_ITEMS:
        shown += f" and {len(items) - MAX_LISTED_ITEMS} more"
    return shown


def critical_differences(state: MigrationState) -> List[Dict[str, Any]]:
    """Classified differences of category ``critical`` from the compare step."""
    classifications = _payload(state, MigrationStep.COMPARE).get("classifications") or []
    return [c for c in classifications if isinstance(c, dict) and c.get("category") == "critical"]


def drifted_resources(state: MigrationState) -> List[str]:
    """Logical ids reported as drifted by the template modification step."""
    drift = _payload(state, MigrationStep.TEMPLATE_MODIFICATION).get("drift") or []
    return [
        d.get("resource_id", "<unknown>")
        for d in drift
        if isinstance(d, dict) and d.get("drifted")
    ]


async def _review(
    checkpoint: Checkpoint,
    state: MigrationState,
    message: str,
    approver: Optional[Approver]
) -> CheckpointResult:
    """Continue if auto-approved or the approver agrees, otherwise pause."""
    if state.config.auto_approve:
        logger.warning(f"[AUTO-APPROVE] {message}")
        return CheckpointResult(action=CheckpointAction.CONTINUE, message=f"Auto-approved: {message}")

    if approver is not None and await resolve(approver(checkpoint, state, message)):
        return CheckpointResult(action=CheckpointAction.CONTINUE, message=f"Approved: {message}")

    return CheckpointResult(action=CheckpointAction.PAUSE, message=f"Paused for review: {message}")


def physical_id_checkpoint(approver: Optional[Approver] = None) -> Checkpoint:
    """Pause when discovery leaves resources without a physical identifier."""

    def condition(state: MigrationState) -> bool:
        return bool(state.unresolved_resources())

    async def handler(state: MigrationState) -> CheckpointResult:
        unresolved = [r.logical_id for r in state.unresolved_resources()]
        message = (
            f"{len(unresolved)} resources need physical ID resolution: {_summarize(unresolved)}"
        )
        return await _review(checkpoint, state, message, approver)

    checkpoint = Checkpoint(
        id="physical-id-resolution",
        step=MigrationStep.DISCOVERY,
        name="Physical ID Resolution",
        description="Verify physical IDs for all tracked resources",
        condition=condition,
        handler=handler,
    )
    return checkpoint


def critical_differences_checkpoint(approver: Optional[Approver] = None) -> Checkpoint:
    """Pause when the template comparison reports critical differences."""

    def condition(state: MigrationState) -> bool:
        return bool(critical_differences(state))

    async def handler(state: MigrationState) -> CheckpointResult:
        critical = critical_differences(state)
        paths = [str(c.get("path") or c.get("difference", {}).get("path") or "<unknown path>") for c in critical]
        message = f"Found {len(critical)} critical differences: {_summarize(paths)}"
        return await _review(checkpoint, state, message, approver)

    checkpoint = Checkpoint(
        id="critical-differences",
        step=MigrationStep.COMPARE,
        name="Critical Differences Review",
        description="Review critical template differences before proceeding",
        condition=condition,
        handler=handler,
    )
    return checkpoint


def drift_checkpoint(approver: Optional[Approver] = None) -> Checkpoint:
    """Pause when deployed resources have drifted from their template."""

    def condition(state: MigrationState) -> bool:
        payload = _payload(state, MigrationStep.TEMPLATE_MODIFICATION)
        return bool(payload.get("drift_detected")) or bool(drifted_resources(state))

    async def handler(state: MigrationState) -> CheckpointResult:
        drifted = drifted_resources(state)
        if drifted:
            message = f"Drift detected on {len(drifted)} resources: {_summarize(drifted)}"
        else:
            message = "Drift detected on the deployed stack"
        return await _review(checkpoint, state, message, approver)

    checkpoint = Checkpoint(
        id="drift-detection",
        step=MigrationStep.TEMPLATE_MODIFICATION,
        name="Drift Detection",
        description="Check for manual modifications of deployed resources",
        condition=condition,
        handler=handler,
    )
    return checkpoint


def pre_import_checkpoint() -> Checkpoint:
    """Confirm import definitions exist before resources are imported."""

    def condition(state: MigrationState) -> bool:
        return True

    def handler(state: MigrationState) -> CheckpointResult:
        payload = _payload(state, MigrationStep.IMPORT_PREPARATION)
        stateful = [r for r in state.resources if r.is_stateful]
        if "import_definitions" in payload and not payload["import_definitions"] and stateful:
            return CheckpointResult(
                action=CheckpointAction.ABORT,
                message=(
                    f"Pre-import verification failed: no import definitions for "
                    f"{len(stateful)} stateful resources"
                )
            )
        return CheckpointResult(action=CheckpointAction.CONTINUE, message="All pre-import checks passed")

    return Checkpoint(
        id="pre-import-verification",
        step=MigrationStep.IMPORT_PREPARATION,
        name="Pre-Import Verification",
        description="Verify all prerequisites before importing resources",
        condition=condition,
        handler=handler,
    )


def default_checkpoints(approver: Optional[Approver] = None) -> List[Checkpoint]:
    """Build the default review checkpoints, in evaluation order."""
    return [
        physical_id_checkpoint(approver),
        critical_differences_checkpoint(approver),
        drift_checkpoint(approver),
        pre_import_checkpoint(),
    ]


def default_probes() -> List[VerificationProbe]:
    """Build verification probes that only inspect the migration state."""

    def migration_completed(state: MigrationState) -> ProbeResult:
        return ProbeResult(
            passed=state.status == MigrationStatus.COMPLETED,
            detail=f"Migration status is {state.status.value}"
        )

    def all_steps_completed(state: MigrationState) -> ProbeResult:
        missing = [s.value for s in MigrationStateMachine.get_executable_steps() if s not in state.completed_steps]
        if missing:
            return ProbeResult(passed=False, detail=f"Steps not completed: {', '.join(missing)}")
        return ProbeResult(passed=True, detail="All steps completed")

    def no_failed_steps(state: MigrationState) -> ProbeResult:
        completed = set(state.completed_steps)
        outstanding = [f for f in state.failed_steps if f.step not in completed]
        if outstanding:
            return ProbeResult(
                passed=False,
                detail=f"Step {outstanding[-1].step.value} failed: {outstanding[-1].error}"
            )
        return ProbeResult(passed=True, detail="No outstanding step failures")

    def physical_ids_resolved(state: MigrationState) -> ProbeResult:
        unresolved = [r.logical_id for r in state.unresolved_resources()]
        if unresolved:
            return ProbeResult(passed=False, detail=f"Resource not found: {_summarize(unresolved)}")
        return ProbeResult(passed=True, detail=f"{len(state.resources)} resources resolved")

    return [
        VerificationProbe("migration-completed", migration_completed, "Migration reached the terminal step"),
        VerificationProbe("all-steps-completed", all_steps_completed, "Every step completed"),
        VerificationProbe("no-failed-steps", no_failed_steps, "No step failure left unresolved"),
        VerificationProbe("physical-ids-resolved", physical_ids_resolved, "Every tracked resource has a physical ID"),
    ]
