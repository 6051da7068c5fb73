"""
State machine for the migration process.

Defines the fixed order of migration steps and which transitions between
them are legal. Every other component consults this class for ordering.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel

from iac_migrator.models.state import MigrationStep


class TransitionCheck(BaseModel):
    """Result of validating a step transition."""
    valid: bool
    reason: Optional[str] = None


class MigrationStateMachine:
    """Stateless helpers over the ordered migration steps."""

    STEP_ORDER: List[MigrationStep] = list(MigrationStep)

    STEP_DESCRIPTIONS: Dict[MigrationStep, str] = {
        MigrationStep.SCAN: "Scan the Serverless configuration and synthesize its CloudFormation template",
        MigrationStep.DISCOVERY: "Discover deployed resources and resolve their physical identifiers",
        MigrationStep.PROTECT: "Set retention policies on stateful resources",
        MigrationStep.GENERATE: "Generate CDK code from the CloudFormation template",
        MigrationStep.COMPARE: "Compare the generated and deployed templates",
        MigrationStep.TEMPLATE_MODIFICATION: "Remove migrated resources from the Serverless template",
        MigrationStep.IMPORT_PREPARATION: "Prepare resource import definitions",
        MigrationStep.IMPORT: "Import live resources into the CDK stack",
        MigrationStep.CLEANUP: "Clean up temporary artifacts",
        MigrationStep.COMPLETE: "Migration complete",
    }

    @classmethod
    def get_all_steps(cls) -> List[MigrationStep]:
        """Get all steps in order, including the terminal step."""
        return list(cls.STEP_ORDER)

    @classmethod
    def get_executable_steps(cls) -> List[MigrationStep]:
        """Get the steps that have an executor, i.e. all but the terminal one."""
        return cls.STEP_ORDER[:-1]

    @classmethod
    def get_step_index(cls, step: MigrationStep) -> int:
        """Get the 0-based position of a step, or -1 if unknown."""
        try:
            return cls.STEP_ORDER.index(MigrationStep(step))
        except ValueError:
            return -1

    @classmethod
    def get_first_step(cls) -> MigrationStep:
        return cls.STEP_ORDER[0]

    @classmethod
    def get_terminal_step(cls) -> MigrationStep:
        return cls.STEP_ORDER[-1]

    @classmethod
    def get_next_step(cls, step: MigrationStep) -> Optional[MigrationStep]:
        """Get the step after ``step``, or None at the terminal step."""
        index = cls.get_step_index(step)
        if index == -1 or index == len(cls.STEP_ORDER) - 1:
            return None
        return cls.STEP_ORDER[index + 1]

    @classmethod
    def get_previous_step(cls, step: MigrationStep) -> Optional[MigrationStep]:
        """Get the step before ``step``, or None at the first step."""
        index = cls.get_step_index(step)
        if index <= 0:
            return None
        return cls.STEP_ORDER[index - 1]

    @classmethod
    def get_step_description(cls, step: MigrationStep) -> str:
        return cls.STEP_DESCRIPTIONS.get(step, "Unknown step")

    @classmethod
    def calculate_progress(cls, step: MigrationStep) -> int:
        """Percentage of the workflow before ``step``: 0 at the first, 100 at the last."""
        index = cls.get_step_index(step)
        if index == -1:
            return 0
        return round(index / (len(cls.STEP_ORDER) - 1) * 100)

    @classmethod
    def validate_transition(cls, from_step: MigrationStep, to_step: MigrationStep) -> TransitionCheck:
        """
        Check whether the workflow may move from ``from_step`` to ``to_step``.

        Moving to the next step is valid. Moving to any step at or before
        ``from_step`` is valid too, which is what rollback relies on.
        Skipping ahead is never valid.
        """
        from_index = cls.get_step_index(from_step)
        to_index = cls.get_step_index(to_step)

        if from_index == -1:
            return TransitionCheck(valid=False, reason=f"Invalid source step: {from_step}")
        if to_index == -1:
            return TransitionCheck(valid=False, reason=f"Invalid target step: {to_step}")

        if to_index <= from_index or to_index == from_index + 1:
            return TransitionCheck(valid=True)

        return TransitionCheck(
            valid=False,
            reason=(
                f"Cannot skip from {MigrationStep(from_step).value} to "
                f"{MigrationStep(to_step).value}: only the next sequential step is allowed"
            )
        )

    @classmethod
    def is_complete(cls, step: MigrationStep) -> bool:
        return step == cls.get_terminal_step()

    @classmethod
    def get_steps_remaining(cls, step: MigrationStep) -> List[MigrationStep]:
        """Steps after ``step``."""
        index = cls.get_step_index(step)
        if index == -1:
            return []
        return cls.STEP_ORDER[index + 1:]

    @classmethod
    def is_before(cls, step: MigrationStep, other: MigrationStep) -> bool:
        return cls.get_step_index(step) < cls.get_step_index(other)
