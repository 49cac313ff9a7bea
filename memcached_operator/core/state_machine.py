"""
Phase State Machine for Memcached resources

This module implements a strict state machine for the phase recorded in a
Memcached resource's status. The reconciler computes a target phase every
pass; the state machine rejects targets that should be unreachable.

Phases:
- PROVISIONING: workload is being created or rolled out
- RUNNING: workload is ready
- HALTED: compute removed, data retained (spec.halted or dormant resume)
- TERMINATING: deletion requested, termination policy is running
- WIPED_OUT: all data destroyed, object about to be removed
- FAILED: spec cannot be satisfied for the current generation

Usage:
    >>> from memcached_operator.core.state_machine import DatabasePhase, PhaseStateMachine
    >>> PhaseStateMachine.can_transition(DatabasePhase.RUNNING, DatabasePhase.HALTED)
    True
    >>> PhaseStateMachine.can_transition(DatabasePhase.WIPED_OUT, DatabasePhase.RUNNING)
    False
"""

from enum import Enum
from typing import Dict, Set, Optional

from memcached_operator.config.logging import get_logger
from memcached_operator.exceptions import InvariantViolation

logger = get_logger(__name__)


class DatabasePhase(str, Enum):
    """Database lifecycle phases as written to status.phase"""
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    HALTED = "Halted"
    TERMINATING = "Terminating"
    WIPED_OUT = "WipedOut"
    FAILED = "Failed"


class PhaseStateMachine:
    """
    State machine for Memcached phase transitions.

    ``None`` stands for a freshly created object without status.
    """

    TRANSITIONS: Dict[Optional[DatabasePhase], Set[DatabasePhase]] = {
        None: {
            DatabasePhase.PROVISIONING,  # Fresh object
            DatabasePhase.HALTED,        # Fresh object rebinding dormant data
            DatabasePhase.FAILED,        # Invalid spec on creation
            DatabasePhase.TERMINATING,   # Deleted before the first pass
        },
        DatabasePhase.PROVISIONING: {
            DatabasePhase.RUNNING,
            DatabasePhase.HALTED,
            DatabasePhase.FAILED,
            DatabasePhase.TERMINATING,
        },
        DatabasePhase.RUNNING: {
            DatabasePhase.PROVISIONING,  # Workload missing or generation stale
            DatabasePhase.HALTED,
            DatabasePhase.FAILED,
            DatabasePhase.TERMINATING,
        },
        DatabasePhase.HALTED: {
            DatabasePhase.RUNNING,       # Resume completed
            DatabasePhase.PROVISIONING,
            DatabasePhase.FAILED,
            DatabasePhase.TERMINATING,
        },
        DatabasePhase.FAILED: {
            DatabasePhase.PROVISIONING,  # Spec fixed
            DatabasePhase.RUNNING,
            DatabasePhase.HALTED,
            DatabasePhase.TERMINATING,
        },
        DatabasePhase.TERMINATING: {
            DatabasePhase.HALTED,        # Halt policy finished
            DatabasePhase.WIPED_OUT,     # WipeOut policy finished
            DatabasePhase.PROVISIONING,  # Policy switched to DoNotTerminate mid-way
            DatabasePhase.RUNNING,
            DatabasePhase.FAILED,
        },
        DatabasePhase.WIPED_OUT: set(),  # Terminal state
    }

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional[DatabasePhase]:
        """Parse status.phase, treating empty and unknown values as no phase."""
        if not value:
            return None
        try:
            return DatabasePhase(value)
        except ValueError:
            logger.warning("unknown_phase_in_status", phase=value)
            return None

    @classmethod
    def can_transition(
        cls,
        from_phase: Optional[DatabasePhase],
        to_phase: DatabasePhase
    ) -> bool:
        """
        Check if a phase transition is valid. Staying in the same phase is
        always allowed.
        """
        if from_phase == to_phase:
            return True
        return to_phase in cls.TRANSITIONS.get(from_phase, set())

    @classmethod
    def validate_transition(
        cls,
        from_phase: Optional[DatabasePhase],
        to_phase: DatabasePhase,
        database: Optional[str] = None
    ) -> None:
        """
        Validate a phase transition.

        Raises:
            InvariantViolation: If the transition is not allowed
        """
        if not cls.can_transition(from_phase, to_phase):
            from_value = from_phase.value if from_phase else "<none>"
            error_msg = f"Invalid phase transition from {from_value} to {to_phase.value}"
            if database:
                error_msg += f" for {database}"

            logger.error(
                "invalid_phase_transition",
                database=database,
                from_phase=from_value,
                to_phase=to_phase.value,
                allowed_phases=sorted(p.value for p in cls.TRANSITIONS.get(from_phase, set())),
            )
            raise InvariantViolation(error_msg)

        if from_phase != to_phase:
            logger.info(
                "phase_transition_validated",
                database=database,
                from_phase=from_phase.value if from_phase else None,
                to_phase=to_phase.value,
            )
