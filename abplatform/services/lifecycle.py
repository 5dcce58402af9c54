"""Experiment lifecycle state machine.

    DRAFT -> READY -> RUNNING <-> PAUSED -> COMPLETED -> ARCHIVED
    CANCELLED from anything not yet COMPLETED/ARCHIVED, then -> ARCHIVED

Every transition loads the experiment, checks the table below, applies the
change and saves. Illegal moves raise InvalidStateError and write nothing.
"""
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from abplatform import store
from abplatform.errors import InvalidStateError, ValidationError
from abplatform.logging_config import get_logger
from abplatform.models import Experiment, ExperimentStatus

logger = get_logger(__name__)

S = ExperimentStatus

# operation -> (states it is legal from, state it moves to)
TRANSITIONS = {
    "mark_ready": ({S.DRAFT}, S.READY),
    "start": ({S.READY, S.PAUSED}, S.RUNNING),
    "pause": ({S.RUNNING}, S.PAUSED),
    "stop": ({S.RUNNING, S.PAUSED}, S.COMPLETED),
    "archive": ({S.COMPLETED, S.CANCELLED}, S.ARCHIVED),
    "cancel": ({S.DRAFT, S.READY, S.RUNNING, S.PAUSED}, S.CANCELLED),
}

# Only running experiments let new users in
ASSIGNABLE_STATES = {S.RUNNING}


def can_transition(experiment: Experiment, operation: str) -> bool:
    allowed_from, _ = TRANSITIONS[operation]
    return experiment.status in allowed_from


def is_editable(experiment: Experiment) -> bool:
    return experiment.status == S.DRAFT


def require_editable(experiment: Experiment):
    if not is_editable(experiment):
        raise InvalidStateError(
            f"Can only update experiments in DRAFT status (status: {experiment.status.value})"
        )


def require_assignable(experiment: Experiment):
    if experiment.status not in ASSIGNABLE_STATES:
        raise InvalidStateError(
            f"Cannot assign users to non-running experiment '{experiment.name}' "
            f"(status: {experiment.status.value})"
        )


def validate_readiness(experiment: Experiment):
    """Everything the assignment engine needs must be configured before READY."""
    if not experiment.name or not experiment.name.strip():
        raise ValidationError("Experiment name is required")
    control, test = experiment.control_variant_name, experiment.test_variant_name
    if not control or not control.strip() or not test or not test.strip():
        raise ValidationError("Both control and test variant names are required")
    if control == test:
        raise ValidationError("Control and test variant names must be different")
    traffic = experiment.traffic_percentage
    if traffic is None or not 1 <= traffic <= 100:
        raise ValidationError("Valid traffic percentage (1-100) is required")


def _transition(db: Session, experiment_id: int, operation: str) -> Experiment:
    experiment = store.get_experiment(db, experiment_id)
    allowed_from, target = TRANSITIONS[operation]

    if experiment.status not in allowed_from:
        allowed = ", ".join(sorted(s.value for s in allowed_from))
        raise InvalidStateError(
            f"Cannot {operation.replace('_', ' ')} experiment '{experiment.name}' "
            f"in status {experiment.status.value} (allowed from: {allowed})"
        )

    if operation == "mark_ready":
        validate_readiness(experiment)

    previous = experiment.status
    now = datetime.now(timezone.utc)
    experiment.status = target
    if target == S.RUNNING and experiment.start_date is None:
        # resuming from PAUSED keeps the original start
        experiment.start_date = now
    if target in (S.COMPLETED, S.CANCELLED):
        experiment.end_date = now

    saved = store.save_experiment(db, experiment)
    logger.info(
        "experiment_transition",
        experiment_id=saved.id,
        experiment=saved.name,
        operation=operation,
        from_status=previous.value,
        to_status=target.value
    )
    return saved


def mark_ready(db: Session, experiment_id: int) -> Experiment:
    return _transition(db, experiment_id, "mark_ready")


def start(db: Session, experiment_id: int) -> Experiment:
    return _transition(db, experiment_id, "start")


def pause(db: Session, experiment_id: int) -> Experiment:
    return _transition(db, experiment_id, "pause")


def stop(db: Session, experiment_id: int) -> Experiment:
    """Complete a running or paused experiment."""
    return _transition(db, experiment_id, "stop")


def archive(db: Session, experiment_id: int) -> Experiment:
    return _transition(db, experiment_id, "archive")


def cancel(db: Session, experiment_id: int) -> Experiment:
    return _transition(db, experiment_id, "cancel")
