"""Service for handling user cohort assignments - ensures idempotency.

A (user, experiment) pair is decided exactly once. The first call that
finds no row hashes the user, stores CONTROL / TREATMENT / EXCLUDED, and
every later call gets that same row back untouched, even if the
experiment's traffic or variant names were changed in the meantime.
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from abplatform import store
from abplatform.errors import ConflictError, NotFoundError, ValidationError
from abplatform.logging_config import get_logger
from abplatform.models import AssignmentMethod, CohortType, Experiment, UserCohort
from abplatform.services import event_service, lifecycle
from abplatform.utils.bucketing import cohort_hash, is_included, percentile

logger = get_logger(__name__)

EXCLUDED_VARIANT = "excluded"


def determine_cohort_type(user_id: str, experiment_name: str) -> CohortType:
    """50/50 split between control and treatment on the parity of cohort_hash."""
    if cohort_hash(user_id, experiment_name) % 2 == 0:
        return CohortType.CONTROL
    return CohortType.TREATMENT


def variant_for(experiment: Experiment, cohort_type: CohortType) -> str:
    if cohort_type == CohortType.CONTROL:
        return experiment.control_variant_name
    if cohort_type == CohortType.TREATMENT:
        return experiment.test_variant_name
    return EXCLUDED_VARIANT


def _persist_new_cohort(db: Session, cohort: UserCohort, experiment: Experiment) -> UserCohort:
    """
    Insert the cohort, bump the sample size (non-excluded only) and stage
    the assignment event, all in one commit.

    If a concurrent call already inserted a row for the pair, that row is
    returned and nothing else is written.
    """
    saved = store.insert_assignment_if_absent(db, cohort)
    if saved is not cohort:
        return saved

    try:
        if cohort.cohort_type != CohortType.EXCLUDED:
            store.increment_sample_size(db, experiment.id)
        event_service.track_assignment(db, cohort, experiment)
        with store.store_errors(db, "commit_assignment"):
            db.commit()
    except Exception:
        # store_errors already rolled back on SQLAlchemy errors, this covers the rest
        db.rollback()
        raise

    db.refresh(cohort)
    return cohort


def assign(db: Session, user_id: str, experiment_id: int, session_id: Optional[str] = None) -> UserCohort:
    """
    Get the user's existing assignment or create one.
    This is the core idempotent assignment logic.
    """
    if not user_id:
        raise ValidationError("user_id is required")

    experiment = store.get_experiment(db, experiment_id)
    lifecycle.require_assignable(experiment)

    existing = store.find_assignment(db, user_id, experiment_id)
    if existing is not None:
        logger.debug("assignment_exists", user_id=user_id, experiment=experiment.name,
                     cohort_type=existing.cohort_type.value)
        return existing

    user_percentile = percentile(user_id, experiment.name)
    if not is_included(user_percentile, experiment.traffic_percentage):
        cohort = UserCohort(
            user_id=user_id,
            experiment_id=experiment.id,
            session_id=session_id,
            cohort_type=CohortType.EXCLUDED,
            variant_name=EXCLUDED_VARIANT,
            assignment_method=AssignmentMethod.HASH_BASED,
            environment=experiment.environment,
            exposure_count=0,
            is_active=True
        )
        saved = _persist_new_cohort(db, cohort, experiment)
        logger.debug("user_excluded", user_id=user_id, experiment=experiment.name,
                     percentile=user_percentile, traffic_percentage=experiment.traffic_percentage)
        return saved

    cohort_type = determine_cohort_type(user_id, experiment.name)
    cohort = UserCohort(
        user_id=user_id,
        experiment_id=experiment.id,
        session_id=session_id,
        cohort_type=cohort_type,
        variant_name=variant_for(experiment, cohort_type),
        assignment_method=AssignmentMethod.HASH_BASED,
        assignment_hash=cohort_hash(user_id, experiment.name),
        environment=experiment.environment,
        exposure_count=0,
        is_active=True
    )
    saved = _persist_new_cohort(db, cohort, experiment)

    logger.info("user_assigned", user_id=user_id, experiment=experiment.name,
                cohort_type=saved.cohort_type.value, variant=saved.variant_name)
    return saved


def assign_manual(
    db: Session,
    user_id: str,
    experiment_id: int,
    method: AssignmentMethod,
    forced_cohort_type: CohortType
) -> UserCohort:
    """
    Put a user in a specific cohort, skipping the hash.
    One-shot: fails with ConflictError if the user already has a row.
    """
    if not user_id:
        raise ValidationError("user_id is required")

    experiment = store.get_experiment(db, experiment_id)
    lifecycle.require_assignable(experiment)

    if store.find_assignment(db, user_id, experiment_id) is not None:
        raise ConflictError(f"User '{user_id}' is already assigned to experiment '{experiment.name}'")

    logger.info("manual_assignment", user_id=user_id, experiment=experiment.name,
                cohort_type=forced_cohort_type.value, method=method.value)

    cohort = UserCohort(
        user_id=user_id,
        experiment_id=experiment.id,
        cohort_type=forced_cohort_type,
        variant_name=variant_for(experiment, forced_cohort_type),
        assignment_method=method,
        environment=experiment.environment,
        exposure_count=0,
        is_active=True
    )
    saved = _persist_new_cohort(db, cohort, experiment)
    if saved is not cohort:
        # lost a race with another first-time call
        raise ConflictError(f"User '{user_id}' is already assigned to experiment '{experiment.name}'")
    return saved


def get_user_assignment(db: Session, user_id: str, experiment_id: int) -> Optional[UserCohort]:
    return store.find_assignment(db, user_id, experiment_id)


def get_user_assignments(db: Session, user_id: str, active_only: bool = False) -> List[UserCohort]:
    return store.find_assignments_for_user(db, user_id, active_only=active_only)


def _require_assignment(db: Session, user_id: str, experiment_id: int) -> UserCohort:
    cohort = store.find_assignment(db, user_id, experiment_id)
    if cohort is None:
        raise NotFoundError(
            f"User '{user_id}' is not assigned to experiment {experiment_id}"
        )
    return cohort


def record_exposure(db: Session, user_id: str, experiment_id: int) -> UserCohort:
    """
    Note that the user actually saw the experiment.
    First exposure time is set once; last exposure and the count move every call.
    The counter is bumped by the database so concurrent exposures all count.
    """
    cohort = _require_assignment(db, user_id, experiment_id)

    try:
        store.increment_exposure(db, cohort.id, datetime.now(timezone.utc))
        event_service.track_experiment_exposure(db, cohort)
        with store.store_errors(db, "commit_exposure"):
            db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(cohort)
    logger.debug("exposure_recorded", user_id=user_id, experiment_id=experiment_id,
                 exposure_count=cohort.exposure_count)
    return cohort


def track_conversion(db: Session, user_id: str, experiment_id: int,
                     value: Optional[float] = None, properties: Optional[dict] = None):
    """Record a conversion for an assigned user, tagged with their variant."""
    cohort = _require_assignment(db, user_id, experiment_id)
    event = event_service.track_conversion(db, cohort, value=value, properties=properties)
    with store.store_errors(db, "track_conversion"):
        db.commit()
        db.refresh(event)
    return event


def deactivate_assignment(db: Session, user_id: str, experiment_id: int) -> UserCohort:
    """Soft-remove a user from an experiment. The row (and decision) stays."""
    cohort = _require_assignment(db, user_id, experiment_id)
    cohort.is_active = False
    logger.info("assignment_deactivated", user_id=user_id, experiment_id=experiment_id)
    return store.save_assignment(db, cohort)


def reactivate_assignment(db: Session, user_id: str, experiment_id: int) -> UserCohort:
    cohort = _require_assignment(db, user_id, experiment_id)
    cohort.is_active = True
    logger.info("assignment_reactivated", user_id=user_id, experiment_id=experiment_id)
    return store.save_assignment(db, cohort)
