"""Persistence primitives the services build on.

Every function takes the caller's Session. Reads never commit. The
"save_*" helpers commit on their own; insert_assignment_if_absent,
increment_sample_size, increment_exposure and add_event only
flush/execute so the caller can put them in one transaction and commit
once.

SQLAlchemy failures come out as StoreError, after the session has been
rolled back.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from abplatform.errors import NotFoundError, StoreError
from abplatform.logging_config import get_logger
from abplatform.models import Event, Experiment, ExperimentStatus, FeatureFlag, UserCohort

logger = get_logger(__name__)


@contextmanager
def store_errors(db: Session, action: str):
    """Translate driver/ORM errors into StoreError and roll the session back."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("store_failed", action=action, error=str(exc), error_type=type(exc).__name__)
        raise StoreError(f"{action} failed: {exc}") from exc


# Experiments

def get_experiment(db: Session, experiment_id: int) -> Experiment:
    with store_errors(db, "get_experiment"):
        experiment = db.get(Experiment, experiment_id)
    if experiment is None:
        raise NotFoundError(f"Experiment not found with ID: {experiment_id}")
    return experiment


def get_experiment_by_name(db: Session, name: str) -> Experiment:
    with store_errors(db, "get_experiment_by_name"):
        experiment = db.query(Experiment).filter(Experiment.name == name).first()
    if experiment is None:
        raise NotFoundError(f"Experiment not found with name: {name}")
    return experiment


def experiment_name_exists(db: Session, name: str) -> bool:
    with store_errors(db, "experiment_name_exists"):
        return db.query(Experiment.id).filter(Experiment.name == name).first() is not None


def find_experiments(db: Session, status=None, environment: Optional[str] = None) -> List[Experiment]:
    with store_errors(db, "find_experiments"):
        query = db.query(Experiment)
        if status is not None:
            query = query.filter(Experiment.status == status)
        if environment is not None:
            query = query.filter(Experiment.environment == environment)
        return query.order_by(Experiment.id).all()


def find_running_experiments(db: Session, environment: Optional[str] = None) -> List[Experiment]:
    """RUNNING experiments, most recently started first."""
    with store_errors(db, "find_running_experiments"):
        query = db.query(Experiment).filter(Experiment.status == ExperimentStatus.RUNNING)
        if environment is not None:
            query = query.filter(Experiment.environment == environment)
        return query.order_by(Experiment.start_date.desc(), Experiment.id.desc()).all()


def save_experiment(db: Session, experiment: Experiment) -> Experiment:
    with store_errors(db, "save_experiment"):
        db.add(experiment)
        db.commit()
        db.refresh(experiment)
    return experiment


def increment_sample_size(db: Session, experiment_id: int):
    """
    Atomic +1 on the experiment's sample size, done by the database
    (UPDATE ... SET n = n + 1) so concurrent assignments can't lose updates.
    Does not commit.
    """
    with store_errors(db, "increment_sample_size"):
        db.execute(
            update(Experiment)
            .where(Experiment.id == experiment_id)
            .values(current_sample_size=Experiment.current_sample_size + 1)
            .execution_options(synchronize_session=False)
        )


# Assignments

def _query_assignment(db: Session, user_id: str, experiment_id: int) -> Optional[UserCohort]:
    return db.query(UserCohort).filter(
        UserCohort.user_id == user_id,
        UserCohort.experiment_id == experiment_id
    ).first()


def find_assignment(db: Session, user_id: str, experiment_id: int) -> Optional[UserCohort]:
    with store_errors(db, "find_assignment"):
        return _query_assignment(db, user_id, experiment_id)


def find_assignments_for_user(db: Session, user_id: str, active_only: bool = False) -> List[UserCohort]:
    with store_errors(db, "find_assignments_for_user"):
        query = db.query(UserCohort).filter(UserCohort.user_id == user_id)
        if active_only:
            query = query.filter(UserCohort.is_active.is_(True))
        return query.order_by(UserCohort.id).all()


def insert_assignment_if_absent(db: Session, cohort: UserCohort) -> UserCohort:
    """
    Compare-and-insert keyed on (user_id, experiment_id).

    Returns `cohort` itself when it was inserted. If another writer got
    there first the unique index rejects the insert; the session is rolled
    back and the row that won is returned instead (so `result is cohort`
    tells the caller whether it created anything). Flushes, does not commit.
    """
    with store_errors(db, "insert_assignment"):
        try:
            db.add(cohort)
            db.flush()
            return cohort
        except IntegrityError:
            db.rollback()
            logger.info(
                "assignment_insert_race",
                user_id=cohort.user_id,
                experiment_id=cohort.experiment_id
            )
        existing = _query_assignment(db, cohort.user_id, cohort.experiment_id)
    if existing is None:
        # IntegrityError that wasn't the (user, experiment) index
        raise StoreError(
            f"Could not insert assignment for user {cohort.user_id!r} "
            f"in experiment {cohort.experiment_id}"
        )
    return existing


def increment_exposure(db: Session, cohort_id: int, seen_at: datetime):
    """
    Count one exposure in the database: exposure_count + 1, last exposure
    moved to `seen_at`, first exposure kept if already set. Does not commit.
    """
    with store_errors(db, "increment_exposure"):
        db.execute(
            update(UserCohort)
            .where(UserCohort.id == cohort_id)
            .values(
                exposure_count=UserCohort.exposure_count + 1,
                first_exposure_at=func.coalesce(UserCohort.first_exposure_at, seen_at),
                last_exposure_at=seen_at
            )
            .execution_options(synchronize_session=False)
        )


def save_assignment(db: Session, cohort: UserCohort) -> UserCohort:
    with store_errors(db, "save_assignment"):
        db.add(cohort)
        db.commit()
        db.refresh(cohort)
    return cohort


# Feature flags

def get_flag(db: Session, flag_id: int) -> FeatureFlag:
    with store_errors(db, "get_flag"):
        flag = db.get(FeatureFlag, flag_id)
    if flag is None:
        raise NotFoundError(f"Feature flag not found with ID: {flag_id}")
    return flag


def get_flag_by_name(db: Session, name: str, environment: Optional[str] = None) -> FeatureFlag:
    with store_errors(db, "get_flag_by_name"):
        query = db.query(FeatureFlag).filter(FeatureFlag.name == name)
        if environment is not None:
            query = query.filter(FeatureFlag.environment == environment)
        flag = query.order_by(FeatureFlag.id).first()
    if flag is None:
        where = f" in environment {environment!r}" if environment is not None else ""
        raise NotFoundError(f"Feature flag not found with name: {name}{where}")
    return flag


def find_flags_by_environment(db: Session, environment: str) -> List[FeatureFlag]:
    with store_errors(db, "find_flags_by_environment"):
        return db.query(FeatureFlag).filter(
            FeatureFlag.environment == environment
        ).order_by(FeatureFlag.name).all()


def flag_name_exists(db: Session, name: str, environment: str) -> bool:
    with store_errors(db, "flag_name_exists"):
        return db.query(FeatureFlag.id).filter(
            FeatureFlag.name == name,
            FeatureFlag.environment == environment
        ).first() is not None


def save_flag(db: Session, flag: FeatureFlag) -> FeatureFlag:
    with store_errors(db, "save_flag"):
        db.add(flag)
        db.commit()
        db.refresh(flag)
    return flag


# Events

def add_event(db: Session, event: Event) -> Event:
    """Stage an event row in the current transaction. Does not commit."""
    with store_errors(db, "add_event"):
        db.add(event)
        db.flush()
    return event
