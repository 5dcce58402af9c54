"""Service for experiment management"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pydantic
from sqlalchemy.orm import Session

from abplatform import store
from abplatform.config import settings
from abplatform.errors import ConflictError, ValidationError
from abplatform.logging_config import get_logger
from abplatform.models import Experiment, ExperimentStatus
from abplatform.schemas import ExperimentCreate, ExperimentUpdate
from abplatform.services import lifecycle
from abplatform.utils.bucketing import is_included, percentile
from abplatform.utils.sample_size import completion_percentage, has_reached_minimum

logger = get_logger(__name__)


def _parse(schema, data):
    """Accept a schema instance or a plain dict; pydantic errors become ValidationError."""
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc


def create_experiment(db: Session, experiment_data) -> Experiment:
    """
    Create a new experiment in DRAFT.
    Traffic percentage must be 1-100 and the two variant names must differ.
    """
    data = _parse(ExperimentCreate, experiment_data)
    environment = data.environment or settings.default_environment

    # Check if experiment name already exists
    if store.experiment_name_exists(db, data.name):
        raise ConflictError(f"Experiment with name '{data.name}' already exists")

    experiment = Experiment(
        name=data.name,
        description=data.description,
        hypothesis=data.hypothesis,
        control_variant_name=data.control_variant_name,
        test_variant_name=data.test_variant_name,
        traffic_percentage=data.traffic_percentage,
        environment=environment,
        success_metric=data.success_metric,
        expected_improvement=data.expected_improvement,
        minimum_sample_size=data.minimum_sample_size,
        end_date=data.end_date,
        confidence_level=95.0,
        current_sample_size=0,
        created_by=data.created_by,
        status=ExperimentStatus.DRAFT  # Start as draft, lifecycle moves it on
    )
    saved = store.save_experiment(db, experiment)

    logger.info("experiment_created", experiment_id=saved.id, experiment=saved.name,
                environment=environment, traffic_percentage=saved.traffic_percentage)
    return saved


def get_experiment_by_id(db: Session, experiment_id: int) -> Experiment:
    return store.get_experiment(db, experiment_id)


def get_experiment_by_name(db: Session, name: str) -> Experiment:
    return store.get_experiment_by_name(db, name)


def update_experiment(db: Session, experiment_id: int, update_data) -> Experiment:
    """
    Edit settings of a DRAFT experiment. Only the fields present in
    `update_data` change, so passing None for an optional field clears it.
    """
    data = _parse(ExperimentUpdate, update_data)
    experiment = store.get_experiment(db, experiment_id)
    lifecycle.require_editable(experiment)

    changes = data.model_dump(exclude_unset=True)
    new_name = changes.get("name")
    if new_name and new_name != experiment.name and store.experiment_name_exists(db, new_name):
        raise ConflictError(f"Experiment with name '{new_name}' already exists")

    for field, value in changes.items():
        setattr(experiment, field, value)

    saved = store.save_experiment(db, experiment)
    logger.info("experiment_updated", experiment_id=saved.id, fields=sorted(changes))
    return saved


def get_completion_percentage(db: Session, experiment_id: int) -> float:
    experiment = store.get_experiment(db, experiment_id)
    return completion_percentage(experiment.current_sample_size, experiment.minimum_sample_size)


def has_reached_minimum_sample_size(db: Session, experiment_id: int) -> bool:
    experiment = store.get_experiment(db, experiment_id)
    return has_reached_minimum(experiment.current_sample_size, experiment.minimum_sample_size)


def get_sample_size_progress(db: Session, experiment_id: int) -> Dict[str, Any]:
    experiment = store.get_experiment(db, experiment_id)
    current = experiment.current_sample_size
    minimum: Optional[int] = experiment.minimum_sample_size
    return {
        "experiment_id": experiment.id,
        "current_sample_size": current,
        "minimum_sample_size": minimum,
        "completion_percentage": round(completion_percentage(current, minimum), 2),
        "reached_minimum": has_reached_minimum(current, minimum),
    }


def list_experiments(db: Session, status: Optional[ExperimentStatus] = None,
                     environment: Optional[str] = None) -> List[Experiment]:
    return store.find_experiments(db, status=status, environment=environment)


def _has_ended(experiment: Experiment, now: datetime) -> bool:
    end = experiment.end_date
    if end is None:
        return False
    if end.tzinfo is None:
        # sqlite hands datetimes back without tzinfo; they were stored as UTC
        end = end.replace(tzinfo=timezone.utc)
    return end <= now


def get_eligible_experiments_for_user(db: Session, user_id: str, environment: str) -> List[Experiment]:
    """
    RUNNING experiments in `environment` whose traffic gate lets this user in
    and whose planned end hasn't passed. Most recently started first.
    """
    now = datetime.now(timezone.utc)
    return [
        experiment for experiment in store.find_running_experiments(db, environment)
        if not _has_ended(experiment, now)
        and is_included(percentile(user_id, experiment.name), experiment.traffic_percentage)
    ]


def get_experiments_needing_more_traffic(db: Session) -> List[Experiment]:
    """RUNNING experiments still short of their minimum sample size, least complete first."""
    short = [
        experiment for experiment in store.find_running_experiments(db)
        if experiment.minimum_sample_size
        and not has_reached_minimum(experiment.current_sample_size, experiment.minimum_sample_size)
    ]
    return sorted(short, key=lambda e: completion_percentage(e.current_sample_size, e.minimum_sample_size))


def get_experiments_needing_completion(db: Session) -> List[Experiment]:
    """RUNNING experiments whose planned end date is already behind us."""
    now = datetime.now(timezone.utc)
    return [experiment for experiment in store.find_running_experiments(db)
            if _has_ended(experiment, now)]
