"""Service for event recording.

Events are append-only facts. The track_* helpers only stage the row in
the caller's transaction; whoever owns the transaction commits it together
with the state change the event describes.
"""
import json
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from abplatform import store
from abplatform.logging_config import get_logger
from abplatform.models import Event, EventType, Experiment, FeatureFlag, UserCohort
from abplatform.schemas import EventCreate

logger = get_logger(__name__)


def _build_event(event_data: EventCreate) -> Event:
    # Convert properties dict to JSON string for storage
    properties_json = None
    if event_data.properties:
        properties_json = json.dumps(event_data.properties, sort_keys=True)

    return Event(
        event_type=event_data.event_type,
        user_id=event_data.user_id,
        session_id=event_data.session_id,
        experiment_id=event_data.experiment_id,
        flag_id=event_data.flag_id,
        variant_name=event_data.variant_name,
        value=event_data.value,
        properties=properties_json,
        environment=event_data.environment,
        timestamp=event_data.timestamp or datetime.now(timezone.utc)
    )


def stage_event(db: Session, event_data: EventCreate) -> Event:
    """Add an event to the current transaction without committing."""
    return store.add_event(db, _build_event(event_data))


def create_event(db: Session, event_data: EventCreate) -> Event:
    """Create a single event and commit it"""
    event = stage_event(db, event_data)
    with store.store_errors(db, "create_event"):
        db.commit()
        db.refresh(event)
    return event


def create_events_batch(db: Session, events_data: List[EventCreate]) -> List[Event]:
    """Create multiple events in one commit - useful for bulk imports"""
    events = [stage_event(db, event_data) for event_data in events_data]

    with store.store_errors(db, "create_events_batch"):
        db.commit()
        for event in events:
            db.refresh(event)

    return events


def track_assignment(db: Session, cohort: UserCohort, experiment: Experiment) -> Event:
    return stage_event(db, EventCreate(
        event_type=EventType.EXPERIMENT_ASSIGNMENT,
        user_id=cohort.user_id,
        session_id=cohort.session_id,
        experiment_id=experiment.id,
        variant_name=cohort.variant_name,
        environment=experiment.environment,
        properties={
            "cohort_type": cohort.cohort_type.value,
            "assignment_method": cohort.assignment_method.value,
        }
    ))


def track_experiment_exposure(db: Session, cohort: UserCohort) -> Event:
    return stage_event(db, EventCreate(
        event_type=EventType.EXPERIMENT_EXPOSURE,
        user_id=cohort.user_id,
        session_id=cohort.session_id,
        experiment_id=cohort.experiment_id,
        variant_name=cohort.variant_name,
        environment=cohort.environment
    ))


def track_conversion(
    db: Session,
    cohort: UserCohort,
    value: Optional[float] = None,
    properties: Optional[dict] = None
) -> Event:
    logger.info(
        "conversion_tracked",
        user_id=cohort.user_id,
        experiment_id=cohort.experiment_id,
        variant_name=cohort.variant_name,
        value=value
    )
    return stage_event(db, EventCreate(
        event_type=EventType.CONVERSION,
        user_id=cohort.user_id,
        session_id=cohort.session_id,
        experiment_id=cohort.experiment_id,
        variant_name=cohort.variant_name,
        value=value,
        properties=properties,
        environment=cohort.environment
    ))


def track_flag_exposure(
    db: Session,
    user_id: str,
    flag_id: int,
    environment: str,
    enabled: bool,
    session_id: Optional[str] = None
) -> Event:
    return stage_event(db, EventCreate(
        event_type=EventType.FLAG_EXPOSURE,
        user_id=user_id,
        session_id=session_id,
        flag_id=flag_id,
        environment=environment,
        properties={"enabled": enabled}
    ))


def track_flag_change(db: Session, flag: FeatureFlag, event_type: EventType,
                      changed_by: Optional[str] = None) -> Event:
    """Record an enable/disable/toggle of a flag (FLAG_ENABLED, FLAG_DISABLED, FLAG_TOGGLED)."""
    return stage_event(db, EventCreate(
        event_type=event_type,
        user_id=changed_by,
        flag_id=flag.id,
        environment=flag.environment,
        properties={"enabled": bool(flag.enabled), "status": flag.status.value}
    ))
