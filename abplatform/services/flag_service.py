"""Service for feature flag management (create, toggle, rollout changes)"""
from typing import List, Optional

import pydantic
from sqlalchemy.orm import Session

from abplatform import store
from abplatform.config import settings
from abplatform.errors import ConflictError, InvalidStateError, ValidationError
from abplatform.logging_config import get_logger
from abplatform.models import EventType, FeatureFlag, FlagStatus
from abplatform.schemas import FeatureFlagCreate
from abplatform.services import event_service
from abplatform.utils import cache

logger = get_logger(__name__)


def _validate_rollout(percentage) -> int:
    if percentage is None:
        raise ValidationError("Rollout percentage cannot be null")
    if not 0 <= percentage <= 100:
        raise ValidationError("Rollout percentage must be between 0 and 100")
    return percentage


def _save(db: Session, flag: FeatureFlag) -> FeatureFlag:
    saved = store.save_flag(db, flag)
    cache.clear_flag(saved.name, saved.environment)
    return saved


def create_flag(db: Session, flag_data) -> FeatureFlag:
    if isinstance(flag_data, FeatureFlagCreate):
        data = flag_data
    else:
        try:
            data = FeatureFlagCreate.model_validate(flag_data)
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc)) from exc

    environment = data.environment or settings.default_environment
    if store.flag_name_exists(db, data.name, environment):
        raise ConflictError(
            f"Feature flag '{data.name}' already exists in environment '{environment}'"
        )

    flag = FeatureFlag(
        name=data.name,
        description=data.description,
        enabled=data.enabled,
        status=data.status,
        environment=environment,
        rollout_percentage=data.rollout_percentage,
        created_by=data.created_by
    )
    saved = _save(db, flag)
    logger.info("flag_created", flag_id=saved.id, flag=saved.name, environment=environment,
                rollout=saved.rollout_percentage)
    return saved


def toggle_flag(db: Session, flag_id: int, changed_by: Optional[str] = None) -> FeatureFlag:
    """
    Flip `enabled`. Turning on an INACTIVE flag makes it ACTIVE, turning off
    an ACTIVE one makes it INACTIVE. Archived flags can't be toggled.
    """
    flag = store.get_flag(db, flag_id)
    if flag.status == FlagStatus.ARCHIVED:
        raise InvalidStateError(f"Cannot toggle archived flag '{flag.name}'")

    was_enabled = bool(flag.enabled)
    flag.enabled = not was_enabled
    if flag.enabled and flag.status == FlagStatus.INACTIVE:
        flag.status = FlagStatus.ACTIVE
    elif not flag.enabled and flag.status == FlagStatus.ACTIVE:
        flag.status = FlagStatus.INACTIVE

    event_service.track_flag_change(db, flag, EventType.FLAG_TOGGLED, changed_by=changed_by)
    saved = _save(db, flag)
    logger.info("flag_toggled", flag=saved.name, from_enabled=was_enabled, to_enabled=saved.enabled)
    return saved


def enable_flag(db: Session, flag_id: int, changed_by: Optional[str] = None) -> FeatureFlag:
    flag = store.get_flag(db, flag_id)
    if flag.status == FlagStatus.ARCHIVED:
        raise InvalidStateError(f"Cannot enable archived flag '{flag.name}'")
    flag.enabled = True
    flag.status = FlagStatus.ACTIVE
    event_service.track_flag_change(db, flag, EventType.FLAG_ENABLED, changed_by=changed_by)
    saved = _save(db, flag)
    logger.info("flag_enabled", flag=saved.name)
    return saved


def disable_flag(db: Session, flag_id: int, changed_by: Optional[str] = None) -> FeatureFlag:
    flag = store.get_flag(db, flag_id)
    flag.enabled = False
    if flag.status == FlagStatus.ACTIVE:
        flag.status = FlagStatus.INACTIVE
    event_service.track_flag_change(db, flag, EventType.FLAG_DISABLED, changed_by=changed_by)
    saved = _save(db, flag)
    logger.info("flag_disabled", flag=saved.name)
    return saved


def archive_flag(db: Session, flag_id: int) -> FeatureFlag:
    """Soft delete: disabled and ARCHIVED."""
    flag = store.get_flag(db, flag_id)
    flag.enabled = False
    flag.status = FlagStatus.ARCHIVED
    saved = _save(db, flag)
    logger.info("flag_archived", flag=saved.name)
    return saved


def deprecate_flag(db: Session, flag_id: int) -> FeatureFlag:
    # Deprecated flags evaluate to off but keep their settings
    flag = store.get_flag(db, flag_id)
    if flag.status == FlagStatus.ARCHIVED:
        raise InvalidStateError(f"Cannot deprecate archived flag '{flag.name}'")
    flag.status = FlagStatus.DEPRECATED
    saved = _save(db, flag)
    logger.info("flag_deprecated", flag=saved.name)
    return saved


def update_rollout_percentage(db: Session, flag_id: int, percentage: int) -> FeatureFlag:
    _validate_rollout(percentage)
    flag = store.get_flag(db, flag_id)
    flag.rollout_percentage = percentage
    saved = _save(db, flag)
    logger.info("flag_rollout_updated", flag=saved.name, rollout=percentage)
    return saved


def increase_rollout(db: Session, flag_id: int, increment: int) -> FeatureFlag:
    """Widen a gradual rollout, capped at 100%."""
    if increment is None or increment < 0:
        raise ValidationError("Rollout increment must be a non-negative number")
    flag = store.get_flag(db, flag_id)
    flag.rollout_percentage = min(100, (flag.rollout_percentage or 0) + increment)
    saved = _save(db, flag)
    logger.info("flag_rollout_increased", flag=saved.name, rollout=saved.rollout_percentage)
    return saved


def update_flag(
    db: Session,
    flag_id: int,
    name: Optional[str] = None,
    description: Optional[str] = None,
    environment: Optional[str] = None
) -> FeatureFlag:
    """
    Rename, re-describe or move a flag. Arguments left as None keep their
    current value. The (name, environment) pair must stay unique.
    """
    flag = store.get_flag(db, flag_id)
    old_key = (flag.name, flag.environment)

    if name is not None and not name.strip():
        raise ValidationError("Flag name cannot be blank")
    new_name = name if name is not None else flag.name
    new_environment = environment if environment is not None else flag.environment

    if (new_name, new_environment) != old_key and store.flag_name_exists(db, new_name, new_environment):
        raise ConflictError(
            f"Feature flag '{new_name}' already exists in environment '{new_environment}'"
        )

    flag.name = new_name
    flag.environment = new_environment
    if description is not None:
        flag.description = description

    saved = _save(db, flag)
    cache.clear_flag(*old_key)
    logger.info("flag_updated", flag_id=saved.id, flag=saved.name, environment=saved.environment,
                previous_name=old_key[0], previous_environment=old_key[1])
    return saved


def enable_flag_by_name(db: Session, name: str, environment: str,
                        changed_by: Optional[str] = None) -> FeatureFlag:
    flag = store.get_flag_by_name(db, name, environment)
    return enable_flag(db, flag.id, changed_by=changed_by)


def disable_flag_by_name(db: Session, name: str, environment: str,
                         changed_by: Optional[str] = None) -> FeatureFlag:
    flag = store.get_flag_by_name(db, name, environment)
    return disable_flag(db, flag.id, changed_by=changed_by)


def _require_flags(db: Session, flag_ids: List[int]) -> List[FeatureFlag]:
    # every id must resolve before any flag is touched
    return [store.get_flag(db, flag_id) for flag_id in flag_ids]


def enable_flags(db: Session, flag_ids: List[int], changed_by: Optional[str] = None) -> List[FeatureFlag]:
    archived = [flag.name for flag in _require_flags(db, flag_ids) if flag.status == FlagStatus.ARCHIVED]
    if archived:
        raise InvalidStateError(f"Cannot enable archived flags: {', '.join(archived)}")
    logger.info("flags_bulk_enable", count=len(flag_ids))
    return [enable_flag(db, flag_id, changed_by=changed_by) for flag_id in flag_ids]


def disable_flags(db: Session, flag_ids: List[int], changed_by: Optional[str] = None) -> List[FeatureFlag]:
    _require_flags(db, flag_ids)
    logger.info("flags_bulk_disable", count=len(flag_ids))
    return [disable_flag(db, flag_id, changed_by=changed_by) for flag_id in flag_ids]


def update_rollout_for_flags(db: Session, flag_ids: List[int], percentage: int) -> List[FeatureFlag]:
    """Set the same rollout on several flags. The percentage is checked once, up front."""
    _validate_rollout(percentage)
    _require_flags(db, flag_ids)
    logger.info("flags_bulk_rollout", count=len(flag_ids), rollout=percentage)
    return [update_rollout_percentage(db, flag_id, percentage) for flag_id in flag_ids]
