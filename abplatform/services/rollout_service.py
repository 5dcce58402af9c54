"""Feature flag evaluation for a single user.

is_enabled_for() is pure and works on anything shaped like a flag (ORM
row or cached FlagSnapshot). evaluate_flag() adds the lookup and optional
exposure tracking around it.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from abplatform import store
from abplatform.logging_config import get_logger
from abplatform.schemas import FlagSnapshot
from abplatform.services import event_service
from abplatform.utils import cache
from abplatform.utils.bucketing import percentile

logger = get_logger(__name__)


def is_enabled_for(flag, user_id: str, environment: str) -> bool:
    """
    Decide whether `flag` is on for `user_id` in `environment`.

    Checks run in order and the first one that decides wins: flag active,
    exact environment match, 0% rollout, 100% rollout, then the user's
    percentile against the rollout. The flag name is the hashing context,
    so rollouts of different flags are independent of each other.
    """
    if not flag.is_active():
        logger.debug("flag_inactive", flag=flag.name)
        return False

    if flag.environment != environment:
        logger.debug("flag_environment_mismatch", flag=flag.name,
                     expected=flag.environment, got=environment)
        return False

    rollout = flag.rollout_percentage
    if not rollout:
        return False
    if rollout >= 100:
        return True

    user_percentile = percentile(user_id, flag.name)
    enabled = user_percentile <= rollout
    logger.debug("flag_evaluated", flag=flag.name, user_id=user_id,
                 percentile=user_percentile, rollout=rollout, enabled=enabled)
    return enabled


def get_flag_snapshot(db: Session, flag_name: str, environment: str) -> FlagSnapshot:
    """Cached read of a flag. Raises NotFoundError if there's no such flag in the environment."""
    snapshot = cache.get_flag(flag_name, environment)
    if snapshot is None:
        flag = store.get_flag_by_name(db, flag_name, environment)
        snapshot = FlagSnapshot.model_validate(flag)
        cache.set_flag(snapshot)
    return snapshot


def evaluate_flag(
    db: Session,
    flag_name: str,
    user_id: str,
    environment: str,
    session_id: Optional[str] = None,
    track_exposure: bool = False
) -> bool:
    """Look the flag up and evaluate it; optionally store a FLAG_EXPOSURE event."""
    snapshot = get_flag_snapshot(db, flag_name, environment)
    enabled = is_enabled_for(snapshot, user_id, environment)

    if track_exposure:
        event_service.track_flag_exposure(
            db, user_id, snapshot.id, environment, enabled, session_id=session_id
        )
        with store.store_errors(db, "track_flag_exposure"):
            db.commit()

    return enabled


def get_available_flags_for_user(db: Session, user_id: str, environment: str) -> List[str]:
    """Names of all flags in `environment` that are on for this user."""
    flags = store.find_flags_by_environment(db, environment)
    return [flag.name for flag in flags if is_enabled_for(flag, user_id, environment)]
