
from pydantic import BaseModel, Field, model_validator
from typing import Optional, Dict, Any
from datetime import datetime

from abplatform.models import CohortType, AssignmentMethod, FlagStatus, EventType


class ExperimentCreate(BaseModel):
    name: str
    description: Optional[str] = None
    hypothesis: Optional[str] = None
    control_variant_name: str = "control"
    test_variant_name: str = "test"
    traffic_percentage: int = Field(50, ge=1, le=100)
    environment: Optional[str] = None
    success_metric: Optional[str] = None
    expected_improvement: Optional[float] = None
    minimum_sample_size: Optional[int] = Field(None, ge=0)
    end_date: Optional[datetime] = None  # planned end, overwritten when stopped
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def _check_variants(self):
        if not self.name.strip():
            raise ValueError("Experiment name cannot be blank")
        _check_variant_names(self.control_variant_name, self.test_variant_name)
        return self


class ExperimentUpdate(BaseModel):
    # Only fields that were passed are applied; None clears an optional field
    name: Optional[str] = None
    description: Optional[str] = None
    hypothesis: Optional[str] = None
    traffic_percentage: Optional[int] = Field(None, ge=1, le=100)
    success_metric: Optional[str] = None
    minimum_sample_size: Optional[int] = Field(None, ge=0)
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_name(self):
        for required in ("name", "traffic_percentage"):
            if required in self.model_fields_set and getattr(self, required) is None:
                raise ValueError(f"{required} cannot be cleared")
        if self.name is not None and not self.name.strip():
            raise ValueError("Experiment name cannot be blank")
        return self


class FeatureFlagCreate(BaseModel):
    name: str
    description: Optional[str] = None
    environment: Optional[str] = None
    enabled: bool = False
    status: FlagStatus = FlagStatus.INACTIVE
    rollout_percentage: int = Field(0, ge=0, le=100)
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def _check_name(self):
        if not self.name.strip():
            raise ValueError("Flag name cannot be blank")
        return self


class FlagSnapshot(BaseModel):
    """Read-only copy of a flag row, safe to keep in the cache across sessions."""
    id: int
    name: str
    enabled: bool
    status: FlagStatus
    environment: str
    rollout_percentage: Optional[int] = None

    class Config:
        from_attributes = True
        frozen = True

    def is_active(self) -> bool:
        return self.enabled and self.status == FlagStatus.ACTIVE


class AssignmentResponse(BaseModel):
    id: int
    experiment_id: int
    user_id: str
    session_id: Optional[str] = None
    cohort_type: CohortType
    variant_name: str
    assignment_method: AssignmentMethod
    assignment_hash: Optional[int] = None
    assigned_at: datetime
    first_exposure_at: Optional[datetime] = None
    last_exposure_at: Optional[datetime] = None
    exposure_count: int
    is_active: bool

    class Config:
        from_attributes = True


class EventCreate(BaseModel):
    event_type: EventType
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    experiment_id: Optional[int] = None
    flag_id: Optional[int] = None
    variant_name: Optional[str] = None
    value: Optional[float] = None
    properties: Optional[Dict[str, Any]] = None
    environment: Optional[str] = None
    timestamp: Optional[datetime] = None  # defaults to "now" when recorded


def _check_variant_names(control: str, test: str):
    if not control or not control.strip():
        raise ValueError("Control variant name cannot be blank")
    if not test or not test.strip():
        raise ValueError("Test variant name cannot be blank")
    if control == test:
        raise ValueError("Control and test variant names must be different")
