"""Replica scheduling: preference kinds, the planner, schedulers and their manager."""

from kubefed.scheduling.planner import ScheduleResult, plan, schedule
from kubefed.scheduling.types import (
    JOB_SCHEDULING,
    REPLICA_SCHEDULING,
    PlanError,
    SchedulingKind,
    SchedulingPreference,
    SchedulingTypes,
    default_scheduling_types,
)

__all__ = [
    "default_scheduling_types",
    "JOB_SCHEDULING",
    "plan",
    "PlanError",
    "REPLICA_SCHEDULING",
    "schedule",
    "ScheduleResult",
    "SchedulingKind",
    "SchedulingPreference",
    "SchedulingTypes",
]
