"""
capk/models/conditions.py

Condition records as used on Cluster API objects, plus helpers that keep the
transition discipline: lastTransitionTime moves only when the status flips,
never on reason/severity/message-only updates.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from capk.models.k8s import K8sModel

# Condition types
VM_PROVISIONED_CONDITION = "VMProvisioned"
BOOTSTRAP_EXEC_SUCCEEDED_CONDITION = "BootstrapExecSucceeded"
CONTROL_PLANE_INITIALIZED_CONDITION = "ControlPlaneInitialized"

# Reasons
WAITING_FOR_CLUSTER_INFRASTRUCTURE_REASON = "WaitingForClusterInfrastructure"
WAITING_FOR_CONTROL_PLANE_AVAILABLE_REASON = "WaitingForControlPlaneAvailable"
WAITING_FOR_BOOTSTRAP_DATA_REASON = "WaitingForBootstrapData"
BOOTSTRAPPING_REASON = "Bootstrapping"
BOOTSTRAP_FAILED_REASON = "BootstrapFailed"
DELETING_REASON = "Deleting"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionSeverity(str, Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    NONE = ""


class Condition(K8sModel):
    """
    A single condition record.

    Attributes:
        type: Condition type, e.g. "VMProvisioned".
        status: True / False / Unknown.
        severity: Only meaningful when status is False.
        reason: Stable CamelCase reason, the operator-facing diagnosis.
        message: Optional human readable detail.
        last_transition_time: When status last changed.
    """

    type: str
    status: ConditionStatus
    severity: Optional[ConditionSeverity] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    last_transition_time: Optional[datetime] = None


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def get_condition(conditions: List[Condition], cond_type: str) -> Optional[Condition]:
    return next((c for c in conditions if c.type == cond_type), None)


def has_condition(conditions: List[Condition], cond_type: str) -> bool:
    return get_condition(conditions, cond_type) is not None


def is_true(conditions: List[Condition], cond_type: str) -> bool:
    cond = get_condition(conditions, cond_type)
    return cond is not None and cond.status == ConditionStatus.TRUE


def set_condition(
    conditions: List[Condition],
    new: Condition,
    now: Optional[datetime] = None,
) -> None:
    """
    Insert or update `new` in place.

    If a condition of the same type exists with the same status, its
    lastTransitionTime is kept; otherwise it is set to `now`.
    """
    existing = get_condition(conditions, new.type)
    if existing is not None and existing.status == new.status:
        new.last_transition_time = existing.last_transition_time
    else:
        new.last_transition_time = now or _now()

    if existing is None:
        conditions.append(new)
        conditions.sort(key=lambda c: c.type)
        return

    idx = next(i for i, c in enumerate(conditions) if c.type == new.type)
    conditions[idx] = new


def mark_true(
    conditions: List[Condition], cond_type: str, now: Optional[datetime] = None
) -> None:
    set_condition(
        conditions, Condition(type=cond_type, status=ConditionStatus.TRUE), now
    )


def mark_false(
    conditions: List[Condition],
    cond_type: str,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
    now: Optional[datetime] = None,
) -> None:
    set_condition(
        conditions,
        Condition(
            type=cond_type,
            status=ConditionStatus.FALSE,
            severity=severity,
            reason=reason,
            message=message or None,
        ),
        now,
    )
