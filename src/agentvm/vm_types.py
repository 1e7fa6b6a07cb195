"""VM status enum and the legal status transitions."""

from enum import Enum


class VmStatus(str, Enum):
    """Lifecycle status of a microVM."""

    CREATING = "creating"
    BOOTING = "booting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


# Error is reachable from everywhere.  Stopped and Error re-enter Creating on
# start()/retry; Error -> Error records a second failure of the same attempt.
VALID_STATE_TRANSITIONS: dict[VmStatus, set[VmStatus]] = {
    VmStatus.CREATING: {VmStatus.BOOTING, VmStatus.STOPPED, VmStatus.ERROR},
    VmStatus.BOOTING: {VmStatus.RUNNING, VmStatus.STOPPED, VmStatus.ERROR},
    VmStatus.RUNNING: {VmStatus.PAUSED, VmStatus.STOPPED, VmStatus.ERROR},
    VmStatus.PAUSED: {VmStatus.RUNNING, VmStatus.STOPPED, VmStatus.ERROR},
    VmStatus.STOPPED: {VmStatus.CREATING, VmStatus.ERROR},
    VmStatus.ERROR: {VmStatus.CREATING, VmStatus.STOPPED, VmStatus.ERROR},
}

# Statuses in which a hypervisor process may exist
ACTIVE_STATUSES: frozenset[VmStatus] = frozenset(
    {VmStatus.CREATING, VmStatus.BOOTING, VmStatus.RUNNING, VmStatus.PAUSED}
)


def can_transition(current: VmStatus, target: VmStatus) -> bool:
    """Whether ``current -> target`` is a legal edge."""
    return target in VALID_STATE_TRANSITIONS.get(current, set())
