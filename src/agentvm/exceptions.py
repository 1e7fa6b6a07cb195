"""Exception hierarchy for agentvm.

All exceptions inherit from AgentVmError.  Every concrete error carries a
stable ``kind`` string so transport layers (HTTP, CLI) can map failures to
status codes without isinstance ladders.

Hierarchy:
    AgentVmError (base)
    ├── TransientError (retryable marker base)
    │   ├── ResourceExhaustedError     ← no free SSH port
    │   │   └── NoCapacityError        ← no free TAP in the pool / lease range
    │   ├── OperationTimeoutError      ← bounded wait exceeded
    │   └── NetworkError               ← helper / pool failure
    ├── PermanentError (non-retryable marker base)
    │   ├── VmNotFoundError            ← unknown VM or snapshot
    │   ├── VmAlreadyExistsError       ← name collision
    │   ├── InvalidStateError          ← operation illegal for current status
    │   ├── ImageNotFoundError         ← base image assets missing
    │   ├── ConfigurationError         ← unusable request or settings
    │   └── SnapshotError              ← snapshot artifacts missing or corrupt
    ├── NoControlChannelError          ← control socket absent
    ├── ProtocolError                  ← non-2xx / malformed control response
    └── ProcessError                   ← spawn / signal failures
"""

from __future__ import annotations

from typing import Any, ClassVar


class AgentVmError(Exception):
    """Base exception for all agentvm errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    kind: ClassVar[str] = "internal"

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(AgentVmError):
    """Base for transient errors that may succeed on retry.

    Resource contention, a slow guest, a busy helper process.
    """


class PermanentError(AgentVmError):
    """Base for permanent errors that won't succeed on retry.

    Caller mistakes and missing host assets.
    """


# =============================================================================
# Caller Errors
# =============================================================================


class VmNotFoundError(PermanentError):
    """Unknown VM id/name or snapshot id."""

    kind = "not_found"


class VmAlreadyExistsError(PermanentError):
    """A live VM already uses the requested name (or id)."""

    kind = "already_exists"


class InvalidStateError(PermanentError):
    """Operation is illegal for the VM's current status.

    Attributes:
        status: The status the VM was in when the operation was attempted
    """

    kind = "invalid_state"

    def __init__(self, message: str, context: dict[str, Any] | None = None, *, status: str | None = None):
        super().__init__(message, context)
        self.status = status


class ConfigurationError(PermanentError):
    """Request or settings passed schema validation but cannot be used."""

    kind = "invalid_config"


# =============================================================================
# Resource Errors
# =============================================================================


class ResourceExhaustedError(TransientError):
    """No free host resource (SSH port) is left.

    Transient: capacity returns as VMs are deleted.
    """

    kind = "resource_exhausted"


class NoCapacityError(ResourceExhaustedError):
    """No TAP device (pool) or guest address (helper lease table) is free."""

    kind = "no_capacity"


class ImageNotFoundError(PermanentError):
    """Base image root filesystem or kernel is missing.

    Requires an out-of-band image build, so retrying won't help.
    """

    kind = "image_not_found"


class SnapshotError(PermanentError):
    """Snapshot artifacts are missing, unreadable or inconsistent."""

    kind = "snapshot_error"


class NetworkError(TransientError):
    """TAP helper or pool operation failed for a reason other than capacity."""

    kind = "network_error"


# =============================================================================
# Hypervisor Communication / Process Errors
# =============================================================================


class OperationTimeoutError(TransientError):
    """A bounded wait (socket, control call, SSH, termination) was exceeded."""

    kind = "timeout"


class NoControlChannelError(AgentVmError):
    """The VM has no live control socket to talk to."""

    kind = "no_control_channel"


class ProtocolError(AgentVmError):
    """Hypervisor control channel returned a non-2xx or malformed response.

    Attributes:
        status_line: Raw HTTP status line ("HTTP/1.1 400 Bad Request"), if any
        status_code: Parsed status code, if any
        body: Response body text, usually a JSON ``fault_message`` document
    """

    kind = "protocol_error"

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        status_line: str = "",
        status_code: int | None = None,
        body: str = "",
    ):
        ctx = dict(context or {})
        ctx.update({"status_line": status_line, "status_code": status_code, "body": body})
        super().__init__(message, ctx)
        self.status_line = status_line
        self.status_code = status_code
        self.body = body


class ProcessError(AgentVmError):
    """Spawning or signalling the hypervisor process failed."""

    kind = "process_error"
