"""Exception hierarchy for deployment phases."""
from typing import List, Optional


class DeploymentError(Exception):
    """Base error for a failed deployment phase.

    Args:
        message: Human readable failure description
        phase: Workflow phase that failed, filled in by the workflow if omitted
        hints: Shell commands that help the operator investigate or clean up
    """

    default_phase: Optional[str] = None

    def __init__(self, message: str, phase: Optional[str] = None,
                 hints: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase or self.default_phase
        self.hints = list(hints or [])


class PreconditionError(DeploymentError):
    """A local requirement is not met. Raised before any remote call."""

    default_phase = "preconditions"


class ToolMissingError(PreconditionError):
    """A required tool is not installed, not running or not configured."""


class InputMissingError(PreconditionError):
    """A required file or argument was not supplied."""


class ReconcileError(DeploymentError):
    """CloudFormation rejected the stack or failed to reach a complete state."""

    default_phase = "stack"

    def __init__(self, message: str, stack_status: Optional[str] = None,
                 events: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.stack_status = stack_status
        self.events = list(events or [])


class StackBusyError(ReconcileError):
    """The stack has an operation in flight; re-running later is enough."""


class PublishError(DeploymentError):
    """Building, authenticating or pushing the image failed."""

    default_phase = "artifact"

    def __init__(self, message: str, step: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.step = step


class ConvergenceError(DeploymentError):
    """The ECS service cannot reach steady state (missing, inactive, failed rollout)."""

    default_phase = "fleet"


class ConvergenceTimeoutError(ConvergenceError):
    """The service did not reach steady state within the allotted wait.

    ECS may still converge later; the wait can be resumed without changing
    the desired count.
    """

    def __init__(self, message: str, desired: Optional[int] = None,
                 running: Optional[int] = None, pending: Optional[int] = None,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.desired = desired
        self.running = running
        self.pending = pending


class WorkflowOrderError(DeploymentError):
    """A phase was invoked before the phase it depends on completed."""

    default_phase = "fleet"
