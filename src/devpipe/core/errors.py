"""Exception hierarchy for the dispatch and completion engine."""


class DevpipeError(Exception):
    """Base class for all devpipe errors."""


class ValidationError(DevpipeError, ValueError):
    """Raised for unknown roles, levels, results or labels, before anything is mutated."""


class NoRuleError(ValidationError):
    """Raised when the workflow defines no completion rule for a (role, result) pair."""


class NoFreeSlotError(ValidationError):
    """Raised when every slot for a (role, level) is busy."""


class ProjectNotFoundError(ValidationError):
    """Raised when a project slug or channel id is not registered."""


class WorkflowConfigError(ValidationError):
    """Raised when a workflow definition fails validation."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid workflow: " + "; ".join(problems))


class CommitmentError(DevpipeError):
    """Raised when the label transition that commits a dispatch or completion fails."""


class StateStoreError(DevpipeError):
    """Raised when the worker state document cannot be read or written."""


class StateLockTimeout(StateStoreError):
    """Raised when the workspace lock cannot be acquired in time."""


class SlotConflictError(StateStoreError):
    """Raised when an issue is already claimed by another slot."""


class ProviderUnhealthy(DevpipeError):
    """Raised when a circuit breaker refuses calls to a failing provider."""
