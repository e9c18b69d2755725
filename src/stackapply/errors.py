"""Exception hierarchy for stackapply."""


class StackApplyError(Exception):
    """Base class for all stackapply errors."""


class PlanError(StackApplyError):
    """Raised before any provider mutation when the model, graph or state is unsound."""


class DuplicateIdError(PlanError):
    def __init__(self, logical_id: str):
        self.logical_id = logical_id
        super().__init__(f"Resource {logical_id!r} is already declared")


class UnknownResourceError(PlanError):
    def __init__(self, logical_id: str, referenced_by: str | None = None):
        self.logical_id = logical_id
        self.referenced_by = referenced_by
        if referenced_by:
            message = f"Resource {referenced_by!r} references undeclared resource {logical_id!r}"
        else:
            message = f"Resource {logical_id!r} is not declared"
        super().__init__(message)


class CyclicDependencyError(PlanError):
    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        path = " -> ".join([*self.cycle, self.cycle[0]]) if self.cycle else ""
        super().__init__(f"Dependency cycle detected: {path}")


class DocumentError(PlanError):
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid desired-state document {path}: {reason}")


class UnknownKindError(PlanError):
    def __init__(self, kind: str, logical_id: str | None = None):
        self.kind = kind
        self.logical_id = logical_id
        suffix = f" (resource {logical_id!r})" if logical_id else ""
        super().__init__(f"No provider registered for kind {kind!r}{suffix}")


class CorruptStateError(PlanError):
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"State file {path} is unreadable: {reason}")


class UnsupportedStateVersionError(CorruptStateError):
    def __init__(self, path: str, version: object):
        self.version = version
        super().__init__(path, f"unsupported schema version {version!r}")


class ConcurrentRunError(PlanError):
    def __init__(self, path: str, holder: str | None = None):
        self.path = path
        self.holder = holder
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"State {path} is locked by another run{detail}")


class ProviderError(StackApplyError):
    """A provider operation failed; not retried."""


class TransientProviderError(ProviderError):
    """A provider operation failed in a way that is safe to retry."""


class ChangeFailedError(StackApplyError):
    def __init__(self, logical_id: str, attempts: int, cause: BaseException):
        self.logical_id = logical_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{logical_id}: failed after {attempts} attempt(s): {cause}")
