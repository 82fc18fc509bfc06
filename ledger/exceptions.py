class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class ConflictError(LedgerServiceError):
    pass


class InvalidStateTransitionError(ConflictError):
    pass


class VersionConflictError(ConflictError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class PermissionDeniedError(LedgerServiceError):
    pass
