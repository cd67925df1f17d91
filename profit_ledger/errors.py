class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class InvalidStateError(LedgerServiceError):
    pass


class AlreadySettledError(InvalidStateError):
    pass


class DuplicateError(LedgerServiceError):
    pass


class DuplicateTxHashError(DuplicateError):
    pass


class AlreadyRunError(LedgerServiceError):
    pass


class InsufficientFundsError(LedgerServiceError):
    pass


class InvalidRequestError(LedgerServiceError):
    pass


class PersistenceError(LedgerServiceError):
    """A transaction could not be completed by the database."""
