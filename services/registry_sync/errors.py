from __future__ import annotations


class RegistrySyncError(Exception):
    pass


class LedgerUnavailableError(RegistrySyncError):
    def __init__(self, chain: str, operation: str, attempts: int, cause: BaseException | None) -> None:
        detail = f'{operation} on {chain} failed after {attempts} attempts'
        if cause is not None:
            detail = f'{detail}: {cause}'
        super().__init__(detail)
        self.chain = chain
        self.operation = operation
        self.attempts = attempts
        self.cause = cause


class PersistenceError(RegistrySyncError):
    def __init__(self, path: str, cause: BaseException) -> None:
        super().__init__(f'failed to write {path}: {cause}')
        self.path = path
        self.cause = cause
