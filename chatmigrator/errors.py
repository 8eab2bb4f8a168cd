"""Exception types shared by the database layer."""

from __future__ import annotations


class UnreachableCodeError(RuntimeError):
    """Raised or logged when control reaches a branch that should never run."""

    def __init__(self, message: str = "this could should be unreachable") -> None:
        super().__init__(message)


class DbError(Exception):
    """A database failure that knows whether retrying could fix it."""

    def __init__(self, err: BaseException | str, reconcilable: bool) -> None:
        super().__init__(err, reconcilable)
        self.err = err
        self.reconcilable = reconcilable

    def __str__(self) -> str:
        if self.reconcilable:
            return f"{self.err} - is reconscilable"
        return f"{self.err} - is not reconscilable"