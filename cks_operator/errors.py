"""Error taxonomy shared by the resolvers, the orchestrator and the state machine."""
from __future__ import annotations

from typing import Iterable, Iterator, Optional, Type

# Substring CloudStack puts in the error text when a create call collides with
# an existing, equivalent resource.
ALREADY_EXISTS_SENTINEL = "There is already"


class CloudError(Exception):
    """Base class for every failure raised by this package."""


class NotFoundError(CloudError):
    """A lookup legitimately returned zero matches."""


class AmbiguousError(CloudError):
    """A lookup returned more than the single expected match."""


class IdentityConflictError(CloudError):
    """A recorded resource identity would be replaced by a different one."""


class RemoteError(CloudError):
    """A CloudStack API call failed."""

    def __init__(self, message: str, *, command: str | None = None, error_code: int | None = None):
        super().__init__(message)
        self.command = command
        self.error_code = error_code


class AsyncJobError(RemoteError):
    """An asynchronous CloudStack job finished unsuccessfully or never finished."""

    def __init__(self, message: str, *, command: str | None = None, job_id: str | None = None,
                 error_code: int | None = None):
        super().__init__(message, command=command, error_code=error_code)
        self.job_id = job_id


class ConflictError(CloudError):
    """A record changed underneath us; re-read it and try again."""


class MultiError(CloudError):
    """Several causes collected during a single pass."""

    def __init__(self, errors: Iterable[Exception] = ()):
        self.errors: list[Exception] = []
        for err in errors:
            self.append(err)
        super().__init__(str(self))

    def append(self, err: Exception) -> "MultiError":
        if isinstance(err, MultiError):
            self.errors.extend(err.errors)
        else:
            self.errors.append(err)
        self.args = (str(self),)
        return self

    def has(self, kind: Type[Exception]) -> bool:
        return any(isinstance(err, kind) for err in self.errors)

    def only(self, kind: Type[Exception]) -> bool:
        """True when every collected cause is a *kind*."""
        return bool(self.errors) and all(isinstance(err, kind) for err in self.errors)

    def __iter__(self) -> Iterator[Exception]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def __str__(self) -> str:
        if len(self.errors) == 1:
            return f"1 error occurred: {self.errors[0]}"
        lines = "\n".join(f"\t* {err}" for err in self.errors)
        return f"{len(self.errors)} errors occurred:\n{lines}"


def append_error(current: Optional[MultiError], err: Exception) -> MultiError:
    """Append *err* to *current*, creating the aggregate on first use."""
    if current is None:
        current = MultiError()
    return current.append(err)


def is_already_satisfied(exc: BaseException) -> bool:
    """True when *exc* says the desired resource already exists."""
    return ALREADY_EXISTS_SENTINEL in str(exc)
