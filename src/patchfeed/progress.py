"""Progress reporting and cooperative cancellation.

Long-running calls (downloads, archive extraction) take an optional
ProgressReporter. The caller reads progress and requests cancellation
through it; the running operation polls ``was_canceled`` at file start and
once per chunk. There is one writer (the active transfer) and one reader
(the caller), so no locks are used.

Example:
    >>> counter = ProgressCounter()
    >>> staged = manifest.download_files(install_dir, counter)
    >>> # from another thread, e.g. a Cancel button:
    >>> counter.cancel()
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

UNKNOWN_MAXIMUM = -1


class OperationCancelled(Exception):
    """Internal signal raised by copy loops when cancellation is observed.

    Public entry points translate it into a ``None`` / cancelled outcome; it
    never reaches callers of ``download_files``.
    """


@runtime_checkable
class ProgressReporter(Protocol):
    """What long-running operations need from a progress display."""

    caption: str
    progress: int
    maximum: int
    can_cancel: bool

    @property
    def was_canceled(self) -> bool: ...


class CancellationToken:
    """A shared, advisory cancellation flag."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


class EmptyProgressReporter:
    """A reporter that records nothing and is never cancelled.

    Used by operations that take an optional reporter:
    ``progress = progress or EmptyProgressReporter()``.
    """

    def __init__(self) -> None:
        self.caption = ""
        self.progress = 0
        self.maximum = UNKNOWN_MAXIMUM
        self.can_cancel = False

    @property
    def was_canceled(self) -> bool:
        return False


class ProgressCounter:
    """In-memory progress counter with a cancellation token.

    Attributes:
        caption: Short description of the current step.
        progress: Units completed so far.
        maximum: Total units, or ``UNKNOWN_MAXIMUM``.
        can_cancel: Whether the running operation honours cancellation.
        token: The cancellation token shared with child views.
    """

    def __init__(self, token: CancellationToken | None = None) -> None:
        self.caption = ""
        self.progress = 0
        self.can_cancel = False
        self.token = token or CancellationToken()
        self._maximum = UNKNOWN_MAXIMUM
        self._allocated = 0

    @property
    def maximum(self) -> int:
        return self._maximum

    @maximum.setter
    def maximum(self, value: int) -> None:
        self._maximum = value
        self._allocated = 0

    @property
    def allocated(self) -> int:
        """Sum of the maximums handed out to child views since ``maximum`` was last set."""
        return self._allocated

    @property
    def was_canceled(self) -> bool:
        return self.token.is_cancelled

    def cancel(self) -> None:
        self.token.cancel()

    def child(self, maximum: int | None = None) -> ChildProgress:
        """Create a view whose progress adds into this counter.

        Raises:
            ValueError: If the children's maximums would exceed this counter's maximum.
        """
        if maximum is not None and maximum > 0:
            if self._maximum >= 0 and self._allocated + maximum > self._maximum:
                raise ValueError(
                    f"Child maximum {maximum} exceeds remaining capacity "
                    f"{self._maximum - self._allocated}"
                )
            self._allocated += maximum
        return ChildProgress(self, maximum)


class ChildProgress:
    """A progress view over part of a parent reporter's range.

    Setting ``progress`` adds the delta into the parent. Setting ``maximum``
    only changes this view: the parent's declared maximum is never rescaled.
    Caption and cancellation are shared with the parent.
    """

    def __init__(self, parent: ProgressReporter, maximum: int | None = None) -> None:
        self._parent = parent
        self._progress = 0
        self.maximum = UNKNOWN_MAXIMUM if maximum is None else maximum

    @property
    def caption(self) -> str:
        return self._parent.caption

    @caption.setter
    def caption(self, value: str) -> None:
        self._parent.caption = value

    @property
    def progress(self) -> int:
        return self._progress

    @progress.setter
    def progress(self, value: int) -> None:
        self._parent.progress += value - self._progress
        self._progress = value

    @property
    def can_cancel(self) -> bool:
        return self._parent.can_cancel

    @can_cancel.setter
    def can_cancel(self, value: bool) -> None:
        self._parent.can_cancel = value

    @property
    def was_canceled(self) -> bool:
        return self._parent.was_canceled

    def child(self, maximum: int | None = None) -> ChildProgress:
        return ChildProgress(self, maximum)


def child_progress(parent: ProgressReporter, maximum: int | None = None) -> ProgressReporter:
    """Child view for any reporter; counters also track the allocation invariant."""
    if isinstance(parent, (ProgressCounter, ChildProgress)):
        return parent.child(maximum)
    return ChildProgress(parent, maximum)


def raise_if_cancelled(progress: ProgressReporter) -> None:
    if progress.was_canceled:
        raise OperationCancelled()
