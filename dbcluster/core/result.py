"""
Outcome of a single reconcile phase.

Phases return one of four outcomes instead of signalling control flow with
sentinel exceptions:

- PROCEED: nothing left to do, run the next phase
- SKIP: the phase intentionally has nothing to do right now
- REQUEUE: stop the pass and run it again, immediately or after a delay
- FAIL: stop the pass, record the error in status and back off
"""
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional


class OutcomeKind(str, Enum):
    PROCEED = "proceed"
    SKIP = "skip"
    REQUEUE = "requeue"
    FAIL = "fail"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    after: Optional[timedelta] = None
    error: Optional[BaseException] = None

    @classmethod
    def proceed(cls) -> "Outcome":
        return cls(OutcomeKind.PROCEED)

    @classmethod
    def skip(cls) -> "Outcome":
        return cls(OutcomeKind.SKIP)

    @classmethod
    def requeue(cls, after: Optional[timedelta] = None) -> "Outcome":
        """Requeue after a delay, or immediately when ``after`` is None."""
        return cls(OutcomeKind.REQUEUE, after=after)

    @classmethod
    def fail(cls, error: BaseException) -> "Outcome":
        return cls(OutcomeKind.FAIL, error=error)

    @property
    def is_requeue(self) -> bool:
        return self.kind == OutcomeKind.REQUEUE

    @property
    def is_immediate(self) -> bool:
        return self.is_requeue and not self.after

    @property
    def stops_pass(self) -> bool:
        return self.kind in (OutcomeKind.REQUEUE, OutcomeKind.FAIL)

    def __str__(self) -> str:
        if self.kind == OutcomeKind.REQUEUE:
            return f"requeue(after={self.after.total_seconds() if self.after else 0:g}s)"
        if self.kind == OutcomeKind.FAIL:
            return f"fail({self.error})"
        return self.kind.value
