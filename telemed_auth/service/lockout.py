"""Account lockout state machine.

Lock state is never stored as a flag. It is derived from
``(failed_attempts, locked_until, now)`` every time it is needed, so an
expired lock disappears on its own without a background job: the next
recorded attempt simply starts from a clean counter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    lock_window: timedelta = timedelta(hours=2)


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None


def is_locked(state: LockoutState, now: datetime) -> bool:
    return state.locked_until is not None and now < state.locked_until


def effective_state(state: LockoutState, now: datetime) -> LockoutState:
    """Apply lazy unlock: a lock whose window has elapsed counts as ``UNLOCKED(0)``."""
    if state.locked_until is not None and now >= state.locked_until:
        return LockoutState()
    return state


def register_failure(
    state: LockoutState, now: datetime, policy: LockoutPolicy
) -> LockoutState:
    """State after one more failed credential check.

    An already-running lock is never extended; concurrent failures that
    slipped past the lock check only bump the counter.
    """
    current = effective_state(state, now)
    attempts = current.failed_attempts + 1
    locked_until = current.locked_until
    if locked_until is None and attempts >= policy.max_attempts:
        locked_until = now + policy.lock_window
    return LockoutState(failed_attempts=attempts, locked_until=locked_until)


def register_success() -> LockoutState:
    return LockoutState()
