"""Cooldown state machine helpers.

Idle (0) -> start_cooldown -> Cooling(start) -> Claimable window -> Idle.

These are pure functions of timestamps; the engine owns the per-account
cooldown timestamps and calls in here.
"""

from __future__ import annotations

from typing import Optional

from .errors import ErrorKind
from .types import ClaimWindowMode, CooldownPhase


def next_cooldown_timestamp(
    *,
    from_cooldown_timestamp: int,
    amount_incoming: int,
    to_cooldown_timestamp: int,
    to_balance: int,
    now: int,
    cooldown_seconds: int,
    unstake_window: int,
) -> int:
    """Cooldown timestamp of an account after receiving `amount_incoming`.

    - no active cooldown on the receiver: stays 0
    - receiver cooldown expired past the unstake window: reset to 0
    - stale incoming cooldown counts as starting `now`
    - a more mature receiver cooldown wins outright
    - otherwise the balance-weighted average of both timestamps
    """
    if to_cooldown_timestamp == 0:
        return 0

    minimal_valid = now - cooldown_seconds - unstake_window
    if minimal_valid > to_cooldown_timestamp:
        return 0

    if minimal_valid > from_cooldown_timestamp:
        from_cooldown_timestamp = now

    if from_cooldown_timestamp < to_cooldown_timestamp:
        return to_cooldown_timestamp

    denominator = amount_incoming + to_balance
    if denominator == 0:
        return to_cooldown_timestamp
    return (amount_incoming * from_cooldown_timestamp + to_balance * to_cooldown_timestamp) // denominator


def check_claim_window(
    *,
    cooldown_start: int,
    now: int,
    cooldown_seconds: int,
    unstake_window: int,
    mode: ClaimWindowMode = ClaimWindowMode.LITERAL,
) -> Optional[ErrorKind]:
    """Return the rejection for a claim at `now`, or None when it is allowed.

    A `cooldown_start` of 0 (no cooldown ever started) is not special-cased:
    it is treated as a cooldown that started at t=0. An account that never
    called `start_cooldown` can therefore claim once `now > cooldown_seconds`
    while the window formula still holds. In MATURED mode that is the span
    `cooldown_seconds < now <= cooldown_seconds + unstake_window`.
    """
    if not now > cooldown_start + cooldown_seconds:
        return ErrorKind.INSUFFICIENT_COOLDOWN

    if mode is ClaimWindowMode.LITERAL:
        # Kept literal on purpose: it can reject every claim when the window is
        # shorter than the cooldown. MATURED mode measures from maturity instead.
        in_window = now - cooldown_start + cooldown_seconds <= unstake_window
    else:
        in_window = now - cooldown_start - cooldown_seconds <= unstake_window
    if not in_window:
        return ErrorKind.UNSTAKE_WINDOW_FINISHED
    return None


def cooldown_phase(
    *,
    cooldown_start: int,
    now: int,
    cooldown_seconds: int,
    unstake_window: int,
    mode: ClaimWindowMode = ClaimWindowMode.LITERAL,
) -> CooldownPhase:
    if cooldown_start == 0:
        return CooldownPhase.IDLE
    err = check_claim_window(
        cooldown_start=cooldown_start,
        now=now,
        cooldown_seconds=cooldown_seconds,
        unstake_window=unstake_window,
        mode=mode,
    )
    if err is None:
        return CooldownPhase.CLAIMABLE
    if err is ErrorKind.INSUFFICIENT_COOLDOWN:
        return CooldownPhase.COOLING
    return CooldownPhase.EXPIRED
