"""Pure integer math for the reward index.

All functions are total over non-negative ints and never round in the
stakers' favour: every division floors, so the sum of credited rewards never
exceeds what the emission schedule released.
"""

from __future__ import annotations

from .types import PRECISION_FACTOR


def compute_asset_index(
    current_index: int,
    emission_per_second: int,
    last_update_timestamp: int,
    total_staked: int,
    now: int,
    distribution_end: int,
) -> int:
    """Return the index after accruing from `last_update_timestamp` to `now`.

    The index is unchanged when there is nothing to distribute (zero emission,
    zero stake, no elapsed time) or once the distribution has ended. Accrual is
    capped at `distribution_end`.
    """
    if (
        emission_per_second == 0
        or total_staked == 0
        or last_update_timestamp == now
        or last_update_timestamp >= distribution_end
    ):
        return current_index

    current_timestamp = min(now, distribution_end)
    elapsed = current_timestamp - last_update_timestamp
    if elapsed <= 0:
        return current_index
    return current_index + (emission_per_second * elapsed * PRECISION_FACTOR) // total_staked


def compute_rewards(staked_balance: int, asset_index: int, user_index: int) -> int:
    """Rewards earned by `staked_balance` between two index observations."""
    if asset_index < user_index:
        raise ValueError(f"asset index {asset_index} is behind user index {user_index}")
    return (staked_balance * (asset_index - user_index)) // PRECISION_FACTOR
