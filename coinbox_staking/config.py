"""
Engine configuration.

Timing parameters are loaded from YAML (`defaults.yaml` ships with the
package). Roles (assets, vault, controller, owner) are deployment inputs and
are passed to `build_engine` directly.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

from .core.clock import Clock
from .core.engine import Custodian, StakeEngine
from .core.errors import StakingError
from .core.types import AccountId, AssetId, ClaimWindowMode


def _default_config_path() -> Path:
    return Path(__file__).resolve().parent / "defaults.yaml"


@dataclass(frozen=True)
class StakingConfig:
    cooldown_seconds: int = 864_000
    unstake_window: int = 172_800
    distribution_duration: int = 315_360_000
    claim_window_mode: ClaimWindowMode = ClaimWindowMode.LITERAL
    check_invariants: bool = True

    def __post_init__(self) -> None:
        for name in ("cooldown_seconds", "unstake_window", "distribution_duration"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{name} must be a non-negative int, got {value!r}")
        if not isinstance(self.check_invariants, bool):
            raise ValueError("check_invariants must be a bool")
        # Accept the YAML string form.
        object.__setattr__(self, "claim_window_mode", ClaimWindowMode(self.claim_window_mode))


def config_from_mapping(data: Mapping[str, Any]) -> StakingConfig:
    if not isinstance(data, Mapping):
        raise ValueError(f"config must be a mapping, got {type(data).__name__}")
    known = {f.name for f in fields(StakingConfig)}
    unknown = set(data.keys()) - known
    if unknown:
        raise ValueError(f"unknown config keys: {', '.join(sorted(unknown))}")
    return StakingConfig(**dict(data))


def load_config(path: Optional[Union[str, Path]] = None) -> StakingConfig:
    """Load a `StakingConfig` from YAML; the packaged defaults when `path` is None."""
    config_path = Path(path) if path is not None else _default_config_path()
    obj = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if obj is None:
        return StakingConfig()
    if not isinstance(obj, Mapping):
        raise ValueError(f"{config_path}: top-level YAML value must be a mapping")
    section = obj.get("staking", obj)
    return config_from_mapping(section)


def build_engine(
    config: StakingConfig,
    custodian: Custodian,
    clock: Optional[Clock] = None,
    *,
    staked_asset: AssetId,
    reward_asset: AssetId,
    rewards_vault: AccountId,
    emission_controller: AccountId,
    owner: AccountId,
) -> StakeEngine:
    """Construct and initialize an engine, raising on invalid roles."""
    engine = StakeEngine(custodian, clock, check_invariants=config.check_invariants)
    result = engine.initialize_from_config(
        config,
        staked_asset=staked_asset,
        reward_asset=reward_asset,
        rewards_vault=rewards_vault,
        emission_controller=emission_controller,
        owner=owner,
    )
    if not result.ok:
        raise StakingError(result.error, result.detail)
    return engine
