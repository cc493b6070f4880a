"""Stake Accounting Engine.

Owns staked balances, claimable rewards and cooldown timestamps, and an owned
`DistributionLedger` it reconciles accounts against before every balance
change.

Every public operation:

1. Runs under the engine lock (single serialization point).
2. Validates its inputs against the pre-state; a rejection returns a
   ``StakeResult`` with an ``ErrorKind`` and leaves no trace.
3. Mutates internal state and queues its custodian transfers.
4. Checks invariants on the post-state (optional).
5. Runs the queued transfers, so nothing moves on an invariant failure.
6. Rolls everything back if the custodian refuses or an invariant fails.

Events are buffered during an operation and published only once it commits.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from .clock import Clock, SystemClock
from .cooldown import check_claim_window, cooldown_phase, next_cooldown_timestamp
from .distribution import DistributionLedger, LedgerCheckpoint
from .errors import CustodianError, ErrorKind, StakingError
from .invariants import check_all
from .types import (
    AccountId,
    Action,
    Amount,
    AssetDistribution,
    AssetId,
    ClaimWindowMode,
    CooldownPhase,
    DistributionConfig,
    Event,
    StakeCommand,
    StakeResult,
    StakerAccount,
    StakingEvent,
    is_amount,
    is_null_account,
)

log = logging.getLogger(__name__)


class Custodian(Protocol):
    custody_account: AccountId

    def pull(self, asset: AssetId, source: AccountId, destination: AccountId, amount: Amount) -> None: ...

    def push(
        self, asset: AssetId, destination: AccountId, amount: Amount, *, source: Optional[AccountId] = None
    ) -> None: ...

    def balance_of(self, account: AccountId, asset: AssetId) -> Amount: ...


class _Abort(Exception):
    def __init__(self, kind: ErrorKind, detail: Optional[str] = None) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(kind.value)


_Checkpoint = Tuple[Optional[LedgerCheckpoint], Dict[AccountId, StakerAccount], int, int]


class StakeEngine:
    def __init__(
        self,
        custodian: Custodian,
        clock: Optional[Clock] = None,
        *,
        check_invariants: bool = True,
    ) -> None:
        self._custodian = custodian
        self._clock: Clock = clock if clock is not None else SystemClock()
        self._check_invariants = check_invariants
        self._lock = threading.RLock()

        self._initialized = False
        self._ledger: Optional[DistributionLedger] = None
        self._staked_asset: Optional[AssetId] = None
        self._reward_asset: Optional[AssetId] = None
        self._rewards_vault: Optional[AccountId] = None
        self._owner: Optional[AccountId] = None
        self._cooldown_seconds = 0
        self._unstake_window = 0
        self._claim_window_mode = ClaimWindowMode.LITERAL

        self._accounts: Dict[AccountId, StakerAccount] = {}
        self._total_staked = 0

        self._events: List[StakingEvent] = []
        self._pending: List[StakingEvent] = []
        self._subscribers: List[Callable[[StakingEvent], None]] = []
        self._batch_depth = 0
        self._transfers: List[Callable[[], None]] = []

    # -- construction ---------------------------------------------------------

    def initialize(
        self,
        *,
        staked_asset: AssetId,
        reward_asset: AssetId,
        cooldown_seconds: int,
        unstake_window: int,
        rewards_vault: AccountId,
        emission_controller: AccountId,
        distribution_duration: int,
        owner: AccountId,
        claim_window_mode: Union[ClaimWindowMode, str] = ClaimWindowMode.LITERAL,
    ) -> StakeResult:
        """Second construction phase. May be called exactly once."""
        with self._lock:
            if self._initialized:
                return StakeResult.reject(ErrorKind.ALREADY_INITIALIZED)

            for name, value in (
                ("staked_asset", staked_asset),
                ("reward_asset", reward_asset),
                ("rewards_vault", rewards_vault),
                ("emission_controller", emission_controller),
                ("owner", owner),
            ):
                if is_null_account(value):
                    return StakeResult.reject(ErrorKind.INVALID_ADDRESS, f"{name} is null")
            for name, value in (
                ("cooldown_seconds", cooldown_seconds),
                ("unstake_window", unstake_window),
                ("distribution_duration", distribution_duration),
            ):
                if not is_amount(value) or value < 0:
                    return StakeResult.reject(ErrorKind.INVALID_AMOUNT, f"{name} must be a non-negative int")
            try:
                mode = ClaimWindowMode(claim_window_mode)
            except ValueError:
                return StakeResult.reject(ErrorKind.INVALID_AMOUNT, f"unknown claim window mode {claim_window_mode!r}")

            now = self._clock.now()
            self._staked_asset = staked_asset
            self._reward_asset = reward_asset
            self._rewards_vault = rewards_vault
            self._owner = owner
            self._cooldown_seconds = cooldown_seconds
            self._unstake_window = unstake_window
            self._claim_window_mode = mode
            self._ledger = DistributionLedger(
                self._clock,
                emission_controller=emission_controller,
                distribution_end=now + distribution_duration,
                emit=self._pending.append,
            )
            self._initialized = True

            log.info(
                "staking engine initialized: staked=%s reward=%s cooldown=%ds window=%ds end=%d",
                staked_asset,
                reward_asset,
                cooldown_seconds,
                unstake_window,
                self._ledger.distribution_end,
            )
            mark = len(self._pending)
            self._emit(
                Event.INITIALIZED,
                staked_asset=staked_asset,
                reward_asset=reward_asset,
                distribution_end=self._ledger.distribution_end,
            )
            events = tuple(self._pending[mark:])
            if self._batch_depth == 0:
                self._commit_events()
            return StakeResult(ok=True, events=events)

    def initialize_from_config(self, config: Any, **roles: AccountId) -> StakeResult:
        """`initialize` with timing parameters taken from a `StakingConfig`.

        `roles` supplies staked_asset, reward_asset, rewards_vault,
        emission_controller and owner.
        """
        return self.initialize(
            cooldown_seconds=config.cooldown_seconds,
            unstake_window=config.unstake_window,
            distribution_duration=config.distribution_duration,
            claim_window_mode=config.claim_window_mode,
            **roles,
        )

    def restore(
        self,
        *,
        distribution_end: int,
        accounts: Mapping[AccountId, StakerAccount],
        distributions: Mapping[AssetId, AssetDistribution],
        user_index: Mapping[Tuple[AssetId, AccountId], int],
    ) -> None:
        """Load previously exported state into an initialized engine."""
        with self._lock:
            if not self._initialized or self._ledger is None:
                raise StakingError(ErrorKind.NOT_INITIALIZED)
            ledger = DistributionLedger(
                self._clock,
                emission_controller=self._ledger.emission_controller,
                distribution_end=distribution_end,
                emit=self._pending.append,
            )
            ledger.load(dict(distributions), dict(user_index))
            self._ledger = ledger
            self._accounts = dict(accounts)
            self._total_staked = sum(acct.staked_balance for acct in self._accounts.values())

    # -- read accessors -------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def ledger(self) -> DistributionLedger:
        if self._ledger is None:
            raise StakingError(ErrorKind.NOT_INITIALIZED)
        return self._ledger

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def custodian(self) -> Custodian:
        return self._custodian

    @property
    def staked_asset(self) -> Optional[AssetId]:
        return self._staked_asset

    @property
    def reward_asset(self) -> Optional[AssetId]:
        return self._reward_asset

    @property
    def rewards_vault(self) -> Optional[AccountId]:
        return self._rewards_vault

    @property
    def owner(self) -> Optional[AccountId]:
        return self._owner

    @property
    def emission_controller(self) -> Optional[AccountId]:
        return self._ledger.emission_controller if self._ledger is not None else None

    @property
    def cooldown_seconds(self) -> int:
        return self._cooldown_seconds

    @property
    def unstake_window(self) -> int:
        return self._unstake_window

    @property
    def claim_window_mode(self) -> ClaimWindowMode:
        return self._claim_window_mode

    @property
    def distribution_end(self) -> int:
        return self.ledger.distribution_end

    @property
    def total_staked(self) -> int:
        with self._lock:
            return self._total_staked

    @property
    def events(self) -> Tuple[StakingEvent, ...]:
        """Committed events, oldest first."""
        with self._lock:
            return tuple(self._events)

    def get_account(self, account: AccountId) -> StakerAccount:
        with self._lock:
            return self._accounts.get(account, StakerAccount())

    def accounts(self) -> Dict[AccountId, StakerAccount]:
        with self._lock:
            return dict(self._accounts)

    def staked_balance(self, account: AccountId) -> int:
        return self.get_account(account).staked_balance

    def claimable_rewards(self, account: AccountId) -> int:
        return self.get_account(account).claimable_rewards

    def cooldown_timestamp(self, account: AccountId) -> int:
        return self.get_account(account).cooldown_timestamp

    def get_distribution(self, asset: Optional[AssetId] = None) -> AssetDistribution:
        return self.ledger.get_distribution(asset if asset is not None else self._staked_asset)

    def get_user_index(self, account: AccountId, asset: Optional[AssetId] = None) -> int:
        return self.ledger.get_user_index(account, asset if asset is not None else self._staked_asset)

    def get_total_rewards_balance(self, account: AccountId) -> int:
        """Claimable rewards plus accrual not yet reconciled. Read-only."""
        with self._lock:
            acct = self.get_account(account)
            if not self._initialized:
                return acct.claimable_rewards
            pending = self.ledger.preview_accrued(account, self._staked_asset, acct.staked_balance, self._total_staked)
            return acct.claimable_rewards + pending

    def next_cooldown_timestamp(
        self,
        from_cooldown_timestamp: int,
        amount_incoming: int,
        to_account: AccountId,
        to_balance: int,
    ) -> int:
        return next_cooldown_timestamp(
            from_cooldown_timestamp=from_cooldown_timestamp,
            amount_incoming=amount_incoming,
            to_cooldown_timestamp=self.cooldown_timestamp(to_account),
            to_balance=to_balance,
            now=self._clock.now(),
            cooldown_seconds=self._cooldown_seconds,
            unstake_window=self._unstake_window,
        )

    def cooldown_phase(self, account: AccountId) -> CooldownPhase:
        return cooldown_phase(
            cooldown_start=self.cooldown_timestamp(account),
            now=self._clock.now(),
            cooldown_seconds=self._cooldown_seconds,
            unstake_window=self._unstake_window,
            mode=self._claim_window_mode,
        )

    def subscribe(self, callback: Callable[[StakingEvent], None]) -> None:
        """Call `callback` for every event, after its operation commits."""
        self._subscribers.append(callback)

    # -- public operations ----------------------------------------------------

    def stake(self, account: AccountId, amount: int, caller: Optional[AccountId] = None) -> StakeResult:
        """Stake `amount` for `account`, paid by `caller` (defaults to `account`)."""
        return self._run(Action.STAKE, self._stake, account, amount, caller if caller is not None else account)

    def start_cooldown(self, account: AccountId) -> StakeResult:
        return self._run(Action.START_COOLDOWN, self._start_cooldown, account)

    def claim(self, account: AccountId, amount: int) -> StakeResult:
        """Claim up to `amount` of rewards; `result.amount` is what was paid."""
        return self._run(Action.CLAIM, self._claim, account, amount)

    def transfer(self, from_account: AccountId, to_account: AccountId, amount: int) -> StakeResult:
        return self._run(Action.TRANSFER, self._transfer, from_account, to_account, amount)

    def redeem(self, caller: AccountId, amount: int) -> StakeResult:
        """Owner-only sweep of the staked asset out of custody."""
        return self._run(Action.REDEEM, self._redeem, caller, amount)

    def configure_distribution(
        self,
        caller: AccountId,
        entries: Sequence[Union[DistributionConfig, Mapping[str, Any]]],
    ) -> StakeResult:
        return self._run(Action.CONFIGURE_DISTRIBUTION, self._configure_distribution, caller, entries)

    def execute(self, command: StakeCommand) -> StakeResult:
        """Dispatch a `StakeCommand` to the matching operation."""
        entry = _DISPATCH.get(command.action)
        if entry is None:
            return StakeResult.reject(ErrorKind.UNKNOWN_ACTION, str(command.action))
        fn, required, optional = entry
        args = dict(command.args)
        missing = [name for name in required if name not in args]
        if missing:
            return StakeResult.reject(ErrorKind.INVALID_AMOUNT, f"missing args: {','.join(missing)}")
        unexpected = sorted(name for name in args if name not in required and name not in optional)
        if unexpected:
            return StakeResult.reject(ErrorKind.INVALID_AMOUNT, f"unexpected args: {','.join(unexpected)}")
        return fn(self, **args)

    def execute_or_raise(self, command: StakeCommand) -> StakeResult:
        """Like ``execute()`` but raises ``StakingError`` on rejection."""
        result = self.execute(command)
        if not result.ok:
            raise StakingError(result.error or ErrorKind.UNKNOWN_ACTION, result.detail)
        return result

    @contextmanager
    def batch(self) -> Iterator["StakeEngine"]:
        """Apply several operations atomically.

        Any exception inside the block restores the engine and the custodian
        (which must support ``checkpoint()`` / ``rollback()``) to their state
        at entry; no events from the block are published.
        """
        checkpoint_fn = getattr(self._custodian, "checkpoint", None)
        rollback_fn = getattr(self._custodian, "rollback", None)
        if checkpoint_fn is None or rollback_fn is None:
            raise TypeError("batch() requires a custodian with checkpoint()/rollback()")

        with self._lock:
            checkpoint = self._checkpoint()
            custodian_checkpoint = checkpoint_fn()
            self._batch_depth += 1
            try:
                yield self
            except BaseException:
                self._batch_depth -= 1
                self._rollback(checkpoint)
                rollback_fn(custodian_checkpoint)
                raise
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._commit_events()

    # -- operation bodies -----------------------------------------------------

    def _stake(self, account: AccountId, amount: int, caller: AccountId) -> StakeResult:
        if is_null_account(account) or is_null_account(caller):
            return StakeResult.reject(ErrorKind.INVALID_ADDRESS)
        if not is_amount(amount) or amount <= 0:
            return StakeResult.reject(ErrorKind.INVALID_AMOUNT)

        balance = self.staked_balance(account)
        self._reconcile(account, balance)

        cooldown = self.next_cooldown_timestamp(0, amount, account, balance)
        acct = self.get_account(account)
        self._accounts[account] = replace(acct, staked_balance=balance + amount, cooldown_timestamp=cooldown)
        self._total_staked += amount
        self._emit(Event.STAKED, caller=caller, on_behalf_of=account, amount=amount)

        self._transfers.append(
            lambda: self._custodian.pull(self._staked_asset, caller, self._custodian.custody_account, amount)
        )
        return StakeResult(ok=True, amount=amount)

    def _start_cooldown(self, account: AccountId) -> StakeResult:
        if is_null_account(account):
            return StakeResult.reject(ErrorKind.INVALID_ADDRESS)
        if self.staked_balance(account) == 0:
            return StakeResult.reject(ErrorKind.INVALID_BALANCE_ON_COOLDOWN)

        now = self._clock.now()
        if now == 0:
            # 0 is the idle marker; a cooldown cannot start at it.
            return StakeResult.reject(ErrorKind.INVALID_TIMESTAMP, "cooldown cannot start at t=0")
        self._accounts[account] = replace(self.get_account(account), cooldown_timestamp=now)
        self._emit(Event.COOLDOWN, account=account)
        return StakeResult(ok=True)

    def _claim(self, account: AccountId, amount: int) -> StakeResult:
        if is_null_account(account):
            return StakeResult.reject(ErrorKind.INVALID_ADDRESS)
        if not is_amount(amount) or amount <= 0:
            return StakeResult.reject(ErrorKind.INVALID_AMOUNT)

        err = check_claim_window(
            cooldown_start=self.cooldown_timestamp(account),
            now=self._clock.now(),
            cooldown_seconds=self._cooldown_seconds,
            unstake_window=self._unstake_window,
            mode=self._claim_window_mode,
        )
        if err is not None:
            return StakeResult.reject(err)

        self._reconcile(account, self.staked_balance(account))
        acct = self.get_account(account)
        total_unclaimed = acct.claimable_rewards
        amount_to_claim = min(amount, total_unclaimed)
        remaining = total_unclaimed - amount_to_claim

        acct = replace(acct, claimable_rewards=remaining)
        if remaining == 0:
            acct = replace(acct, cooldown_timestamp=0)
        self._accounts[account] = acct
        self._emit(Event.REWARDS_CLAIMED, account=account, amount=amount_to_claim)

        if amount_to_claim > 0:
            self._transfers.append(
                lambda: self._custodian.push(self._reward_asset, account, amount_to_claim, source=self._rewards_vault)
            )
        return StakeResult(ok=True, amount=amount_to_claim)

    def _transfer(self, from_account: AccountId, to_account: AccountId, amount: int) -> StakeResult:
        if is_null_account(from_account) or is_null_account(to_account):
            return StakeResult.reject(ErrorKind.INVALID_ADDRESS)
        if not is_amount(amount) or amount <= 0:
            return StakeResult.reject(ErrorKind.INVALID_AMOUNT)
        from_balance = self.staked_balance(from_account)
        if amount > from_balance:
            return StakeResult.reject(ErrorKind.INSUFFICIENT_BALANCE)

        self._reconcile(from_account, from_balance)
        if from_account == to_account:
            return StakeResult(ok=True, amount=amount)

        to_balance = self.staked_balance(to_account)
        self._reconcile(to_account, to_balance)

        from_cooldown = self.cooldown_timestamp(from_account)
        to_cooldown = self.next_cooldown_timestamp(from_cooldown, amount, to_account, to_balance)
        if from_balance == amount and from_cooldown != 0:
            from_cooldown = 0

        self._accounts[from_account] = replace(
            self.get_account(from_account),
            staked_balance=from_balance - amount,
            cooldown_timestamp=from_cooldown,
        )
        self._accounts[to_account] = replace(
            self.get_account(to_account),
            staked_balance=to_balance + amount,
            cooldown_timestamp=to_cooldown,
        )
        self._emit(Event.STAKE_TRANSFERRED, sender=from_account, recipient=to_account, amount=amount)
        return StakeResult(ok=True, amount=amount)

    def _redeem(self, caller: AccountId, amount: int) -> StakeResult:
        if caller != self._owner:
            return StakeResult.reject(ErrorKind.UNAUTHORIZED, "caller is not the owner")
        if not is_amount(amount) or amount <= 0:
            return StakeResult.reject(ErrorKind.INVALID_AMOUNT)

        custody = self._custodian.custody_account
        amount_to_redeem = min(amount, self._custodian.balance_of(custody, self._staked_asset))
        self._emit(Event.REDEEMED, recipient=self._owner, amount=amount_to_redeem)
        if amount_to_redeem > 0:
            self._transfers.append(
                lambda: self._custodian.push(self._staked_asset, self._owner, amount_to_redeem, source=custody)
            )
        return StakeResult(ok=True, amount=amount_to_redeem)

    def _configure_distribution(
        self,
        caller: AccountId,
        entries: Sequence[Union[DistributionConfig, Mapping[str, Any]]],
    ) -> StakeResult:
        if not isinstance(entries, (list, tuple)):
            return StakeResult.reject(ErrorKind.INVALID_AMOUNT, "entries must be a list")
        configs: List[Any] = []
        for entry in entries:
            if not isinstance(entry, (DistributionConfig, Mapping)):
                return StakeResult.reject(ErrorKind.INVALID_AMOUNT, f"bad distribution entry {entry!r}")
            if isinstance(entry, Mapping):
                try:
                    entry = DistributionConfig(
                        asset=entry["asset"],
                        emission_per_second=entry["emission_per_second"],
                        total_staked=entry["total_staked"],
                    )
                except KeyError as exc:
                    return StakeResult.reject(ErrorKind.INVALID_AMOUNT, f"missing field {exc}")
            configs.append(entry)
        return self.ledger.configure_distribution(caller, configs)

    # -- internals ------------------------------------------------------------

    def _reconcile(self, account: AccountId, balance: int) -> int:
        """Pull pending accrual for `account` into its claimable rewards."""
        accrued = self.ledger.update_account_snapshot(account, self._staked_asset, balance, self._total_staked)
        if accrued != 0:
            acct = self.get_account(account)
            self._accounts[account] = replace(acct, claimable_rewards=acct.claimable_rewards + accrued)
            self._emit(Event.REWARDS_ACCRUED, account=account, amount=accrued)
        return accrued

    def _emit(self, event: Event, **data: Any) -> None:
        self._pending.append(StakingEvent(event=event, timestamp=self._clock.now(), data=data))

    def _run(self, action: Action, body: Callable[..., StakeResult], *args: Any) -> StakeResult:
        with self._lock:
            if not self._initialized:
                return StakeResult.reject(ErrorKind.NOT_INITIALIZED)

            checkpoint = self._checkpoint()
            self._transfers = []
            try:
                result = body(*args)
                if result.ok and self._check_invariants:
                    ledger_cp = checkpoint[0]
                    previous = ledger_cp[0] if ledger_cp is not None else None
                    violations = check_all(self, previous_distributions=previous)
                    if violations:
                        raise _Abort(ErrorKind.INVARIANT_VIOLATION, ",".join(violations))
                if result.ok:
                    for transfer in self._transfers:
                        transfer()
            except _Abort as exc:
                result = StakeResult.reject(exc.kind, exc.detail)
            except CustodianError as exc:
                result = StakeResult.reject(ErrorKind.TRANSFER_FAILED, str(exc))
            except BaseException:
                self._rollback(checkpoint)
                raise
            finally:
                self._transfers = []

            if not result.ok:
                self._rollback(checkpoint)
                log.debug("%s rejected: %s %s", action.value, result.error.value, result.detail or "")
                return result

            events = tuple(self._pending[checkpoint[3]:])
            if self._batch_depth == 0:
                self._commit_events()
            return replace(result, events=events)

    def _checkpoint(self) -> _Checkpoint:
        ledger_cp = self._ledger.checkpoint() if self._ledger is not None else None
        return ledger_cp, dict(self._accounts), self._total_staked, len(self._pending)

    def _rollback(self, checkpoint: _Checkpoint) -> None:
        ledger_cp, accounts, total_staked, mark = checkpoint
        if ledger_cp is not None and self._ledger is not None:
            self._ledger.rollback(ledger_cp)
        self._accounts = accounts
        self._total_staked = total_staked
        del self._pending[mark:]

    def _commit_events(self) -> None:
        pending = list(self._pending)
        # Clear in place: the ledger holds a reference to this list.
        self._pending.clear()
        for ev in pending:
            log.debug("event %s %s", ev.event.value, dict(ev.data))
            self._events.append(ev)
            for callback in self._subscribers:
                callback(ev)


# action -> (method, required arg names, optional arg names)
_DISPATCH: Dict[Action, Tuple[Callable[..., StakeResult], Tuple[str, ...], Tuple[str, ...]]] = {
    Action.STAKE: (StakeEngine.stake, ("account", "amount"), ("caller",)),
    Action.START_COOLDOWN: (StakeEngine.start_cooldown, ("account",), ()),
    Action.CLAIM: (StakeEngine.claim, ("account", "amount"), ()),
    Action.TRANSFER: (StakeEngine.transfer, ("from_account", "to_account", "amount"), ()),
    Action.REDEEM: (StakeEngine.redeem, ("caller", "amount"), ()),
    Action.CONFIGURE_DISTRIBUTION: (StakeEngine.configure_distribution, ("caller", "entries"), ()),
}
