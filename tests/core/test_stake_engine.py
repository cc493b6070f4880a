"""Tests for coinbox_staking/core/engine.py: operations, rollback and events."""

import threading

import pytest

from coinbox_staking.core.clock import ManualClock
from coinbox_staking.core.engine import StakeEngine
from coinbox_staking.core.errors import ErrorKind, StakingError
from coinbox_staking.core.types import (
    PRECISION_FACTOR,
    ZERO_ACCOUNT,
    Action,
    ClaimWindowMode,
    CooldownPhase,
    DistributionConfig,
    Event,
    StakeCommand,
)
from coinbox_staking.integration.custodian import TableCustodian

PF = PRECISION_FACTOR
STK = "0x" + "11" * 20
RWD = "0x" + "22" * 20
VAULT = "vault"
CTRL = "controller"
OWNER = "owner"
ALICE = "alice"
BOB = "bob"


def _make(cooldown=10, window=2, duration=1000, mode=ClaimWindowMode.LITERAL, emission=None, **kwargs):
    clock = ManualClock(0)
    custodian = TableCustodian(rewards_vault=VAULT)
    custodian.balances.set(VAULT, RWD, 10**12)
    engine = StakeEngine(custodian, clock, **kwargs)
    r = engine.initialize(
        staked_asset=STK,
        reward_asset=RWD,
        cooldown_seconds=cooldown,
        unstake_window=window,
        rewards_vault=VAULT,
        emission_controller=CTRL,
        distribution_duration=duration,
        owner=OWNER,
        claim_window_mode=mode,
    )
    assert r.ok
    if emission is not None:
        assert engine.configure_distribution(CTRL, [DistributionConfig(STK, emission, 0)]).ok
    return engine, custodian, clock


def _fund(custodian, account, amount):
    custodian.balances.add(account, STK, amount)
    custodian.approve(account, custodian.custody_account, STK, amount)


def _stake(engine, custodian, account, amount):
    _fund(custodian, account, amount)
    r = engine.stake(account, amount)
    assert r.ok, r
    return r


# ---------------------------------------------------------------------------
# initialize
# ---------------------------------------------------------------------------

class TestInitialize:
    def test_operations_before_initialize(self):
        engine = StakeEngine(TableCustodian(), ManualClock(0))
        assert engine.stake(ALICE, 1).error is ErrorKind.NOT_INITIALIZED
        assert engine.claim(ALICE, 1).error is ErrorKind.NOT_INITIALIZED
        with pytest.raises(StakingError):
            engine.ledger

    def test_distribution_end_from_duration(self):
        engine, _, _ = _make(duration=500)
        assert engine.distribution_end == 500
        assert engine.initialized

    def test_double_initialize_rejected(self):
        engine, _, _ = _make()
        r = engine.initialize(
            staked_asset=STK,
            reward_asset=RWD,
            cooldown_seconds=1,
            unstake_window=1,
            rewards_vault=VAULT,
            emission_controller=CTRL,
            distribution_duration=1,
            owner=OWNER,
        )
        assert r.error is ErrorKind.ALREADY_INITIALIZED
        assert engine.cooldown_seconds == 10

    def test_null_role_rejected_and_retryable(self):
        engine = StakeEngine(TableCustodian(), ManualClock(0))
        kwargs = dict(
            staked_asset=STK,
            reward_asset=RWD,
            cooldown_seconds=10,
            unstake_window=2,
            rewards_vault=VAULT,
            emission_controller=CTRL,
            distribution_duration=100,
            owner=ZERO_ACCOUNT,
        )
        assert engine.initialize(**kwargs).error is ErrorKind.INVALID_ADDRESS
        assert not engine.initialized
        kwargs["owner"] = OWNER
        assert engine.initialize(**kwargs).ok

    def test_negative_timing_rejected(self):
        engine = StakeEngine(TableCustodian(), ManualClock(0))
        r = engine.initialize(
            staked_asset=STK,
            reward_asset=RWD,
            cooldown_seconds=-1,
            unstake_window=2,
            rewards_vault=VAULT,
            emission_controller=CTRL,
            distribution_duration=100,
            owner=OWNER,
        )
        assert r.error is ErrorKind.INVALID_AMOUNT

    def test_initialized_event(self):
        engine, _, _ = _make()
        assert [e.event for e in engine.events] == [Event.INITIALIZED]


# ---------------------------------------------------------------------------
# stake
# ---------------------------------------------------------------------------

class TestStake:
    def test_basic(self):
        engine, custodian, _ = _make()
        r = _stake(engine, custodian, ALICE, 1000)
        assert r.amount == 1000
        assert engine.staked_balance(ALICE) == 1000
        assert engine.total_staked == 1000
        assert custodian.balance_of(custodian.custody_account, STK) == 1000
        assert custodian.balance_of(ALICE, STK) == 0
        assert [e.event for e in r.events] == [Event.STAKED]

    def test_on_behalf_of(self):
        engine, custodian, _ = _make()
        _fund(custodian, BOB, 300)
        r = engine.stake(ALICE, 300, caller=BOB)
        assert r.ok
        assert engine.staked_balance(ALICE) == 300
        assert engine.staked_balance(BOB) == 0
        assert custodian.balance_of(BOB, STK) == 0
        assert r.events[-1].data == {"caller": BOB, "on_behalf_of": ALICE, "amount": 300}

    def test_zero_amount(self):
        engine, _, _ = _make()
        assert engine.stake(ALICE, 0).error is ErrorKind.INVALID_AMOUNT

    def test_bool_amount(self):
        engine, _, _ = _make()
        assert engine.stake(ALICE, True).error is ErrorKind.INVALID_AMOUNT

    def test_null_account(self):
        engine, _, _ = _make()
        assert engine.stake(ZERO_ACCOUNT, 10).error is ErrorKind.INVALID_ADDRESS

    def test_custodian_refusal_rolls_back(self):
        engine, custodian, clock = _make(emission=100)
        _stake(engine, custodian, ALICE, 1000)
        before_events = len(engine.events)
        clock.set(5)
        # Bob has no tokens.
        r = engine.stake(BOB, 50)
        assert r.error is ErrorKind.TRANSFER_FAILED
        assert engine.staked_balance(BOB) == 0
        assert engine.total_staked == 1000
        assert engine.get_distribution().last_update_timestamp == 0
        assert len(engine.events) == before_events

    def test_missing_allowance(self):
        engine, custodian, _ = _make()
        custodian.balances.set(ALICE, STK, 10)
        assert engine.stake(ALICE, 10).error is ErrorKind.TRANSFER_FAILED

    def test_reconciles_before_balance_change(self):
        engine, custodian, clock = _make(emission=100)
        _stake(engine, custodian, ALICE, 1000)
        clock.set(5)
        _stake(engine, custodian, ALICE, 1000)
        assert engine.claimable_rewards(ALICE) == 500
        assert engine.get_user_index(ALICE) == PF // 2

    def test_merges_active_cooldown(self):
        engine, custodian, clock = _make()
        _stake(engine, custodian, ALICE, 100)
        clock.set(15)
        assert engine.start_cooldown(ALICE).ok
        clock.set(20)
        _stake(engine, custodian, ALICE, 100)
        assert engine.cooldown_timestamp(ALICE) == 17

    def test_resets_expired_cooldown(self):
        engine, custodian, clock = _make()
        _stake(engine, custodian, ALICE, 100)
        clock.set(1)
        assert engine.start_cooldown(ALICE).ok
        clock.set(20)
        _stake(engine, custodian, ALICE, 100)
        assert engine.cooldown_timestamp(ALICE) == 0


# ---------------------------------------------------------------------------
# start_cooldown
# ---------------------------------------------------------------------------

class TestStartCooldown:
    def test_zero_balance_rejected(self):
        engine, _, _ = _make()
        assert engine.start_cooldown(ALICE).error is ErrorKind.INVALID_BALANCE_ON_COOLDOWN

    def test_at_time_zero_rejected_without_event(self):
        engine, custodian, _ = _make()
        _stake(engine, custodian, ALICE, 100)
        before = len(engine.events)
        r = engine.start_cooldown(ALICE)
        assert r.error is ErrorKind.INVALID_TIMESTAMP
        assert engine.cooldown_timestamp(ALICE) == 0
        assert engine.cooldown_phase(ALICE) is CooldownPhase.IDLE
        assert len(engine.events) == before

    def test_sets_now(self):
        engine, custodian, clock = _make(emission=100)
        _stake(engine, custodian, ALICE, 100)
        clock.set(42)
        r = engine.start_cooldown(ALICE)
        assert r.ok
        assert engine.cooldown_timestamp(ALICE) == 42
        assert engine.cooldown_phase(ALICE) is CooldownPhase.COOLING
        assert [e.event for e in r.events] == [Event.COOLDOWN]
        # No reconciliation happens here.
        assert engine.claimable_rewards(ALICE) == 0

    def test_restart_overwrites(self):
        engine, custodian, clock = _make()
        _stake(engine, custodian, ALICE, 100)
        clock.set(3)
        engine.start_cooldown(ALICE)
        clock.set(9)
        engine.start_cooldown(ALICE)
        assert engine.cooldown_timestamp(ALICE) == 9


# ---------------------------------------------------------------------------
# claim
# ---------------------------------------------------------------------------

class TestClaim:
    def _ready(self, emission=100):
        engine, custodian, clock = _make(window=30, emission=emission)
        _stake(engine, custodian, ALICE, 1000)
        clock.set(5)
        assert engine.start_cooldown(ALICE).ok
        clock.set(16)
        return engine, custodian, clock

    def test_full_claim(self):
        engine, custodian, _ = self._ready()
        r = engine.claim(ALICE, 10**9)
        assert r.ok
        assert r.amount == 1600
        assert custodian.balance_of(ALICE, RWD) == 1600
        assert engine.claimable_rewards(ALICE) == 0
        assert engine.cooldown_timestamp(ALICE) == 0

    def test_partial_claim_keeps_cooldown(self):
        engine, custodian, _ = self._ready()
        r = engine.claim(ALICE, 600)
        assert r.amount == 600
        assert engine.claimable_rewards(ALICE) == 1000
        assert engine.cooldown_timestamp(ALICE) == 5

    def test_zero_amount(self):
        engine, _, _ = self._ready()
        assert engine.claim(ALICE, 0).error is ErrorKind.INVALID_AMOUNT

    def test_nothing_to_claim_still_resets_cooldown(self):
        engine, custodian, _ = self._ready(emission=0)
        r = engine.claim(ALICE, 10)
        assert r.ok
        assert r.amount == 0
        assert custodian.balance_of(ALICE, RWD) == 0
        assert engine.cooldown_timestamp(ALICE) == 0

    def test_too_early(self):
        engine, custodian, clock = _make(window=30, emission=100)
        _stake(engine, custodian, ALICE, 1000)
        clock.set(5)
        engine.start_cooldown(ALICE)
        clock.set(10)
        r = engine.claim(ALICE, 1)
        assert r.error is ErrorKind.INSUFFICIENT_COOLDOWN
        # Rejection leaves the index untouched.
        assert engine.get_distribution().last_update_timestamp == 0

    def test_window_finished(self):
        engine, _, clock = self._ready()
        clock.set(26)
        assert engine.claim(ALICE, 1).error is ErrorKind.UNSTAKE_WINDOW_FINISHED

    def test_matured_claim_without_cooldown_after_first_span(self):
        # A never-started cooldown reads as 0, so the window opens at t=11.
        engine, custodian, clock = _make(mode=ClaimWindowMode.MATURED, emission=100)
        _stake(engine, custodian, ALICE, 1000)
        clock.set(11)
        r = engine.claim(ALICE, 5)
        assert r.ok
        assert r.amount == 5
        assert engine.cooldown_timestamp(ALICE) == 0
        clock.set(13)
        assert engine.claim(ALICE, 5).error is ErrorKind.UNSTAKE_WINDOW_FINISHED

    def test_empty_vault_rolls_back(self):
        engine, custodian, _ = self._ready()
        custodian.balances.set(VAULT, RWD, 0)
        r = engine.claim(ALICE, 10**9)
        assert r.error is ErrorKind.TRANSFER_FAILED
        assert engine.claimable_rewards(ALICE) == 0
        assert engine.cooldown_timestamp(ALICE) == 5
        assert engine.get_total_rewards_balance(ALICE) == 1600


# ---------------------------------------------------------------------------
# transfer
# ---------------------------------------------------------------------------

class TestTransfer:
    def test_reconciles_both_sides(self):
        engine, custodian, clock = _make(emission=100)
        _stake(engine, custodian, ALICE, 1000)
        clock.set(10)
        r = engine.transfer(ALICE, BOB, 400)
        assert r.ok
        assert engine.claimable_rewards(ALICE) == 1000
        assert engine.claimable_rewards(BOB) == 0
        assert engine.get_user_index(BOB) == PF
        clock.set(20)
        assert engine.get_total_rewards_balance(ALICE) == 1600
        assert engine.get_total_rewards_balance(BOB) == 400

    def test_moves_balance_not_total(self):
        engine, custodian, _ = _make()
        _stake(engine, custodian, ALICE, 100)
        engine.transfer(ALICE, BOB, 30)
        assert engine.staked_balance(ALICE) == 70
        assert engine.staked_balance(BOB) == 30
        assert engine.total_staked == 100
        assert custodian.balance_of(custodian.custody_account, STK) == 100

    def test_full_transfer_resets_sender_cooldown(self):
        engine, custodian, clock = _make()
        _stake(engine, custodian, ALICE, 100)
        clock.set(1)
        engine.start_cooldown(ALICE)
        clock.set(2)
        assert engine.transfer(ALICE, BOB, 100).ok
        assert engine.cooldown_timestamp(ALICE) == 0
        assert engine.cooldown_timestamp(BOB) == 0

    def test_partial_transfer_keeps_sender_cooldown(self):
        engine, custodian, clock = _make()
        _stake(engine, custodian, ALICE, 100)
        clock.set(1)
        engine.start_cooldown(ALICE)
        clock.set(2)
        engine.transfer(ALICE, BOB, 40)
        assert engine.cooldown_timestamp(ALICE) == 1

    def test_merges_receiver_cooldown(self):
        engine, custodian, clock = _make()
        _stake(engine, custodian, ALICE, 200)
        _stake(engine, custodian, BOB, 100)
        clock.set(2)
        engine.start_cooldown(BOB)
        clock.set(4)
        engine.start_cooldown(ALICE)
        clock.set(5)
        engine.transfer(ALICE, BOB, 100)
        assert engine.cooldown_timestamp(BOB) == 3

    def test_insufficient_balance(self):
        engine, custodian, _ = _make()
        _stake(engine, custodian, ALICE, 10)
        assert engine.transfer(ALICE, BOB, 11).error is ErrorKind.INSUFFICIENT_BALANCE

    def test_null_recipient(self):
        engine, custodian, _ = _make()
        _stake(engine, custodian, ALICE, 10)
        assert engine.transfer(ALICE, ZERO_ACCOUNT, 1).error is ErrorKind.INVALID_ADDRESS

    def test_self_transfer_only_reconciles(self):
        engine, custodian, clock = _make(emission=100)
        _stake(engine, custodian, ALICE, 1000)
        clock.set(5)
        r = engine.transfer(ALICE, ALICE, 1000)
        assert r.ok
        assert engine.staked_balance(ALICE) == 1000
        assert engine.claimable_rewards(ALICE) == 500
        assert Event.STAKE_TRANSFERRED not in [e.event for e in r.events]


# ---------------------------------------------------------------------------
# redeem
# ---------------------------------------------------------------------------

class TestRedeem:
    def test_owner_only(self):
        engine, custodian, _ = _make()
        _stake(engine, custodian, ALICE, 100)
        assert engine.redeem(ALICE, 10).error is ErrorKind.UNAUTHORIZED

    def test_authorization_checked_before_amount(self):
        engine, _, _ = _make()
        assert engine.redeem(ALICE, 0).error is ErrorKind.UNAUTHORIZED
        assert engine.redeem(OWNER, 0).error is ErrorKind.INVALID_AMOUNT

    def test_capped_at_custody_balance(self):
        engine, custodian, _ = _make()
        _stake(engine, custodian, ALICE, 1000)
        r = engine.redeem(OWNER, 5000)
        assert r.ok
        assert r.amount == 1000
        assert custodian.balance_of(OWNER, STK) == 1000
        assert custodian.balance_of(custodian.custody_account, STK) == 0
        # Staking bookkeeping is untouched.
        assert engine.total_staked == 1000
        assert engine.staked_balance(ALICE) == 1000


# ---------------------------------------------------------------------------
# configure_distribution
# ---------------------------------------------------------------------------

class TestConfigureDistribution:
    def test_unauthorized(self):
        engine, _, _ = _make()
        r = engine.configure_distribution(ALICE, [DistributionConfig(STK, 1, 0)])
        assert r.error is ErrorKind.UNAUTHORIZED

    def test_mapping_entries(self):
        engine, _, _ = _make()
        r = engine.configure_distribution(CTRL, [{"asset": STK, "emission_per_second": 3, "total_staked": 0}])
        assert r.ok
        assert engine.get_distribution().emission_per_second == 3

    def test_mapping_entry_missing_field(self):
        engine, _, _ = _make()
        r = engine.configure_distribution(CTRL, [{"asset": STK, "emission_per_second": 3}])
        assert r.error is ErrorKind.INVALID_AMOUNT


# ---------------------------------------------------------------------------
# execute / batch / events
# ---------------------------------------------------------------------------

class TestExecute:
    def test_dispatch(self):
        engine, custodian, _ = _make()
        _fund(custodian, ALICE, 10)
        r = engine.execute(StakeCommand(Action.STAKE, {"account": ALICE, "amount": 10}))
        assert r.ok
        assert engine.staked_balance(ALICE) == 10

    def test_missing_args(self):
        engine, _, _ = _make()
        r = engine.execute(StakeCommand(Action.TRANSFER, {"from_account": ALICE}))
        assert r.error is ErrorKind.INVALID_AMOUNT

    def test_unexpected_args(self):
        engine, _, _ = _make()
        r = engine.execute(StakeCommand(Action.START_COOLDOWN, {"account": ALICE, "bogus": 1}))
        assert r.error is ErrorKind.INVALID_AMOUNT

    def test_optional_caller_accepted(self):
        engine, custodian, _ = _make()
        _fund(custodian, BOB, 10)
        r = engine.execute(StakeCommand(Action.STAKE, {"account": ALICE, "amount": 10, "caller": BOB}))
        assert r.ok
        assert engine.staked_balance(ALICE) == 10

    def test_malformed_entries_rejected(self):
        engine, _, _ = _make()
        r = engine.execute(StakeCommand(Action.CONFIGURE_DISTRIBUTION, {"caller": CTRL, "entries": 5}))
        assert r.error is ErrorKind.INVALID_AMOUNT
        r = engine.execute(StakeCommand(Action.CONFIGURE_DISTRIBUTION, {"caller": CTRL, "entries": [5]}))
        assert r.error is ErrorKind.INVALID_AMOUNT

    def test_internal_type_error_propagates(self, monkeypatch):
        engine, custodian, _ = _make()
        _stake(engine, custodian, ALICE, 10)
        before = engine.accounts()

        def broken(*args, **kwargs):
            raise TypeError("bug in cooldown merge")

        monkeypatch.setattr("coinbox_staking.core.engine.next_cooldown_timestamp", broken)
        _fund(custodian, ALICE, 5)
        with pytest.raises(TypeError, match="bug in cooldown merge"):
            engine.execute(StakeCommand(Action.STAKE, {"account": ALICE, "amount": 5}))
        assert engine.accounts() == before
        assert engine.total_staked == 10

    def test_execute_or_raise(self):
        engine, _, _ = _make()
        with pytest.raises(StakingError) as exc_info:
            engine.execute_or_raise(StakeCommand(Action.CLAIM, {"account": ALICE, "amount": 0}))
        assert exc_info.value.kind is ErrorKind.INVALID_AMOUNT


class TestBatch:
    def test_commits_all(self):
        engine, custodian, _ = _make()
        _fund(custodian, ALICE, 100)
        with engine.batch():
            assert engine.stake(ALICE, 60).ok
            assert engine.transfer(ALICE, BOB, 10).ok
        assert engine.staked_balance(BOB) == 10
        assert [e.event for e in engine.events][-2:] == [Event.STAKED, Event.STAKE_TRANSFERRED]

    def test_rolls_back_engine_and_custodian(self):
        engine, custodian, _ = _make()
        _fund(custodian, ALICE, 100)
        before = len(engine.events)
        with pytest.raises(RuntimeError):
            with engine.batch():
                assert engine.stake(ALICE, 60).ok
                raise RuntimeError("abort")
        assert engine.staked_balance(ALICE) == 0
        assert engine.total_staked == 0
        assert custodian.balance_of(ALICE, STK) == 100
        assert custodian.allowance(ALICE, custodian.custody_account, STK) == 100
        assert len(engine.events) == before

    def test_requires_checkpointing_custodian(self):
        class Bare:
            custody_account = "custody"

        engine = StakeEngine(Bare(), ManualClock(0))
        with pytest.raises(TypeError):
            with engine.batch():
                pass


class TestEvents:
    def test_subscriber_sees_committed_only(self):
        engine, custodian, _ = _make()
        seen = []
        engine.subscribe(seen.append)
        engine.stake(ALICE, 10)  # rejected: no funds
        assert seen == []
        _stake(engine, custodian, ALICE, 10)
        assert [e.event for e in seen] == [Event.STAKED]

    def test_timestamps_from_clock(self):
        engine, custodian, clock = _make()
        clock.set(77)
        r = _stake(engine, custodian, ALICE, 10)
        assert r.events[0].timestamp == 77


class TestInvariantGate:
    def test_violation_rolls_back_before_transfer(self, monkeypatch):
        engine, custodian, _ = _make()
        _fund(custodian, ALICE, 10)
        monkeypatch.setattr("coinbox_staking.core.engine.check_all", lambda *a, **k: ["forced"])
        r = engine.stake(ALICE, 10)
        assert r.error is ErrorKind.INVARIANT_VIOLATION
        assert r.detail == "forced"
        assert engine.staked_balance(ALICE) == 0
        assert custodian.balance_of(ALICE, STK) == 10

    def test_checks_can_be_disabled(self, monkeypatch):
        engine, custodian, _ = _make(check_invariants=False)
        _fund(custodian, ALICE, 10)
        monkeypatch.setattr("coinbox_staking.core.engine.check_all", lambda *a, **k: ["forced"])
        assert engine.stake(ALICE, 10).ok


class TestAccessors:
    def test_reads_wait_for_running_operation(self):
        engine, custodian, _ = _make()
        _fund(custodian, ALICE, 10)
        seen = []
        blocked = []

        def reader():
            seen.append((engine.total_staked, engine.get_total_rewards_balance(ALICE)))

        def on_event(ev):
            # Runs inside the operation, which still holds the engine lock.
            if ev.event is Event.STAKED:
                t = threading.Thread(target=reader)
                t.start()
                t.join(timeout=0.2)
                blocked.append(t.is_alive())
                on_event.thread = t

        engine.subscribe(on_event)
        assert engine.stake(ALICE, 10).ok
        on_event.thread.join(timeout=5)
        assert blocked == [True]
        assert seen == [(10, 0)]

    def test_next_cooldown_timestamp(self):
        engine, custodian, clock = _make()
        _stake(engine, custodian, BOB, 100)
        clock.set(90)
        engine.start_cooldown(BOB)
        clock.set(100)
        assert engine.next_cooldown_timestamp(0, 100, BOB, 100) == 95

    def test_total_rewards_balance_is_read_only(self):
        engine, custodian, clock = _make(emission=100)
        _stake(engine, custodian, ALICE, 1000)
        clock.set(3)
        assert engine.get_total_rewards_balance(ALICE) == 300
        assert engine.claimable_rewards(ALICE) == 0
        assert engine.get_distribution().index == 0
