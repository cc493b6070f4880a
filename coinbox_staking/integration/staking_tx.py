"""
Staking execution adapter for transaction-style inputs.

This is the imperative shell around `StakeEngine`. It applies operation group
"6" in a deterministic, fail-closed way:
- Account-scoped actions require tx_sender == account (staking on behalf of
  another account is allowed; the sender always pays).
- `redeem` and `configure_distribution` are authorized by the engine against
  tx_sender (owner / emission controller).
- Optional per-op BLS signatures (py_ecc G2Basic) by tx_sender, bound to a
  chain id, a strict sequential nonce and a deadline.
- The whole group is applied atomically: any rejected op rolls back the engine,
  the custodian and the nonce table.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from py_ecc.bls import G2Basic

from ..core.engine import StakeEngine
from ..core.errors import ErrorKind
from ..core.types import Action, StakeCommand, StakeResult
from .operations import STAKING_OP_MODULE, STAKING_OP_VERSION, StakingOp, parse_staking_ops

log = logging.getLogger(__name__)

BLS_PUBKEY_BYTES = 48
BLS_SIGNATURE_BYTES = 96
MAX_NONCE = 0xFFFFFFFF


def normalize_hex(value: Any, *, nbytes: int, name: str) -> str:
    """Lowercase 0x-prefixed form of a fixed-size hex key or signature."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str")
    digits = value[2:] if value[:2] in ("0x", "0X") else value
    if len(digits) != 2 * nbytes:
        raise ValueError(f"{name} must be {nbytes} bytes")
    try:
        raw = bytes.fromhex(digits)
    except ValueError:
        raise ValueError(f"{name} must be valid hex") from None
    return "0x" + raw.hex()


class NonceTable:
    """Last accepted nonce per BLS signer pubkey.

    Nonces are strictly sequential: a signer's first op uses 1, and each
    accepted op must use exactly `last + 1`. Values are bounded to u32.
    """

    def __init__(self, last: Optional[Mapping[str, int]] = None) -> None:
        self._last: Dict[str, int] = {}
        for pubkey, nonce in (last or {}).items():
            self.set_last(pubkey, nonce)

    def get_last(self, pubkey: str) -> int:
        return self._last.get(normalize_hex(pubkey, nbytes=BLS_PUBKEY_BYTES, name="pubkey"), 0)

    def set_last(self, pubkey: str, last_nonce: int) -> None:
        if not isinstance(last_nonce, int) or isinstance(last_nonce, bool) or not 0 <= last_nonce <= MAX_NONCE:
            raise TypeError("last_nonce must be an int in u32 range")
        self._last[normalize_hex(pubkey, nbytes=BLS_PUBKEY_BYTES, name="pubkey")] = last_nonce

    def is_next(self, pubkey: str, nonce: int) -> bool:
        return nonce == self.get_last(pubkey) + 1

    def copy(self) -> "NonceTable":
        return NonceTable(self._last)

    def update(self, other: "NonceTable") -> None:
        """Adopt every nonce from `other` (used to commit a working copy)."""
        self._last.update(other._last)

    def get_all(self) -> Mapping[str, int]:
        return dict(self._last)


@dataclass(frozen=True)
class StakingTxConfig:
    # Signature domain separation (bind to a specific network/deployment).
    chain_id: str = "coinbox-mainnet"
    require_signatures: bool = False
    max_ops: int = 256
    max_op_bytes: int = 64_000
    max_total_ops_bytes: int = 512_000


@dataclass(frozen=True)
class StakingTxResult:
    ok: bool
    results: Tuple[StakeResult, ...] = ()
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    failed_index: Optional[int] = None


class _OpRejected(Exception):
    def __init__(self, index: int, message: str, kind: Optional[ErrorKind] = None) -> None:
        self.index = index
        self.message = message
        self.kind = kind
        super().__init__(message)


def staking_op_signing_dict(op: StakingOp, *, signer_pubkey: str, nonce: int) -> Dict[str, Any]:
    """The fields a per-op signature commits to."""
    return {
        "module": STAKING_OP_MODULE,
        "version": STAKING_OP_VERSION,
        "action": op.action.value,
        "signer_pubkey": normalize_hex(signer_pubkey, nbytes=BLS_PUBKEY_BYTES, name="signer_pubkey"),
        "nonce": int(nonce),
        "deadline": int(op.deadline if op.deadline is not None else 0),
        "fields": dict(op.fields),
    }


def staking_op_message_hash(op: StakingOp, *, signer_pubkey: str, nonce: int, chain_id: str) -> bytes:
    """SHA256 over a chain-bound tag and the sorted, compact JSON signing dict.

    Parsed op fields hold only strings, ints and lists of entry objects, so
    the JSON text is deterministic. Non-ASCII text is escaped.
    """
    signing = staking_op_signing_dict(op, signer_pubkey=signer_pubkey, nonce=nonce)
    body = json.dumps(signing, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False)
    tag = f"coinbox-staking/op-sig/{chain_id}/v1".encode("utf-8") + b"\x00"
    return hashlib.sha256(tag + body.encode("ascii")).digest()


def _verify_op_signature(
    *,
    config: StakingTxConfig,
    op: StakingOp,
    signer_pubkey: str,
    nonces: NonceTable,
    block_timestamp: int,
) -> Optional[str]:
    """Verify and consume a per-op signature. Returns an error string or None."""
    if op.signature is None or op.nonce is None or op.deadline is None:
        return "signature, nonce and deadline are required"
    if block_timestamp > op.deadline:
        return "signature expired (deadline)"

    try:
        signer_key = normalize_hex(signer_pubkey, nbytes=BLS_PUBKEY_BYTES, name="signer_pubkey")
        sig_hex = normalize_hex(op.signature, nbytes=BLS_SIGNATURE_BYTES, name="signature")
    except (TypeError, ValueError) as exc:
        return str(exc)

    if op.nonce > MAX_NONCE or not nonces.is_next(signer_key, op.nonce):
        return "nonce invalid"

    try:
        msg_hash = staking_op_message_hash(op, signer_pubkey=signer_key, nonce=op.nonce, chain_id=config.chain_id)
        ok = bool(G2Basic.Verify(bytes.fromhex(signer_key[2:]), msg_hash, bytes.fromhex(sig_hex[2:])))
    except Exception as exc:
        return f"signature verification error: {exc}"
    if not ok:
        return "invalid signature"

    nonces.set_last(signer_key, op.nonce)
    return None


def op_to_command(op: StakingOp, *, tx_sender: str) -> Tuple[Optional[StakeCommand], Optional[str]]:
    """Map a parsed op to an engine command, enforcing sender scoping."""
    f = op.fields
    if op.action is Action.STAKE:
        args = {"account": f.get("account", tx_sender), "amount": f["amount"], "caller": tx_sender}
    elif op.action in (Action.START_COOLDOWN, Action.CLAIM):
        account = f.get("account", tx_sender)
        if account != tx_sender:
            return None, f"{op.action.value} requires tx_sender == account"
        args = {"account": account}
        if op.action is Action.CLAIM:
            args["amount"] = f["amount"]
    elif op.action is Action.TRANSFER:
        sender = f.get("from", tx_sender)
        if sender != tx_sender:
            return None, "transfer requires tx_sender == from"
        args = {"from_account": sender, "to_account": f["to"], "amount": f["amount"]}
    elif op.action is Action.REDEEM:
        args = {"caller": tx_sender, "amount": f["amount"]}
    else:
        args = {"caller": tx_sender, "entries": list(f["entries"])}
    return StakeCommand(action=op.action, args=args), None


def apply_staking_ops(
    *,
    config: StakingTxConfig,
    engine: StakeEngine,
    operations: Mapping[str, Any],
    tx_sender: str,
    block_timestamp: Optional[int] = None,
    nonces: Optional[NonceTable] = None,
) -> StakingTxResult:
    try:
        ops = parse_staking_ops(
            operations,
            max_ops=config.max_ops,
            max_op_bytes=config.max_op_bytes,
            max_total_ops_bytes=config.max_total_ops_bytes,
        )
    except ValueError as exc:
        return StakingTxResult(ok=False, error=str(exc))

    if not ops:
        return StakingTxResult(ok=True)
    if config.require_signatures and nonces is None:
        return StakingTxResult(ok=False, error="nonce table required when signatures are enforced")

    now = engine.clock.now() if block_timestamp is None else int(block_timestamp)
    # Nonces are consumed on a copy and committed only if the whole group applies.
    working_nonces = nonces.copy() if nonces is not None else None
    results: List[StakeResult] = []

    try:
        with engine.batch():
            for i, op in enumerate(ops):
                if config.require_signatures:
                    err = _verify_op_signature(
                        config=config,
                        op=op,
                        signer_pubkey=tx_sender,
                        nonces=working_nonces,
                        block_timestamp=now,
                    )
                    if err is not None:
                        raise _OpRejected(i, err, ErrorKind.UNAUTHORIZED)

                command, err = op_to_command(op, tx_sender=tx_sender)
                if command is None:
                    raise _OpRejected(i, err or "unauthorized", ErrorKind.UNAUTHORIZED)

                result = engine.execute(command)
                if not result.ok:
                    detail = result.error.value if result.error else "rejected"
                    if result.detail:
                        detail = f"{detail}: {result.detail}"
                    raise _OpRejected(i, detail, result.error)
                results.append(result)
    except _OpRejected as exc:
        log.debug("staking op %d rejected: %s", exc.index, exc.message)
        return StakingTxResult(ok=False, error=exc.message, error_kind=exc.kind, failed_index=exc.index)

    if nonces is not None and working_nonces is not None:
        nonces.update(working_nonces)
    return StakingTxResult(ok=True, results=tuple(results))
