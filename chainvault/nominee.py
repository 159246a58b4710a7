"""
Inactivity Claim Gate - nominee inheritance of a dormant vault

An owner names nominees with percentage shares (sum exactly 100). Once the
owner has been inactive for inactivityPeriodSeconds, each nominee may claim
their share ONCE.

Share amounts are computed against balanceSnapshot: the vault balance captured
when inactivity is first confirmed by a claim. Later claimants therefore get
the same amounts no matter who claims first.

Liveness: every vault-mutating ActivityEvent for the owner resets
lastActivityAt (on_activity is subscribed to the ActivityBus in main.py) and
discards the snapshot. Claims are nominee actions and do not count.

Reconfiguring replaces the nominee list and clears the claim history.
encryptedPayload is stored exactly as given, never inspected.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from .activity import ActivityEvent
from .balance_gate import BalanceGate
from .cadence import from_iso, seconds_remaining, to_iso, utc_now
from .chain import make_ref
from .disbursement import DisbursementExecutor, Transfer
from .errors import AlreadyClaimed, ClaimRejected, NotFound, ValidationError
from .locks import KeyedLocks
from .settings import VAULT_LIMITS
from .validation import clamp_precision, normalize_address, parse_decimal, parse_int

logger = logging.getLogger("chainvault.nominee")


@dataclass
class NomineeShare:
    address: str
    share_pct: Decimal

    def to_dict(self) -> dict:
        return {"address": self.address, "sharePct": str(self.share_pct)}

    @classmethod
    def from_dict(cls, d: dict) -> "NomineeShare":
        return cls(address=d["address"], share_pct=Decimal(d["sharePct"]))


@dataclass
class NomineeConfig:
    owner: str
    shares: list[NomineeShare]
    inactivity_period_seconds: int
    last_activity_at: datetime
    configured_at: datetime
    encrypted_payload: str = ""
    claimed_indices: set[int] = field(default_factory=set)
    claims: dict[int, dict] = field(default_factory=dict)
    balance_snapshot: Optional[Decimal] = None
    snapshot_at: Optional[datetime] = None

    @property
    def inactive_since(self) -> datetime:
        return self.last_activity_at + timedelta(seconds=self.inactivity_period_seconds)

    def is_inactive(self, now: datetime) -> bool:
        return (now - self.last_activity_at).total_seconds() >= self.inactivity_period_seconds

    def share_amount(self, index: int, balance: Decimal) -> Decimal:
        return clamp_precision(balance * self.shares[index].share_pct / Decimal(100))

    def to_dict(self) -> dict:
        return {
            "ownerAccount": self.owner,
            "nomineeShares": [s.to_dict() for s in self.shares],
            "encryptedPayload": self.encrypted_payload,
            "lastActivityAt": to_iso(self.last_activity_at),
            "inactivityPeriodSeconds": self.inactivity_period_seconds,
            "configuredAt": to_iso(self.configured_at),
            "claimedIndices": sorted(self.claimed_indices),
            "claims": {str(k): v for k, v in self.claims.items()},
            "balanceSnapshot": str(self.balance_snapshot) if self.balance_snapshot is not None else None,
            "snapshotAt": to_iso(self.snapshot_at),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "NomineeConfig":
        snapshot = d.get("balanceSnapshot")
        return cls(
            owner=d["ownerAccount"],
            shares=[NomineeShare.from_dict(s) for s in d.get("nomineeShares") or []],
            encrypted_payload=d.get("encryptedPayload", ""),
            last_activity_at=from_iso(d["lastActivityAt"]),
            inactivity_period_seconds=int(d["inactivityPeriodSeconds"]),
            configured_at=from_iso(d.get("configuredAt") or d["lastActivityAt"]),
            claimed_indices={int(i) for i in d.get("claimedIndices") or []},
            claims={int(k): v for k, v in (d.get("claims") or {}).items()},
            balance_snapshot=Decimal(snapshot) if snapshot is not None else None,
            snapshot_at=from_iso(d.get("snapshotAt")),
        )


def validate_shares(owner: str, nominees) -> list[NomineeShare]:
    """sum(sharePct) == 100, no self-nomination, no duplicates."""
    if not nominees:
        raise ValidationError("At least one nominee is required")
    if len(nominees) > VAULT_LIMITS.MAX_NOMINEES:
        raise ValidationError(f"At most {VAULT_LIMITS.MAX_NOMINEES} nominees")

    shares = []
    seen = set()
    for i, n in enumerate(nominees):
        if isinstance(n, dict):
            address, pct = n.get("address"), n.get("sharePct", n.get("share_pct"))
        else:
            address, pct = n.address, n.share_pct
        address = normalize_address(address, f"nominees[{i}].address")
        if address == owner:
            raise ValidationError("You cannot nominate yourself")
        if address in seen:
            raise ValidationError(f"Duplicate nominee {address}")
        seen.add(address)
        pct = parse_decimal(pct, f"nominees[{i}].sharePct")
        if pct <= 0:
            raise ValidationError(f"nominees[{i}].sharePct must be greater than 0")
        shares.append(NomineeShare(address=address, share_pct=pct))

    total = sum((s.share_pct for s in shares), Decimal(0))
    if total != VAULT_LIMITS.REQUIRED_SHARE_TOTAL_PCT:
        raise ValidationError(f"Nominee shares must total {VAULT_LIMITS.REQUIRED_SHARE_TOTAL_PCT}%, got {total}%")
    return shares


class InactivityClaimGate:

    def __init__(
        self,
        store,
        ledger,
        executor: Optional[DisbursementExecutor] = None,
        gate: Optional[BalanceGate] = None,
        default_inactivity_period_seconds: int = VAULT_LIMITS.DEFAULT_INACTIVITY_PERIOD_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._ledger = ledger
        self._executor = executor or DisbursementExecutor(ledger)
        self._gate = gate or BalanceGate(ledger)
        self._default_period = default_inactivity_period_seconds
        self._clock = clock
        self._locks = KeyedLocks()

    @staticmethod
    def _validate_period(seconds) -> int:
        return parse_int(seconds, "inactivity_period_seconds", minimum=VAULT_LIMITS.MIN_INACTIVITY_PERIOD_SECONDS)

    # ============================================================
    # OWNER SIDE
    # ============================================================

    async def configure(self, owner: str, nominees, encrypted_payload: str = "",
                        inactivity_period_seconds: Optional[int] = None) -> NomineeConfig:
        owner = normalize_address(owner, "owner")
        shares = validate_shares(owner, nominees)

        async with self._locks(owner):
            existing = await self._store.get(f"nominees/{owner}")
            if inactivity_period_seconds is not None:
                period = self._validate_period(inactivity_period_seconds)
            elif existing is not None:
                period = int(existing["inactivityPeriodSeconds"])
            else:
                period = self._default_period

            now = self._clock()
            config = NomineeConfig(
                owner=owner,
                shares=shares,
                encrypted_payload=encrypted_payload or "",
                inactivity_period_seconds=period,
                last_activity_at=now,
                configured_at=now,
            )
            await self._store.set(f"nominees/{owner}", config.to_dict())

        logger.info(f"Nominees configured for {owner[:10]}...: {len(shares)} nominee(s), period={period}s")
        return config

    async def get(self, owner: str) -> NomineeConfig:
        owner = normalize_address(owner, "owner")
        data = await self._store.get(f"nominees/{owner}")
        if data is None:
            raise NotFound(f"No nominee configuration for {owner}")
        return NomineeConfig.from_dict(data)

    async def remove(self, owner: str):
        owner = normalize_address(owner, "owner")
        async with self._locks(owner):
            await self.get(owner)
            await self._store.remove(f"nominees/{owner}")
        logger.info(f"Nominee configuration removed for {owner[:10]}...")

    async def set_inactivity_period(self, owner: str, seconds) -> NomineeConfig:
        owner = normalize_address(owner, "owner")
        seconds = self._validate_period(seconds)
        async with self._locks(owner):
            config = await self.get(owner)
            config.inactivity_period_seconds = seconds
            config.last_activity_at = self._clock()
            config.balance_snapshot = None
            config.snapshot_at = None
            await self._store.set(f"nominees/{owner}", config.to_dict())
        return config

    async def record_activity(self, owner: str, at: Optional[datetime] = None):
        """Liveness ping. No-op for owners without a configuration."""
        owner = owner.lower()
        async with self._locks(owner):
            if await self._store.get(f"nominees/{owner}") is None:
                return
            await self._store.update(f"nominees/{owner}", {
                "lastActivityAt": to_iso(at or self._clock()),
                "balanceSnapshot": None,
                "snapshotAt": None,
            })

    async def on_activity(self, event: ActivityEvent):
        """ActivityBus listener. Stamped with this gate's clock: the bus runs listeners as the event is emitted."""
        await self.record_activity(event.account)

    # ============================================================
    # QUERIES
    # ============================================================

    async def is_inactive(self, owner: str, now: Optional[datetime] = None) -> bool:
        config = await self.get(owner)
        return config.is_inactive(now or self._clock())

    async def time_until_inactive(self, owner: str, now: Optional[datetime] = None) -> float:
        """Seconds left before nominees may claim; 0 once inactive."""
        config = await self.get(owner)
        return seconds_remaining(config.inactive_since, now or self._clock())

    async def claim_status(self, owner: str, now: Optional[datetime] = None) -> dict:
        """
        Per-nominee view. Amounts use the snapshot when one was taken, otherwise
        the live balance (an estimate until the first claim fixes it).
        """
        config = await self.get(owner)
        now = now or self._clock()
        if config.balance_snapshot is not None:
            basis, is_snapshot = config.balance_snapshot, True
        else:
            basis, is_snapshot = await self._ledger.balance(config.owner), False

        return {
            "owner": config.owner,
            "inactive": config.is_inactive(now),
            "lastActivityAt": to_iso(config.last_activity_at),
            "inactivityPeriodSeconds": config.inactivity_period_seconds,
            "secondsUntilInactive": seconds_remaining(config.inactive_since, now),
            "balance": str(basis),
            "balanceIsSnapshot": is_snapshot,
            "nominees": [
                {
                    "index": i,
                    "address": s.address,
                    "sharePct": str(s.share_pct),
                    "amount": str(config.share_amount(i, basis)),
                    "claimed": i in config.claimed_indices,
                }
                for i, s in enumerate(config.shares)
            ],
        }

    # ============================================================
    # CLAIM
    # ============================================================

    async def claim(self, owner: str, nominee_index: int, claimant: str) -> dict:
        """
        Transfer nominee `nominee_index`'s share to `claimant`. At most once per
        index per configuration.
        """
        owner = normalize_address(owner, "owner")
        claimant = normalize_address(claimant, "claimant")
        index = parse_int(nominee_index, "nominee_index", minimum=0)

        async with self._locks(owner):
            config = await self.get(owner)
            now = self._clock()

            if index >= len(config.shares):
                raise ValidationError(f"nominee_index {index} out of range (0..{len(config.shares) - 1})")
            if index in config.claimed_indices:
                raise AlreadyClaimed(f"Share {index} of {owner} has already been claimed")
            if not config.is_inactive(now):
                left = seconds_remaining(config.inactive_since, now)
                raise ClaimRejected(f"Owner is still active ({int(left)}s until claims open)")
            if config.shares[index].address != claimant:
                raise ClaimRejected(f"{claimant} is not nominee {index}")

            if config.balance_snapshot is None:
                config.balance_snapshot = await self._ledger.balance(owner)
                config.snapshot_at = now
                await self._store.update(f"nominees/{owner}", {
                    "balanceSnapshot": str(config.balance_snapshot),
                    "snapshotAt": to_iso(now),
                })
                logger.info(f"Inactivity confirmed for {owner[:10]}...: snapshot {config.balance_snapshot}")

            amount = config.share_amount(index, config.balance_snapshot)
            if amount <= 0:
                raise ClaimRejected("Nothing to claim: the vault was empty when inactivity was confirmed")

            ref = make_ref("nominee-claim", owner, to_iso(config.configured_at), index)
            settled = await self._ledger.find_by_ref(owner, ref)
            if settled is not None:
                tx_hash = ""
            else:
                await self._gate.require(owner, amount)
                receipt = await self._executor.execute_one(
                    owner, Transfer(to=claimant, amount=amount, ref=ref, memo=f"Nominee claim {index}"),
                    reconcile=False,
                )
                tx_hash = receipt.tx_hash

            record = {
                "index": index,
                "claimant": claimant,
                "amount": str(amount),
                "ref": ref,
                "txHash": tx_hash,
                "claimedAt": to_iso(now),
            }
            config.claimed_indices.add(index)
            config.claims[index] = record
            await self._store.update(f"nominees/{owner}", {
                "claimedIndices": sorted(config.claimed_indices),
                "claims": {str(k): v for k, v in config.claims.items()},
            })

        logger.info(f"Nominee {index} of {owner[:10]}... claimed {amount} → {claimant[:10]}...")
        return record
