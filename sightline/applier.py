"""Apply decided outcomes to the persistent store as one transaction.

``apply_outcomes`` takes a list of outcomes (observer, subject, new
visibility and/or cover, optional pinned override) and either commits all
of them or none:

1. every outcome is validated; bad ones are reported per item and skipped,
   they never stop the others;
2. the current stored values of every affected pair are snapshotted;
3. writes go out visibility-only first, then cover-only, then combined
   outcomes. For a single pair the override goes before the visibility
   value, and the visibility value before the cover value;
4. the written keys are read back. A few mismatches get one corrective
   re-write; more than that, or any left after the correction, is a hard
   error;
5. on a hard error every logged write is undone in reverse order.

Each successful write is appended to the transaction's log as a pair of
commands (apply, inverse), so rolling back is just running the inverses
backwards. A committed transaction stays around for a grace period so a
caller can still roll it back explicitly.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from .errors import InvalidOutcomeError
from .interfaces import PersistentStore
from .params import ApplierParams
from .store import cover_key, override_key, visibility_key
from .types import ChangeRecord, Outcome

logger = logging.getLogger(__name__)

# Completed transactions older than this are dropped by ``cleanup``.
DEFAULT_MAX_AGE_S = 600

Command = Callable[[], Awaitable[None]]

_KEY_FNS = {
    "override": override_key,
    "visibility": visibility_key,
    "cover": cover_key,
}


@dataclass
class LoggedWrite:
    record: ChangeRecord
    apply: Command
    inverse: Command


@dataclass
class Transaction:
    id: str
    started_at: float
    options: dict = field(default_factory=dict)
    log: list[LoggedWrite] = field(default_factory=list)
    completed: bool = False
    completed_at: float | None = None

    def changes(self, kind: str) -> list[ChangeRecord]:
        return [w.record for w in self.log if w.record.kind == kind]

    @property
    def visibility_changes(self) -> list[ChangeRecord]:
        return self.changes("visibility")

    @property
    def cover_changes(self) -> list[ChangeRecord]:
        return self.changes("cover")

    @property
    def override_changes(self) -> list[ChangeRecord]:
        return self.changes("override")


@dataclass
class ApplyResult:
    success: bool
    transaction_id: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    applied_changes: dict[str, list[ChangeRecord]] = field(
        default_factory=lambda: {"visibility": [], "cover": [], "override": []}
    )
    rolled_back: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "transaction_id": self.transaction_id,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "applied_changes": {
                kind: [r.to_dict() for r in records]
                for kind, records in self.applied_changes.items()
            },
            "rolled_back": self.rolled_back,
        }


class _HardError(Exception):
    pass


def _slot(record: ChangeRecord) -> tuple[str, str]:
    return record.observer_id, _KEY_FNS[record.kind](record.subject_id)


class TransactionalApplier:
    """All-or-nothing writer of outcomes into a ``PersistentStore``.

    ``entity_exists`` resolves observer and subject ids; without one every
    non-empty id is accepted.
    """

    def __init__(
        self,
        store: PersistentStore,
        entity_exists: Callable[[str], bool] | None = None,
        params: ApplierParams | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.entity_exists = entity_exists
        self.params = params or ApplierParams()
        self._clock = clock
        self._counter = 0
        self._transactions: dict[str, Transaction] = {}

    def _next_id(self) -> str:
        self._counter += 1
        return f"dual-system-tx-{self._counter}-{int(self._clock() * 1000)}"

    # -- validation ---------------------------------------------------------

    def _resolves(self, entity_id: Any) -> bool:
        if not isinstance(entity_id, str) or not entity_id:
            return False
        if self.entity_exists is None:
            return True
        try:
            return bool(self.entity_exists(entity_id))
        except Exception as exc:
            logger.warning("entity lookup for %r failed: %s", entity_id, exc)
            return False

    def _validate(self, item: Any) -> Outcome:
        if isinstance(item, Outcome):
            # Re-parse so plain strings in enum fields are checked too.
            outcome = Outcome.from_dict(dataclasses.asdict(item))
        elif isinstance(item, dict):
            outcome = Outcome.from_dict(item)
        else:
            raise InvalidOutcomeError(f"unsupported outcome {item!r}")
        if not self._resolves(outcome.observer_id):
            raise InvalidOutcomeError(
                f"unknown observer {outcome.observer_id!r}"
            )
        if not self._resolves(outcome.subject_id):
            raise InvalidOutcomeError(f"unknown subject {outcome.subject_id!r}")
        if not (outcome.changes_visibility or outcome.changes_cover):
            raise InvalidOutcomeError(
                f"outcome {outcome.observer_id} -> {outcome.subject_id} "
                "has no target state"
            )
        return outcome

    # -- writes -------------------------------------------------------------

    async def _snapshot(
        self, outcomes: list[Outcome]
    ) -> dict[tuple[str, str], Any]:
        values: dict[tuple[str, str], Any] = {}
        for o in outcomes:
            for key_fn in _KEY_FNS.values():
                slot = (o.observer_id, key_fn(o.subject_id))
                if slot not in values:
                    values[slot] = await self.store.get(*slot)
        return values

    async def _write(
        self,
        tx: Transaction,
        current: dict[tuple[str, str], Any],
        kind: str,
        outcome: Outcome,
        new: str,
    ) -> None:
        entity_id = outcome.observer_id
        key = _KEY_FNS[kind](outcome.subject_id)
        old = current[(entity_id, key)]

        async def apply() -> None:
            await self.store.set(entity_id, key, new)

        async def inverse() -> None:
            await self.store.set(entity_id, key, old)

        try:
            await apply()
        except Exception as exc:
            raise _HardError(
                f"{kind} write {entity_id} -> {outcome.subject_id} failed: {exc}"
            ) from exc
        current[(entity_id, key)] = new
        record = ChangeRecord(
            kind=kind,
            observer_id=entity_id,
            subject_id=outcome.subject_id,
            old_state=old,
            new_state=new,
            timestamp=self._clock(),
        )
        tx.log.append(LoggedWrite(record=record, apply=apply, inverse=inverse))
        logger.debug("%s %s: %s -> %s", tx.id, kind, old, new)

    async def _apply_one(
        self,
        tx: Transaction,
        current: dict[tuple[str, str], Any],
        outcome: Outcome,
    ) -> None:
        if outcome.override_state is not None:
            await self._write(
                tx, current, "override", outcome, outcome.override_state.value
            )
        if outcome.changes_visibility:
            await self._write(
                tx, current, "visibility", outcome, outcome.target_visibility.value
            )
        if outcome.changes_cover:
            await self._write(tx, current, "cover", outcome, outcome.new_cover.value)

    async def _mismatches(
        self, expected: dict[tuple[str, str], Any]
    ) -> list[tuple[str, str]]:
        bad = []
        for slot, value in expected.items():
            try:
                stored = await self.store.get(*slot)
            except Exception as exc:
                raise _HardError(
                    f"consistency read {slot[0]}/{slot[1]} failed: {exc}"
                ) from exc
            if stored != value:
                bad.append(slot)
        return bad

    async def _verify(
        self,
        tx: Transaction,
        expected: dict[tuple[str, str], Any],
        result: ApplyResult,
    ) -> None:
        bad = await self._mismatches(expected)
        if not bad:
            return
        if len(bad) > self.params.auto_correct_threshold:
            raise _HardError(
                f"{len(bad)} stored values do not match what was written"
            )
        result.warnings.append(f"auto-correcting {len(bad)} inconsistent values")
        logger.warning("%s: auto-correcting %d values", tx.id, len(bad))
        for slot in bad:
            try:
                await self.store.set(slot[0], slot[1], expected[slot])
            except Exception as exc:
                raise _HardError(
                    f"auto-correction of {slot[0]}/{slot[1]} failed: {exc}"
                ) from exc
        still_bad = await self._mismatches(expected)
        if still_bad:
            raise _HardError(
                "inconsistent after auto-correction: "
                + ", ".join(f"{e}/{k}" for e, k in still_bad)
            )

    # -- public -------------------------------------------------------------

    async def apply_outcomes(
        self, outcomes: Iterable[Any] | None, options: dict | None = None
    ) -> ApplyResult:
        """Commit every valid outcome, or roll all of them back.

        ``options["verify"] = False`` skips the read-back check. Committed
        transactions past their grace period are dropped first.
        """
        options = dict(options or {})
        self.cleanup(self.params.grace_period_s)
        tx = Transaction(
            id=self._next_id(), started_at=self._clock(), options=options
        )
        result = ApplyResult(success=False, transaction_id=tx.id)
        items = list(outcomes or [])
        if not items:
            result.warnings.append("no outcomes to apply")
            result.success = True
            return result

        valid: list[Outcome] = []
        for i, item in enumerate(items):
            try:
                valid.append(self._validate(item))
            except InvalidOutcomeError as exc:
                result.errors.append(f"outcome {i}: {exc}")
        if not valid:
            logger.warning("%s: no valid outcomes", tx.id)
            return result

        logger.info(
            "%s: applying %d outcomes (%d rejected)",
            tx.id,
            len(valid),
            len(items) - len(valid),
        )

        try:
            current = await self._snapshot(valid)
        except Exception as exc:
            result.errors.append(f"reading current state failed: {exc}")
            logger.error("%s: snapshot failed: %s", tx.id, exc)
            return result

        for o in valid:
            stored = current[(o.observer_id, visibility_key(o.subject_id))]
            if o.old_visibility is not None and stored not in (
                None,
                o.old_visibility.value,
            ):
                result.warnings.append(
                    f"{o.observer_id} -> {o.subject_id}: expected old visibility "
                    f"{o.old_visibility.value}, found {stored}"
                )

        visibility_only = [o for o in valid if not o.changes_cover]
        cover_only = [o for o in valid if not o.changes_visibility]
        combined = [o for o in valid if o.changes_visibility and o.changes_cover]

        self._transactions[tx.id] = tx
        try:
            for group in (visibility_only, cover_only, combined):
                for outcome in group:
                    await self._apply_one(tx, current, outcome)
            if options.get("verify", True):
                slots = dict.fromkeys(_slot(w.record) for w in tx.log)
                expected = {slot: current[slot] for slot in slots}
                await self._verify(tx, expected, result)
        except _HardError as exc:
            result.errors.append(str(exc))
            logger.error("%s failed, rolling back: %s", tx.id, exc)
            self._transactions.pop(tx.id, None)
            failed = await self._undo(tx)
            if failed:
                result.warnings.append(f"{failed} rollback steps failed")
            result.rolled_back = True
            return result

        for kind in result.applied_changes:
            result.applied_changes[kind] = tx.changes(kind)
        tx.completed = True
        tx.completed_at = self._clock()
        result.success = not result.errors
        self._schedule_removal(tx.id)
        logger.info("%s committed %d writes", tx.id, len(tx.log))
        return result

    def _schedule_removal(self, tx_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(
            self.params.grace_period_s, self._transactions.pop, tx_id, None
        )

    async def _undo(self, tx: Transaction) -> int:
        failed = 0
        for write in reversed(tx.log):
            try:
                await write.inverse()
            except Exception as exc:
                failed += 1
                r = write.record
                logger.warning(
                    "%s: could not undo %s %s -> %s: %s",
                    tx.id,
                    r.kind,
                    r.observer_id,
                    r.subject_id,
                    exc,
                )
        return failed

    def _past_grace(self, tx: Transaction) -> bool:
        return (
            tx.completed
            and tx.completed_at is not None
            and self._clock() - tx.completed_at > self.params.grace_period_s
        )

    async def rollback_transaction(self, transaction_id: str) -> bool:
        """Undo a transaction still inside its grace period.

        Returns False for an unknown or already rolled back id, and for a
        committed transaction whose grace period has passed, which is
        dropped instead.
        """
        tx = self._transactions.pop(transaction_id, None)
        if tx is None:
            logger.warning("no transaction %s to roll back", transaction_id)
            return False
        if self._past_grace(tx):
            logger.warning(
                "grace period for %s has passed, not rolling back", transaction_id
            )
            return False
        logger.info("rolling back %s (%d writes)", tx.id, len(tx.log))
        await self._undo(tx)
        return True

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        return self._transactions.get(transaction_id)

    def active_transaction_ids(self) -> list[str]:
        return list(self._transactions)

    def cleanup(self, max_age_s: float = DEFAULT_MAX_AGE_S) -> int:
        cutoff = self._clock() - max_age_s
        expired = [
            tx_id
            for tx_id, tx in self._transactions.items()
            if tx.completed and tx.completed_at is not None and tx.completed_at < cutoff
        ]
        for tx_id in expired:
            del self._transactions[tx_id]
        if expired:
            logger.debug("cleaned up %d expired transactions", len(expired))
        return len(expired)
