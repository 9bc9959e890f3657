import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

from .models import (
    EntryStatus,
    ParticipationCategory,
    ParticipationEntry,
    MemberParticipationSummary,
    Member,
)
from .roles import can_approve as default_can_approve

logger = logging.getLogger(__name__)

HOURS_PER_EQUITY_UNIT = Decimal("10")
MAX_HOURS_PER_ENTRY = Decimal("24")
MAX_DESCRIPTION_LENGTH = 1000
HOURS_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


class ParticipationLedgerError(Exception):
    pass


class ValidationError(ParticipationLedgerError):
    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{field}: {message}" for field, message in errors.items()))


class NotFoundError(ParticipationLedgerError):
    pass


class InvalidStateError(ParticipationLedgerError):
    pass


class PermissionDeniedError(ParticipationLedgerError):
    pass


class IdempotencyConflictError(ParticipationLedgerError):
    pass


class InMemoryStorage:
    """Dict-backed entry store; every read and write happens under one lock."""

    def __init__(self):
        self.entries: dict[UUID, dict] = {}
        self.idempotency_index: dict[tuple[UUID, str], UUID] = {}
        self._lock = threading.RLock()
        self._seq = 0

    def add_entry(self, data: dict) -> dict:
        with self._lock:
            key = data.get("idempotency_key")
            if key is not None:
                existing_id = self.idempotency_index.get((data["member_id"], key))
                if existing_id is not None:
                    return dict(self.entries[existing_id])
                self.idempotency_index[(data["member_id"], key)] = data["id"]
            self._seq += 1
            self.entries[data["id"]] = {**data, "seq": self._seq}
            return dict(self.entries[data["id"]])

    def get_entry(self, entry_id: UUID) -> Optional[dict]:
        with self._lock:
            entry = self.entries.get(entry_id)
            return dict(entry) if entry else None

    def find_by_idempotency_key(self, member_id: UUID, key: str) -> Optional[dict]:
        with self._lock:
            entry_id = self.idempotency_index.get((member_id, key))
            return dict(self.entries[entry_id]) if entry_id else None

    def entries_for_member(self, member_id: UUID, statuses: Optional[Iterable[EntryStatus]] = None) -> list[dict]:
        wanted = set(statuses) if statuses else None
        with self._lock:
            rows = [
                dict(e) for e in self.entries.values()
                if e["member_id"] == member_id and (wanted is None or e["status"] in wanted)
            ]
        return _newest_first(rows)

    def entries_since(self, since: datetime, statuses: Optional[Iterable[EntryStatus]] = None) -> list[dict]:
        wanted = set(statuses) if statuses else None
        with self._lock:
            rows = [
                dict(e) for e in self.entries.values()
                if e["created_at"] >= since and (wanted is None or e["status"] in wanted)
            ]
        return _newest_first(rows)

    def transition_if_pending(
        self,
        entry_id: UUID,
        new_status: EntryStatus,
        approved_at: Optional[datetime],
        reviewed_by: Optional[UUID],
        review_note: Optional[str] = None,
    ) -> tuple[Optional[dict], bool]:
        with self._lock:
            entry = self.entries.get(entry_id)
            if entry is None:
                return None, False
            if entry["status"] != EntryStatus.PENDING:
                return dict(entry), False
            entry["status"] = new_status
            entry["approved_at"] = approved_at
            entry["reviewed_by"] = reviewed_by
            entry["review_note"] = review_note
            return dict(entry), True


def _newest_first(rows: list[dict]) -> list[dict]:
    rows.sort(key=lambda e: (e["created_at"], e["seq"]), reverse=True)
    return rows


def _sum_hours(entries: Iterable[ParticipationEntry]) -> Decimal:
    return sum((e.hours for e in entries), ZERO).quantize(HOURS_QUANTUM)


def summarize(member_id: UUID, entries: list[ParticipationEntry]) -> MemberParticipationSummary:
    total_hours = _sum_hours(e for e in entries if e.status == EntryStatus.APPROVED)
    pending_hours = _sum_hours(e for e in entries if e.status == EntryStatus.PENDING)
    # Hour sums are never negative, so integer division is the floor.
    equity_units = int(total_hours // HOURS_PER_EQUITY_UNIT)
    remainder = total_hours % HOURS_PER_EQUITY_UNIT

    return MemberParticipationSummary(
        member_id=member_id,
        total_hours=total_hours,
        pending_hours=pending_hours,
        equity_units=equity_units,
        progress_to_next_unit=remainder / HOURS_PER_EQUITY_UNIT,
        hours_to_next_unit=(HOURS_PER_EQUITY_UNIT - remainder).quantize(HOURS_QUANTUM),
        total_logs=len(entries),
    )


class ParticipationLedger:
    def __init__(
        self,
        storage=None,
        can_approve: Callable[[Member, ParticipationEntry], bool] = default_can_approve,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.storage = storage if storage is not None else InMemoryStorage()
        self.can_approve = can_approve
        self.clock = clock

    def record_entry(
        self,
        member_id: UUID,
        hours,
        category,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> ParticipationEntry:
        hours, category, description = self._validate_entry(hours, category, description)

        if idempotency_key is not None:
            existing = self.storage.find_by_idempotency_key(member_id, idempotency_key)
            if existing:
                return self._check_replay(ParticipationEntry(**existing), hours, category, description)

        entry_data = {
            "id": uuid4(),
            "member_id": member_id,
            "hours": hours,
            "category": category,
            "description": description,
            "status": EntryStatus.PENDING,
            "created_at": self.clock(),
            "approved_at": None,
            "reviewed_by": None,
            "review_note": None,
            "idempotency_key": idempotency_key,
        }
        stored = ParticipationEntry(**self.storage.add_entry(entry_data))
        if stored.id != entry_data["id"]:
            # Another request with the same key got there first.
            return self._check_replay(stored, hours, category, description)

        logger.info(
            "Recorded participation entry %s: member=%s hours=%s category=%s",
            stored.id, member_id, hours, category.value,
        )
        return stored

    def transition_status(
        self,
        entry_id: UUID,
        new_status: EntryStatus,
        actor: Optional[Member] = None,
        note: Optional[str] = None,
    ) -> ParticipationEntry:
        requested = new_status
        try:
            new_status = EntryStatus(new_status)
        except ValueError:
            new_status = None
        if new_status not in (EntryStatus.APPROVED, EntryStatus.REJECTED):
            raise InvalidStateError(f"Cannot transition entry {entry_id} to {requested}")

        note = note.strip() if isinstance(note, str) else None
        if note and len(note) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError({"reason": f"must be at most {MAX_DESCRIPTION_LENGTH} characters"})

        entry = self.get_entry(entry_id)
        if actor is not None and not self.can_approve(actor, entry):
            logger.warning("Member %s may not review participation entry %s", actor.id, entry_id)
            raise PermissionDeniedError(f"Member {actor.id} may not review entry {entry_id}")
        if not entry.can_transition():
            raise InvalidStateError(f"Entry {entry_id} was already decided ({entry.status.value})")

        approved_at = self.clock() if new_status == EntryStatus.APPROVED else None
        data, won = self.storage.transition_if_pending(
            entry_id, new_status, approved_at, actor.id if actor else None, note or None
        )
        if data is None:
            raise NotFoundError(f"Participation entry {entry_id} not found")
        if not won:
            logger.warning("Lost race deciding participation entry %s (now %s)", entry_id, data["status"])
            raise InvalidStateError(f"Entry {entry_id} was already decided ({EntryStatus(data['status']).value})")

        logger.info("Participation entry %s -> %s", entry_id, new_status.value)
        return ParticipationEntry(**data)

    def approve(self, entry_id: UUID, actor: Optional[Member] = None, note: Optional[str] = None) -> ParticipationEntry:
        return self.transition_status(entry_id, EntryStatus.APPROVED, actor, note)

    def reject(self, entry_id: UUID, actor: Optional[Member] = None, note: Optional[str] = None) -> ParticipationEntry:
        return self.transition_status(entry_id, EntryStatus.REJECTED, actor, note)

    def get_entry(self, entry_id: UUID) -> ParticipationEntry:
        data = self.storage.get_entry(entry_id)
        if not data:
            raise NotFoundError(f"Participation entry {entry_id} not found")
        return ParticipationEntry(**data)

    def list_entries(
        self,
        member_id: UUID,
        statuses: Optional[Iterable[EntryStatus]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[ParticipationEntry]:
        errors = {}
        if offset < 0:
            errors["offset"] = "must not be negative"
        if limit is not None and limit < 0:
            errors["limit"] = "must not be negative"
        if errors:
            raise ValidationError(errors)

        rows = self.storage.entries_for_member(member_id, statuses)
        end = None if limit is None else offset + limit
        return [ParticipationEntry(**row) for row in rows[offset:end]]

    def compute_summary(self, member_id: UUID) -> MemberParticipationSummary:
        # One read of the member's entries so concurrent decisions are either
        # fully in or fully out of the totals.
        entries = [ParticipationEntry(**row) for row in self.storage.entries_for_member(member_id)]
        return summarize(member_id, entries)

    def _validate_entry(self, hours, category, description) -> tuple[Decimal, ParticipationCategory, str]:
        errors = {}

        try:
            hours = Decimal(str(hours))
        except (InvalidOperation, ValueError, TypeError):
            errors["hours"] = "must be a number"
        else:
            if not hours.is_finite() or hours <= 0 or hours > MAX_HOURS_PER_ENTRY:
                errors["hours"] = f"must be greater than 0 and at most {MAX_HOURS_PER_ENTRY}"
            elif hours != hours.quantize(HOURS_QUANTUM):
                errors["hours"] = "must have at most 2 decimal places"
            else:
                hours = hours.quantize(HOURS_QUANTUM)

        try:
            category = ParticipationCategory(category)
        except ValueError:
            allowed = ", ".join(c.value for c in ParticipationCategory)
            errors["category"] = f"must be one of: {allowed}"

        description = description.strip() if isinstance(description, str) else ""
        if not description:
            errors["description"] = "is required"
        elif len(description) > MAX_DESCRIPTION_LENGTH:
            errors["description"] = f"must be at most {MAX_DESCRIPTION_LENGTH} characters"

        if errors:
            raise ValidationError(errors)
        return hours, category, description

    def _check_replay(self, existing: ParticipationEntry, hours, category, description) -> ParticipationEntry:
        if (existing.hours, existing.category, existing.description) != (hours, category, description):
            raise IdempotencyConflictError(
                f"Idempotency key {existing.idempotency_key!r} was already used for a different entry"
            )
        return existing
