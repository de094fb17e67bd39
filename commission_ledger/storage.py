"""
Commission record store.

Committed state lives in plain dicts keyed by id. Every mutation goes through a
``StoreTransaction`` scoped to one affiliate: writes are staged, then applied
together under the store lock after each rewritten record's ``version`` has
been checked against the committed copy. Readers take copies under the same
lock, so they observe either all of a transaction or none of it.
"""

import copy
import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import UUID

from .errors import ConcurrencyConflictError, StoreUnavailableError

logger = logging.getLogger(__name__)


class StoreTransaction:
    def __init__(self, storage: "InMemoryStorage", affiliate_id: str):
        self.storage = storage
        self.affiliate_id = affiliate_id
        self._commission_inserts: dict[UUID, dict] = {}
        self._commission_updates: dict[UUID, dict] = {}
        self._commission_deletes: dict[UUID, int] = {}
        self._withdrawal_inserts: dict[UUID, dict] = {}
        self._withdrawal_updates: dict[UUID, dict] = {}

    # Reads see committed state only; staged writes are not visible until commit.

    def commissions(self) -> list[dict]:
        return self.storage.snapshot_commissions(self.affiliate_id)

    def get_commission(self, commission_id: UUID) -> Optional[dict]:
        data = self.storage.get_commission(commission_id)
        if data is not None and data["affiliate_id"] != self.affiliate_id:
            return None
        return data

    def get_withdrawal(self, withdrawal_id: UUID) -> Optional[dict]:
        data = self.storage.get_withdrawal(withdrawal_id)
        if data is not None and data["affiliate_id"] != self.affiliate_id:
            return None
        return data

    def insert_commission(self, data: dict) -> None:
        self._check_scope(data)
        self._commission_inserts[data["id"]] = copy.deepcopy(data)

    def update_commission(self, data: dict) -> None:
        self._check_scope(data)
        self._commission_updates[data["id"]] = copy.deepcopy(data)

    def delete_commission(self, data: dict) -> None:
        self._check_scope(data)
        self._commission_deletes[data["id"]] = data["version"]

    def insert_withdrawal(self, data: dict) -> None:
        self._check_scope(data)
        self._withdrawal_inserts[data["id"]] = copy.deepcopy(data)

    def update_withdrawal(self, data: dict) -> None:
        self._check_scope(data)
        self._withdrawal_updates[data["id"]] = copy.deepcopy(data)

    def commit(self) -> None:
        storage = self.storage
        with storage._lock:
            storage.ensure_available()
            self._verify(storage.commissions, self._commission_inserts,
                         self._commission_updates, self._commission_deletes)
            self._verify(storage.withdrawals, self._withdrawal_inserts,
                         self._withdrawal_updates, {})

            for record_id, data in self._commission_inserts.items():
                data["version"] = 1
                data["sequence"] = next(storage._sequence)
                storage.commissions[record_id] = data
            for record_id, data in self._commission_updates.items():
                data["version"] += 1
                storage.commissions[record_id] = data
            for record_id in self._commission_deletes:
                del storage.commissions[record_id]
            for record_id, data in self._withdrawal_inserts.items():
                data["version"] = 1
                storage.withdrawals[record_id] = data
            for record_id, data in self._withdrawal_updates.items():
                data["version"] += 1
                storage.withdrawals[record_id] = data

        logger.debug(
            "Committed transaction for affiliate %s: %d inserted, %d updated, %d deleted",
            self.affiliate_id,
            len(self._commission_inserts) + len(self._withdrawal_inserts),
            len(self._commission_updates) + len(self._withdrawal_updates),
            len(self._commission_deletes),
        )

    def _verify(self, table: dict, inserts: dict, updates: dict, deletes: dict) -> None:
        for record_id in inserts:
            if record_id in table:
                raise ConcurrencyConflictError(f"Record {record_id} already exists", record_id)
        expected = {rid: data["version"] for rid, data in updates.items()}
        expected.update(deletes)
        for record_id, version in expected.items():
            current = table.get(record_id)
            if current is None or current["version"] != version:
                raise ConcurrencyConflictError(
                    f"Record {record_id} changed since it was read", record_id
                )

    def _check_scope(self, data: dict) -> None:
        if data["affiliate_id"] != self.affiliate_id:
            raise ValueError(
                f"Record {data['id']} belongs to affiliate {data['affiliate_id']}, "
                f"not {self.affiliate_id}"
            )


class _AffiliateLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class InMemoryStorage:
    transaction_class = StoreTransaction

    def __init__(self):
        self.commissions: dict[UUID, dict] = {}
        self.withdrawals: dict[UUID, dict] = {}
        self.available = True
        self._lock = threading.RLock()
        self._sequence = itertools.count(1)
        self._affiliate_locks: dict[str, _AffiliateLock] = {}
        self._registry_lock = threading.Lock()

    def ensure_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Commission store is unavailable")

    @contextmanager
    def affiliate_lock(self, affiliate_id: str) -> Iterator[None]:
        """Hold the affiliate's mutex.

        Registry entries are counted by holders and waiters and dropped when the
        count reaches zero, so the registry only grows with concurrent activity.
        """
        with self._registry_lock:
            entry = self._affiliate_locks.get(affiliate_id)
            if entry is None:
                entry = self._affiliate_locks[affiliate_id] = _AffiliateLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._affiliate_locks[affiliate_id]

    @contextmanager
    def transaction(self, affiliate_id: str) -> Iterator[StoreTransaction]:
        """Serialize mutations for one affiliate; commit only if the body succeeds."""
        self.ensure_available()
        with self.affiliate_lock(affiliate_id):
            txn = self.transaction_class(self, affiliate_id)
            yield txn
            txn.commit()

    def snapshot_commissions(self, affiliate_id: Optional[str] = None) -> list[dict]:
        with self._lock:
            self.ensure_available()
            return [
                copy.deepcopy(c) for c in self.commissions.values()
                if affiliate_id is None or c["affiliate_id"] == affiliate_id
            ]

    def snapshot_withdrawals(self, affiliate_id: Optional[str] = None) -> list[dict]:
        with self._lock:
            self.ensure_available()
            return [
                copy.deepcopy(w) for w in self.withdrawals.values()
                if affiliate_id is None or w["affiliate_id"] == affiliate_id
            ]

    def get_commission(self, commission_id: UUID) -> Optional[dict]:
        with self._lock:
            self.ensure_available()
            data = self.commissions.get(commission_id)
            return copy.deepcopy(data) if data is not None else None

    def get_withdrawal(self, withdrawal_id: UUID) -> Optional[dict]:
        with self._lock:
            self.ensure_available()
            data = self.withdrawals.get(withdrawal_id)
            return copy.deepcopy(data) if data is not None else None
