"""
Ledger Store adapters.

Records are held as JSON-mode documents and decoded into fresh ``User``
objects on every read, so a caller always mutates a private candidate.
Writes use optimistic concurrency on ``User.version``.
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .errors import (
    AddressAlreadyRegisteredError,
    ConflictingWriteError,
    RecordDecodeError,
    UnknownPlanError,
    UnknownUserError,
)
from .models import GlobalSettings, MiningPlan, User

logger = logging.getLogger(__name__)


def _decode_user(raw: dict) -> User:
    try:
        return User.model_validate(raw)
    except ValidationError as e:
        raise RecordDecodeError(f"Malformed user record {raw.get('id', '<no id>')}: {e}") from e


def _encode_user(user: User) -> dict:
    doc = user.model_dump(mode="json")
    # Round-trip so field constraints (e.g. balance >= 0) are checked before anything is stored
    _decode_user(doc)
    return doc


def backfill_legacy_user(raw: dict) -> dict:
    """
    One-time migration for records written before the strict schema.

    Fills only the fields older records are known to lack; anything else
    missing still fails decoding.
    """
    doc = dict(raw)
    doc.setdefault("referral_count", 0)
    doc.setdefault("referred_by", None)
    doc.setdefault("active_plans", [])
    doc.setdefault("transactions", [])
    doc.setdefault("version", 0)
    if "last_accrual_at" not in doc:
        doc["last_accrual_at"] = time.time()
    return doc


class LedgerStore(ABC):
    """Keyed read/write contract for user records."""

    @abstractmethod
    def get(self, user_id: str) -> User:
        """Return a fresh copy of the user or raise UnknownUserError."""

    @abstractmethod
    def put(self, user: User) -> User:
        """
        Commit ``user`` if its version matches the stored one.

        Returns the stored record with the bumped version. Raises
        ConflictingWriteError when another writer got there first.
        """

    @abstractmethod
    def add(self, user: User) -> User:
        """Insert a new user; login addresses are unique."""

    @abstractmethod
    def list(self) -> list[User]:
        """Return every user."""

    @abstractmethod
    def find_by_address(self, login_address: str) -> Optional[User]:
        """Return the user registered with ``login_address`` if any."""


class InMemoryLedgerStore(LedgerStore):
    def __init__(self):
        self._records: dict[str, dict] = {}
        self._address_index: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> User:
        with self._lock:
            raw = self._records.get(user_id)
        if raw is None:
            raise UnknownUserError(f"User {user_id} not found")
        return _decode_user(raw)

    def put(self, user: User) -> User:
        doc = _encode_user(user)
        doc["version"] = user.version + 1
        with self._lock:
            current = self._records.get(user.id)
            if current is None:
                raise UnknownUserError(f"User {user.id} not found")
            if current["version"] != user.version:
                raise ConflictingWriteError(
                    f"User {user.id} changed concurrently "
                    f"(expected version {user.version}, found {current['version']})"
                )
            self._records[user.id] = doc
            self._on_commit(user.id, current)
        return _decode_user(doc)

    def add(self, user: User) -> User:
        doc = _encode_user(user)
        with self._lock:
            if user.id in self._records:
                raise AddressAlreadyRegisteredError(f"User {user.id} already exists")
            if user.login_address in self._address_index:
                raise AddressAlreadyRegisteredError(f"Address {user.login_address} already registered")
            self._records[user.id] = doc
            self._address_index[user.login_address] = user.id
            self._on_commit(user.id, None)
        return _decode_user(doc)

    def list(self) -> list[User]:
        with self._lock:
            docs = list(self._records.values())
        return [_decode_user(d) for d in docs]

    def find_by_address(self, login_address: str) -> Optional[User]:
        with self._lock:
            user_id = self._address_index.get(login_address)
            raw = self._records.get(user_id) if user_id else None
        return _decode_user(raw) if raw else None

    def load_raw(self, raw: dict) -> None:
        """Insert an already-serialized record, e.g. when restoring from disk."""
        user = _decode_user(raw)
        with self._lock:
            self._records[user.id] = user.model_dump(mode="json")
            self._address_index[user.login_address] = user.id

    def _on_commit(self, user_id: str, previous: Optional[dict]) -> None:
        """Hook run under the store lock after a record changes."""


class JsonFileLedgerStore(InMemoryLedgerStore):
    """InMemoryLedgerStore persisted to a single JSON file after every commit."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            data = json.loads(self.path.read_text(encoding="utf-8"))
            for raw in data.get("users", []):
                self.load_raw(raw)
            logger.info(f"Loaded {len(self._records)} users from {self.path}")

    def _on_commit(self, user_id: str, previous: Optional[dict]) -> None:
        try:
            self._flush()
        except OSError:
            # The commit never became durable; restore the previous record
            if previous is None:
                doc = self._records.pop(user_id)
                self._address_index.pop(doc["login_address"], None)
            else:
                self._records[user_id] = previous
            logger.error(f"Failed to persist user {user_id} to {self.path}; change rolled back")
            raise

    def _flush(self) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        payload = {"users": list(self._records.values())}
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)


class InMemoryCatalog:
    """Admin-owned singletons: global settings and the mining plan catalog."""

    def __init__(self, settings: GlobalSettings, plans: list[MiningPlan]):
        self._lock = threading.Lock()
        self._settings = settings
        self._plans: list[MiningPlan] = []
        self.set_plans(plans)

    def get_settings(self) -> GlobalSettings:
        with self._lock:
            return self._settings.model_copy(deep=True)

    def set_settings(self, settings: GlobalSettings, performed_by: Optional[str] = None) -> GlobalSettings:
        validated = GlobalSettings.model_validate(settings.model_dump())
        with self._lock:
            self._settings = validated
        logger.info(f"Global settings updated by {performed_by or 'system'}")
        return validated.model_copy(deep=True)

    def get_plans(self) -> list[MiningPlan]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._plans]

    def set_plans(self, plans: list[MiningPlan], performed_by: Optional[str] = None) -> list[MiningPlan]:
        ids = [p.id for p in plans]
        if len(ids) != len(set(ids)):
            raise ValueError("Plan ids must be unique")
        validated = [MiningPlan.model_validate(p.model_dump()) for p in plans]
        with self._lock:
            self._plans = validated
        logger.info(f"Plan catalog replaced with {len(validated)} plans by {performed_by or 'system'}")
        return [p.model_copy(deep=True) for p in validated]

    def get_plan(self, plan_id: str) -> MiningPlan:
        with self._lock:
            for plan in self._plans:
                if plan.id == plan_id:
                    return plan.model_copy(deep=True)
        raise UnknownPlanError(f"Plan {plan_id} not found")
