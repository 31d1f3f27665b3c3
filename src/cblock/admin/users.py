"""User directory persisted under the ``cblock_users`` key."""

import json
import threading
import uuid
from collections.abc import Iterable
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from cblock.admin.models import User
from cblock.documents.models import UserRole, utcnow
from cblock.errors import ConflictError, LoadError, NotFoundError, StorageError
from cblock.storage.backend import USERS_KEY, KeyValueBackend

log = structlog.get_logger()


def parse_user_pairs(pairs: Iterable[Any]) -> dict[str, User]:
    users: dict[str, User] = {}
    for item in pairs:
        if not isinstance(item, list | tuple) or len(item) != 2:
            raise LoadError(f"malformed user pair {item!r}")
        try:
            user = User.model_validate(item[1])
        except PydanticValidationError as e:
            raise LoadError(f"user {item[0]}: {e.errors()[0]['msg']}") from e
        users[user.id] = user
    return users


class UserDirectory:
    def __init__(self, backend: KeyValueBackend) -> None:
        self.backend = backend
        self._lock = threading.RLock()
        self._users: dict[str, User] = {}

    @classmethod
    def open(cls, backend: KeyValueBackend) -> "UserDirectory":
        directory = cls(backend)
        try:
            directory.load()
        except LoadError as e:
            log.warning("user_directory_load_failed", reason=e.reason)
        return directory

    def load(self) -> None:
        with self._lock:
            self._users = {}
            raw = self.backend.get(USERS_KEY)
            if raw is None:
                return
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                raise LoadError(f"{USERS_KEY}: not valid JSON ({e})") from e
            if not isinstance(data, list):
                raise LoadError(f"{USERS_KEY}: expected a list of [key, value] pairs")
            self._users = parse_user_pairs(data)

    def _commit(self, users: dict[str, User]) -> None:
        """Write the candidate map, then make it current."""
        pairs = [[k, u.model_dump(mode="json")] for k, u in users.items()]
        self.backend.set(USERS_KEY, json.dumps(pairs))
        self._users = users

    def get(self, user_id: str) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    def require(self, user_id: str) -> User:
        user = self.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def find_by_identity(self, identity: str) -> User | None:
        """Match a ledger identity (wallet address, case-insensitive) or an email."""
        needle = identity.lower()
        with self._lock:
            for user in self._users.values():
                if needle in (user.email.lower(), (user.wallet_address or "").lower()):
                    return user.model_copy()
        return None

    def role_for(self, identity: str) -> UserRole | None:
        user = self.find_by_identity(identity)
        return user.role if user else None

    def list_all(self) -> list[User]:
        with self._lock:
            return [u.model_copy() for u in self._users.values()]

    def __len__(self) -> int:
        return len(self._users)

    def add(
        self,
        email: str,
        name: str = "",
        role: UserRole = UserRole.INDIVIDUAL,
        wallet_address: str | None = None,
        is_verified: bool = True,
        user_id: str | None = None,
    ) -> User:
        with self._lock:
            if any(u.email.lower() == email.lower() for u in self._users.values()):
                raise ConflictError(f"A user with email {email} already exists")
            user = User(
                id=user_id or f"user_{uuid.uuid4().hex[:12]}",
                email=email,
                name=name,
                role=role,
                wallet_address=wallet_address,
                is_verified=is_verified,
            )
            if user.id in self._users:
                raise ConflictError(f"User {user.id} already exists")
            self._commit({**self._users, user.id: user})
            return user.model_copy()

    def update(self, user_id: str, **changes: Any) -> User:
        with self._lock:
            current = self._users.get(user_id)
            if current is None:
                raise NotFoundError("User not found")
            updated = current.model_copy(update={**changes, "updated_at": utcnow()})
            self._commit({**self._users, user_id: updated})
            return updated.model_copy()

    def remove(self, user_id: str) -> User:
        with self._lock:
            users = dict(self._users)
            user = users.pop(user_id, None)
            if user is None:
                raise NotFoundError("User not found")
            self._commit(users)
            return user

    def export(self) -> list[list[Any]]:
        with self._lock:
            return [[k, u.model_dump(mode="json")] for k, u in self._users.items()]

    def replace(self, pairs: Iterable[Any]) -> None:
        try:
            users = parse_user_pairs(pairs)
        except LoadError as e:
            raise StorageError(f"Invalid user snapshot: {e.reason}") from e
        with self._lock:
            self._commit(users)
