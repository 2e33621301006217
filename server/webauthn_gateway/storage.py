"""User directory: identities, enrolled credentials and in-flight challenges."""
from __future__ import annotations

import hashlib
import copy
import logging
import os
import pickle
import secrets
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

from .errors import IdentityGenerationError, StorageError, UserNotFoundError

__all__ = [
    "FileUserDirectory",
    "InMemoryUserDirectory",
    "PendingChallenge",
    "USER_ID_LENGTH",
    "UserDirectory",
    "UserIdentity",
    "generate_user_id",
]

logger = logging.getLogger(__name__)

# WebAuthn caps the user handle at 64 bytes.
USER_ID_LENGTH = 32


def generate_user_id() -> bytes:
    """Return a fresh random user handle."""

    try:
        return secrets.token_bytes(USER_ID_LENGTH)
    except (NotImplementedError, OSError) as exc:
        raise IdentityGenerationError("failed to generate user ID") from exc


@dataclass
class PendingChallenge:
    """Session state issued by a begin step and awaiting its finish step."""

    state: Mapping[str, Any]
    issued_at: float
    failed_attempts: int = 0


@dataclass
class UserIdentity:
    id: bytes
    name: str
    display_name: str
    credentials: List[Any] = field(default_factory=list)
    pending_registration: Optional[PendingChallenge] = None
    pending_login: Optional[PendingChallenge] = None
    created_at: float = field(default_factory=time.time)

    def __setattr__(self, key: str, value: Any) -> None:
        if key == "id" and "id" in self.__dict__:
            raise AttributeError("the user handle cannot be changed once assigned")
        super().__setattr__(key, value)

    @classmethod
    def create(cls, name: str, display_name: str) -> "UserIdentity":
        """Create a new identity with a freshly generated handle."""

        return cls(id=generate_user_id(), name=name, display_name=display_name)


class UserDirectory(Protocol):
    def get(self, name: str) -> UserIdentity:
        ...

    def save(self, user: UserIdentity) -> None:
        ...

    def lock(self, name: str):
        ...


class _KeyedLocks:
    """Hand out one re-entrant lock per key.

    An entry lives only while some caller holds or waits for it, so names that
    never reach the directory leave nothing behind.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, number of callers holding or waiting]
        self._locks: Dict[str, List[Any]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class InMemoryUserDirectory:
    """Process-local directory; contents vanish on restart.

    Records are copied on the way in and out, so a caller only changes stored
    state by calling :meth:`save` with the whole record.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserIdentity] = {}
        self._write_lock = threading.Lock()
        self._locks = _KeyedLocks()

    def get(self, name: str) -> UserIdentity:
        with self._write_lock:
            user = self._users.get(name)
            if user is None:
                raise UserNotFoundError(name)
            return copy.deepcopy(user)

    def save(self, user: UserIdentity) -> None:
        snapshot = copy.deepcopy(user)
        with self._write_lock:
            self._users[user.name] = snapshot

    def lock(self, name: str):
        return self._locks.hold(name)

    def __len__(self) -> int:
        with self._write_lock:
            return len(self._users)

    def __contains__(self, name: object) -> bool:
        with self._write_lock:
            return name in self._users


class FileUserDirectory:
    """Directory that keeps one pickle file per user below ``basepath``.

    Writes land in a temporary file that is renamed over the previous record,
    so concurrent readers see either the old or the new record. Key locks are
    only shared within one process.
    """

    SUFFIX = "_user_data.pkl"

    def __init__(self, basepath: str) -> None:
        self.basepath = os.path.abspath(basepath)
        try:
            os.makedirs(self.basepath, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create storage directory {self.basepath}") from exc
        self._locks = _KeyedLocks()

    def _path_for(self, name: str) -> str:
        # Fixed-length file names whatever the length or script of the name.
        digest = hashlib.sha256(name.encode("utf-8")).hexdigest()
        return os.path.join(self.basepath, f"{digest}{self.SUFFIX}")

    def get(self, name: str) -> UserIdentity:
        path = self._path_for(name)
        try:
            with open(path, "rb") as f:
                user = pickle.load(f)
        except FileNotFoundError:
            raise UserNotFoundError(name) from None
        except (
            OSError,
            pickle.UnpicklingError,
            EOFError,
            AttributeError,
            ImportError,
            ValueError,
        ) as exc:
            logger.exception("Failed to read user record for %s", name)
            raise StorageError("failed to read user record") from exc

        if not isinstance(user, UserIdentity):
            raise StorageError("stored user record has an unexpected type")
        return user

    def save(self, user: UserIdentity) -> None:
        path = self._path_for(user.name)
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                dir=self.basepath, prefix=".tmp-", delete=False
            ) as tmp:
                tmp_path = tmp.name
                pickle.dump(user, tmp)
            os.replace(tmp_path, path)
        except (OSError, pickle.PicklingError) as exc:
            logger.exception("Failed to write user record for %s", user.name)
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageError("failed to save user record") from exc

    def lock(self, name: str):
        return self._locks.hold(name)
