import time
from threading import Lock
from typing import Callable, Protocol

from src.core.workflow.models import OfficerPosting


class PostingDirectory(Protocol):
    def list_officer_postings(self, *, user_id: str) -> list[OfficerPosting]: ...


class OfficerRoleCache:
    """TTL cache over the officer postings directory, keyed by user id."""

    def __init__(
        self,
        *,
        directory: PostingDirectory,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._directory = directory
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, tuple[float, dict[str, frozenset[str]]]] = {}

    def roles_for(self, *, user_id: str, authority_id: str) -> frozenset[str]:
        return self._postings(user_id).get(authority_id, frozenset())

    def has_role(self, *, user_id: str, authority_id: str, role_id: str) -> bool:
        return role_id in self.roles_for(user_id=user_id, authority_id=authority_id)

    def postings_for(self, *, user_id: str) -> dict[str, frozenset[str]]:
        return dict(self._postings(user_id))

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _postings(self, user_id: str) -> dict[str, frozenset[str]]:
        now = self._clock()
        with self._lock:
            cached = self._entries.get(user_id)
            if cached is not None and now - cached[0] < self._ttl_seconds:
                return cached[1]
        by_authority: dict[str, set[str]] = {}
        for posting in self._directory.list_officer_postings(user_id=user_id):
            by_authority.setdefault(posting.authority_id, set()).update(posting.role_ids)
        postings = {authority: frozenset(roles) for authority, roles in by_authority.items()}
        with self._lock:
            self._entries[user_id] = (now, postings)
        return postings
