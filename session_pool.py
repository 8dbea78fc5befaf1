"""Pool of Notion account sessions with round-robin rotation and invalidation."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from errors import NoCredentialsError, SessionExhausted
from logger import mask_secret

log = logging.getLogger("notion_bridge")

# token_v2 -> (user_id, space_id)
IdentityResolver = Callable[[str], Awaitable[Tuple[str, str]]]


@dataclass
class Session:
    """One Notion account: its token_v2 cookie and the ids derived from it."""

    token: str
    user_id: str
    space_id: str
    valid: bool = True
    uses: int = 0
    empty_responses: int = 0
    invalidated_at: Optional[float] = None

    @property
    def cookie(self) -> str:
        return f"token_v2={self.token}"

    def to_status_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "space_id": self.space_id,
            "token": mask_secret(self.token),
            "valid": self.valid,
            "uses": self.uses,
            "empty_responses": self.empty_responses,
            "invalidated_at": self.invalidated_at,
        }


@dataclass
class CredentialEntry:
    """A parsed credential line; ids are None until resolved."""

    token: str
    user_id: Optional[str] = None
    space_id: Optional[str] = None


def parse_credential_entry(raw: str) -> Optional[CredentialEntry]:
    """
    Parse one credential entry.

    Accepted forms:
      <token_v2>
      token_v2=<token_v2>
      <token_v2>,<user_id>,<space_id>
    """
    raw = (raw or "").strip()
    if not raw or raw.startswith("#"):
        return None
    parts = [p.strip() for p in raw.split(",")]
    token = parts[0]
    if token.startswith("token_v2="):
        token = token[len("token_v2="):]
    if not token:
        return None
    if len(parts) >= 3 and parts[1] and parts[2]:
        return CredentialEntry(token=token, user_id=parts[1], space_id=parts[2])
    return CredentialEntry(token=token)


def parse_inline_credentials(value: str) -> List[CredentialEntry]:
    """Parse a `|`-separated credential list (NOTION_COOKIE)."""
    out: List[CredentialEntry] = []
    for raw in (value or "").split("|"):
        entry = parse_credential_entry(raw)
        if entry is not None:
            out.append(entry)
    return out


def parse_credential_file(path: str) -> List[CredentialEntry]:
    """Parse a credential file with one entry per line (COOKIE_FILE)."""
    text = Path(path).read_text(encoding="utf-8")
    out: List[CredentialEntry] = []
    for line in text.splitlines():
        entry = parse_credential_entry(line)
        if entry is not None:
            out.append(entry)
    return out


@dataclass
class CredentialSource:
    """Where credentials come from: a file, an inline list, or both."""

    inline: str = ""
    file_path: str = ""

    def load_entries(self) -> List[CredentialEntry]:
        """File first; fall back to the inline list if the file yields nothing."""
        if self.file_path:
            try:
                entries = parse_credential_file(self.file_path)
            except OSError as e:
                log.error("Failed to read COOKIE_FILE %r: %s", self.file_path, e)
                entries = []
            if entries:
                log.info("Loaded %d credential entries from %s", len(entries), self.file_path)
                return entries
            log.error("No credentials loaded from COOKIE_FILE; trying NOTION_COOKIE")
        return parse_inline_credentials(self.inline)


@dataclass
class SessionLease:
    """A session held by one exchange. Obtain with SessionPool.acquire()."""

    pool: "SessionPool"
    session: Session
    tried: List[str] = field(default_factory=list)
    released: bool = False

    def __post_init__(self) -> None:
        self.tried.append(self.session.user_id)

    def rotate(self) -> Session:
        """Invalidate the held session and move the lease to the next valid one.

        Raises SessionExhausted when no untried valid session is left.
        """
        self.pool.invalidate(self.session.user_id)
        nxt = self.pool.next()
        if nxt is None or nxt.user_id in self.tried:
            raise SessionExhausted("all Notion sessions are invalid")
        self.session = nxt
        self.tried.append(nxt.user_id)
        return nxt

    def release(self) -> None:
        self.pool.release(self)


class SessionPool:
    """Round-robin pool of Notion sessions.

    All state is guarded by one lock. Exchanges never share a mutable "current
    session": each one takes a lease, which advances the rotation pointer once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: List[Session] = []
        self._index = 0
        self._in_flight = 0

    async def initialize(
        self,
        source: CredentialSource,
        resolver: Optional[IdentityResolver] = None,
    ) -> int:
        """Load credentials, derive ids, and reset rotation. Returns the session count."""
        entries = source.load_entries()
        sessions: List[Session] = []
        seen: set[str] = set()

        for entry in entries:
            user_id, space_id = entry.user_id, entry.space_id
            if user_id is None or space_id is None:
                if resolver is None:
                    log.error("Credential %s has no ids and no resolver is set", mask_secret(entry.token))
                    continue
                try:
                    user_id, space_id = await resolver(entry.token)
                except Exception as e:
                    log.error("Failed to resolve Notion ids for %s: %s", mask_secret(entry.token), e)
                    continue
            if user_id in seen:
                log.warning("Duplicate credential for user %s skipped", user_id)
                continue
            seen.add(user_id)
            sessions.append(Session(token=entry.token, user_id=user_id, space_id=space_id))
            log.info("Session ready user_id=%s space_id=%s", user_id, space_id)

        if not sessions:
            raise NoCredentialsError("no usable Notion credentials configured")

        with self._lock:
            self._sessions = sessions
            self._index = 0
        log.info("Session pool initialized: %d session(s)", len(sessions))
        return len(sessions)

    def next(self) -> Optional[Session]:
        """Return the session at the rotation pointer and advance to the next valid one."""
        with self._lock:
            if not self._valid_indices():
                return None
            current = self._sessions[self._index]
            self._index = self._next_valid_after(self._index)
            return current

    def invalidate(self, user_id: str) -> bool:
        """Mark the session for `user_id` permanently invalid. Idempotent.

        Returns True if this call changed its state.
        """
        with self._lock:
            for i, s in enumerate(self._sessions):
                if s.user_id != user_id:
                    continue
                if not s.valid:
                    return False
                s.valid = False
                s.invalidated_at = time.time()
                if i == self._index and self._valid_indices():
                    self._index = self._next_valid_after(i)
                log.warning(
                    "Session invalidated user_id=%s (%d valid left)",
                    user_id,
                    len(self._valid_indices()),
                )
                return True
            return False

    def acquire(self) -> SessionLease:
        """Lease the next session for one exchange."""
        session = self.next()
        if session is None:
            raise SessionExhausted("all Notion sessions are invalid")
        with self._lock:
            session.uses += 1
            self._in_flight += 1
        log.debug("Leased session user_id=%s", session.user_id)
        return SessionLease(pool=self, session=session)

    def record_empty_response(self, user_id: str) -> None:
        """Count an answer with no content; a climbing count marks a removal candidate."""
        with self._lock:
            for s in self._sessions:
                if s.user_id == user_id:
                    s.empty_responses += 1
                    return

    def release(self, lease: SessionLease) -> None:
        with self._lock:
            if lease.released:
                return
            lease.released = True
            self._in_flight = max(0, self._in_flight - 1)

    def valid_count(self) -> int:
        with self._lock:
            return len(self._valid_indices())

    def size(self) -> int:
        with self._lock:
            return len(self._sessions)

    @property
    def initialized(self) -> bool:
        with self._lock:
            return bool(self._sessions)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_cookies": len(self._sessions),
                "valid_cookies": len(self._valid_indices()),
                "in_flight": self._in_flight,
                "cookies": [s.to_status_dict() for s in self._sessions],
            }

    # Callers must hold self._lock.

    def _valid_indices(self) -> List[int]:
        return [i for i, s in enumerate(self._sessions) if s.valid]

    def _next_valid_after(self, index: int) -> int:
        n = len(self._sessions)
        for step in range(1, n + 1):
            j = (index + step) % n
            if self._sessions[j].valid:
                return j
        return index
