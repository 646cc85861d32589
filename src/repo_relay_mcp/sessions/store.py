import asyncio
import time
from collections import Counter, OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from logging import Logger
from pathlib import Path

from fastmcp.utilities.logging import get_logger

from repo_relay_mcp.sessions.models import MAX_TRANSCRIPT_TURNS, ConversationTurn, PendingArchive, UserId, UserSession

DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_MAX_USERS = 1000


class SessionStore:
    """Process-wide, memory-resident map of user sessions.

    Sessions idle for longer than `ttl_seconds` expire and, once more than `max_users` sessions exist, the least
    recently used session is evicted. Whenever a pending archive is replaced, cleared or evicted its extraction
    directory is deleted from disk, unless the archive is leased, in which case deletion waits for the last lease
    to end.

    Every mutation happens under a single lock, so concurrent calls for the same user are last-write-wins.
    """

    def __init__(
        self,
        ttl_seconds: float | None = DEFAULT_TTL_SECONDS,
        max_users: int | None = DEFAULT_MAX_USERS,
        max_turns: int = MAX_TRANSCRIPT_TURNS,
        clock: Callable[[], float] = time.monotonic,
        logger: Logger | None = None,
    ):
        self.ttl_seconds: float | None = ttl_seconds
        self.max_users: int | None = max_users
        self.max_turns: int = max_turns
        self.clock: Callable[[], float] = clock
        self.logger: Logger = logger or get_logger(name=__name__)

        self._sessions: OrderedDict[UserId, UserSession] = OrderedDict()
        self._lock: asyncio.Lock = asyncio.Lock()

        self._leases: Counter[Path] = Counter()
        self._deferred: dict[Path, PendingArchive] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: UserId) -> bool:
        return user_id in self._sessions

    async def get(self, user_id: UserId) -> list[ConversationTurn]:
        """Get a copy of the user's transcript, oldest turn first."""

        async with self._lock:
            now = self.clock()
            stale = self._evict_expired(now=now)
            session = self._refresh(user_id=user_id, now=now)
            transcript = list(session.transcript) if session else []

        await self._dispose(stale)

        return transcript

    async def append(self, user_id: UserId, turn: ConversationTurn) -> None:
        """Append a turn to the user's transcript, keeping only the most recent turns."""

        await self.append_many(user_id, [turn])

    async def append_many(self, user_id: UserId, turns: list[ConversationTurn]) -> None:
        """Append several turns to the user's transcript in one step."""

        async with self._lock:
            now = self.clock()
            stale = self._evict_expired(now=now)

            session = self._touch(user_id=user_id, now=now)
            for turn in turns:
                session.append(turn, max_turns=self.max_turns)

            stale.extend(self._evict_overflow())

        await self._dispose(stale)

    async def append_exchange(self, user_id: UserId, user_turn: ConversationTurn, assistant_turn: ConversationTurn) -> None:
        """Record a completed question and answer."""

        await self.append_many(user_id, [user_turn, assistant_turn])

    async def clear(self, user_id: UserId) -> None:
        """Forget the user's transcript and dispose of their pending archive."""

        async with self._lock:
            stale = self._evict_expired(now=self.clock())

            if (session := self._sessions.pop(user_id, None)) and session.pending_archive:
                stale.append(session.pending_archive)

        await self._dispose(stale)

    async def set_pending_archive(self, user_id: UserId, archive: PendingArchive) -> None:
        """Register the user's pending archive, disposing of the one it supersedes."""

        async with self._lock:
            now = self.clock()
            stale = self._evict_expired(now=now)

            session = self._touch(user_id=user_id, now=now)
            if session.pending_archive is not None and session.pending_archive != archive:
                stale.append(session.pending_archive)
            session.pending_archive = archive

            stale.extend(self._evict_overflow())

        await self._dispose(stale)

    async def get_pending_archive(self, user_id: UserId) -> PendingArchive | None:
        async with self._lock:
            now = self.clock()
            stale = self._evict_expired(now=now)
            session = self._refresh(user_id=user_id, now=now)
            archive = session.pending_archive if session else None

        await self._dispose(stale)

        return archive

    @asynccontextmanager
    async def lease_pending_archive(self, user_id: UserId) -> AsyncIterator[PendingArchive | None]:
        """Hold the user's pending archive for the duration of the block.

        The archive may be superseded, cleared or evicted while leased, but its directory stays on disk until the
        last lease on it ends.
        """

        async with self._lock:
            now = self.clock()
            stale = self._evict_expired(now=now)
            session = self._refresh(user_id=user_id, now=now)

            if (archive := session.pending_archive if session else None) is not None:
                self._leases[archive.scratch_root] += 1

        await self._dispose(stale)

        try:
            yield archive
        finally:
            if archive is not None:
                await self._release(archive)

    async def evict_expired(self) -> int:
        """Drop every expired session. Returns the number of sessions dropped."""

        async with self._lock:
            before = len(self._sessions)
            stale = self._evict_expired(now=self.clock())
            evicted = before - len(self._sessions)

        await self._dispose(stale)

        return evicted

    async def close(self) -> None:
        """Drop every session and dispose of every pending archive that is not leased."""

        async with self._lock:
            stale = [session.pending_archive for session in self._sessions.values() if session.pending_archive is not None]
            self._sessions.clear()

        await self._dispose(stale)

    def _is_expired(self, session: UserSession, now: float) -> bool:
        return self.ttl_seconds is not None and now - session.last_seen > self.ttl_seconds

    def _refresh(self, user_id: UserId, now: float) -> UserSession | None:
        """Mark an existing session most recently used. Lock must be held."""

        if (session := self._sessions.get(user_id)) is not None:
            session.last_seen = now
            self._sessions.move_to_end(user_id)

        return session

    def _touch(self, user_id: UserId, now: float) -> UserSession:
        """Get or create the user's session and mark it most recently used. Lock must be held."""

        if (session := self._refresh(user_id=user_id, now=now)) is None:
            session = UserSession(last_seen=now)
            self._sessions[user_id] = session

        return session

    def _evict_expired(self, now: float) -> list[PendingArchive]:
        """Drop expired sessions and return their archives for disposal. Lock must be held."""

        expired = [user_id for user_id, session in self._sessions.items() if self._is_expired(session, now)]

        if expired:
            self.logger.info(f"Expiring {len(expired)} idle sessions")

        sessions = [self._sessions.pop(user_id) for user_id in expired]

        return [session.pending_archive for session in sessions if session.pending_archive is not None]

    def _evict_overflow(self) -> list[PendingArchive]:
        """Drop least recently used sessions above capacity. Lock must be held."""

        archives: list[PendingArchive] = []

        if self.max_users is None:
            return archives

        while len(self._sessions) > self.max_users:
            user_id, session = self._sessions.popitem(last=False)
            self.logger.info(f"Session store is full, evicting session for user {user_id}")
            if session.pending_archive is not None:
                archives.append(session.pending_archive)

        return archives

    async def _release(self, archive: PendingArchive) -> None:
        async with self._lock:
            self._leases[archive.scratch_root] -= 1

            deferred: PendingArchive | None = None
            if self._leases[archive.scratch_root] <= 0:
                del self._leases[archive.scratch_root]
                deferred = self._deferred.pop(archive.scratch_root, None)

        if deferred is not None:
            await self._delete(deferred)

    async def _dispose(self, archives: list[PendingArchive]) -> None:
        if not archives:
            return

        async with self._lock:
            disposable: list[PendingArchive] = []
            for archive in archives:
                if self._leases[archive.scratch_root] > 0:
                    self.logger.debug(f"Extraction directory {archive.scratch_root} is in use, deferring its deletion")
                    self._deferred[archive.scratch_root] = archive
                else:
                    disposable.append(archive)

        for archive in disposable:
            await self._delete(archive)

    async def _delete(self, archive: PendingArchive) -> None:
        self.logger.debug(f"Disposing extraction directory {archive.scratch_root}")
        try:
            await asyncio.to_thread(archive.dispose)
        except FileNotFoundError:
            self.logger.debug(f"Extraction directory {archive.scratch_root} was already removed")
        except OSError:
            self.logger.exception(f"Failed to delete extraction directory {archive.scratch_root}")
