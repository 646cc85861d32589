import asyncio
from pathlib import Path

from inline_snapshot import snapshot

from repo_relay_mcp.sessions.models import ConversationTurn, PendingArchive, UserSession
from repo_relay_mcp.sessions.store import SessionStore
from tests.conftest import FakeClock


def make_archive(root: Path, name: str) -> PendingArchive:
    scratch_root = root / name
    directory = scratch_root / "extracted"
    directory.mkdir(parents=True)
    (directory / "file.txt").write_text(name)
    return PendingArchive(directory=directory, scratch_root=scratch_root, filename=f"{name}.zip", file_count=1)


def test_user_session_truncates_oldest_first():
    session = UserSession()

    for i in range(5):
        session.append(ConversationTurn.user(f"message {i}"), max_turns=3)

    assert [turn.content for turn in session.transcript] == ["message 2", "message 3", "message 4"]


class TestTranscripts:
    async def test_get_unknown_user_is_empty(self, session_store: SessionStore):
        assert await session_store.get("nobody") == []
        assert "nobody" not in session_store

    async def test_append_keeps_the_most_recent_twenty(self, session_store: SessionStore):
        for i in range(25):
            await session_store.append("user", ConversationTurn.user(f"message {i}"))

        transcript = await session_store.get("user")

        assert len(transcript) == 20
        assert [turn.content for turn in transcript] == [f"message {i}" for i in range(5, 25)]

    async def test_get_returns_a_copy(self, session_store: SessionStore):
        await session_store.append("user", ConversationTurn.user("hello"))

        transcript = await session_store.get("user")
        transcript.append(ConversationTurn.assistant("not stored"))

        assert await session_store.get("user") == [ConversationTurn.user("hello")]

    async def test_append_exchange(self, session_store: SessionStore):
        await session_store.append_exchange("user", user_turn=ConversationTurn.user("hi"), assistant_turn=ConversationTurn.assistant("hello"))

        assert await session_store.get("user") == snapshot(
            [ConversationTurn(role="user", content="hi"), ConversationTurn(role="assistant", content="hello")]
        )

    async def test_users_are_isolated(self, session_store: SessionStore):
        await session_store.append(1, ConversationTurn.user("one"))
        await session_store.append(2, ConversationTurn.user("two"))

        assert await session_store.get(1) == [ConversationTurn.user("one")]
        assert await session_store.get(2) == [ConversationTurn.user("two")]

    async def test_clear(self, session_store: SessionStore, tmp_path: Path):
        archive = make_archive(tmp_path, "first")
        await session_store.append("user", ConversationTurn.user("hello"))
        await session_store.set_pending_archive("user", archive)

        await session_store.clear("user")

        assert await session_store.get("user") == []
        assert await session_store.get_pending_archive("user") is None
        assert not archive.scratch_root.exists()

    async def test_concurrent_appends_are_not_lost(self, session_store: SessionStore):
        await asyncio.gather(*[session_store.append("user", ConversationTurn.user(f"message {i}")) for i in range(15)])

        assert len(await session_store.get("user")) == 15


class TestPendingArchives:
    async def test_set_and_get(self, session_store: SessionStore, tmp_path: Path):
        archive = make_archive(tmp_path, "first")

        assert await session_store.get_pending_archive("user") is None

        await session_store.set_pending_archive("user", archive)

        assert await session_store.get_pending_archive("user") == archive

    async def test_newer_archive_supersedes_and_disposes_the_old_one(self, session_store: SessionStore, tmp_path: Path):
        first = make_archive(tmp_path, "first")
        second = make_archive(tmp_path, "second")

        await session_store.set_pending_archive("user", first)
        await session_store.set_pending_archive("user", second)

        assert await session_store.get_pending_archive("user") == second
        assert not first.scratch_root.exists()
        assert second.directory.exists()

    async def test_setting_the_same_archive_keeps_it(self, session_store: SessionStore, tmp_path: Path):
        archive = make_archive(tmp_path, "first")

        await session_store.set_pending_archive("user", archive)
        await session_store.set_pending_archive("user", archive)

        assert archive.directory.exists()

    async def test_pending_archive_survives_transcript_updates(self, session_store: SessionStore, tmp_path: Path):
        archive = make_archive(tmp_path, "first")

        await session_store.set_pending_archive("user", archive)
        await session_store.append("user", ConversationTurn.user("hello"))

        assert await session_store.get_pending_archive("user") == archive

    async def test_already_deleted_directory_is_tolerated(self, session_store: SessionStore, tmp_path: Path):
        archive = make_archive(tmp_path, "first")
        await session_store.set_pending_archive("user", archive)
        archive.dispose()

        await session_store.clear("user")

        assert await session_store.get_pending_archive("user") is None

    async def test_lease_without_archive(self, session_store: SessionStore):
        async with session_store.lease_pending_archive("user") as archive:
            assert archive is None

    async def test_leased_archive_survives_replacement_until_released(self, session_store: SessionStore, tmp_path: Path):
        first = make_archive(tmp_path, "first")
        second = make_archive(tmp_path, "second")
        await session_store.set_pending_archive("user", first)

        async with session_store.lease_pending_archive("user") as leased:
            assert leased == first

            await session_store.set_pending_archive("user", second)

            assert await session_store.get_pending_archive("user") == second
            assert (first.directory / "file.txt").read_text() == "first"

        assert not first.scratch_root.exists()
        assert second.directory.exists()

    async def test_leased_archive_survives_clear_and_expiry(self, clock: FakeClock, tmp_path: Path):
        session_store = SessionStore(ttl_seconds=60, clock=clock)
        cleared = make_archive(tmp_path, "cleared")
        expired = make_archive(tmp_path, "expired")
        await session_store.set_pending_archive("cleared", cleared)
        await session_store.set_pending_archive("expired", expired)

        async with session_store.lease_pending_archive("cleared"), session_store.lease_pending_archive("expired"):
            await session_store.clear("cleared")
            clock.advance(120)
            assert await session_store.evict_expired() == 1

            assert cleared.directory.exists()
            assert expired.directory.exists()

        assert not cleared.scratch_root.exists()
        assert not expired.scratch_root.exists()

    async def test_nested_leases(self, session_store: SessionStore, tmp_path: Path):
        archive = make_archive(tmp_path, "first")
        await session_store.set_pending_archive("user", archive)

        async with session_store.lease_pending_archive("user"):
            async with session_store.lease_pending_archive("user"):
                await session_store.clear("user")

            assert archive.directory.exists()

        assert not archive.scratch_root.exists()

    async def test_unreplaced_archive_is_kept_after_the_lease(self, session_store: SessionStore, tmp_path: Path):
        archive = make_archive(tmp_path, "first")
        await session_store.set_pending_archive("user", archive)

        async with session_store.lease_pending_archive("user"):
            pass

        assert await session_store.get_pending_archive("user") == archive
        assert archive.directory.exists()

    async def test_close_disposes_everything(self, clock: FakeClock, tmp_path: Path):
        session_store = SessionStore(clock=clock)
        archives = [make_archive(tmp_path, f"archive-{i}") for i in range(3)]

        for i, archive in enumerate(archives):
            await session_store.set_pending_archive(i, archive)

        await session_store.close()

        assert len(session_store) == 0
        assert not any(archive.scratch_root.exists() for archive in archives)


class TestEviction:
    async def test_idle_sessions_expire(self, clock: FakeClock, tmp_path: Path):
        session_store = SessionStore(ttl_seconds=60, clock=clock)
        archive = make_archive(tmp_path, "first")

        await session_store.append("user", ConversationTurn.user("hello"))
        await session_store.set_pending_archive("user", archive)

        clock.advance(61)

        assert await session_store.get("user") == []
        assert await session_store.get_pending_archive("user") is None
        assert not archive.scratch_root.exists()

    async def test_activity_keeps_sessions_alive(self, clock: FakeClock):
        session_store = SessionStore(ttl_seconds=60, clock=clock)

        for _ in range(5):
            await session_store.append("user", ConversationTurn.user("hello"))
            clock.advance(30)

        assert len(await session_store.get("user")) == 5

    async def test_evict_expired_reports_the_count(self, clock: FakeClock):
        session_store = SessionStore(ttl_seconds=60, clock=clock)

        await session_store.append("old", ConversationTurn.user("hello"))
        clock.advance(45)
        await session_store.append("new", ConversationTurn.user("hello"))
        clock.advance(30)

        assert await session_store.evict_expired() == 1
        assert "old" not in session_store
        assert "new" in session_store

    async def test_least_recently_used_is_evicted_at_capacity(self, clock: FakeClock, tmp_path: Path):
        session_store = SessionStore(ttl_seconds=None, max_users=2, clock=clock)
        archive = make_archive(tmp_path, "first")

        await session_store.set_pending_archive("a", archive)
        clock.advance(1)
        await session_store.append("b", ConversationTurn.user("hello"))
        clock.advance(1)
        await session_store.append("a", ConversationTurn.user("still here"))
        clock.advance(1)
        await session_store.append("c", ConversationTurn.user("hello"))

        assert len(session_store) == 2
        assert "b" not in session_store

        await session_store.append("d", ConversationTurn.user("hello"))

        assert "a" not in session_store
        assert not archive.scratch_root.exists()

    async def test_reading_a_session_keeps_it_alive(self, clock: FakeClock, tmp_path: Path):
        session_store = SessionStore(ttl_seconds=60, max_users=2, clock=clock)
        archive = make_archive(tmp_path, "first")

        await session_store.set_pending_archive("a", archive)
        await session_store.append("b", ConversationTurn.user("hello"))

        for _ in range(3):
            clock.advance(45)
            assert await session_store.get_pending_archive("a") == archive

        assert "b" not in session_store

        await session_store.append("c", ConversationTurn.user("hello"))

        assert "a" in session_store
        assert archive.directory.exists()

    async def test_unbounded_store(self, clock: FakeClock):
        session_store = SessionStore(ttl_seconds=None, max_users=None, clock=clock)

        for i in range(50):
            await session_store.append(i, ConversationTurn.user("hello"))
            clock.advance(10_000)

        assert len(session_store) == 50
