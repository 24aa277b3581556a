import threading

import pytest

from session_gateway.core.auth_store import AuthStoreGuard
from session_gateway.core.errors import AuthStoreError


@pytest.fixture
def guard(tmp_path):
    return AuthStoreGuard(auth_dir=tmp_path / "auth_data", session_dir_name="session-test-bot")


def _seed_session(guard, entries=2):
    guard.session_dir.mkdir(parents=True, exist_ok=True)
    for i in range(entries):
        (guard.session_dir / f"entry-{i}").write_text("x")


@pytest.mark.asyncio
async def test_ensure_ready_creates_directory_and_sentinel(guard):
    report = await guard.ensure_ready()

    assert report.created_directory is True
    assert report.fresh_login_required is True
    assert (guard.auth_dir / ".gitkeep").exists()


@pytest.mark.asyncio
async def test_healthy_session_is_kept(guard):
    _seed_session(guard, entries=3)

    report = await guard.ensure_ready()

    assert report.session_present is True
    assert report.session_entries == 3
    assert report.removed_corrupted_session is False
    assert report.fresh_login_required is False
    assert guard.session_dir.is_dir()


@pytest.mark.asyncio
async def test_partial_session_is_removed(guard):
    _seed_session(guard, entries=1)

    report = await guard.ensure_ready()

    assert report.removed_corrupted_session is True
    assert report.fresh_login_required is True
    assert not guard.session_dir.exists()


@pytest.mark.asyncio
async def test_stray_file_in_place_of_session_is_removed(guard):
    guard.auth_dir.mkdir(parents=True)
    guard.session_dir.write_text("not a directory")

    report = await guard.ensure_ready()

    assert report.removed_corrupted_session is True
    assert not guard.session_dir.exists()


@pytest.mark.asyncio
async def test_purge_keeps_only_the_sentinel(guard):
    guard.ensure_directory()
    _seed_session(guard)
    (guard.auth_dir / "latest-qr.txt").write_text("qr")

    removed = await guard.purge()

    assert sorted(removed) == ["latest-qr.txt", "session-test-bot"]
    assert [p.name for p in guard.auth_dir.iterdir()] == [".gitkeep"]


@pytest.mark.asyncio
async def test_purge_of_missing_directory_is_a_no_op(guard):
    assert await guard.purge() == []


@pytest.mark.asyncio
async def test_restart_marker_is_consumed(guard):
    guard.ensure_directory()
    _seed_session(guard)
    guard.restart_marker.write_text("")

    assert guard.restart_requested() is True
    assert await guard.consume_restart_marker() is True
    assert not guard.restart_marker.exists()
    assert not guard.session_dir.exists()
    assert await guard.consume_restart_marker() is False


def test_ensure_directory_raises_when_path_is_blocked(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    guard = AuthStoreGuard(auth_dir=blocker / "auth_data", session_dir_name="session-x")

    with pytest.raises(AuthStoreError):
        guard.ensure_directory()


@pytest.mark.asyncio
async def test_qr_file_round_trip(guard):
    assert await guard.read_qr() is None

    assert await guard.write_qr("2@abc") is True
    assert guard.qr_available() is True
    assert await guard.read_qr() == "2@abc"

    assert guard.clear_qr() is True
    assert guard.qr_available() is False


@pytest.mark.asyncio
async def test_purge_removes_entries_off_the_event_loop_thread(guard, monkeypatch):
    guard.ensure_directory()
    _seed_session(guard, entries=3)
    loop_thread = threading.get_ident()
    removal_threads = []
    original_remove = guard._remove

    def _tracking_remove(path, errors=None):
        removal_threads.append(threading.get_ident())
        return original_remove(path, errors)

    monkeypatch.setattr(guard, "_remove", _tracking_remove)

    assert await guard.purge() == ["session-test-bot"]
    assert removal_threads
    assert loop_thread not in removal_threads
