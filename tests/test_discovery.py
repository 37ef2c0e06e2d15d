"""Tests for session record loading, liveness probing and auto-connect."""

import json
from datetime import datetime, timezone

import pytest

from fakes.fake_tic80 import FakeTic80
from tic80_lib.discovery import (
    AutoConnector,
    format_instance_label,
    group_by_target,
    load_session_records,
    parse_host_port,
    parse_started_at,
    probe_candidates,
    remove_record_file,
)
from tic80_lib.models import DiscoveryRecord, RunningInstance, SessionState
from tic80_lib.session import RemoteSession


def write_record(directory, name, host, port, started_at=None, **extra):
    payload = {"host": host, "port": port, **extra}
    if started_at:
        payload["startedAt"] = started_at
    path = directory / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


# =============================================================================
# Record Loading
# =============================================================================

def test_load_session_records(tmp_path) -> None:
    """Test that valid records load and everything else is skipped."""
    write_record(tmp_path, "tic80-remote.1.json", "127.0.0.1", 9977,
                 "2024-05-01T10:00:00Z", remotingVersion="1")
    write_record(tmp_path, "tic80-remote.2.json", "127.0.0.1", "9978")
    (tmp_path / "tic80-remote.3.json").write_text("{not json", encoding="utf-8")
    write_record(tmp_path, "tic80-remote.4.json", "", 9979)
    write_record(tmp_path, "other.json", "127.0.0.1", 9980)

    records = load_session_records(tmp_path)

    assert [(r.host, r.port) for r in records] == [("127.0.0.1", 9977), ("127.0.0.1", 9978)]
    assert records[0].started_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert records[0].remoting_version == "1"
    assert records[0].path.endswith("tic80-remote.1.json")
    assert records[1].started_at is None


def test_load_session_records_missing_directory(tmp_path) -> None:
    """Test that a missing directory yields no records."""
    assert load_session_records(tmp_path / "does-not-exist") == []


def test_parse_started_at() -> None:
    """Test ISO timestamp parsing."""
    assert parse_started_at("2024-05-01T10:00:00+02:00").utcoffset().total_seconds() == 7200
    assert parse_started_at("2024-05-01T10:00:00").tzinfo == timezone.utc
    assert parse_started_at("yesterday") is None
    assert parse_started_at(None) is None


def test_group_by_target_orders_newest_first() -> None:
    """Test grouping by host:port with unknown start times last."""
    old = DiscoveryRecord("h", 1, parse_started_at("2024-01-01T00:00:00Z"))
    new = DiscoveryRecord("h", 1, parse_started_at("2024-06-01T00:00:00Z"))
    unknown = DiscoveryRecord("h", 1)
    other = DiscoveryRecord("h", 2)

    groups = group_by_target([unknown, old, other, new])

    assert list(groups.keys()) == ["h:1", "h:2"]
    assert groups["h:1"] == [new, old, unknown]


def test_remove_record_file(tmp_path) -> None:
    """Test deleting a record's file, tolerating already-missing files."""
    path = write_record(tmp_path, "tic80-remote.1.json", "h", 1)
    record = load_session_records(tmp_path)[0]

    remove_record_file(record)
    assert not path.exists()
    remove_record_file(record)
    remove_record_file(DiscoveryRecord("h", 1))


# =============================================================================
# Probing
# =============================================================================

@pytest.mark.asyncio
async def test_probe_keeps_newest_live_record(fake) -> None:
    """Test that the newest live record wins and older duplicates are removed."""
    fake.cart_path = "carts/demo.lua"
    fake.metadata.update({"title": "Demo", "version": "1.2"})
    removed = []

    newer = DiscoveryRecord("127.0.0.1", fake.port, parse_started_at("2024-06-01T00:00:00Z"))
    older = DiscoveryRecord("127.0.0.1", fake.port, parse_started_at("2024-01-01T00:00:00Z"))

    instances = await probe_candidates([older, newer], 1000, remove_record=removed.append)

    assert len(instances) == 1
    instance = instances[0]
    assert instance.port == fake.port
    assert instance.hello == "tic-80 remoting v1"
    assert instance.started_at == newer.started_at
    assert instance.cart_path == "carts/demo.lua"
    assert format_instance_label(instance) == "Demo v1.2"
    assert removed == [older]


@pytest.mark.asyncio
async def test_probe_removes_dead_and_mismatched_records(fake, dead_port) -> None:
    """Test that unreachable and incompatible candidates are removed."""
    wrong = FakeTic80(banner="some other server v9")
    await wrong.start()
    removed = []

    dead = DiscoveryRecord("127.0.0.1", dead_port)
    mismatched = DiscoveryRecord("127.0.0.1", wrong.port)
    live = DiscoveryRecord("127.0.0.1", fake.port)

    try:
        instances = await probe_candidates(
            [dead, mismatched, live], 1000, remove_record=removed.append
        )
    finally:
        await wrong.stop()

    assert [i.port for i in instances] == [fake.port]
    assert removed == [dead, mismatched]


@pytest.mark.asyncio
async def test_probe_tolerates_missing_metadata(fake) -> None:
    """Test that absent metadata leaves the instance fields empty."""
    instances = await probe_candidates([DiscoveryRecord("127.0.0.1", fake.port)], 1000,
                                       remove_record=lambda record: None)

    assert instances[0].cart_path is None
    assert instances[0].meta_title is None
    assert format_instance_label(instances[0]) == "(empty)"


# =============================================================================
# Auto-connect
# =============================================================================

@pytest.mark.asyncio
async def test_auto_connector_follows_session_files(tmp_path, fake) -> None:
    """Test auto-connect to a recorded instance and auto-disconnect on removal."""
    path = write_record(tmp_path, "tic80-remote.1.json", "127.0.0.1", fake.port)
    session = RemoteSession()
    connector = AutoConnector(session, tmp_path, timeout_ms=1000)

    target = await connector.scan()
    assert target == f"127.0.0.1:{fake.port}"
    assert session.is_connected()

    # Unchanged files keep the connection
    assert await connector.scan() == target
    assert session.is_connected()

    path.unlink()
    assert await connector.scan() is None
    assert session.state == SessionState.NOT_CONNECTED
    session.close()


@pytest.mark.asyncio
async def test_auto_connector_leaves_manual_session_alone(tmp_path, fake) -> None:
    """Test that a user-initiated connection isn't replaced."""
    other = FakeTic80()
    await other.start()
    write_record(tmp_path, "tic80-remote.1.json", "127.0.0.1", other.port)

    session = RemoteSession()
    await session.connect(fake.host, fake.port)
    connector = AutoConnector(session, tmp_path, timeout_ms=1000)

    try:
        assert await connector.scan() is None
        assert session.snapshot.port == fake.port
    finally:
        session.close()
        await other.stop()


@pytest.mark.asyncio
async def test_auto_connector_removes_unreachable_records(tmp_path, dead_port) -> None:
    """Test that a record pointing at nothing is deleted."""
    path = write_record(tmp_path, "tic80-remote.1.json", "127.0.0.1", dead_port)
    session = RemoteSession()
    connector = AutoConnector(session, tmp_path, timeout_ms=1000)

    assert await connector.scan() is None
    assert not path.exists()
    assert session.state == SessionState.ERROR


# =============================================================================
# Formatting Helpers
# =============================================================================

def test_format_instance_label() -> None:
    """Test label fallbacks."""
    base = dict(host="h", port=1, hello="tic-80 remoting v1")
    assert format_instance_label(RunningInstance(**base, meta_title="Demo")) == "Demo"
    assert format_instance_label(
        RunningInstance(**base, meta_title="Demo", meta_version="2")
    ) == "Demo v2"
    assert format_instance_label(
        RunningInstance(**base, cart_path="C:\\carts\\game.tic")
    ) == "game.tic"
    assert format_instance_label(RunningInstance(**base)) == "(empty)"


def test_parse_host_port() -> None:
    """Test host:port parsing."""
    assert parse_host_port("127.0.0.1:9977") == ("127.0.0.1", 9977)
    assert parse_host_port(" localhost : 80 ") == ("localhost", 80)
    assert parse_host_port("localhost") is None
    assert parse_host_port(":80") is None
    assert parse_host_port("h:abc") is None
    assert parse_host_port("h:0") is None
