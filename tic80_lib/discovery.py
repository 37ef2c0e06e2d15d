"""Discovery of running TIC-80 instances and liveness probing.

Running instances advertise themselves with small JSON session records
(tic80-remote.<id>.json) holding host, port and start time. Records outlive
crashed processes, so every candidate is probed before use and stale records
are deleted.
"""

import json
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from tic80_lib import parsing, protocol
from tic80_lib.errors import ProtocolMismatch, Tic80Error
from tic80_lib.models import DiscoveryRecord, RunningInstance
from tic80_lib.session import RemoteSession
from tic80_lib.transport import LineProtocolClient, safe_metadata

logger = logging.getLogger(__name__)

RecordRemover = Callable[[DiscoveryRecord], None]


# ============================================================================
# Record Loading
# ============================================================================


def parse_started_at(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; returns None if missing or invalid.

    Naive timestamps are taken as UTC.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_session_file(path: Path) -> Optional[DiscoveryRecord]:
    """Read one session record; returns None if unreadable or incomplete."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.debug(f"Skipping unreadable session file {path}: {e}")
        return None

    if not isinstance(payload, dict):
        return None

    host = payload.get("host")
    port = payload.get("port")
    if not host or not isinstance(host, str) or not port:
        return None
    try:
        port = int(port)
    except (TypeError, ValueError):
        return None

    version = payload.get("remotingVersion")
    return DiscoveryRecord(
        host=host,
        port=port,
        started_at=parse_started_at(payload.get("startedAt")),
        remoting_version=str(version) if version is not None else None,
        path=str(path),
    )


def load_session_records(session_dir: os.PathLike) -> List[DiscoveryRecord]:
    """Load every session record from a directory.

    Args:
        session_dir: Directory holding tic80-remote.*.json files

    Returns:
        Records in file-name order; [] if the directory doesn't exist
    """
    directory = Path(session_dir)
    try:
        names = sorted(entry.name for entry in directory.iterdir() if entry.is_file())
    except OSError:
        return []

    records = []
    for name in names:
        if not protocol.RE_SESSION_FILE.match(name):
            continue
        record = load_session_file(directory / name)
        if record is not None:
            records.append(record)
    return records


def remove_record_file(record: DiscoveryRecord) -> None:
    """Delete the file a record was loaded from, if any."""
    if not record.path:
        return
    try:
        Path(record.path).unlink()
        logger.info(f"Removed stale session file {record.path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove stale session file {record.path}: {e}")


def _newest_first_key(record: DiscoveryRecord) -> Tuple[int, float]:
    if record.started_at is None:
        return (1, 0.0)
    return (0, -record.started_at.timestamp())


def group_by_target(records: List[DiscoveryRecord]) -> Dict[str, List[DiscoveryRecord]]:
    """Group records by host:port, each group sorted newest first."""
    groups: "OrderedDict[str, List[DiscoveryRecord]]" = OrderedDict()
    for record in records:
        groups.setdefault(record.target, []).append(record)
    for target in groups:
        groups[target].sort(key=_newest_first_key)
    return groups


# ============================================================================
# Probing
# ============================================================================


async def probe_record(
    record: DiscoveryRecord,
    timeout_ms: int = protocol.DEFAULT_CONNECT_TIMEOUT_MS,
    client_factory: Callable[..., LineProtocolClient] = LineProtocolClient,
) -> RunningInstance:
    """Connect to one candidate and verify it speaks the remoting protocol.

    Cart path and title/version metadata are fetched best-effort.

    Raises:
        ProtocolMismatch: If the hello banner is not the expected one
        TransportError / ConnectTimeout / RequestTimeout / RemoteError:
            If the candidate is unreachable or misbehaves during hello
    """
    client = client_factory(record.host, record.port)
    try:
        await client.connect(timeout_ms)
        hello = parsing.decode_string(await client.hello())
        if not parsing.is_expected_hello(hello):
            raise ProtocolMismatch(f"Unexpected hello from {record.target}: {hello!r}")

        cart_raw: Optional[str]
        try:
            cart_raw = await client.cart_path()
        except Tic80Error as e:
            logger.debug(f"cartpath unavailable from {record.target}: {e}")
            cart_raw = None
        title_raw = await safe_metadata(client, "title")
        version_raw = await safe_metadata(client, "version")

        cart_path = parsing.decode_string(cart_raw) if cart_raw else ""
        title = parsing.decode_string(title_raw) if title_raw else ""
        version = parsing.decode_string(version_raw) if version_raw else ""

        return RunningInstance(
            host=record.host,
            port=record.port,
            hello=hello,
            started_at=record.started_at,
            remoting_version=record.remoting_version,
            cart_path=cart_path or None,
            meta_title=title or None,
            meta_version=version or None,
        )
    finally:
        client.close()


async def probe_candidates(
    records: List[DiscoveryRecord],
    timeout_ms: int = protocol.DEFAULT_CONNECT_TIMEOUT_MS,
    remove_record: RecordRemover = remove_record_file,
    client_factory: Callable[..., LineProtocolClient] = LineProtocolClient,
) -> List[RunningInstance]:
    """Probe candidates and keep one live record per host:port target.

    Within each target, candidates are tried newest first. Failed or
    incompatible candidates are removed; after the first success every other
    record for that target is removed as well.

    Args:
        records: Candidate records
        timeout_ms: Connect deadline per probe
        remove_record: Deletes a stale record
        client_factory: Builds a short-lived client per probe

    Returns:
        One RunningInstance per live target, in first-seen target order
    """
    instances: List[RunningInstance] = []

    for target, candidates in group_by_target(records).items():
        found: Optional[RunningInstance] = None
        for index, candidate in enumerate(candidates):
            try:
                found = await probe_record(candidate, timeout_ms, client_factory)
            except ProtocolMismatch as e:
                logger.info(f"Discarding {target}: {e}")
                remove_record(candidate)
                continue
            except Tic80Error as e:
                logger.info(f"Discarding unreachable {target}: {e}")
                remove_record(candidate)
                continue

            logger.info(f"Found TIC-80 at {target} ({format_instance_label(found)})")
            for older in candidates[index + 1:]:
                remove_record(older)
            break

        if found is not None:
            instances.append(found)

    return instances


async def discover_running_instances(
    session_dir: os.PathLike,
    timeout_ms: int = protocol.DEFAULT_CONNECT_TIMEOUT_MS,
) -> List[RunningInstance]:
    """Load session records from disk and probe them."""
    records = load_session_records(session_dir)
    if not records:
        return []
    return await probe_candidates(records, timeout_ms)


# ============================================================================
# Auto-connect
# ============================================================================


@dataclass
class AutoConnectState:
    auto_connected_target: Optional[str] = None
    in_progress: bool = False


class AutoConnector:
    """Connects the session to the newest live session record.

    Call scan() whenever the session directory may have changed. Sessions
    connected by the user (not through scan()) are left alone.
    """

    def __init__(
        self,
        session: RemoteSession,
        session_dir: os.PathLike,
        timeout_ms: int = protocol.DEFAULT_CONNECT_TIMEOUT_MS,
        remove_record: RecordRemover = remove_record_file,
    ) -> None:
        self._session = session
        self._session_dir = Path(session_dir)
        self._timeout_ms = timeout_ms
        self._remove_record = remove_record
        self.state = AutoConnectState()

    def clear_target(self) -> None:
        self.state.auto_connected_target = None

    async def scan(self) -> Optional[str]:
        """Scan the session directory once.

        Returns:
            The auto-connected "host:port" target, or None
        """
        if self.state.in_progress:
            return self.state.auto_connected_target

        records = load_session_records(self._session_dir)
        if not records:
            if self.state.auto_connected_target:
                logger.info("No session files found. Disconnecting.")
                self._session.disconnect("Auto-disconnect (session files removed)")
                self.state.auto_connected_target = None
            return None

        records.sort(key=_newest_first_key)

        if self._session.is_connected() and not self.state.auto_connected_target:
            return None

        self.state.in_progress = True
        try:
            for record in records:
                target = record.target
                if self.state.auto_connected_target == target and self._session.is_connected():
                    return target

                if self._session.is_connected():
                    self._session.disconnect("Switching auto-session")

                logger.info(f"Auto-connecting to {target}")
                try:
                    await self._session.connect(record.host, record.port, self._timeout_ms)
                except Tic80Error as e:
                    logger.warning(f"Auto-connect failed for {target}: {e}")
                    self._remove_record(record)
                    continue

                self.state.auto_connected_target = target
                logger.info(f"Auto-connected to {target}")
                return target
        finally:
            self.state.in_progress = False

        return None


# ============================================================================
# Formatting Helpers
# ============================================================================


def format_instance_label(instance: RunningInstance) -> str:
    """Human-readable label: "title vX", else cart file name, else "(empty)"."""
    title = instance.meta_title or ""
    version = instance.meta_version or ""
    if title:
        return f"{title} v{version}" if version else title
    if instance.cart_path:
        return Path(instance.cart_path.replace("\\", "/")).name
    return "(empty)"


def parse_host_port(value: str) -> Optional[Tuple[str, int]]:
    """Parse "host:port"; returns None if either part is missing or invalid."""
    host, sep, port_text = value.partition(":")
    host = host.strip()
    if not sep or not host or not port_text.strip():
        return None
    try:
        port = int(port_text.strip())
    except ValueError:
        return None
    if port <= 0:
        return None
    return host, port
