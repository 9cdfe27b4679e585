from __future__ import annotations

import atexit
import json
import logging
import os
import signal
import threading
import time
import uuid
from contextlib import suppress
from pathlib import Path

from ntfy_mcp.common import iso_now
from ntfy_mcp.config import Config
from ntfy_mcp.models import JournalEntry, JournalStatus

FORCE_KILL_AFTER_S = 1.0
KILL_GRACE_S = 2.0

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

logger = logging.getLogger(__name__)


class LockHeldError(RuntimeError):
    def __init__(self, pid: int) -> None:
        super().__init__(f"Another ntfy MCP server is already running (pid {pid}).")
        self.pid = pid


class OrphanTerminationError(RuntimeError):
    pass


def is_process_alive(pid: int | None) -> bool:
    """Check a pid with signal 0; a pid we may not signal still counts as alive."""
    if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _force_kill_if_alive(pid: int) -> None:
    if not is_process_alive(pid):
        return
    try:
        os.kill(pid, _SIGKILL)
        logger.info("kill: force-killed pid=%d", pid)
    except OSError as e:
        logger.debug("kill: force kill pid=%d failed: %s", pid, e)


class ProcessJournal:
    """JSON array of every server process started against this data dir.

    Reads and writes always cover the whole file; concurrent writers are
    last-writer-wins.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> list[JournalEntry]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("journal: failed to read %s: %s", self.path, e)
            return []
        if not raw.strip():
            return []
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            logger.warning("journal: ignoring unreadable journal %s: %s", self.path, e)
            return []
        if not isinstance(parsed, list):
            return []
        entries = [JournalEntry.from_dict(item) for item in parsed]
        return [e for e in entries if e is not None]

    def save(self, entries: list[JournalEntry]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps([e.to_dict() for e in entries], indent=2), encoding="utf-8"
            )
        except OSError as e:
            logger.warning("journal: write to %s failed: %s", self.path, e)
            return False
        return True

    def reset(self) -> bool:
        return self.save([])


class InstanceLock:
    """PID lock file created with O_CREAT|O_EXCL."""

    def __init__(self, path: str | Path, pid: int) -> None:
        self.path = Path(path)
        self.pid = pid
        self.held = False

    def read_holder(self) -> int | None:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return int(raw) if raw.isdigit() else None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.read_holder()
                if holder is not None and holder != self.pid and is_process_alive(holder):
                    raise LockHeldError(holder) from None
                logger.info("lock: removing stale lock %s (holder=%s)", self.path, holder)
                with suppress(FileNotFoundError):
                    self.path.unlink()
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(str(self.pid))
            self.held = True
            logger.info("lock: acquired %s pid=%d", self.path, self.pid)
            return

    def release(self) -> bool:
        """Remove the lock file, but only while it still names this process."""
        if self.read_holder() != self.pid:
            self.held = False
            return False
        try:
            self.path.unlink()
        except OSError as e:
            logger.warning("lock: failed to remove %s: %s", self.path, e)
            return False
        self.held = False
        return True


class ProcessSupervisor:
    """Single-instance guard for one server process.

    Lifecycle: `starting` -> `running` -> one terminal status, written to the
    journal exactly once by `finalize()`.
    """

    def __init__(
        self,
        config: Config,
        *,
        pid: int | None = None,
        kill_grace_s: float = KILL_GRACE_S,
        force_kill_after_s: float = FORCE_KILL_AFTER_S,
    ) -> None:
        self.config = config
        self.pid = pid or os.getpid()
        self.kill_grace_s = kill_grace_s
        self.force_kill_after_s = force_kill_after_s
        self.journal = ProcessJournal(config.journal_path)
        self.lock = InstanceLock(config.lock_path, self.pid)
        self.status = "starting"
        self.entry_id: str | None = None
        self._finalized = False
        self._signalled: set[int] = set()

    @property
    def finalized(self) -> bool:
        return self._finalized

    def kill_existing_instances(self) -> list[int]:
        """SIGTERM every other live process the journal still lists as open."""
        if not self.config.kill_existing:
            logger.debug("kill: skipped (NTFY_KILL_EXISTING=false)")
            return []
        killed: list[int] = []
        for entry in self.journal.load():
            if not entry.is_open or entry.pid is None or entry.pid == self.pid:
                continue
            if not is_process_alive(entry.pid):
                continue
            try:
                os.kill(entry.pid, signal.SIGTERM)
            except OSError as e:
                logger.warning("kill: pid=%d failed: %s", entry.pid, e)
                continue
            timer = threading.Timer(self.force_kill_after_s, _force_kill_if_alive, (entry.pid,))
            timer.daemon = True
            timer.start()
            killed.append(entry.pid)
            self._signalled.add(entry.pid)
            logger.info("kill: terminated pid=%d", entry.pid)
        logger.info("kill: complete killed=%d pids=%s", len(killed), killed)
        return killed

    def clean_orphans(self) -> list[JournalEntry]:
        """Close out journal entries left `running` by earlier processes."""
        entries = self.journal.load()
        changed: list[JournalEntry] = []
        for entry in entries:
            if not entry.is_open or entry.status != "running":
                continue
            pid = entry.pid
            if pid is None or pid <= 0 or pid == self.pid:
                entry.status = "stale"
            elif is_process_alive(pid):
                try:
                    os.kill(pid, signal.SIGTERM)
                except OSError as e:
                    raise OrphanTerminationError(
                        f"Failed to terminate orphaned ntfy MCP process {pid}: {e}"
                    ) from e
                self._signalled.add(pid)
                entry.status = "terminated"
            else:
                entry.status = "stale"
            entry.ended_at = iso_now()
            changed.append(entry)
            logger.info("orphans: pid=%s marked %s", pid, entry.status)
        if changed:
            self.journal.save(entries)
        return changed

    def wait_for_signalled(self) -> list[int]:
        """Give processes we just signalled a moment to exit; returns those still alive."""
        deadline = time.monotonic() + self.kill_grace_s
        alive = [pid for pid in self._signalled if is_process_alive(pid)]
        while alive and time.monotonic() < deadline:
            time.sleep(0.05)
            alive = [pid for pid in alive if is_process_alive(pid)]
        return alive

    def record_start(self) -> JournalEntry:
        entries = self.journal.load()
        entry = JournalEntry(
            id=uuid.uuid4().hex,
            pid=self.pid,
            cwd=os.getcwd(),
            started_at=iso_now(),
            ended_at=None,
            status="running",
        )
        entries.append(entry)
        self.journal.save(entries)
        self.entry_id = entry.id
        return entry

    def start(self) -> None:
        """Clean orphans, take the lock and record this process as running.

        Raises LockHeldError when another live instance owns the lock.
        """
        self.clean_orphans()
        still_alive = self.wait_for_signalled()
        if still_alive:
            logger.warning("kill: pids still alive after %.1fs: %s", self.kill_grace_s, still_alive)
        self.lock.acquire()
        self.record_start()
        self.status = "running"
        atexit.register(self._finalize_at_exit)

    def finalize(self, status: JournalStatus) -> bool:
        if self._finalized:
            return False
        self._finalized = True
        self.status = status
        self.lock.release()
        if self.entry_id is None:
            return True
        entries = self.journal.load()
        for entry in entries:
            if entry.id == self.entry_id:
                entry.status = status
                entry.ended_at = iso_now()
                self.journal.save(entries)
                break
        logger.info("shutdown: pid=%d finalized as %s", self.pid, status)
        return True

    def _finalize_at_exit(self) -> None:
        self.finalize("exited")
