"""Persisted session state for ralph-engine.

Layout of the state directory (default ``.ralph/``):

    plan.md               task definition written by the operator
    config.yaml           optional config overrides
    session.json          the SessionState snapshot, replaced atomically
    iterations/NNN.json   one IterationRecord per completed iteration
    signals.yaml          signals of the latest iteration
    decision.yaml         decision of the latest iteration
    urgent.md             operator message for the next iteration
    .pause_requested      pause sentinel polled at iteration boundaries
    .loop.pid             PID of the loop process that owns the session
    archive/<ts>_<id>/    previous sessions moved aside by ``start``

The snapshot is written to a temp file and renamed over session.json, so a
crash mid-iteration leaves the previous complete snapshot behind.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from ralph_engine.core.exceptions import StateError
from ralph_engine.core.models import IterationRecord, SessionState
from ralph_engine.orchestrator.decision import decision_to_yaml
from ralph_engine.orchestrator.signals import signals_to_yaml

logger = logging.getLogger("ralph.state.store")

SESSION_FILE = "session.json"
ITERATIONS_DIR = "iterations"
SIGNALS_FILE = "signals.yaml"
DECISION_FILE = "decision.yaml"
URGENT_FILE = "urgent.md"
PAUSE_SENTINEL = ".pause_requested"
PID_FILE = ".loop.pid"
ARCHIVE_DIR = "archive"


class StateStore(Protocol):
    def load(self) -> Optional[SessionState]: ...
    def save(self, state: SessionState) -> None: ...
    def append_record(self, record: IterationRecord) -> None: ...
    def list_records(self, limit: Optional[int] = None) -> list[IterationRecord]: ...
    def read_urgent(self) -> Optional[str]: ...
    def write_urgent(self, text: str) -> None: ...
    def clear_urgent(self) -> None: ...
    def request_pause(self) -> None: ...
    def pause_requested(self) -> bool: ...
    def clear_pause_request(self) -> None: ...
    def owner_pid(self) -> Optional[int]: ...
    def acquire_owner(self, pid: int) -> bool: ...
    def release_owner(self, pid: Optional[int] = None) -> None: ...
    def archive(self) -> Optional[str]: ...


def restore_session(data: Any) -> Optional[SessionState]:
    """Rebuild a SessionState section by section.

    A section that fails validation falls back to its default and is logged;
    the rest of the snapshot survives.
    """
    if not isinstance(data, dict):
        logger.warning("Session snapshot is not an object; ignoring it")
        return None

    clean: dict[str, Any] = {}
    for name, value in data.items():
        if name not in SessionState.model_fields:
            logger.debug("Dropping unknown snapshot field %r", name)
            continue
        try:
            SessionState.model_validate({name: value})
        except ValidationError as e:
            logger.warning(
                "Corrupt snapshot section %r reset to default: %s",
                name, e.errors()[0].get("msg", "invalid"),
            )
            continue
        clean[name] = value
    return SessionState.model_validate(clean)


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileStateStore:
    """StateStore over a directory of JSON and markdown files."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    @property
    def session_path(self) -> Path:
        return self.state_dir / SESSION_FILE

    @property
    def iterations_dir(self) -> Path:
        return self.state_dir / ITERATIONS_DIR

    @property
    def plan_path(self) -> Path:
        return self.state_dir / "plan.md"

    def exists(self) -> bool:
        return self.state_dir.is_dir()

    # -- snapshot -----------------------------------------------------------

    def load(self) -> Optional[SessionState]:
        if not self.session_path.exists():
            return None
        try:
            data = json.loads(self.session_path.read_text())
        except json.JSONDecodeError as e:
            logger.warning("Session snapshot %s is not valid JSON: %s", self.session_path, e)
            return None
        except OSError as e:
            raise StateError(f"Cannot read {self.session_path}: {e}") from e
        return restore_session(data)

    def save(self, state: SessionState) -> None:
        try:
            _atomic_write(self.session_path, state.model_dump_json(indent=2) + "\n")
        except OSError as e:
            raise StateError(f"Cannot write {self.session_path}: {e}") from e

    # -- audit trail --------------------------------------------------------

    def _record_path(self, iteration: int) -> Path:
        return self.iterations_dir / f"{iteration:03d}.json"

    def append_record(self, record: IterationRecord) -> None:
        """Write the audit record for an iteration, replacing a partial rerun.

        The record's signals and decision are also written as the latest
        signals.yaml and decision.yaml.
        """
        try:
            _atomic_write(self._record_path(record.iteration), record.model_dump_json(indent=2) + "\n")
            _atomic_write(self.state_dir / SIGNALS_FILE, signals_to_yaml(record.signals) + "\n")
            _atomic_write(self.state_dir / DECISION_FILE, decision_to_yaml(record.decision) + "\n")
        except OSError as e:
            raise StateError(f"Cannot write iteration record {record.iteration}: {e}") from e

    def list_records(self, limit: Optional[int] = None) -> list[IterationRecord]:
        """Audit records in iteration order; ``limit`` keeps the most recent ones."""
        if not self.iterations_dir.is_dir():
            return []
        records = []
        for path in self.iterations_dir.glob("*.json"):
            try:
                records.append(IterationRecord.model_validate_json(path.read_text()))
            except (ValidationError, ValueError) as e:
                logger.warning("Skipping unreadable iteration record %s: %s", path.name, e)
        records.sort(key=lambda r: r.iteration)
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    # -- operator channels --------------------------------------------------

    def read_urgent(self) -> Optional[str]:
        path = self.state_dir / URGENT_FILE
        if not path.exists():
            return None
        text = path.read_text().strip()
        return text or None

    def write_urgent(self, text: str) -> None:
        _atomic_write(self.state_dir / URGENT_FILE, text.rstrip() + "\n")

    def clear_urgent(self) -> None:
        (self.state_dir / URGENT_FILE).unlink(missing_ok=True)

    def request_pause(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        (self.state_dir / PAUSE_SENTINEL).write_text(datetime.now(UTC).isoformat() + "\n")

    def pause_requested(self) -> bool:
        return (self.state_dir / PAUSE_SENTINEL).exists()

    def clear_pause_request(self) -> None:
        (self.state_dir / PAUSE_SENTINEL).unlink(missing_ok=True)

    # -- owner lock ---------------------------------------------------------

    def owner_pid(self) -> Optional[int]:
        path = self.state_dir / PID_FILE
        if not path.exists():
            return None
        try:
            return int(path.read_text().strip())
        except ValueError:
            logger.warning("Ignoring malformed pid file %s", path)
            return None

    def acquire_owner(self, pid: int) -> bool:
        """Create the pid file for ``pid`` unless one already exists.

        The pid is written to a temp file that is then hard-linked into
        place, so the lock appears atomically and always holds a full pid.

        Returns:
            False if another pid file is already present.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.state_dir / PID_FILE
        fd, tmp_name = tempfile.mkstemp(prefix=f"{PID_FILE}.", suffix=".tmp", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{pid}\n")
            os.link(tmp_name, path)
        except FileExistsError:
            return False
        finally:
            Path(tmp_name).unlink(missing_ok=True)
        return True

    def release_owner(self, pid: Optional[int] = None) -> None:
        """Remove the pid file. With ``pid``, only when the file still names it."""
        if pid is not None and self.owner_pid() != pid:
            return
        (self.state_dir / PID_FILE).unlink(missing_ok=True)

    # -- archive ------------------------------------------------------------

    def archive(self) -> Optional[str]:
        """Move the current snapshot and audit trail under archive/. Returns the archive name."""
        if not self.session_path.exists():
            return None
        state = self.load()
        session_id = state.session_id if state else "unknown"
        name = f"{datetime.now(UTC).strftime('%Y%m%d_%H%M%S')}_{session_id}"
        target = self.state_dir / ARCHIVE_DIR / name
        target.mkdir(parents=True, exist_ok=True)

        shutil.move(str(self.session_path), str(target / SESSION_FILE))
        if self.iterations_dir.exists():
            shutil.move(str(self.iterations_dir), str(target / ITERATIONS_DIR))
        for latest in (SIGNALS_FILE, DECISION_FILE):
            if (self.state_dir / latest).exists():
                shutil.move(str(self.state_dir / latest), str(target / latest))
        logger.info("Archived previous session to %s", target)
        return name


class InMemoryStateStore:
    """StateStore kept in memory. Used by tests and embedding callers."""

    def __init__(self, state: Optional[SessionState] = None):
        self._state_json: Optional[str] = state.model_dump_json() if state else None
        self._records: dict[int, IterationRecord] = {}
        self._urgent: Optional[str] = None
        self._pause = False
        self._owner: Optional[int] = None
        self.archives: list[str] = []
        self.save_count = 0

    def load(self) -> Optional[SessionState]:
        if self._state_json is None:
            return None
        return restore_session(json.loads(self._state_json))

    def save(self, state: SessionState) -> None:
        self._state_json = state.model_dump_json()
        self.save_count += 1

    def append_record(self, record: IterationRecord) -> None:
        self._records[record.iteration] = record

    def list_records(self, limit: Optional[int] = None) -> list[IterationRecord]:
        records = [self._records[k] for k in sorted(self._records)]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def read_urgent(self) -> Optional[str]:
        return self._urgent

    def write_urgent(self, text: str) -> None:
        self._urgent = text.strip() or None

    def clear_urgent(self) -> None:
        self._urgent = None

    def request_pause(self) -> None:
        self._pause = True

    def pause_requested(self) -> bool:
        return self._pause

    def clear_pause_request(self) -> None:
        self._pause = False

    def owner_pid(self) -> Optional[int]:
        return self._owner

    def acquire_owner(self, pid: int) -> bool:
        if self._owner is not None:
            return False
        self._owner = pid
        return True

    def release_owner(self, pid: Optional[int] = None) -> None:
        if pid is None or self._owner == pid:
            self._owner = None

    def archive(self) -> Optional[str]:
        if self._state_json is None:
            return None
        state = self.load()
        name = state.session_id if state else "unknown"
        self.archives.append(name)
        self._state_json = None
        self._records.clear()
        return name
