from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .errors import FileSystemError
from .models import InstalledRecord

log = logging.getLogger(__name__)

LEDGER_FILENAME = "skills-lock.json"
LEDGER_VERSION = 1


def resolve_ledger_path(install_root: Path) -> Path:
    """The ledger sits next to the install root: `.claude/skills` -> `.claude/skills-lock.json`."""
    return install_root.expanduser().resolve().parent / LEDGER_FILENAME


def now_ms() -> int:
    return int(time.time() * 1000)


@contextmanager
def _exclusive(path: Path) -> Iterator[None]:
    """Advisory lock on `<ledger>.lck`; a no-op where fcntl is unavailable."""
    if sys.platform == "win32":
        yield
        return
    import fcntl

    lock_path = path.with_name(path.name + ".lck")
    with lock_path.open("a") as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + f".{os.getpid()}.tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


class LockLedger:
    """
    Installed-skill ledger for one install root.

    Reads never fail: a missing, unreadable or corrupt file is an empty ledger. Writes take an
    exclusive lock, re-read the file and replace it atomically.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_install_root(cls, install_root: Path) -> "LockLedger":
        return cls(resolve_ledger_path(install_root))

    def read(self) -> dict[str, InstalledRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            log.warning("ignoring unreadable lock file %s: %s", self.path, e)
            return {}
        if not isinstance(raw, dict):
            return {}

        skills = raw.get("skills")
        items: list[Any]
        if isinstance(skills, dict):
            items = list(skills.values())
        elif isinstance(skills, list):
            items = skills
        else:
            items = []
        out: dict[str, InstalledRecord] = {}
        for item in items:
            record = InstalledRecord.from_dict(item)
            if record is not None:
                out[record.name] = record
        return out

    def records(self) -> list[InstalledRecord]:
        return sorted(self.read().values(), key=lambda r: r.name)

    def get(self, name: str) -> InstalledRecord | None:
        return self.read().get(name)

    def versions(self) -> dict[str, str]:
        return {name: r.version for name, r in self.read().items()}

    def _save(self, records: dict[str, InstalledRecord]) -> None:
        payload = {
            "lockfileVersion": LEDGER_VERSION,
            "generatedAt": now_ms(),
            "skills": {name: records[name].to_dict() for name in sorted(records)},
        }
        _write_json_atomic(self.path, payload)

    def update(self, record: InstalledRecord) -> None:
        """Insert or replace the record for `record.name`."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with _exclusive(self.path):
                records = self.read()
                records[record.name] = record
                self._save(records)
        except OSError as e:
            raise FileSystemError(f"Could not update lock file {self.path}: {e}", path=str(self.path)) from e

    def remove(self, name: str) -> bool:
        if not self.path.exists():
            return False
        try:
            with _exclusive(self.path):
                records = self.read()
                if name not in records:
                    return False
                del records[name]
                self._save(records)
                return True
        except OSError as e:
            raise FileSystemError(f"Could not update lock file {self.path}: {e}", path=str(self.path)) from e
