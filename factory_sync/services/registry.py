"""
Workflow Registry Store
Local record of which bundled workflows were imported and their last known
remote state, persisted as a JSON document in the data directory.
"""
import json
import os
import tempfile
from typing import Dict, List, Optional

from pydantic import ValidationError

from factory_sync.core.logging import store_logger as logger
from factory_sync.models.schemas import ImportStatus, RegistryEntry, utcnow


def atomic_write_json(path: str, payload: Dict) -> None:
    """Write to a temp file in the same directory, then rename into place."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class RegistryStore:
    """
    CRUD over RegistryEntry rows keyed by filename.
    With ``path=None`` rows live in memory only.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._entries: Dict[str, RegistryEntry] = {}
        if path and os.path.exists(path):
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        for filename, row in raw.get("entries", {}).items():
            try:
                self._entries[filename] = RegistryEntry.model_validate(row)
            except ValidationError as e:
                logger.warning(f"Dropping unreadable registry row {filename}: {e.error_count()} error(s)")

    def _save(self) -> None:
        if not self.path:
            return
        atomic_write_json(self.path, {
            "entries": {name: entry.model_dump(mode="json") for name, entry in self._entries.items()}
        })

    def list(self) -> List[RegistryEntry]:
        return sorted(self._entries.values(), key=lambda e: (e.created_at, e.filename))

    def get(self, filename: str) -> Optional[RegistryEntry]:
        return self._entries.get(filename)

    def upsert(self, filename: str, **fields) -> RegistryEntry:
        """
        Create or update the row for ``filename``.
        Only the given fields change; passing ``None`` clears a field.
        """
        current = self._entries.get(filename)
        if current is None:
            fields.setdefault("workflow_name", os.path.splitext(filename)[0])
            entry = RegistryEntry(filename=filename, **fields)
        else:
            entry = current.model_copy(update={**fields, "updated_at": utcnow()})
            # model_copy skips validation; re-validate so enum fields stay typed
            entry = RegistryEntry.model_validate(entry.model_dump())

        if not entry.is_consistent():
            logger.warning(
                f"Registry row {filename} has status {entry.import_status.value} "
                f"with remote id {entry.n8n_workflow_id!r}"
            )

        self._entries[filename] = entry
        self._save()
        return entry

    def clear(self) -> int:
        """Remove every row; returns how many were removed."""
        count = len(self._entries)
        self._entries.clear()
        self._save()
        logger.info(f"Cleared {count} registry row(s)")
        return count

    def with_status(self, *statuses: ImportStatus) -> List[RegistryEntry]:
        return [e for e in self.list() if e.import_status in statuses]
