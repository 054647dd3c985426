"""Item catalog used to resolve item ids to display names."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from rapidfuzz import fuzz, process

_log = logging.getLogger(__name__)

UNKNOWN_ITEM = "Unknown Item"


class ItemCatalog:
    """Read-only lookup of item definitions.

    Listings store item ids opaquely; the catalog is only consulted for
    display names and for turning a search term into candidate item ids.
    """

    def __init__(self, names: Optional[Mapping[int, str]] = None) -> None:
        self._names: Dict[int, str] = dict(names or {})

    def __len__(self) -> int:
        return len(self._names)

    @classmethod
    def from_entries(cls, entries: Iterable[Any]) -> "ItemCatalog":
        """Build a catalog from item definition records.

        Records may use ``_id`` or ``id`` for the identifier; entries without a
        usable id or name are skipped.
        """

        names: Dict[int, str] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            raw_id = entry.get("_id", entry.get("id"))
            name = entry.get("name")
            if isinstance(raw_id, bool) or not isinstance(name, str) or not name.strip():
                continue
            try:
                item_id = int(raw_id)
            except (TypeError, ValueError):
                continue
            names.setdefault(item_id, name.strip())
        return cls(names)

    @classmethod
    def from_file(cls, path: str | Path) -> "ItemCatalog":
        with open(path, encoding="utf-8") as handle:
            payload = json.load(handle)
        if isinstance(payload, dict):
            payload = payload.get("items", []) or []
        catalog = cls.from_entries(payload)
        _log.info("Loaded %s item definitions from %s", len(catalog), path)
        return catalog

    def name_for(self, item_id: int) -> str:
        return self._names.get(item_id, UNKNOWN_ITEM)

    @staticmethod
    def _normalize_text(value: str) -> str:
        return " ".join(value.lower().split())

    def search(self, term: str, limit: int = 20) -> List[Tuple[int, str]]:
        """Return ``(item_id, name)`` pairs whose names fuzzily match ``term``."""

        term = term.strip()
        if not term or not self._names:
            return []

        matches = process.extract(
            self._normalize_text(term),
            {item_id: self._normalize_text(name) for item_id, name in self._names.items()},
            scorer=fuzz.WRatio,
            score_cutoff=60,
            limit=None,
        )
        matches.sort(key=lambda match: (-match[1], self._names[match[2]].lower(), match[2]))
        return [(item_id, self._names[item_id]) for _, _, item_id in matches[:limit]]
