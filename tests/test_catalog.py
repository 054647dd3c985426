import json
from pathlib import Path

from rh_market.catalog import UNKNOWN_ITEM, ItemCatalog


def test_from_entries_accepts_either_id_key():
    catalog = ItemCatalog.from_entries(
        [
            {"_id": 1, "name": "Blue Shell"},
            {"id": "2", "name": " Red Shell "},
            {"id": 3},
            {"name": "No id"},
            {"_id": True, "name": "Bool id"},
            "not a record",
        ]
    )

    assert len(catalog) == 2
    assert catalog.name_for(1) == "Blue Shell"
    assert catalog.name_for(2) == "Red Shell"
    assert catalog.name_for(3) == UNKNOWN_ITEM


def test_from_file_reads_list_or_items_object(tmp_path: Path):
    as_list = tmp_path / "list.json"
    as_list.write_text(json.dumps([{"_id": 5, "name": "Widget"}]), encoding="utf-8")
    as_object = tmp_path / "object.json"
    as_object.write_text(json.dumps({"items": [{"id": 6, "name": "Gadget"}]}), encoding="utf-8")

    assert ItemCatalog.from_file(as_list).name_for(5) == "Widget"
    assert ItemCatalog.from_file(str(as_object)).name_for(6) == "Gadget"


def test_search_ranks_closest_name_first():
    catalog = ItemCatalog({1: "Silencer Blueprint", 2: "Silencer Blueprint II", 3: "Blue Shell"})

    results = catalog.search("silencer  BLUEPRINT")
    assert results[0] == (1, "Silencer Blueprint")
    assert (2, "Silencer Blueprint II") in results


def test_search_handles_empty_inputs():
    assert ItemCatalog().search("anything") == []
    assert ItemCatalog({1: "Widget"}).search("   ") == []
    assert ItemCatalog({1: "Widget"}).search("qqqqzzzz") == []


def test_search_respects_limit():
    catalog = ItemCatalog({index: f"Widget {index}" for index in range(10)})
    assert len(catalog.search("widget", limit=3)) == 3
