import json

import pytest

from ingest.crawler.stats import StatsCollector
from ingest.crawler.storage import FileBlobStore, atomic_write_json


def test_blob_put_get_overwrite_delete(tmp_path):
    blobs = FileBlobStore(tmp_path / "images")

    blobs.put("cats/pet-home_1/original.png", b"one")
    blobs.put("cats/pet-home_1/original.png", b"two")

    assert blobs.get("cats/pet-home_1/original.png") == b"two"
    assert blobs.list("cats/pet-home_1/") == ["cats/pet-home_1/original.png"]
    assert blobs.delete("cats/pet-home_1/original.png") is True
    assert blobs.delete("cats/pet-home_1/original.png") is False
    assert blobs.get("cats/pet-home_1/original.png") is None


@pytest.mark.parametrize("key", ["", "/etc/passwd", "../outside.png", "cats/../../x"])
def test_blob_keys_cannot_escape_root(tmp_path, key):
    with pytest.raises(ValueError):
        FileBlobStore(tmp_path).path_for(key)


def test_atomic_write_json_leaves_no_temp_files(tmp_path):
    target = tmp_path / "runs" / "pet-home_dog.json"

    atomic_write_json(target, {"source": "pet-home", "petType": "dog"})

    assert json.loads(target.read_text(encoding="utf-8")) == {"petType": "dog", "source": "pet-home"}
    assert [path.name for path in target.parent.iterdir()] == ["pet-home_dog.json"]


def test_stats_merge_and_summary():
    total = StatsCollector()
    run = StatsCollector()
    run.record_list_page(ok=True, strategy=".contribute_result h3.title a")
    run.record_list_page(ok=False)
    run.record_detail(120)
    run.record_detail(80)
    run.record_item(created=True)
    run.record_item(created=False)
    run.record_known()
    run.record_error(ValueError("bad"))
    run.record_image(has_original=True, has_derived=False)
    run.record_messages(sent=2, dead_lettered=1)
    run.finish()

    total.merge(run)
    summary = total.to_json()

    assert summary["list_pages_ok"] == 1
    assert summary["list_pages_error"] == 1
    assert summary["items_new"] == 1
    assert summary["items_updated"] == 1
    assert summary["items_skipped_known"] == 1
    assert summary["images_archived"] == 1
    assert summary["images_derived"] == 0
    assert summary["messages_sent"] == 2
    assert summary["messages_dead_lettered"] == 1
    assert summary["error_type_counts"] == {"ValueError": 1}
    assert summary["list_strategy_counts"] == {".contribute_result h3.title a": 1}
    assert summary["detail_elapsed_ms_avg"] == 100.0
    assert summary["duration_seconds"] >= 0.0
