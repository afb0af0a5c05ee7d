import json
import logging

import pytest

from ingest import crawl
from ingest.crawler.checkpoint import CheckpointStore
from ingest.crawler.database import Database
from ingest.crawler.types import Checkpoint, PetType


@pytest.fixture(autouse=True)
def restore_root_logging(monkeypatch):
    for name in ("CRAWLER_DATA_DIR", "CRAWLER_MAX_PAGES", "CRAWLER_BASE_URL"):
        monkeypatch.delenv(name, raising=False)

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def base_args(tmp_path):
    return ["--data_dir", str(tmp_path / "state"), "--log_dir", str(tmp_path / "logs")]


def test_invalid_type_exits_2(tmp_path):
    assert crawl.main([*base_args(tmp_path), "crawl", "pet-home", "bird"]) == crawl.EXIT_INVALID_REQUEST
    assert (tmp_path / "logs" / "crawl.log").exists()


def test_invalid_limit_exits_2(tmp_path):
    assert crawl.main([*base_args(tmp_path), "crawl", "pet-home", "dog", "--limit", "500"]) == 2


def test_bad_config_exits_2(tmp_path):
    assert crawl.main([*base_args(tmp_path), "--max_pages", "0", "status"]) == 2


def test_locked_key_exits_3(tmp_path):
    store = CheckpointStore(Database(tmp_path / "state" / "crawler.sqlite3"))

    with store.lock("pet-home", PetType.DOG):
        code = crawl.main([*base_args(tmp_path), "crawl", "pet-home", "dog"])

    assert code == crawl.EXIT_IN_PROGRESS


def test_status_prints_checkpoints(tmp_path, capsys):
    store = CheckpointStore(Database(tmp_path / "state" / "crawler.sqlite3"))
    store.put(
        Checkpoint(
            source_id="pet-home",
            item_type=PetType.CAT,
            last_item_id="pet-home_7",
            recent_item_ids=["pet-home_7"],
            total_processed=1,
        )
    )

    assert crawl.main([*base_args(tmp_path), "status", "pet-home"]) == 0

    output = capsys.readouterr().out
    rows = json.loads(output[output.index("[\n") :])
    assert rows[0]["pet_type"] == "cat"
    assert rows[0]["checkpoint"]["lastItemId"] == "pet-home_7"
