"""JSON-хранилище записей."""

import threading

import pytest

from ledger_store import LedgerStore, StorageUnavailable


def test_missing_record_reads_as_none(store):
    assert store.read("configClient") is None
    assert store.read_all("accounts") == []


def test_create_assigns_incrementing_ids(store):
    first = store.create("accounts", {"name": "steve"})
    second = store.create("accounts", {"name": "alex"})
    assert (first["ID"], second["ID"]) == (1, 2)
    assert store.read("accounts", 2) == {"name": "alex", "ID": 2}
    assert store.read("accounts", 99) is None


def test_update_replaces_first_document_and_keeps_id(store):
    store.update("configClient", {"account_selected": None})
    store.update("configClient", {"account_selected": 3})
    assert store.read_all("configClient") == [{"account_selected": 3, "ID": 1}]


def test_update_by_id(store):
    store.create("accounts", {"name": "steve"})
    store.create("accounts", {"name": "alex"})
    store.update("accounts", {"name": "alex2"}, 2)
    assert [a["name"] for a in store.read_all("accounts")] == ["steve", "alex2"]


def test_documents_survive_reopen(tmp_path):
    LedgerStore(tmp_path).update("unlockedInstances", {"Core": {"users": ["steve"]}})
    assert LedgerStore(tmp_path).read("unlockedInstances") == {"Core": {"users": ["steve"]}, "ID": 1}


@pytest.mark.parametrize("content", ["{broken", '{"not": "a list"}'])
def test_corrupt_file_raises(store, content):
    store.root.mkdir(parents=True, exist_ok=True)
    (store.root / "instanceStats.json").write_text(content, encoding="utf-8")
    with pytest.raises(StorageUnavailable):
        store.read("instanceStats")


def test_record_lock_serializes_read_modify_write(store):
    store.update("counter", {"value": 0})

    def bump():
        for _ in range(20):
            with store.lock("counter"):
                doc = store.read("counter")
                doc["value"] += 1
                store.update("counter", doc)

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.read("counter")["value"] == 80


def test_lock_is_reentrant(store):
    with store.lock("configClient"):
        with store.lock("configClient"):
            store.update("configClient", {"x": 1})
    assert store.read("configClient")["x"] == 1
