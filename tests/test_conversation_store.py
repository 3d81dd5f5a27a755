"""
Conversation persistence against in-memory SQLite, title helpers and the ordered writer.
"""

import threading
import time
from datetime import datetime

import pytest

from conversation_store import (
    InlinePersistence,
    PersistenceWorker,
    SQLConversationStore,
    initial_title,
    provisional_title,
    title_from_first_label,
    title_from_labels,
)
from talk_parameters import StoreConfig

STAMP = datetime(2024, 3, 5, 14, 7)


@pytest.fixture
def store():
    return SQLConversationStore(StoreConfig(url="sqlite://"))


class TestTitles:
    def test_first_label(self):
        assert title_from_first_label("  budget talk ") == "Budget talk"
        assert title_from_first_label("ok") == "Untitled conversation"
        assert title_from_first_label(None) == "Untitled conversation"

    def test_provisional(self):
        assert provisional_title(STAMP) == "Conversation — Mar 05, 2024 14:07"

    def test_initial_title(self):
        assert initial_title("weekly sync", STAMP) == "Weekly sync"
        assert initial_title("hi", STAMP) == provisional_title(STAMP)
        assert initial_title(None, STAMP) == provisional_title(STAMP)

    def test_top_three_keywords(self):
        labels = ["Budget review", "budget for marketing", "Marketing budget plan", "lunch plan"]
        assert title_from_labels(labels) == "Budget marketing plan"

    def test_ties_keep_first_seen_order(self):
        assert title_from_labels(["zebra apple", "mango"]) == "Zebra apple mango"

    def test_stopwords_and_short_tokens_dropped(self):
        assert title_from_labels(["the cat and a dog"]) == "Cat dog"

    def test_falls_back_to_first_label(self):
        assert title_from_labels(["to be or", "an is"]) == "To be or"

    def test_empty_labels_give_provisional(self):
        assert title_from_labels([], STAMP) == provisional_title(STAMP)


class TestSQLConversationStore:
    def test_create_append_and_read_back(self, store):
        store.upsert_conversation("c1", user_id="u1", title="First")
        store.append_node("c1", label="intro", branch_level=0, index=0, node_id="n0")
        store.append_node("c1", label="side", branch_level=1, index=1, node_id="n1")

        metas = store.list_conversations("u1")
        assert len(metas) == 1
        assert metas[0].id == "c1"
        assert metas[0].title == "First"
        assert metas[0].node_count == 2

        nodes = store.get_conversation_nodes("c1")
        assert [(n.id, n.label, n.branch_level, n.index) for n in nodes] == [
            ("n0", "intro", 0, 0),
            ("n1", "side", 1, 1),
        ]
        assert nodes[0].as_dict()["branch_level"] == 0

    def test_nodes_come_back_in_index_order(self, store):
        store.upsert_conversation("c1", user_id="u1")
        for index in (2, 0, 1):
            store.append_node("c1", label=f"n{index}", branch_level=0, index=index)
        assert [n.index for n in store.get_conversation_nodes("c1")] == [0, 1, 2]

    def test_upsert_updates_title(self, store):
        store.upsert_conversation("c1", user_id="u1", title="Provisional")
        store.upsert_conversation("c1", title="Final title")
        assert store.list_conversations("u1")[0].title == "Final title"
        assert store.count_conversations() == 1

    def test_create_requires_user(self, store):
        with pytest.raises(ValueError):
            store.upsert_conversation("c1")

    def test_append_to_unknown_conversation(self, store):
        with pytest.raises(LookupError):
            store.append_node("missing", label="x", branch_level=0, index=0)

    def test_list_is_scoped_and_newest_first(self, store):
        store.upsert_conversation("old", user_id="u1", title="Old")
        time.sleep(0.02)
        store.upsert_conversation("new", user_id="u1", title="New")
        store.upsert_conversation("other", user_id="u2", title="Other")
        time.sleep(0.02)
        store.append_node("old", label="bump", branch_level=0, index=0)
        ids = [m.id for m in store.list_conversations("u1")]
        assert ids == ["old", "new"]
        assert [m.id for m in store.list_conversations("u1", limit=1)] == ["old"]


class TestPersistenceWorker:
    def test_jobs_run_in_submission_order(self, store):
        worker = PersistenceWorker()
        worker.start()
        try:
            worker.submit("create", store.upsert_conversation, "c1", user_id="u1", title="T")
            for index in range(20):
                worker.submit("append", store.append_node, "c1", label=str(index), branch_level=0, index=index)
            assert worker.wait_idle(5.0)
        finally:
            worker.stop()
        assert store.list_conversations("u1")[0].node_count == 20

    def test_failures_are_logged_and_do_not_stop_the_worker(self, caplog):
        done = threading.Event()

        def boom():
            raise RuntimeError("disk full")

        worker = PersistenceWorker()
        worker.start()
        try:
            worker.submit("boom", boom)
            worker.submit("after", done.set)
            assert worker.wait_idle(5.0)
        finally:
            worker.stop()
        assert done.is_set()
        assert any("disk full" in rec.getMessage() for rec in caplog.records)

    def test_submit_after_stop_is_dropped(self):
        calls = []
        worker = PersistenceWorker()
        worker.start()
        worker.stop()
        worker.submit("late", calls.append, 1)
        worker.join(2.0)
        assert calls == []

    def test_inline_runs_immediately(self):
        calls = []
        inline = InlinePersistence()
        inline.submit("now", calls.append, "x")
        inline.submit("boom", lambda: 1 / 0)
        assert calls == ["x"]
        assert inline.wait_idle()
