"""Tests for the SQLite ChangeStore."""

from datetime import datetime, timedelta, timezone

import pytest

from reviewsync.errors import StorageError
from reviewsync.models import Account, Comment, FileInfo, LabelVote, Message
from reviewsync.storage import ChangeStore

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo_id(store):
    return store.get_or_create_repository("go", "gerrit")


class TestRepositories:
    def test_get_or_create_is_idempotent(self, store):
        first = store.get_or_create_repository("go", "gerrit")
        assert store.get_or_create_repository("go", "gerrit") == first
        assert store.get_repository_id("go") == first
        assert store.get_repository_id("tools") is None

    def test_cursor_roundtrip(self, store, repo_id):
        assert store.get_cursor(repo_id) is None
        store.set_cursor(repo_id, T0)
        assert store.get_cursor(repo_id) == T0


class TestChanges:
    def test_insert_and_lookup(self, store, repo_id, make_change):
        change_id = store.insert_change(repo_id, make_change(101))
        stored = store.get_change(change_id)
        assert stored.number == 101
        assert stored.remote_id == "go~101"
        assert stored.status == "open"
        assert stored.previous_status is None
        assert stored.updated == T0
        assert stored.last_synced_at is None
        assert store.get_change_by_number(repo_id, 101).id == change_id
        assert store.get_change(9999) is None

    def test_number_unique_per_repository(self, store, repo_id, make_change):
        store.insert_change(repo_id, make_change(1))
        other = store.get_or_create_repository("tools", "gerrit")
        store.insert_change(other, make_change(1))
        with pytest.raises(StorageError):
            store.insert_change(repo_id, make_change(1))

    def test_update_change_leaves_status_alone(self, store, repo_id, make_change):
        change_id = store.insert_change(repo_id, make_change(1))
        later = T0 + timedelta(hours=1)
        store.update_change(change_id, make_change(1, updated=later, status="merged"))
        stored = store.get_change(change_id)
        assert stored.updated == later
        assert stored.status == "open"

    def test_apply_transition_shifts_previous(self, store, repo_id, make_change):
        change_id = store.insert_change(repo_id, make_change(1))
        store.apply_transition(change_id, "merged")
        stored = store.get_change(change_id)
        assert (stored.previous_status, stored.status) == ("open", "merged")

    def test_mark_synced_and_clear(self, store, repo_id, make_change):
        change_id = store.insert_change(repo_id, make_change(1))
        store.mark_synced(change_id, T0)
        assert store.get_change(change_id).last_synced_at == T0
        store.mark_synced(change_id, None)
        assert store.get_change(change_id).last_synced_at is None

    def test_existing_numbers(self, store, repo_id, make_change):
        for number in (1, 2, 3):
            store.insert_change(repo_id, make_change(number))
        assert store.existing_numbers(repo_id, [2, 3, 4]) == {2, 3}
        assert store.existing_numbers(repo_id, []) == set()


class TestSubresources:
    def test_revision_file_diff_upserts(self, store, repo_id, make_change, make_revision):
        change_id = store.insert_change(repo_id, make_change(1))
        revision = make_revision(1)
        rev_id = store.upsert_revision(change_id, revision)
        assert store.upsert_revision(change_id, revision) == rev_id

        file_id = store.upsert_file(rev_id, FileInfo(path="a.go", lines_inserted=3))
        assert store.upsert_file(rev_id, FileInfo(path="a.go", lines_inserted=4)) == file_id

        store.upsert_diff(file_id, "+x\n", 3)
        store.upsert_diff(file_id, "", 900000, stats_only=True)
        diff = store.get_diff(file_id)
        assert diff["stats_only"] == 1
        assert diff["diff_content"] is None
        assert diff["diff_size"] == 900000
        assert store.count("diffs", change_id) == 1
        assert store.count("files", change_id) == 1

    def test_comment_upsert_updates_message(self, store, repo_id, make_change):
        change_id = store.insert_change(repo_id, make_change(1))
        store.upsert_comment(change_id, Comment(comment_id="c1", message="nit", updated=T0))
        store.upsert_comment(
            change_id,
            Comment(comment_id="c1", message="done", updated=T0 + timedelta(minutes=1)),
        )
        comments = store.list_comments(change_id)
        assert len(comments) == 1
        assert comments[0]["message"] == "done"

    def test_messages_deduplicated(self, store, repo_id, make_change):
        change_id = store.insert_change(repo_id, make_change(1))
        message = Message(message_id="m1", message="Uploaded patch set 1.", date=T0)
        store.upsert_message(change_id, message)
        store.upsert_message(change_id, message)
        assert store.count("messages", change_id) == 1

    def test_replace_labels_skips_zero_votes(self, store, repo_id, make_change):
        change_id = store.insert_change(repo_id, make_change(1))
        votes = [
            LabelVote("Code-Review", 2, Account(name="A")),
            LabelVote("Code-Review", 0, Account(name="B")),
            LabelVote("TryBot-Result", 1, Account(name="Bot")),
        ]
        assert store.replace_labels(change_id, votes) == 2
        assert store.replace_labels(change_id, votes[:1]) == 1
        assert store.count("labels", change_id) == 1

    def test_count_rejects_unknown_table(self, store):
        with pytest.raises(ValueError):
            store.count("sqlite_master")


class TestMaintenance:
    def test_clear_all_recreates_schema(self, store, repo_id, make_change):
        store.insert_change(repo_id, make_change(1))
        store.clear_all()
        assert store.count("changes") == 0
        assert store.count("repositories") == 0
        new_repo = store.get_or_create_repository("go", "gerrit")
        store.insert_change(new_repo, make_change(1))
        assert store.count("changes") == 1

    def test_cascade_on_change_delete(self, store, repo_id, make_change, make_revision):
        change_id = store.insert_change(repo_id, make_change(1))
        rev_id = store.upsert_revision(change_id, make_revision(1))
        store.upsert_file(rev_id, FileInfo(path="a.go"))
        store.conn.execute("DELETE FROM changes WHERE id = ?", (change_id,))
        store.conn.commit()
        assert store.count("revisions") == 0
        assert store.count("files") == 0


def test_in_memory_store():
    db = ChangeStore()
    assert db.get_or_create_repository("go", "gerrit") == 1
    db.close()
