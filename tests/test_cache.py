"""Tests for the in-memory EmailCache."""

from imapmenu.core import MessageFlags
from imapmenu.storage import EmailCache

from fakes import FakeClock


class TestSnapshot:
    def test_unknown_folder(self, cache):
        assert cache.get_cached_emails("x:INBOX") is None
        assert cache.get_highest_uid("x:INBOX") is None
        assert not cache.is_cache_valid("x:INBOX")

    def test_set_sorts_newest_first(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(2), make_message(5), make_message(3)])
        assert [m.uid for m in cache.get_cached_emails("test:INBOX")] == [5, 3, 2]
        assert cache.get_highest_uid("test:INBOX") == 5

    def test_set_drops_duplicate_uids(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(1, subject="first"), make_message(1, subject="second")])
        [message] = cache.get_cached_emails("test:INBOX")
        assert message.subject == "first"

    def test_set_replaces_previous_snapshot(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(1), make_message(2)])
        cache.set_cached_emails("test:INBOX", [make_message(7)])
        assert [m.uid for m in cache.get_cached_emails("test:INBOX")] == [7]

    def test_empty_snapshot_has_no_watermark(self, cache):
        cache.set_cached_emails("test:INBOX", [])
        assert cache.get_cached_emails("test:INBOX") == []
        assert cache.get_highest_uid("test:INBOX") is None

    def test_reads_return_copies(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(1)])
        cache.get_cached_emails("test:INBOX")[0].mark_read()
        cache.get_email("test:INBOX", 1).subject = "changed"
        message = cache.get_email("test:INBOX", 1)
        assert not message.is_read
        assert message.subject == "Message 1"

    def test_messages_restamped_with_folder_key(self, cache, make_message):
        cache.set_cached_emails("work:Archive", [make_message(1, folder_key="other")])
        assert cache.get_email("work:Archive", 1).folder_key == "work:Archive"

    def test_validity_window(self, make_message):
        clock = FakeClock()
        cache = EmailCache(clock=clock)
        cache.set_cached_emails("test:INBOX", [make_message(1)])
        clock.now += 299
        assert cache.is_cache_valid("test:INBOX")
        clock.now += 2
        assert not cache.is_cache_valid("test:INBOX")
        assert cache.is_cache_valid("test:INBOX", max_age=600)

    def test_touch_refreshes_without_changes(self, make_message):
        clock = FakeClock()
        cache = EmailCache(clock=clock)
        cache.set_cached_emails("test:INBOX", [make_message(1)])
        clock.now += 400
        assert not cache.is_cache_valid("test:INBOX")

        assert cache.touch("test:INBOX")
        assert cache.is_cache_valid("test:INBOX")
        assert [m.uid for m in cache.get_cached_emails("test:INBOX")] == [1]
        assert not cache.touch("test:Unknown")
        assert cache.get_cached_emails("test:Unknown") is None


class TestMerge:
    def test_returns_only_new(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(1), make_message(2)])
        added = cache.merge_new_emails([make_message(2), make_message(3)], "test:INBOX")
        assert [m.uid for m in added] == [3]
        assert [m.uid for m in cache.get_cached_emails("test:INBOX")] == [3, 2, 1]
        assert cache.get_highest_uid("test:INBOX") == 3

    def test_into_unknown_folder(self, cache, make_message):
        added = cache.merge_new_emails([make_message(4)], "test:Work")
        assert [m.uid for m in added] == [4]
        assert cache.get_highest_uid("test:Work") == 4

    def test_cap_override(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(uid) for uid in range(1, 6)])
        added = cache.merge_new_emails([make_message(6), make_message(7)], "test:INBOX", max_per_folder=5)
        assert [m.uid for m in added] == [6, 7]
        assert [m.uid for m in cache.get_cached_emails("test:INBOX")] == [7, 6, 5, 4, 3]

    def test_evicted_additions_not_reported(self, make_message):
        cache = EmailCache(max_per_folder=2)
        cache.set_cached_emails("test:INBOX", [make_message(10), make_message(11)])
        # Older than everything cached, so evicted straight away
        added = cache.merge_new_emails([make_message(3)], "test:INBOX")
        assert added == []
        assert [m.uid for m in cache.get_cached_emails("test:INBOX")] == [11, 10]


class TestEviction:
    def test_per_folder_keeps_newest(self, make_message):
        cache = EmailCache(max_per_folder=3)
        cache.set_cached_emails("test:INBOX", [make_message(uid) for uid in range(1, 8)])
        assert [m.uid for m in cache.get_cached_emails("test:INBOX")] == [7, 6, 5]

    def test_global_cap_evicts_oldest_anywhere(self, make_message):
        cache = EmailCache(max_per_folder=10, max_total=5)
        cache.set_cached_emails("test:A", [make_message(uid) for uid in (1, 2, 3)])
        cache.set_cached_emails("test:B", [make_message(uid) for uid in (10, 11, 12)])
        assert cache.stats()["messages"] == 5
        assert [m.uid for m in cache.get_cached_emails("test:A")] == [3, 2]
        assert [m.uid for m in cache.get_cached_emails("test:B")] == [12, 11, 10]

    def test_global_cap_can_empty_a_folder(self, make_message):
        cache = EmailCache(max_per_folder=10, max_total=2)
        cache.set_cached_emails("test:A", [make_message(1)])
        cache.set_cached_emails("test:B", [make_message(5), make_message(6)])
        assert cache.get_cached_emails("test:A") == []
        assert cache.get_highest_uid("test:A") is None

    def test_stats(self, cache, make_message):
        cache.set_cached_emails("test:A", [make_message(1)])
        cache.set_cached_emails("test:B", [make_message(2), make_message(3)])
        stats = cache.stats()
        assert stats["folders"] == 2
        assert stats["messages"] == 3
        assert stats["per_folder"] == {"test:A": 1, "test:B": 2}


class TestEdits:
    def test_update_returns_previous(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(1)])
        before = cache.update_email("test:INBOX", 1, flags=MessageFlags.SEEN)
        assert not before.is_read
        assert cache.get_email("test:INBOX", 1).is_read

    def test_update_missing(self, cache, make_message):
        assert cache.update_email("test:INBOX", 1, flags=MessageFlags.SEEN) is None
        cache.set_cached_emails("test:INBOX", [make_message(1)])
        assert cache.update_email("test:INBOX", 99, preview="x") is None

    def test_remove_and_restore(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(1), make_message(2)])
        removed = cache.remove_email("test:INBOX", 2)
        assert removed.uid == 2
        assert cache.get_highest_uid("test:INBOX") == 1
        cache.restore_email("test:INBOX", removed)
        assert [m.uid for m in cache.get_cached_emails("test:INBOX")] == [2, 1]
        assert cache.get_highest_uid("test:INBOX") == 2

    def test_restore_does_not_duplicate(self, cache, make_message):
        cache.set_cached_emails("test:INBOX", [make_message(1)])
        cache.restore_email("test:INBOX", make_message(1))
        assert len(cache.get_cached_emails("test:INBOX")) == 1

    def test_unread_count(self, cache, make_message):
        cache.set_cached_emails("test:A", [make_message(1), make_message(2, read=True)])
        cache.set_cached_emails("test:B", [make_message(3)])
        assert cache.unread_count("test:A") == 1
        assert cache.unread_count() == 2
        assert cache.unread_count("test:missing") == 0

    def test_invalidate_and_clear(self, cache, make_message):
        cache.set_cached_emails("test:A", [make_message(1)])
        cache.set_cached_emails("test:B", [make_message(2)])
        cache.invalidate("test:A")
        assert cache.get_cached_emails("test:A") is None
        cache.clear()
        assert cache.get_cached_emails("test:B") is None
