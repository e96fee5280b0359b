"""Tests for Rollout orchestration."""

import logging
from unittest.mock import MagicMock

import pytest

from rollout.errors import FeatureDecodeError
from rollout.models import Feature, bucket
from rollout.services.rollout import FEATURES_KEY, Rollout


class TestMutations:
    """Tests for read-mutate-persist operations."""

    def test_activate_persists_and_indexes(self, rollout, storage):
        rollout.activate("chat")
        assert storage.get("feature:chat") == "100|||{}"
        assert rollout.features() == ["chat"]
        assert rollout.active("chat") is True
        assert rollout.active("chat", "anyone") is True

    def test_index_has_no_duplicates(self, rollout, storage):
        rollout.activate("chat")
        rollout.deactivate("chat")
        rollout.activate("search")
        assert storage.get(FEATURES_KEY) == "chat,search"

    def test_set(self, rollout):
        rollout.set("chat", True)
        assert rollout.get("chat").percentage == 100
        rollout.set("chat", False)
        assert rollout.get("chat").percentage == 0

    def test_deactivate_wins_over_user(self, rollout):
        rollout.activate_user("search_v2", "user-7")
        assert rollout.active("search_v2", "user-7") is True
        rollout.set("search_v2", False)
        assert rollout.active("search_v2", "user-7") is False

    def test_users(self, rollout):
        rollout.activate_users("chat", ["a", "b", 3])
        assert rollout.get("chat").users == {"a", "b", "3"}
        rollout.deactivate_users("chat", ["a", 3])
        assert rollout.get("chat").users == {"b"}
        rollout.deactivate_user("chat", "b")
        assert rollout.get("chat").users == set()
        rollout.set_users("chat", ["x", "y"])
        rollout.set_users("chat", ["z"])
        assert rollout.get("chat").users == {"z"}
        assert rollout.user_in_active_users("chat", "z") is True
        assert rollout.user_in_active_users("chat", "x") is False

    def test_percentage(self, rollout):
        rollout.activate_percentage("search_v2", 25)
        expected = bucket("search_v2", "user-42") < 25
        assert rollout.active("search_v2", "user-42") is expected
        assert rollout.active("search_v2", "user-42") is expected
        assert rollout.inactive("search_v2", "user-42") is not expected
        rollout.deactivate_percentage("search_v2")
        assert rollout.get("search_v2").percentage == 0

    def test_groups(self, rollout):
        rollout.define_group("beta", lambda u: u.endswith("-beta"))
        rollout.activate_group("f", "beta")
        assert rollout.active("f", "x-beta") is True
        assert rollout.active("f", "x-prod") is False
        rollout.deactivate_group("f", "beta")
        assert rollout.active("f", "x-beta") is False

    def test_unknown_group_is_inactive(self, rollout):
        rollout.activate_group("f", "nobody-defined-this")
        assert rollout.active("f", "u1") is False

    def test_all_group(self, rollout):
        rollout.activate_group("f", "all")
        assert rollout.active("f", "u1") is True
        assert rollout.active("f", None) is False

    def test_feature_data_survives_clear(self, rollout):
        rollout.set_feature_data("f", {"owner": "team-a"})
        rollout.set_feature_data("f", "ignored")
        rollout.deactivate("f")
        assert rollout.get("f").data == {"owner": "team-a"}
        rollout.clear_feature_data("f")
        assert rollout.get("f").data == {}

    def test_invalid_feature_name(self, rollout, storage):
        for bad in ("", "a,b", "a|b", "__features__"):
            with pytest.raises(ValueError):
                rollout.activate(bad)
        assert rollout.features() == []

    def test_invalid_user_leaves_store_untouched(self, rollout, storage):
        with pytest.raises(ValueError):
            rollout.activate_user("chat", "a,b")
        assert rollout.exists("chat") is False


class TestQueries:
    """Tests for read-only queries."""

    def test_get_missing_is_default(self, rollout):
        feature = rollout.get("nope")
        assert feature == Feature("nope")
        assert rollout.active("nope", "u1") is False
        assert rollout.exists("nope") is False

    def test_multi_get_alignment(self, rollout):
        rollout.activate("a")
        rollout.activate_user("b", "u1")
        a, missing, b = rollout.multi_get("a", "missing", "b")
        assert (a.name, missing.name, b.name) == ("a", "missing", "b")
        assert a.percentage == 100
        assert missing == Feature("missing")
        assert b.users == {"u1"}

    def test_multi_get_empty_skips_store(self):
        storage = MagicMock()
        assert Rollout(storage).multi_get() == []
        storage.connection.assert_not_called()

    def test_feature_states_and_active_features(self, rollout):
        rollout.activate("on")
        rollout.deactivate("off")
        rollout.activate_user("mine", "u1")
        assert rollout.feature_states("u1") == {"on": True, "off": False, "mine": True}
        assert rollout.feature_states() == {"on": True, "off": False, "mine": False}
        assert rollout.active_features("u1") == ["on", "mine"]
        assert rollout.active_features() == ["on"]

    def test_active_in_group(self, rollout):
        rollout.define_group("staff", lambda u: u in {"ann"})
        assert rollout.active_in_group("staff", "ann") is True
        assert rollout.active_in_group("staff", "bob") is False
        assert rollout.active_in_group("all", "bob") is True
        assert rollout.active_in_group("missing", "bob") is False

    def test_define_group_decorator(self, rollout):
        @rollout.define_group("admins")
        def admins(user):
            return user == "root"

        assert rollout.groups == ["all", "admins"]
        assert rollout.active_in_group("admins", "root") is True

    def test_registries_are_per_instance(self, storage):
        first = Rollout(storage)
        first.define_group("beta", lambda u: True)
        first.add_observer(lambda *args: None)
        second = Rollout(storage)
        assert second.groups == ["all"]
        assert second.count_observers() == 0

    def test_id_user_by(self, storage):
        class User:
            def __init__(self, email):
                self.email = email

        rollout = Rollout(storage, id_user_by="email")
        rollout.activate_user("f", User("a@example.com"))
        assert rollout.get("f").users == {"a@example.com"}
        assert rollout.active("f", User("a@example.com")) is True

    def test_corrupt_record_fails_read(self, rollout, storage):
        storage.set("feature:bad", "10|||{nope")
        storage.set(FEATURES_KEY, "bad")
        with pytest.raises(FeatureDecodeError):
            rollout.get("bad")
        with pytest.raises(FeatureDecodeError):
            rollout.multi_get("bad", "other")
        with pytest.raises(FeatureDecodeError):
            rollout.activate("bad")

    def test_corrupt_record_can_be_deleted(self, rollout, storage):
        storage.set("feature:bad", "oops")
        storage.set(FEATURES_KEY, "bad")
        rollout.delete("bad")
        assert rollout.exists("bad") is False
        assert rollout.features() == []

    def test_store_errors_propagate(self):
        storage = MagicMock()
        storage.connection.return_value.__enter__.return_value.get.side_effect = ConnectionError("down")
        with pytest.raises(ConnectionError):
            Rollout(storage).get("f")


class TestDestructive:
    """Tests for delete and clear."""

    def test_delete(self, rollout):
        rollout.activate("f")
        rollout.activate("g")
        assert rollout.exists("f") is True
        rollout.delete("f")
        assert rollout.exists("f") is False
        assert rollout.features() == ["g"]

    def test_delete_does_not_notify(self, rollout):
        observer = MagicMock()
        rollout.activate("f")
        rollout.add_observer(observer)
        rollout.delete("f")
        observer.assert_not_called()

    def test_delete_informs_audit(self, storage):
        audit = MagicMock()
        rollout = Rollout(storage, audit=audit)
        rollout.delete("f")
        audit.record_delete.assert_called_once_with("f")

    def test_failing_delete_listener_does_not_fail_delete(self, storage, caplog):
        audit = MagicMock()
        audit.record_delete.side_effect = RuntimeError("audit down")
        rollout = Rollout(storage, audit=audit)
        later = MagicMock()
        rollout.on_delete(later)
        rollout.activate("f")
        with caplog.at_level(logging.ERROR, logger="rollout.services.rollout"):
            rollout.delete("f")
        assert rollout.exists("f") is False
        assert rollout.features() == []
        later.assert_called_once_with("f")
        assert "audit down" in caplog.text

    def test_clear_removes_corrupt_records(self, rollout, storage):
        rollout.activate("a")
        rollout.activate("c")
        storage.set("feature:b", "10|||{nope")
        storage.set(FEATURES_KEY, "a,b,c")
        rollout.clear()
        assert storage.get(FEATURES_KEY) is None
        for name in ("a", "b", "c"):
            assert rollout.exists(name) is False
        rollout.clear()
        assert rollout.features() == []

    def test_clear(self, rollout, storage):
        rollout.activate("a")
        rollout.set_feature_data("b", {"k": 1})
        rollout.clear()
        assert rollout.features() == []
        assert storage.get(FEATURES_KEY) is None
        assert rollout.exists("a") is False
        assert rollout.exists("b") is False

    def test_clear_notifies_each_feature(self, rollout):
        rollout.activate("a")
        rollout.activate("b")
        events = []
        rollout.add_observer(lambda event, before, after: events.append((after.name, before.percentage, after.percentage)))
        rollout.clear()
        assert events == [("a", 100, 0), ("b", 100, 0)]


class TestObservers:
    """Tests for change notification."""

    def test_update_event(self, rollout):
        observer = MagicMock()
        rollout.add_observer(observer)
        rollout.activate_percentage("f", 30)
        observer.assert_called_once()
        event, before, after = observer.call_args[0]
        assert event == "update"
        assert before.percentage == 0
        assert after.percentage == 30

    def test_snapshots_are_independent(self, rollout):
        received = []
        rollout.add_observer(lambda event, before, after: received.append((before, after)))
        live = rollout.activate_user("f", "u1")
        live.add_user("u2")
        live.data["late"] = True
        before, after = received[0]
        assert before.users == set()
        assert after.users == {"u1"}
        assert after.data == {}

    def test_observers_run_in_order(self, rollout):
        calls = []
        rollout.add_observer(lambda *args: calls.append("first"))
        rollout.add_observer(lambda *args: calls.append("second"))
        rollout.activate("f")
        assert calls == ["first", "second"]

    def test_failing_observer_is_isolated(self, rollout, caplog):
        after_failure = MagicMock()

        def broken(event, before, after):
            raise RuntimeError("sink down")

        rollout.add_observer(broken)
        rollout.add_observer(after_failure)
        with caplog.at_level(logging.ERROR, logger="rollout.services.rollout"):
            rollout.activate("f")
        assert rollout.get("f").percentage == 100
        after_failure.assert_called_once()
        assert "sink down" in caplog.text

    def test_remove_observer(self, rollout):
        observer = MagicMock()
        rollout.add_observer(observer)
        assert rollout.count_observers() == 1
        rollout.remove_observer(observer)
        assert rollout.count_observers() == 0
        rollout.activate("f")
        observer.assert_not_called()
