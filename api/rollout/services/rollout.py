import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from rollout.errors import FeatureDecodeError
from rollout.models import DELIMITER, SEPARATOR, Feature

logger = logging.getLogger(__name__)

FEATURES_KEY = "feature:__features__"

GroupPredicate = Callable[[Any], bool]
Observer = Callable[[str, Feature, Feature], None]
DeleteListener = Callable[[str], None]


def _key(name: str) -> str:
    if not name or name == "__features__" or DELIMITER in name or SEPARATOR in name:
        raise ValueError(f"invalid feature name {name!r}")
    return f"feature:{name}"


def _split_index(raw: Optional[str]) -> List[str]:
    names: List[str] = []
    for name in (raw or "").split(SEPARATOR):
        if name and name not in names:
            names.append(name)
    return names


class Rollout:
    """Feature toggles persisted in a key-value store.

    Every mutation is a read-mutate-persist cycle over a freshly decoded
    Feature; the store stays the only source of truth. The cycle is not
    atomic: concurrent writers to one feature are last-write-wins.
    """

    def __init__(self, storage, audit=None, id_user_by: str = "id"):
        self.storage = storage
        self.audit = audit
        self.id_user_by = id_user_by
        self._groups: Dict[str, GroupPredicate] = {"all": lambda user: True}
        self._observers: List[Observer] = []
        self._delete_listeners: List[DeleteListener] = []
        if audit is not None:
            self.add_observer(audit)
            self.on_delete(audit.record_delete)

    # observers

    def add_observer(self, observer: Observer):
        self._observers.append(observer)

    def remove_observer(self, observer: Observer):
        self._observers.remove(observer)

    def count_observers(self) -> int:
        return len(self._observers)

    def on_delete(self, listener: DeleteListener):
        self._delete_listeners.append(listener)

    def _notify(self, event: str, before: Feature, after: Feature):
        for observer in list(self._observers):
            try:
                observer(event, before, after)
            except Exception:
                logger.exception("observer %r failed on %s of %s", observer, event, after.name)

    def _notify_delete(self, name: str):
        for listener in list(self._delete_listeners):
            try:
                listener(name)
            except Exception:
                logger.exception("delete listener %r failed for %s", listener, name)

    # groups

    @property
    def groups(self) -> List[str]:
        return list(self._groups)

    def define_group(self, group: str, predicate: Optional[GroupPredicate] = None):
        if predicate is None:
            def decorator(fn: GroupPredicate) -> GroupPredicate:
                self._groups[str(group)] = fn
                return fn
            return decorator
        self._groups[str(group)] = predicate
        return predicate

    def active_in_group(self, group: str, user: Any) -> bool:
        predicate = self._groups.get(str(group))
        if predicate is None:
            return False
        return bool(predicate(user))

    # read-mutate-persist

    def with_feature(self, name: str, mutation: Callable[[Feature], Any]) -> Feature:
        feature = self.get(name)
        if self._observers:
            before = copy.deepcopy(feature)
            mutation(feature)
            self._save(feature)
            self._notify("update", before, copy.deepcopy(feature))
        else:
            mutation(feature)
            self._save(feature)
        logger.debug("saved feature %s: %s", name, feature.serialize())
        return feature

    def _save(self, feature: Feature):
        with self.storage.connection() as conn:
            conn.set(_key(feature.name), feature.serialize())
            names = _split_index(conn.get(FEATURES_KEY))
            if feature.name not in names:
                names.append(feature.name)
                conn.set(FEATURES_KEY, SEPARATOR.join(names))

    def activate(self, name: str) -> Feature:
        return self.with_feature(name, lambda f: f.set_percentage(100))

    def deactivate(self, name: str) -> Feature:
        return self.with_feature(name, Feature.clear)

    def set(self, name: str, desired_state: bool) -> Feature:
        if desired_state:
            return self.activate(name)
        return self.deactivate(name)

    def activate_group(self, name: str, group: str) -> Feature:
        return self.with_feature(name, lambda f: f.add_group(group))

    def deactivate_group(self, name: str, group: str) -> Feature:
        return self.with_feature(name, lambda f: f.remove_group(group))

    def activate_user(self, name: str, user: Any) -> Feature:
        return self.with_feature(name, lambda f: f.add_user(user))

    def deactivate_user(self, name: str, user: Any) -> Feature:
        return self.with_feature(name, lambda f: f.remove_user(user))

    def activate_users(self, name: str, users: Iterable[Any]) -> Feature:
        def mutation(f: Feature):
            for user in users:
                f.add_user(user)
        return self.with_feature(name, mutation)

    def deactivate_users(self, name: str, users: Iterable[Any]) -> Feature:
        def mutation(f: Feature):
            for user in users:
                f.remove_user(user)
        return self.with_feature(name, mutation)

    def set_users(self, name: str, users: Iterable[Any]) -> Feature:
        return self.with_feature(name, lambda f: f.set_users(users))

    def set_feature_data(self, name: str, data: Any) -> Feature:
        return self.with_feature(name, lambda f: f.merge_data(data))

    def clear_feature_data(self, name: str) -> Feature:
        return self.with_feature(name, Feature.clear_data)

    def activate_percentage(self, name: str, percentage) -> Feature:
        return self.with_feature(name, lambda f: f.set_percentage(percentage))

    def deactivate_percentage(self, name: str) -> Feature:
        return self.with_feature(name, lambda f: f.set_percentage(0))

    # queries

    def get(self, name: str) -> Feature:
        with self.storage.connection() as conn:
            raw = conn.get(_key(name))
        return Feature.parse(name, raw, id_user_by=self.id_user_by)

    def multi_get(self, *names: str) -> List[Feature]:
        if not names:
            return []
        keys = [_key(name) for name in names]
        with self.storage.connection() as conn:
            raws = conn.mget(keys)
        return [Feature.parse(name, raw, id_user_by=self.id_user_by) for name, raw in zip(names, raws)]

    def features(self) -> List[str]:
        with self.storage.connection() as conn:
            return _split_index(conn.get(FEATURES_KEY))

    def exists(self, name: str) -> bool:
        with self.storage.connection() as conn:
            return bool(conn.exists(_key(name)))

    def active(self, name: str, user: Any = None) -> bool:
        return self.get(name).active(self, user)

    def inactive(self, name: str, user: Any = None) -> bool:
        return not self.active(name, user)

    def user_in_active_users(self, name: str, user: Any = None) -> bool:
        return self.get(name).user_in_active_users(user)

    def feature_states(self, user: Any = None) -> Dict[str, bool]:
        return {f.name: f.active(self, user) for f in self.multi_get(*self.features())}

    def active_features(self, user: Any = None) -> List[str]:
        return [f.name for f in self.multi_get(*self.features()) if f.active(self, user)]

    # destructive

    def delete(self, name: str):
        key = _key(name)
        with self.storage.connection() as conn:
            names = _split_index(conn.get(FEATURES_KEY))
            if name in names:
                names.remove(name)
            conn.set(FEATURES_KEY, SEPARATOR.join(names))
            conn.delete(key)
        logger.info("deleted feature %s", name)
        self._notify_delete(name)

    def clear(self):
        names = self.features()
        with self.storage.connection() as conn:
            for name in names:
                try:
                    self.with_feature(name, Feature.clear)
                except FeatureDecodeError as exc:
                    # corrupt records are dropped without an update event
                    logger.warning("removing unreadable feature during clear: %s", exc)
                conn.delete(_key(name))
            conn.delete(FEATURES_KEY)
        logger.info("cleared %d features", len(names))
