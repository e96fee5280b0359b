import json
import zlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Set, Union

from rollout.errors import FeatureDecodeError

RAND_BASE = (2**32 - 1) / 100.0
DELIMITER = "|"
SEPARATOR = ","

Number = Union[int, float]


def user_id(user: Any, id_user_by: str = "id") -> str:
    if isinstance(user, (str, int)):
        return str(user)
    return str(getattr(user, id_user_by))


def _check_member(kind: str, value: str) -> str:
    if not value or DELIMITER in value or SEPARATOR in value:
        raise ValueError(f"invalid {kind} {value!r}: must be non-empty and free of ',' and '|'")
    return value


def _split(raw: Optional[str]) -> Set[str]:
    return {item for item in (raw or "").split(SEPARATOR) if item}


def _format_percentage(value: Number) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def bucket(name: str, uid: str) -> float:
    # 0..100
    return zlib.crc32(f"{name}{uid}".encode("utf-8")) / RAND_BASE


@dataclass
class Feature:
    name: str
    percentage: Number = 0
    users: Set[str] = field(default_factory=set)
    groups: Set[str] = field(default_factory=set)
    data: Dict[str, Any] = field(default_factory=dict)
    id_user_by: str = field(default="id", compare=False, repr=False)

    @classmethod
    def parse(cls, name: str, raw: Optional[str], id_user_by: str = "id") -> "Feature":
        if not raw:
            return cls(name, id_user_by=id_user_by)

        raw_percentage, raw_users, raw_groups, raw_data = (raw.split(DELIMITER, 3) + [None] * 3)[:4]

        try:
            percentage = float(raw_percentage) if raw_percentage.strip() else 0.0
        except ValueError:
            raise FeatureDecodeError(name, raw, f"bad percentage {raw_percentage!r}") from None
        if percentage.is_integer():
            percentage = int(percentage)

        if raw_data is None or not raw_data.strip():
            data = {}
        else:
            try:
                data = json.loads(raw_data)
            except json.JSONDecodeError as exc:
                raise FeatureDecodeError(name, raw, f"bad data segment ({exc.msg})") from exc
            if not isinstance(data, dict):
                raise FeatureDecodeError(name, raw, "data segment is not a JSON object")

        return cls(
            name,
            percentage=percentage,
            users=_split(raw_users),
            groups=_split(raw_groups),
            data=data,
            id_user_by=id_user_by,
        )

    def serialize(self) -> str:
        return DELIMITER.join(
            [
                _format_percentage(self.percentage),
                SEPARATOR.join(sorted(self.users)),
                SEPARATOR.join(sorted(self.groups)),
                json.dumps(self.data, separators=(",", ":")),
            ]
        )

    # mutators

    def set_percentage(self, percentage: Number):
        self.percentage = percentage

    def clear(self):
        self.percentage = 0
        self.users = set()
        self.groups = set()

    def add_group(self, group: str):
        self.groups.add(_check_member("group", str(group)))

    def remove_group(self, group: str):
        self.groups.discard(str(group))

    def add_user(self, user: Any):
        self.users.add(_check_member("user", user_id(user, self.id_user_by)))

    def remove_user(self, user: Any):
        self.users.discard(user_id(user, self.id_user_by))

    def set_users(self, users: Iterable[Any]):
        self.users = {_check_member("user", user_id(u, self.id_user_by)) for u in users}

    def merge_data(self, data: Any):
        if isinstance(data, Mapping):
            self.data.update(data)

    def clear_data(self):
        self.data = {}

    # activation

    def active(self, rollout, user: Any = None) -> bool:
        if user is None:
            return self.percentage >= 100
        uid = user_id(user, self.id_user_by)
        return (
            self.user_in_active_users(uid)
            or self.user_in_active_group(rollout, user)
            or self.user_in_percentage(uid)
        )

    def user_in_active_users(self, user: Any) -> bool:
        if user is None:
            return False
        return user_id(user, self.id_user_by) in self.users

    def user_in_active_group(self, rollout, user: Any) -> bool:
        return any(rollout.active_in_group(group, user) for group in self.groups)

    def user_in_percentage(self, uid: str) -> bool:
        if self.percentage >= 100:
            return True
        return bucket(self.name, uid) < self.percentage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "percentage": self.percentage,
            "users": sorted(self.users),
            "groups": sorted(self.groups),
            "data": self.data,
        }
