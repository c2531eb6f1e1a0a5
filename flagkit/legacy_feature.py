"""Evaluation of legacy (version 1) feature definitions."""

import hashlib
import struct
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Tuple

from flagkit.operators import Operator

_USER_KEY = "key"
_LONG_SCALE = float(0xFFFFFFFFFFFFFFF)

# Built-in attribute names mapped to the user object's attribute names.
_BUILTIN_ATTRIBUTES = {
    "key": "key",
    "ip": "ip",
    "country": "country",
    "email": "email",
    "firstName": "first_name",
    "lastName": "last_name",
    "avatar": "avatar",
    "name": "name",
    "anonymous": "anonymous",
}


def _f32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def _values_equal(u: Any, c: Any) -> bool:
    if isinstance(u, bool) or isinstance(c, bool):
        return type(u) is type(c) and u == c
    return u == c


def _compare_values(value: Any, values: List[Any]) -> bool:
    if value == "":
        return False
    return any(_values_equal(value, candidate) for candidate in values)


@dataclass
class TargetRule:
    """An individual targeting rule: an attribute matched against a list of values."""

    attribute: str
    op: Operator = Operator.IN
    values: List[Any] = field(default_factory=list)

    def _match_custom(self, user: Any) -> bool:
        custom = getattr(user, "custom", None)
        if not custom:
            return False
        value = custom.get(self.attribute)
        if value is None:
            return False
        if isinstance(value, (list, tuple)):
            return any(_compare_values(item, self.values) for item in value)
        return _compare_values(value, self.values)

    def match_target(self, user: Any) -> bool:
        """Whether the user's attribute equals one of this rule's values."""
        attr = _BUILTIN_ATTRIBUTES.get(self.attribute)
        if attr is None:
            return self._match_custom(user)
        return _compare_values(getattr(user, attr, None), self.values)


@dataclass
class Variation:
    """A value to return, with its rollout weight and targeting rules."""

    value: Any
    weight: int = 0
    targets: List[TargetRule] = field(default_factory=list)
    user_target: Optional[TargetRule] = None

    def match_user(self, user: Any) -> Optional[TargetRule]:
        """Return the user-key target rule if it matches the user."""
        if self.user_target is not None and self.user_target.match_target(user):
            return self.user_target
        return None

    def match_target(self, user: Any) -> Optional[TargetRule]:
        """Return the first matching target rule, skipping key rules when a user target exists."""
        for target in self.targets:
            if self.user_target is not None and target.attribute == _USER_KEY:
                continue
            if target.match_target(user):
                return target
        return None


@dataclass
class Feature:
    """A legacy feature definition."""

    key: str
    salt: str
    on: bool = False
    variations: List[Variation] = field(default_factory=list)
    name: Optional[str] = None
    kind: Optional[str] = None
    commit_date: Optional[datetime] = None
    creation_date: Optional[datetime] = None
    version: int = 0
    deleted: bool = False

    def evaluate(self, user: Any) -> Tuple[Any, bool]:
        """Return the value for the user and whether all rules passed without a match."""
        value, _, rules_passed = self.evaluate_explain(user)
        return value, rules_passed

    def evaluate_explain(self, user: Any) -> Tuple[Any, Optional[TargetRule], bool]:
        """Return the value, the target rule that selected it (if any), and whether rules passed."""
        if not self.on:
            return None, None, True

        param = self._param_for_id(user)
        if param is None:
            return None, None, True

        for variation in self.variations:
            target = variation.match_user(user)
            if target is not None:
                return variation.value, target, False

        for variation in self.variations:
            target = variation.match_target(user)
            if target is not None:
                return variation.value, target, False

        total = 0.0
        for variation in self.variations:
            total = _f32(total + _f32(_f32(float(variation.weight)) / _f32(100.0)))
            if param < total:
                return variation.value, None, False

        return None, None, True

    def _param_for_id(self, user: Any) -> Optional[float]:
        key = getattr(user, "key", None)
        if key is None:
            return None
        id_hash = key
        secondary = getattr(user, "secondary", None)
        if secondary is not None:
            id_hash = f"{id_hash}.{secondary}"
        digest = hashlib.sha1(f"{self.key}.{self.salt}.{id_hash}".encode()).hexdigest()
        int_val = int(digest[:15], 16)
        return _f32(_f32(float(int_val)) / _f32(_LONG_SCALE))