"""
Processing rule models and the condition mini-language.

A rule condition is written as a short string in the configuration and parsed
once at load time into a small predicate tree:

    always | never
    sensor_data | alert | command | config_update | heartbeat
    message_type==Alert
    device_type==thermo          (substring of the device id)
    device_id==thermo-1          (exact device id)
    protocol==MQTT
    temperature > 30             (payload field)
    metadata.anomaly_score >= 3  (metadata field)
    not <cond> / <cond> and <cond> / <cond> or <cond>

`and` binds tighter than `or`; there are no parentheses.
"""
from dataclasses import dataclass
from enum import Enum
import operator
import re
from typing import Any, Callable, Dict, Optional, Tuple, Union
from pydantic import BaseModel, field_validator

from .event import MessageType


class ActionType(str, Enum):
    FORWARD = "forward"
    STORE = "store"
    ALERT = "alert"
    TRANSFORM = "transform"
    DISCARD = "discard"


class Action(BaseModel):
    type: ActionType
    transform: Optional[str] = None

    @classmethod
    def parse(cls, value: Union[str, Dict[str, Any], "Action"]) -> "Action":
        """Parse "forward", "transform:round_values" or {"type": ..., "transform": ...}"""
        if isinstance(value, Action):
            return value
        if isinstance(value, dict):
            return cls(**value)
        name, _, argument = str(value).partition(":")
        action_type = ActionType(name.strip().lower())
        if action_type is ActionType.TRANSFORM and not argument.strip():
            raise ValueError("transform action requires a transformation name")
        return cls(type=action_type, transform=argument.strip() or None)

    @classmethod
    def forward(cls) -> "Action":
        return cls(type=ActionType.FORWARD)


# Condition tree

@dataclass(frozen=True)
class Always:
    pass


@dataclass(frozen=True)
class Never:
    pass


@dataclass(frozen=True)
class MessageTypeIs:
    message_type: MessageType


@dataclass(frozen=True)
class DeviceIdContains:
    fragment: str


@dataclass(frozen=True)
class DeviceIdIs:
    device_id: str


@dataclass(frozen=True)
class ProtocolIs:
    protocol: str


@dataclass(frozen=True)
class Compare:
    field: str
    op: str
    value: float


@dataclass(frozen=True)
class Not:
    operand: "Condition"


@dataclass(frozen=True)
class And:
    left: "Condition"
    right: "Condition"


@dataclass(frozen=True)
class Or:
    left: "Condition"
    right: "Condition"


@dataclass(frozen=True)
class Invalid:
    """Placeholder for a condition that failed to parse"""
    text: str
    reason: str


Condition = Union[Always, Never, MessageTypeIs, DeviceIdContains, DeviceIdIs, ProtocolIs,
                  Compare, Not, And, Or, Invalid]

COMPARE_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
}

_COMPARE_RE = re.compile(r"^([A-Za-z_][\w.]*)\s*(>=|<=|==|!=|>|<)\s*(-?\d+(?:\.\d+)?)$")
_EQUALS_RE = re.compile(r"^([A-Za-z_]+)\s*==\s*(.+)$")

_TYPE_KEYWORDS: Dict[str, MessageType] = {
    "sensor_data": MessageType.SENSOR_DATA,
    "alert": MessageType.ALERT,
    "command": MessageType.COMMAND,
    "config_update": MessageType.CONFIG_UPDATE,
    "heartbeat": MessageType.HEARTBEAT,
}


def _split_keyword(text: str, keyword: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in re.split(rf"\s+{keyword}\s+", text))


def _parse(text: str) -> Condition:
    text = text.strip()
    if not text:
        raise ValueError("empty condition")

    parts = _split_keyword(text, "or")
    if len(parts) > 1:
        node = _parse(parts[0])
        for part in parts[1:]:
            node = Or(node, _parse(part))
        return node

    parts = _split_keyword(text, "and")
    if len(parts) > 1:
        node = _parse(parts[0])
        for part in parts[1:]:
            node = And(node, _parse(part))
        return node

    if text.startswith("not "):
        return Not(_parse(text[4:]))

    lowered = text.lower()
    if lowered == "always":
        return Always()
    if lowered == "never":
        return Never()
    if lowered in _TYPE_KEYWORDS:
        return MessageTypeIs(_TYPE_KEYWORDS[lowered])

    match = _EQUALS_RE.match(text)
    if match and match.group(1) in ("device_type", "device_id", "message_type", "protocol"):
        name, value = match.group(1), match.group(2).strip().strip('"\'')
        if not value:
            raise ValueError(f"missing value for {name}")
        if name == "device_type":
            return DeviceIdContains(value)
        if name == "device_id":
            return DeviceIdIs(value)
        if name == "message_type":
            return MessageTypeIs(MessageType.parse(value))
        return ProtocolIs(value)

    match = _COMPARE_RE.match(text)
    if match:
        return Compare(match.group(1), match.group(2), float(match.group(3)))

    raise ValueError(f"unrecognized condition '{text}'")


def parse_condition(text: str) -> Condition:
    """Parse a condition string; failures produce an Invalid node instead of raising"""
    try:
        return _parse(str(text))
    except ValueError as e:
        return Invalid(str(text), str(e))


class ProcessingRule(BaseModel):
    name: str
    condition: str
    action: Action
    parsed: Any = None

    @field_validator('action', mode='before')
    def validate_action(cls, v):
        return Action.parse(v)

    def model_post_init(self, __context: Any) -> None:
        if self.parsed is None:
            self.parsed = parse_condition(self.condition)
