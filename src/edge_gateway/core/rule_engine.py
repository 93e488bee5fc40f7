from typing import Any, Callable, Dict, Iterable, List, Optional
from ..models.event import Event
from ..models.rules import (
    Action, ActionType, ProcessingRule, Condition, COMPARE_OPERATORS,
    Always, Never, MessageTypeIs, DeviceIdContains, DeviceIdIs, ProtocolIs, Compare,
    Not, And, Or, Invalid,
)
from ..utils.logging import get_logger
from ..utils.exceptions import RuleEvaluationError

logger = get_logger(__name__)

Transformation = Callable[[Event], Event]


def celsius_to_fahrenheit(event: Event) -> Event:
    """Add a *_f companion for every temperature/celsius reading"""
    payload = dict(event.payload)
    for key in ("temperature", "celsius", "temp"):
        value = payload.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            payload[f"{key}_f"] = round(value * 9 / 5 + 32, 2)
    return event.model_copy(update={"payload": payload})


def round_values(event: Event) -> Event:
    payload = {
        key: round(value, 2) if isinstance(value, float) else value
        for key, value in event.payload.items()
    }
    return event.model_copy(update={"payload": payload})


def strip_nulls(event: Event) -> Event:
    payload = {key: value for key, value in event.payload.items() if value is not None}
    return event.model_copy(update={"payload": payload})


class RuleEngine:
    """Maps events to actions using an ordered list of processing rules"""

    def __init__(self, rules: Optional[Iterable[ProcessingRule]] = None):
        self.rules: List[ProcessingRule] = list(rules or [])
        self.transformations: Dict[str, Transformation] = {
            'celsius_to_fahrenheit': celsius_to_fahrenheit,
            'round_values': round_values,
            'strip_nulls': strip_nulls,
        }

    @classmethod
    def from_config(cls, rules_config: Optional[List[Dict[str, Any]]]) -> 'RuleEngine':
        rules = [ProcessingRule(**rule) for rule in rules_config or []]
        for rule in rules:
            if isinstance(rule.parsed, Invalid):
                logger.warning(f"Rule '{rule.name}' has a malformed condition: {rule.parsed.reason}")
        logger.info(f"Loaded {len(rules)} processing rules")
        return cls(rules)

    def register_transformation(self, name: str, func: Transformation) -> None:
        self.transformations[name] = func

    def evaluate(self, event: Event, rules: Optional[Iterable[ProcessingRule]] = None) -> Action:
        """Return the action of the first matching rule, Forward when none match"""
        for rule in self.rules if rules is None else rules:
            try:
                matched = self._matches(rule.parsed, event)
            except RuleEvaluationError as e:
                raise RuleEvaluationError(f"Rule '{rule.name}': {e}") from e
            if matched:
                logger.debug(f"Rule '{rule.name}' matched event {event.key} -> {rule.action.type.value}")
                return rule.action
        return Action.forward()

    def apply(self, event: Event, action: Action) -> Optional[Event]:
        """Apply an action to an event; None means the event is discarded"""
        if action.type is ActionType.DISCARD:
            return None
        if action.type is ActionType.TRANSFORM:
            transformation = self.transformations.get(action.transform or "")
            if transformation is None:
                logger.warning(f"Unknown transformation '{action.transform}', passing event through")
                return event
            return transformation(event)
        return event

    def _matches(self, condition: Condition, event: Event) -> bool:
        if isinstance(condition, Always):
            return True
        if isinstance(condition, Never):
            return False
        if isinstance(condition, MessageTypeIs):
            return event.message_type == condition.message_type
        if isinstance(condition, DeviceIdContains):
            return condition.fragment in event.device_id
        if isinstance(condition, DeviceIdIs):
            return event.device_id == condition.device_id
        if isinstance(condition, ProtocolIs):
            return event.metadata.protocol.value.lower() == condition.protocol.lower()
        if isinstance(condition, Compare):
            return self._compare(condition, event)
        if isinstance(condition, Not):
            return not self._matches(condition.operand, event)
        if isinstance(condition, And):
            return self._matches(condition.left, event) and self._matches(condition.right, event)
        if isinstance(condition, Or):
            return self._matches(condition.left, event) or self._matches(condition.right, event)
        if isinstance(condition, Invalid):
            raise RuleEvaluationError(f"malformed condition '{condition.text}': {condition.reason}")
        raise RuleEvaluationError(f"unsupported condition node {condition!r}")

    @staticmethod
    def _compare(condition: Compare, event: Event) -> bool:
        if condition.field.startswith("metadata."):
            value = getattr(event.metadata, condition.field[len("metadata."):], None)
        else:
            name = condition.field[len("payload."):] if condition.field.startswith("payload.") else condition.field
            value = event.payload.get(name)

        if value is None:
            return False
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            # a device sending the wrong type does not match
            logger.debug(f"Field '{condition.field}' is not numeric: {value!r}")
            return False
        return COMPARE_OPERATORS[condition.op](value, condition.value)
