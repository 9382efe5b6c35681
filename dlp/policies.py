"""
DLP Policy Engine

Defines data protection policies, the registry that holds them, and the
evaluator that decides what to do with a piece of classified content.
"""
import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .core import (
    Classification,
    DataContext,
    PolicyAction,
    PolicyDecision,
    Severity,
    normalize_source,
)
from .errors import (
    DanglingPatternReferenceError,
    InvalidPolicyError,
    PolicyInUseError,
    UnknownPolicyError,
)
from .patterns import DataPattern, PatternRegistry, _read_rules_file

logger = logging.getLogger('dlp.policies')

SCOPE_MISMATCH = "scope-mismatch"

CONDITION_WEIGHT = 0.3
PATTERN_WEIGHT = 0.4

RECOMMENDATIONS = {
    PolicyAction.BLOCK: ["Data transmission blocked", "Review data handling procedures"],
    PolicyAction.QUARANTINE: ["Data quarantined for review", "Contact security team"],
    PolicyAction.WARN: ["User warned about sensitive data", "Monitor future activities"],
}


class ConditionField(Enum):
    """Data context fields a condition can inspect."""
    FILE_SIZE = "file_size"
    SENDER = "sender"
    RECIPIENT = "recipient"
    LOCATION = "location"
    TIME = "time"


class ConditionOperator(Enum):
    """Comparison operators for policy conditions."""
    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    REGEX = "regex"


NUMERIC_OPERATORS = frozenset({ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN})


@dataclass
class PolicyCondition:
    """A single test against a data context field."""
    field: ConditionField
    operator: ConditionOperator
    value: str
    case_sensitive: bool = False

    def __post_init__(self):
        try:
            self.field = ConditionField(self.field)
            self.operator = ConditionOperator(self.operator)
        except ValueError as e:
            raise InvalidPolicyError(f"Invalid condition: {e}") from e
        self.value = str(self.value)

    def describe(self) -> str:
        return f"Condition: {self.field.value} {self.operator.value} {self.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field': self.field.value,
            'operator': self.operator.value,
            'value': self.value,
            'case_sensitive': self.case_sensitive,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PolicyCondition':
        return cls(
            field=data['field'],
            operator=data.get('operator') or data['op'],
            value=data.get('value', ''),
            case_sensitive=bool(data.get('case_sensitive', False)),
        )


@dataclass
class DLPPolicy:
    """A named rule combining patterns, conditions and an action."""
    id: str
    name: str
    severity: Severity
    action: PolicyAction
    pattern_ids: List[str]
    scope: List[str]
    description: str = ""
    data_types: List[str] = field(default_factory=list)
    conditions: List[PolicyCondition] = field(default_factory=list)
    exceptions: List[str] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self):
        if not self.id:
            raise InvalidPolicyError("Policy id must not be empty")
        try:
            self.severity = Severity(self.severity)
            self.action = PolicyAction(self.action)
            scope = [normalize_source(s) for s in self.scope]
        except ValueError as e:
            raise InvalidPolicyError(f"Policy '{self.id}': {e}") from e
        if not scope:
            raise InvalidPolicyError(f"Policy '{self.id}' must have a non-empty scope")
        # Keep order, drop duplicates introduced by aliases
        self.scope = list(dict.fromkeys(scope))
        self.conditions = [
            c if isinstance(c, PolicyCondition) else PolicyCondition.from_dict(c)
            for c in self.conditions
        ]

    def applies_to(self, source: str) -> bool:
        return source in self.scope

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'severity': self.severity.value,
            'action': self.action.value,
            'data_types': list(self.data_types),
            'pattern_ids': list(self.pattern_ids),
            'conditions': [c.to_dict() for c in self.conditions],
            'scope': list(self.scope),
            'exceptions': list(self.exceptions),
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DLPPolicy':
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            description=data.get('description', ''),
            severity=data.get('severity', Severity.MEDIUM.value),
            action=data.get('action', PolicyAction.WARN.value),
            data_types=list(data.get('data_types', [])),
            pattern_ids=list(data.get('pattern_ids', data.get('patterns', []))),
            conditions=list(data.get('conditions', [])),
            scope=list(data.get('scope', [])),
            exceptions=list(data.get('exceptions', [])),
            enabled=bool(data.get('enabled', True)),
        )


def _field_value(
    condition: PolicyCondition,
    context: DataContext,
    size_hint: Optional[int]
) -> str:
    if condition.field == ConditionField.FILE_SIZE:
        if 'file_size' in context.metadata:
            return str(context.metadata['file_size'])
        return str(size_hint) if size_hint is not None else ""
    if condition.field == ConditionField.SENDER:
        return context.sender or ""
    if condition.field == ConditionField.RECIPIENT:
        return context.recipient or ""
    if condition.field == ConditionField.LOCATION:
        return context.location or ""
    return str(int(context.timestamp.timestamp()))


def _as_int(value: str) -> Optional[int]:
    # Optionally negative decimal digits, nothing else
    if re.fullmatch(r'-?\d+', value) is None:
        return None
    return int(value)


def evaluate_condition(
    condition: PolicyCondition,
    context: DataContext,
    size_hint: Optional[int] = None
) -> bool:
    """Evaluate one condition against a data context.

    Non-numeric operands of ``greater_than``/``less_than`` and invalid
    ``regex`` values make the condition false instead of raising.
    """
    target = _field_value(condition, context, size_hint)
    expected = condition.value
    op = condition.operator

    if op == ConditionOperator.EQUALS:
        if condition.case_sensitive:
            return target == expected
        return target.casefold() == expected.casefold()

    if op == ConditionOperator.CONTAINS:
        if condition.case_sensitive:
            return expected in target
        return expected.casefold() in target.casefold()

    if op in NUMERIC_OPERATORS:
        left, right = _as_int(target), _as_int(expected)
        if left is None or right is None:
            return False
        return left > right if op == ConditionOperator.GREATER_THAN else left < right

    try:
        return re.search(expected, target) is not None
    except re.error:
        logger.debug(f"Ignoring invalid condition regex {expected!r}")
        return False


class PolicyRegistry:
    """Indexed set of policies, validated against a pattern registry."""

    def __init__(self, patterns: PatternRegistry, policies: Optional[Iterable[DLPPolicy]] = None):
        self.patterns = patterns
        self._lock = threading.RLock()
        self._policies: Dict[str, DLPPolicy] = {}
        self._in_use_checks = []
        patterns.add_in_use_check(self.references_pattern)
        for policy in policies or []:
            self.upsert(policy)

    def add_in_use_check(self, check) -> None:
        self._in_use_checks.append(check)

    @property
    def lock(self):
        return self._lock

    def upsert(self, policy: Union[DLPPolicy, Dict[str, Any]]) -> DLPPolicy:
        """Install or replace a policy by id."""
        if isinstance(policy, dict):
            policy = DLPPolicy.from_dict(policy)
        with self._lock:
            for pattern_id in policy.pattern_ids:
                if pattern_id not in self.patterns:
                    raise DanglingPatternReferenceError(policy.id, pattern_id)
            updated = dict(self._policies)
            updated[policy.id] = policy
            self._policies = updated
        logger.debug(f"Installed policy {policy.id} ({policy.name})")
        return policy

    def get(self, policy_id: str) -> DLPPolicy:
        try:
            return self._policies[policy_id]
        except KeyError:
            raise UnknownPolicyError(policy_id) from None

    def __contains__(self, policy_id: str) -> bool:
        return policy_id in self._policies

    def __len__(self) -> int:
        return len(self._policies)

    def list(self) -> List[DLPPolicy]:
        return list(self._policies.values())

    def enabled(self) -> List[DLPPolicy]:
        return [p for p in self._policies.values() if p.enabled]

    def snapshot(self) -> Dict[str, DLPPolicy]:
        return self._policies

    def references_pattern(self, pattern_id: str) -> bool:
        """Whether any enabled policy uses the pattern."""
        return any(pattern_id in p.pattern_ids for p in self._policies.values() if p.enabled)

    def remove(self, policy_id: str) -> DLPPolicy:
        with self._lock:
            if policy_id not in self._policies:
                raise UnknownPolicyError(policy_id)
            if any(check(policy_id) for check in self._in_use_checks):
                raise PolicyInUseError(f"Policy '{policy_id}' is used by a running scan")
            updated = dict(self._policies)
            removed = updated.pop(policy_id)
            self._policies = updated
        logger.info(f"Removed policy {policy_id}")
        return removed

    def load_file(self, file_path: Union[str, Path]) -> List[DLPPolicy]:
        """Load policies from a JSON or YAML file."""
        data = _read_rules_file(file_path, 'policies')
        loaded = [self.upsert(item) for item in data]
        logger.info(f"Loaded {len(loaded)} polic{'y' if len(loaded) == 1 else 'ies'} from {file_path}")
        return loaded


class PolicyEvaluator:
    """Decides the action a policy takes for a classified data context."""

    def __init__(self, patterns: PatternRegistry):
        self.patterns = patterns

    def evaluate(
        self,
        policy: DLPPolicy,
        context: DataContext,
        classification: Classification,
        size_hint: Optional[int] = None,
        patterns: Optional[Mapping[str, DataPattern]] = None
    ) -> PolicyDecision:
        """Evaluate a policy.

        Args:
            policy: The policy to evaluate
            context: Where the content came from
            classification: Classifier output for the same content
            size_hint: Producer-supplied size used when metadata has no file_size
            patterns: Pattern snapshot used to name matched patterns

        Returns:
            The decision; ``action`` is the policy action only when the policy
            is enabled, every condition holds and a referenced pattern matched.
        """
        if not policy.applies_to(context.source):
            return PolicyDecision(
                policy_id=policy.id,
                action=PolicyAction.ALLOW,
                confidence=1.0,
                reason=SCOPE_MISMATCH,
            )

        if patterns is None:
            patterns = self.patterns.snapshot()

        triggered_rules = []
        conditions_true = 0
        for condition in policy.conditions:
            if evaluate_condition(condition, context, size_hint):
                conditions_true += 1
                triggered_rules.append(condition.describe())

        matched_ids = {element.pattern_id for element in classification.elements}
        patterns_matched = 0
        for pattern_id in policy.pattern_ids:
            if pattern_id in matched_ids:
                patterns_matched += 1
                pattern = patterns.get(pattern_id)
                triggered_rules.append(f"Pattern: {pattern.name if pattern else pattern_id}")

        confidence = round(min(1.0, CONDITION_WEIGHT * conditions_true + PATTERN_WEIGHT * patterns_matched), 6)
        conditions_hold = conditions_true == len(policy.conditions)
        triggered = policy.enabled and conditions_hold and patterns_matched > 0

        if triggered:
            action = policy.action
            reason = f"Policy '{policy.name}' triggered by {len(triggered_rules)} rule(s)"
        elif not policy.enabled:
            action = PolicyAction.ALLOW
            reason = f"Policy '{policy.name}' is disabled"
        else:
            action = PolicyAction.ALLOW
            reason = "No policy violations detected"

        return PolicyDecision(
            policy_id=policy.id,
            action=action,
            confidence=confidence,
            reason=reason,
            triggered_rules=triggered_rules,
            recommendations=list(RECOMMENDATIONS.get(action, [])),
            metadata={'context': context.to_dict(), 'risk_level': classification.risk_level.value},
            triggered=triggered,
        )


def load_standard_policies() -> List[DLPPolicy]:
    """Built-in PII, financial-data and confidential-document policies."""
    return [
        DLPPolicy(
            id="pii-protection",
            name="PII Protection Policy",
            description="Protect personally identifiable information from unauthorized disclosure",
            severity=Severity.HIGH,
            action=PolicyAction.BLOCK,
            data_types=["pii", "ssn", "email"],
            pattern_ids=["ssn-pattern", "email-pattern"],
            scope=["email", "files"],
            exceptions=["hr-department"],
        ),
        DLPPolicy(
            id="financial-data",
            name="Financial Data Protection",
            description="Protect credit card and financial information",
            severity=Severity.CRITICAL,
            action=PolicyAction.QUARANTINE,
            data_types=["pci", "financial"],
            pattern_ids=["credit-card-pattern"],
            scope=["email", "files", "database"],
        ),
        DLPPolicy(
            id="confidential-documents",
            name="Confidential Document Protection",
            description="Protect documents marked as confidential or proprietary",
            severity=Severity.MEDIUM,
            action=PolicyAction.WARN,
            data_types=["confidential"],
            pattern_ids=["confidential-pattern"],
            conditions=[
                PolicyCondition(
                    field=ConditionField.LOCATION,
                    operator=ConditionOperator.CONTAINS,
                    value="external",
                ),
            ],
            scope=["email", "files"],
            exceptions=["approved-partners"],
        ),
    ]
