"""
DLP Data Patterns

Defines sensitive-data patterns, their validators, and the registry that
holds them.
"""
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import yaml

from .errors import (
    InvalidPatternError,
    InvalidRegexError,
    PatternInUseError,
    UnknownPatternError,
)

logger = logging.getLogger('dlp.patterns')


def luhn_valid(text: str) -> bool:
    """Validate the digits of ``text`` with the Luhn checksum."""
    digits = [int(c) for c in text if c.isdigit()]
    if len(digits) < 2:
        return False
    checksum = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        checksum += digit
    return checksum % 10 == 0


def domain_valid(text: str) -> bool:
    """Check that an email address has a well-formed domain part."""
    _, sep, domain = text.rpartition('@')
    if not sep or not domain:
        return False
    labels = domain.split('.')
    if len(labels) < 2 or any(not label for label in labels):
        return False
    return labels[-1].isalpha() and len(labels[-1]) >= 2


# Named checks a pattern may list in ``validators``
VALIDATORS: Dict[str, Callable[[str], bool]] = {
    'luhn': luhn_valid,
    'domain': domain_valid,
}


@dataclass
class DataPattern:
    """Pattern for identifying sensitive data."""
    id: str
    name: str
    data_type: str
    regex: str
    confidence_floor: float = 0.8
    context_keywords: List[str] = field(default_factory=list)
    validators: List[str] = field(default_factory=list)
    false_positive_patterns: List[str] = field(default_factory=list)
    description: str = ""

    # Populated by compile()
    compiled: Optional[re.Pattern] = field(default=None, repr=False, compare=False)
    compiled_false_positives: List[re.Pattern] = field(default_factory=list, repr=False, compare=False)

    def compile(self) -> 'DataPattern':
        """Validate the pattern and compile its regexes.

        Raises:
            InvalidRegexError: if the regex or a false-positive regex fails to compile
            InvalidPatternError: if the confidence floor or a validator is invalid
        """
        if not self.id:
            raise InvalidPatternError("Pattern id must not be empty")
        if not 0.0 < self.confidence_floor <= 1.0:
            raise InvalidPatternError(
                f"Pattern '{self.id}' confidence_floor must be in (0, 1], got {self.confidence_floor}"
            )
        unknown = [name for name in self.validators if name not in VALIDATORS]
        if unknown:
            raise InvalidPatternError(f"Pattern '{self.id}' uses unknown validators: {unknown}")

        self.compiled = self._compile_one(self.regex)
        self.compiled_false_positives = [self._compile_one(p) for p in self.false_positive_patterns]
        return self

    def _compile_one(self, regex: str) -> re.Pattern:
        try:
            return re.compile(regex)
        except (re.error, TypeError) as e:
            raise InvalidRegexError(self.id, regex, str(e)) from e

    def validate_match(self, text: str) -> bool:
        """Run every named validator against a matched substring."""
        return all(VALIDATORS[name](text) for name in self.validators)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'data_type': self.data_type,
            'regex': self.regex,
            'confidence_floor': self.confidence_floor,
            'context_keywords': list(self.context_keywords),
            'validators': list(self.validators),
            'false_positive_patterns': list(self.false_positive_patterns),
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DataPattern':
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            data_type=data.get('data_type', 'custom'),
            regex=data.get('regex') or data['regex_pattern'],
            confidence_floor=float(data.get('confidence_floor', data.get('confidence_threshold', 0.8))),
            context_keywords=list(data.get('context_keywords', [])),
            validators=list(data.get('validators', [])),
            false_positive_patterns=list(data.get('false_positive_patterns', [])),
            description=data.get('description', ''),
        )


class PatternRegistry:
    """Indexed set of compiled data patterns.

    Readers get the current snapshot without locking; writers build a new
    snapshot under the lock and swap it in.
    """

    def __init__(self, patterns: Optional[Iterable[DataPattern]] = None):
        self._lock = threading.RLock()
        self._patterns: Dict[str, DataPattern] = {}
        # Each check returns True when an enabled policy or a running scan needs the pattern
        self._in_use_checks: List[Callable[[str], bool]] = []
        for pattern in patterns or []:
            self.upsert(pattern)

    def add_in_use_check(self, check: Callable[[str], bool]) -> None:
        self._in_use_checks.append(check)

    @property
    def lock(self):
        """Writer lock; while it is held no upsert or remove can swap the snapshot."""
        return self._lock

    def upsert(self, pattern: Union[DataPattern, Dict[str, Any]]) -> DataPattern:
        """Install or replace a pattern by id."""
        if isinstance(pattern, dict):
            pattern = DataPattern.from_dict(pattern)
        pattern.compile()
        with self._lock:
            updated = dict(self._patterns)
            replaced = pattern.id in updated
            updated[pattern.id] = pattern
            self._patterns = updated
        logger.debug(f"{'Replaced' if replaced else 'Added'} pattern {pattern.id}")
        return pattern

    def get(self, pattern_id: str) -> DataPattern:
        try:
            return self._patterns[pattern_id]
        except KeyError:
            raise UnknownPatternError(pattern_id) from None

    def __contains__(self, pattern_id: str) -> bool:
        return pattern_id in self._patterns

    def __len__(self) -> int:
        return len(self._patterns)

    def list(self) -> List[DataPattern]:
        """All patterns in insertion order."""
        return list(self._patterns.values())

    def list_by_data_type(self, data_type: str) -> List[DataPattern]:
        return [p for p in self._patterns.values() if p.data_type == data_type]

    def snapshot(self) -> Dict[str, DataPattern]:
        """The current id -> pattern mapping. Never mutated after publication."""
        return self._patterns

    def remove(self, pattern_id: str) -> DataPattern:
        """Remove a pattern that no enabled policy or running scan uses."""
        with self._lock:
            if pattern_id not in self._patterns:
                raise UnknownPatternError(pattern_id)
            if any(check(pattern_id) for check in self._in_use_checks):
                raise PatternInUseError(f"Pattern '{pattern_id}' is still referenced")
            updated = dict(self._patterns)
            removed = updated.pop(pattern_id)
            self._patterns = updated
        logger.info(f"Removed pattern {pattern_id}")
        return removed

    def load_file(self, file_path: Union[str, Path]) -> List[DataPattern]:
        """Load patterns from a JSON or YAML file.

        The file holds either a list of pattern mappings or a mapping with a
        ``patterns`` key.
        """
        data = _read_rules_file(file_path, 'patterns')
        loaded = [self.upsert(item) for item in data]
        logger.info(f"Loaded {len(loaded)} pattern(s) from {file_path}")
        return loaded


def _read_rules_file(file_path: Union[str, Path], key: str) -> List[Dict[str, Any]]:
    path = Path(file_path)
    with open(path, 'r', encoding='utf-8') as f:
        if path.suffix.lower() == '.json':
            data = json.load(f)
        else:  # Assume YAML
            data = yaml.safe_load(f)
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get(key, [data] if 'id' in data else [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of {key}")
    return data


def load_standard_patterns() -> List[DataPattern]:
    """Built-in patterns for SSNs, card numbers, emails and confidentiality markers."""
    return [
        DataPattern(
            id="ssn-pattern",
            name="Social Security Number",
            data_type="ssn",
            regex=r'\b\d{3}-?\d{2}-?\d{4}\b',
            confidence_floor=0.8,
            context_keywords=["ssn", "social", "security"],
            false_positive_patterns=[r'\d{3}-?\d{2}-?0000'],
            description="US Social Security Numbers",
        ),
        DataPattern(
            id="credit-card-pattern",
            name="Credit Card Number",
            data_type="credit_card",
            regex=r'\b(?:\d{4}[-\s]?){3}\d{4}\b',
            confidence_floor=0.9,
            context_keywords=["card", "visa", "mastercard", "amex"],
            validators=["luhn"],
            false_positive_patterns=[r'0000[-\s]?0000[-\s]?0000[-\s]?0000'],
            description="Credit card numbers in four groups of four digits",
        ),
        DataPattern(
            id="email-pattern",
            name="Email Address",
            data_type="email",
            regex=r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b',
            confidence_floor=0.95,
            context_keywords=["email", "contact", "address"],
            validators=["domain"],
            false_positive_patterns=[r'test@example\.com'],
        ),
        DataPattern(
            id="confidential-pattern",
            name="Confidential Content",
            data_type="confidential",
            regex=r'(?i)\b(confidential|proprietary|internal\s+use|restricted)\b',
            confidence_floor=0.7,
            context_keywords=["confidential", "proprietary", "restricted"],
            description="Documents marked confidential or proprietary",
        ),
    ]
