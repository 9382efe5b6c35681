"""
Data Classifiers for DLP

Scans text buffers with the registered data patterns, scores every match
and derives a risk level for the buffer as a whole.
"""
import logging
from typing import List, Mapping, Optional, Union

from .core import (
    RECOMMENDED_HANDLING,
    Classification,
    RiskLevel,
    SensitiveElement,
)
from .patterns import DataPattern, PatternRegistry

logger = logging.getLogger('dlp.classifiers')

BASE_CONFIDENCE = 0.7
KEYWORD_BOOST = 0.1
FALSE_POSITIVE_PENALTY = 0.3
CONTEXT_WINDOW = 50

UNKNOWN_DATA_TYPE = "unknown"


def mask_value(value: str) -> str:
    """Mask a matched value while keeping its length.

    Values of four characters or fewer are fully starred; longer values keep
    their first and last two characters.
    """
    if len(value) <= 4:
        return '*' * len(value)
    return value[:2] + '*' * (len(value) - 4) + value[-2:]


def extract_context(text: str, start: int, end: int, window: int = CONTEXT_WINDOW) -> str:
    """Return the unmodified text surrounding ``text[start:end]``."""
    return text[max(0, start - window):min(len(text), end + window)]


def risk_level_for(data_type: str, confidence: float, element_count: int) -> RiskLevel:
    """Map the dominant data type and its confidence to a risk level."""
    if element_count == 0:
        return RiskLevel.NONE
    if data_type in ('ssn', 'credit_card'):
        return RiskLevel.CRITICAL
    if data_type in ('email', 'phone') and confidence > 0.8:
        return RiskLevel.HIGH
    if data_type == 'confidential' and confidence > 0.7:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class ContentClassifier:
    """Classifies content using the regex patterns of a pattern registry."""

    def __init__(self, registry: PatternRegistry, context_window: int = CONTEXT_WINDOW):
        self.registry = registry
        self.context_window = context_window

    def score(self, pattern: DataPattern, text: str, start: int, end: int) -> float:
        """Confidence of a single match, clamped to [0, 1]."""
        window = extract_context(text, start, end, self.context_window).lower()
        hits = sum(1 for keyword in pattern.context_keywords if keyword.lower() in window)

        matched = text[start:end]
        false_positives = sum(1 for fp in pattern.compiled_false_positives if fp.search(matched))

        confidence = BASE_CONFIDENCE + KEYWORD_BOOST * hits - FALSE_POSITIVE_PENALTY * false_positives
        # Rounded so that 0.7 + 0.1 compares equal to a 0.8 floor
        return round(min(1.0, max(0.0, confidence)), 6)

    def find_elements(
        self,
        text: str,
        patterns: Optional[Mapping[str, DataPattern]] = None
    ) -> List[SensitiveElement]:
        """Return every emitted element, pattern by pattern in registry order."""
        if patterns is None:
            patterns = self.registry.snapshot()

        elements = []
        for pattern in patterns.values():
            if pattern.compiled is None:
                continue
            for match in pattern.compiled.finditer(text):
                value = match.group(0)
                if not value:
                    continue
                if not pattern.validate_match(value):
                    logger.debug(f"Match rejected by validators of {pattern.id}")
                    continue

                confidence = self.score(pattern, text, match.start(), match.end())
                if confidence < pattern.confidence_floor:
                    continue

                elements.append(SensitiveElement(
                    data_type=pattern.data_type,
                    masked_value=mask_value(value),
                    position=match.start(),
                    length=len(value),
                    confidence=confidence,
                    surrounding_context=extract_context(
                        text, match.start(), match.end(), self.context_window
                    ),
                    pattern_id=pattern.id,
                ))
        return elements

    def classify(
        self,
        content: Union[str, bytes],
        patterns: Optional[Mapping[str, DataPattern]] = None
    ) -> Classification:
        """Classify a text buffer.

        Args:
            content: Text to scan; bytes are decoded as UTF-8 with replacement
            patterns: Pattern snapshot to use instead of the live registry

        Returns:
            The classification with its elements in position order
        """
        text = content.decode('utf-8', errors='replace') if isinstance(content, bytes) else content
        elements = self.find_elements(text, patterns)

        # Elements are produced in registry order, so a strict comparison keeps
        # the earliest pattern on ties.
        data_type, max_confidence = UNKNOWN_DATA_TYPE, 0.0
        for element in elements:
            if element.confidence > max_confidence:
                data_type, max_confidence = element.data_type, element.confidence

        risk_level = risk_level_for(data_type, max_confidence, len(elements))
        elements.sort(key=lambda e: e.position)

        return Classification(
            data_type=data_type,
            confidence=max_confidence,
            elements=elements,
            risk_level=risk_level,
            recommended_handling=RECOMMENDED_HANDLING[risk_level],
        )
