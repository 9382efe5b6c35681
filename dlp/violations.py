"""
DLP Violation Store

Append-only record of policy violations and their remediation lifecycle.
"""
import dataclasses
import logging
import threading
from datetime import timedelta
from typing import Dict, List, Optional, Union

from .core import RemediationStatus, Violation, utc_now
from .errors import DLPError, IllegalRemediationTransitionError, UnknownViolationError

logger = logging.getLogger('dlp.violations')

# Legal next states for each remediation status
REMEDIATION_TRANSITIONS = {
    RemediationStatus.PENDING: frozenset({RemediationStatus.IN_PROGRESS}),
    RemediationStatus.IN_PROGRESS: frozenset({
        RemediationStatus.RESOLVED,
        RemediationStatus.ACCEPTED_RISK,
    }),
    RemediationStatus.RESOLVED: frozenset(),
    RemediationStatus.ACCEPTED_RISK: frozenset(),
}


class ViolationStore:
    """Thread-safe, append-only map of violation id to violation."""

    def __init__(self):
        self._lock = threading.Lock()
        self._violations: Dict[str, Violation] = {}

    def add(self, violation: Violation) -> Violation:
        """Record a new violation. Ids are never reused."""
        with self._lock:
            if violation.id in self._violations:
                raise DLPError(f"Violation '{violation.id}' is already recorded")
            self._violations[violation.id] = violation
        return violation

    def get(self, violation_id: str) -> Violation:
        with self._lock:
            try:
                return self._violations[violation_id]
            except KeyError:
                raise UnknownViolationError(violation_id) from None

    def _values(self) -> List[Violation]:
        with self._lock:
            return list(self._violations.values())

    def list(self) -> List[Violation]:
        return self._values()

    def count(self) -> int:
        with self._lock:
            return len(self._violations)

    def __len__(self) -> int:
        return self.count()

    def by_policy(self, policy_id: str) -> List[Violation]:
        return [v for v in self._values() if v.policy_id == policy_id]

    def by_scan(self, scan_id: str) -> List[Violation]:
        return [v for v in self._values() if v.scan_id == scan_id]

    def recent(self, window: Union[timedelta, int, float] = 24) -> List[Violation]:
        """Violations newer than ``now - window``.

        Args:
            window: A timedelta, or a number of hours
        """
        if not isinstance(window, timedelta):
            window = timedelta(hours=window)
        threshold = utc_now() - window
        return [v for v in self._values() if v.timestamp > threshold]

    def transition(
        self,
        violation_id: str,
        status: Union[RemediationStatus, str],
        assignee: Optional[str] = None
    ) -> Violation:
        """Move a violation to its next remediation status.

        Raises:
            UnknownViolationError: if the violation is not stored
            IllegalRemediationTransitionError: if the move is not allowed; the
                violation is left unchanged
        """
        with self._lock:
            try:
                current = self._violations[violation_id]
            except KeyError:
                raise UnknownViolationError(violation_id) from None

            try:
                status = RemediationStatus(status)
            except ValueError:
                raise IllegalRemediationTransitionError(
                    violation_id, current.remediation_status.value, str(status)
                ) from None
            if status not in REMEDIATION_TRANSITIONS[current.remediation_status]:
                raise IllegalRemediationTransitionError(
                    violation_id, current.remediation_status.value, status.value
                )

            changes = {'remediation_status': status}
            if assignee is not None:
                changes['assignee'] = assignee
            updated = dataclasses.replace(current, **changes)
            self._violations[violation_id] = updated

        logger.info(
            f"Violation {violation_id}: {current.remediation_status.value} -> {status.value}"
        )
        return updated

    def assign(self, violation_id: str, assignee: Optional[str]) -> Violation:
        """Set or clear the assignee without touching the remediation status."""
        with self._lock:
            try:
                current = self._violations[violation_id]
            except KeyError:
                raise UnknownViolationError(violation_id) from None
            updated = dataclasses.replace(current, assignee=assignee)
            self._violations[violation_id] = updated
        return updated
