"""
DLP Engine

Coordinates scans: enumerates a data source through its producer, classifies
every unit, evaluates policies and records the resulting violations.
"""
import dataclasses
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set, Union

from .classifiers import ContentClassifier
from .config import Config, ScanSettings
from .core import (
    Classification,
    DataContext,
    EngineStatus,
    PolicyDecision,
    RemediationStatus,
    ScanRequest,
    ScanResult,
    ScanStatus,
    SensitiveElement,
    Violation,
    utc_now,
)
from .errors import DuplicateScanError, ScanCancelledError
from .patterns import DataPattern, PatternRegistry, load_standard_patterns
from .policies import DLPPolicy, PolicyEvaluator, PolicyRegistry, load_standard_policies
from .sources import ScanUnit, SourceProducer, create_producer
from .violations import ViolationStore

logger = logging.getLogger('dlp.engine')

ViolationCallback = Callable[[Violation], None]


@dataclass
class _ActiveScan:
    request: ScanRequest
    cancel_event: threading.Event
    pattern_ids: Set[str] = field(default_factory=set)
    policy_ids: Set[str] = field(default_factory=set)


def _source_location(context: DataContext) -> str:
    if context.sender or context.recipient:
        return f"{context.sender or 'unknown'} -> {context.recipient or 'unknown'}"
    return str(context.metadata.get('path') or context.location)


class DLPEngine:
    """Main DLP engine that coordinates scanning, classification and policies."""

    def __init__(self, settings: Optional[ScanSettings] = None, load_builtins: bool = True):
        """Initialize the engine.

        Args:
            settings: Scan settings; defaults are used when omitted
            load_builtins: Install the standard patterns and policies
        """
        self.settings = settings or ScanSettings()
        self.patterns = PatternRegistry()
        self.policies = PolicyRegistry(self.patterns)
        self.classifier = ContentClassifier(self.patterns, self.settings.context_window)
        self.evaluator = PolicyEvaluator(self.patterns)
        self.violations = ViolationStore()

        self._scan_lock = threading.Lock()
        self._active: Dict[str, _ActiveScan] = {}
        self._results: Dict[str, ScanResult] = {}
        self._producers: Dict[str, SourceProducer] = {}

        self._status_lock = threading.Lock()
        self._status = EngineStatus()
        self._started = time.monotonic()

        self.patterns.add_in_use_check(self._pattern_in_flight)
        self.policies.add_in_use_check(self._policy_in_flight)

        if load_builtins:
            for pattern in load_standard_patterns():
                self.patterns.upsert(pattern)
            for policy in load_standard_policies():
                self.policies.upsert(policy)

    @classmethod
    def from_config(cls, config: Config) -> 'DLPEngine':
        """Build an engine from configuration, loading any rule files it names."""
        engine = cls(
            settings=config.scan_settings(),
            load_builtins=bool(config.get('rules.load_builtins', True)),
        )
        patterns_file = config.get('rules.patterns_file')
        if patterns_file:
            engine.patterns.load_file(patterns_file)
        policies_file = config.get('rules.policies_file')
        if policies_file:
            engine.policies.load_file(policies_file)
        return engine

    # Producers

    def register_producer(self, source: str, producer: SourceProducer) -> None:
        """Use ``producer`` for every scan of ``source``."""
        self._producers[source] = producer

    def _producer_for(self, source: str) -> SourceProducer:
        producer = self._producers.get(source)
        if producer is not None:
            return producer
        return create_producer(
            source,
            limit=self.settings.limit_for(source),
            sample_size=self.settings.database_sample_size,
        )

    # Classification and policy evaluation

    def classify(self, text: Union[str, bytes]) -> Classification:
        """Classify a text buffer against the current pattern registry."""
        return self.classifier.classify(text)

    def apply_policy(
        self,
        policy_id: str,
        context: DataContext,
        text: Union[str, bytes] = "",
        size_hint: Optional[int] = None
    ) -> PolicyDecision:
        """Evaluate a registered policy for ``text`` seen in ``context``.

        Raises:
            UnknownPolicyError: if no policy has this id
        """
        policy = self.policies.get(policy_id)
        patterns = self.patterns.snapshot()
        classification = self.classifier.classify(text, patterns)
        return self.evaluator.evaluate(policy, context, classification, size_hint, patterns)

    # Scanning

    def scan(
        self,
        request: ScanRequest,
        callback: Optional[ViolationCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ScanResult:
        """Run a scan to completion and return its result.

        Args:
            request: What to scan
            callback: Called with every violation as it is recorded; raising
                ScanCancelledError from it cancels the scan
            cancel_event: Event checked between units; ``cancel()`` sets it too

        Raises:
            DuplicateScanError: if the scan id was used before
        """
        started = time.monotonic()

        # Lock order: patterns, policies, scans (the same order remove() takes them)
        with self.patterns.lock, self.policies.lock, self._scan_lock:
            if request.scan_id in self._active or request.scan_id in self._results:
                raise DuplicateScanError(f"Scan id already used: {request.scan_id}")
            patterns = self.patterns.snapshot()
            policies = [p for p in self.policies.snapshot().values() if p.enabled]
            active = _ActiveScan(
                request=request,
                cancel_event=cancel_event or threading.Event(),
                pattern_ids={pid for p in policies for pid in p.pattern_ids},
                policy_ids={p.id for p in policies},
            )
            self._active[request.scan_id] = active
        with self._status_lock:
            self._status = dataclasses.replace(
                self._status, processed_events=self._status.processed_events + 1
            )

        logger.info(
            f"Starting {request.scan_type.value} scan {request.scan_id} of "
            f"{request.source} at {request.target_path or '-'}"
        )

        violations: List[Violation] = []
        total_scanned = 0
        with_violations = 0
        data_volume = 0
        status = ScanStatus.COMPLETED
        error = None

        try:
            producer = self._producer_for(request.source)
            for unit in producer.iter_units(request):
                if active.cancel_event.is_set():
                    status = ScanStatus.CANCELLED
                    break

                total_scanned += 1
                data_volume += unit.size_hint if unit.size_hint is not None else self.settings.default_size_hint

                unit_violations = self._evaluate_unit(request, unit, patterns, policies)
                if unit_violations:
                    with_violations += 1
                for violation in unit_violations:
                    self.violations.add(violation)
                    violations.append(violation)
                    if callback:
                        callback(violation)
        except ScanCancelledError:
            status = ScanStatus.CANCELLED
        except Exception as e:
            status = ScanStatus.FAILED
            error = str(e) or e.__class__.__name__
            logger.error(f"Scan {request.scan_id} failed: {error}", exc_info=True)

        result = self._commit(request, status, violations, total_scanned, with_violations,
                              data_volume, started, error)
        logger.info(
            f"Scan {request.scan_id} {result.status.value}: {result.total_scanned} unit(s), "
            f"{result.total_violations} violation(s), {result.high_risk_violations} high risk"
        )
        return result

    def _evaluate_unit(
        self,
        request: ScanRequest,
        unit: ScanUnit,
        patterns: Mapping[str, DataPattern],
        policies: List[DLPPolicy]
    ) -> List[Violation]:
        classification = self.classifier.classify(unit.text, patterns)
        if not classification.elements:
            return []

        order = {pattern_id: i for i, pattern_id in enumerate(patterns)}
        violations = []
        for policy in policies:
            decision = self.evaluator.evaluate(
                policy, unit.context, classification, unit.size_hint, patterns
            )
            if not decision.triggered:
                continue

            elements = classification.elements_for(policy.pattern_ids)
            dominant = min(elements, key=lambda e: (-e.confidence, order.get(e.pattern_id, 0), e.position))
            violations.append(self._make_violation(request, unit, policy, decision, elements, dominant))
        return violations

    def _make_violation(
        self,
        request: ScanRequest,
        unit: ScanUnit,
        policy: DLPPolicy,
        decision: PolicyDecision,
        elements: List[SensitiveElement],
        dominant: SensitiveElement
    ) -> Violation:
        location = _source_location(unit.context)
        details = (
            f"{decision.reason}: {len(elements)} sensitive element(s) "
            f"({dominant.data_type}) found in {location}"
        )
        return Violation(
            id=f"violation-{uuid.uuid4()}",
            scan_id=request.scan_id,
            policy_id=policy.id,
            policy_name=policy.name,
            severity=policy.severity,
            action_taken=decision.action,
            data_type=dominant.data_type,
            source_location=location,
            file_name=unit.context.file_name,
            violation_details=details,
            sensitive_data_count=len(elements),
            context=unit.context,
        )

    def _commit(
        self,
        request: ScanRequest,
        status: ScanStatus,
        violations: List[Violation],
        total_scanned: int,
        with_violations: int,
        data_volume: int,
        started: float,
        error: Optional[str]
    ) -> ScanResult:
        by_type: Dict[str, int] = {}
        for violation in violations:
            by_type[violation.data_type] = by_type.get(violation.data_type, 0) + 1
        high_risk = sum(1 for v in violations if v.is_high_risk)

        result = ScanResult(
            scan_id=request.scan_id,
            status=status,
            total_scanned=total_scanned,
            with_violations=with_violations,
            total_violations=len(violations),
            high_risk_violations=high_risk,
            violations_by_type=by_type,
            scan_duration_ms=int((time.monotonic() - started) * 1000),
            data_volume_scanned_bytes=data_volume,
            violations=violations,
            timestamp=utc_now(),
            error=error,
        )

        with self._scan_lock:
            self._results[request.scan_id] = result
            self._active.pop(request.scan_id, None)

        changes = {'active_alerts': high_risk}
        if status == ScanStatus.COMPLETED:
            changes['last_error'] = None
        elif status == ScanStatus.FAILED:
            changes['last_error'] = error
        self._update_status(**changes)
        return result

    def cancel(self, scan_id: str) -> bool:
        """Ask a running scan to stop at the next unit boundary."""
        with self._scan_lock:
            active = self._active.get(scan_id)
        if active is None:
            return False
        active.cancel_event.set()
        logger.info(f"Cancellation requested for scan {scan_id}")
        return True

    def _with_current_violations(self, result: ScanResult) -> ScanResult:
        # Remediation updates replace violations in the store; the committed
        # result only pins which violations belong to the scan.
        return dataclasses.replace(
            result,
            violations=[self.violations.get(v.id) for v in result.violations],
        )

    def get_scan_result(self, scan_id: str) -> Optional[ScanResult]:
        """The committed result of a scan, with violations as currently stored."""
        with self._scan_lock:
            result = self._results.get(scan_id)
        return self._with_current_violations(result) if result is not None else None

    def list_scan_results(self) -> List[ScanResult]:
        with self._scan_lock:
            results = list(self._results.values())
        return [self._with_current_violations(r) for r in results]

    def active_scans(self) -> List[str]:
        with self._scan_lock:
            return list(self._active)

    def _pattern_in_flight(self, pattern_id: str) -> bool:
        with self._scan_lock:
            return any(pattern_id in scan.pattern_ids for scan in self._active.values())

    def _policy_in_flight(self, policy_id: str) -> bool:
        with self._scan_lock:
            return any(policy_id in scan.policy_ids for scan in self._active.values())

    # Violations

    def update_remediation(
        self,
        violation_id: str,
        status: Union[RemediationStatus, str],
        assignee: Optional[str] = None
    ) -> Violation:
        """Advance a violation's remediation status."""
        return self.violations.transition(violation_id, status, assignee)

    # Status

    def _update_status(self, **changes) -> None:
        with self._status_lock:
            self._status = dataclasses.replace(self._status, **changes)

    def status(self) -> EngineStatus:
        """Snapshot of the engine counters."""
        with self._status_lock:
            current = self._status
        return dataclasses.replace(
            current,
            status="degraded" if current.last_error else "operational",
            uptime_seconds=round(time.monotonic() - self._started, 3),
            violations_recorded=self.violations.count(),
        )

    def health_check(self) -> Dict[str, object]:
        """Health check summary for monitoring."""
        status = self.status()
        return {
            'status': status.status,
            'healthy': status.operational,
            'uptime_seconds': status.uptime_seconds,
            'patterns': len(self.patterns),
            'policies': len(self.policies),
            'active_scans': len(self.active_scans()),
            'last_error': status.last_error,
        }
