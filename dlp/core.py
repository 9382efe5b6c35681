"""
DLP Core Module

Data model shared by the classifier, the policy evaluator and the scan engine.
"""
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# Default size hint for a scanned unit when the producer has no real value
DEFAULT_SIZE_HINT = 1024 * 1024


class SourceKind(Enum):
    """Kinds of data sources a scan can target."""
    EMAIL = "email"
    FILE_SYSTEM = "file_system"
    DATABASE = "database"
    NETWORK = "network"
    ENDPOINT = "endpoint"
    CLOUD = "cloud"


# Shorthand accepted in policy scopes
SCOPE_ALIASES = {
    "files": SourceKind.FILE_SYSTEM.value,
}


class Severity(Enum):
    """Severity of a policy and of the violations it produces."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


HIGH_RISK_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


class PolicyAction(Enum):
    """Actions a triggered policy asks for."""
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"
    QUARANTINE = "quarantine"
    ENCRYPT = "encrypt"


class RiskLevel(Enum):
    """Risk level of classified content."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RECOMMENDED_HANDLING = {
    RiskLevel.CRITICAL: "encrypt_and_restrict_access",
    RiskLevel.HIGH: "restrict_access",
    RiskLevel.MEDIUM: "monitor_access",
    RiskLevel.LOW: "standard_handling",
    RiskLevel.NONE: "no_special_handling",
}


class RemediationStatus(Enum):
    """Lifecycle label on a violation."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    ACCEPTED_RISK = "accepted_risk"


class ScanStatus(Enum):
    """State of a scan."""
    COMPLETED = "completed"
    RUNNING = "running"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScanType(Enum):
    """How much of the target a scan covers."""
    FULL = "full"
    INCREMENTAL = "incremental"
    TARGETED = "targeted"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_source(source: Union[str, SourceKind]) -> str:
    """Return the canonical source kind string, resolving scope aliases.

    Raises:
        ValueError: if the source kind is not recognised
    """
    if isinstance(source, SourceKind):
        return source.value
    value = str(source).strip().lower()
    value = SCOPE_ALIASES.get(value, value)
    return SourceKind(value).value


def _parse_timestamp(value: Any) -> datetime:
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_metadata(value: Any) -> Dict[str, Any]:
    if value is None or value == "":
        return {}
    if isinstance(value, dict):
        return dict(value)
    decoded = json.loads(value)
    if not isinstance(decoded, dict):
        raise ValueError("metadata must be a JSON object")
    return decoded


@dataclass(frozen=True)
class DataContext:
    """Where a scanned unit came from. Never mutated once created."""
    source: str
    location: str
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'source', normalize_source(self.source))
        object.__setattr__(self, 'timestamp', _parse_timestamp(self.timestamp))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary; metadata is a JSON string."""
        return {
            'source': self.source,
            'location': self.location,
            'file_name': self.file_name,
            'file_type': self.file_type,
            'sender': self.sender,
            'recipient': self.recipient,
            'timestamp': self.timestamp.isoformat(),
            'metadata': json.dumps(self.metadata, sort_keys=True, default=str),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DataContext':
        """Create a context from a dictionary; metadata may be a dict or a JSON string."""
        return cls(
            source=data['source'],
            location=data.get('location', ''),
            file_name=data.get('file_name'),
            file_type=data.get('file_type'),
            sender=data.get('sender'),
            recipient=data.get('recipient'),
            timestamp=_parse_timestamp(data.get('timestamp')),
            metadata=_parse_metadata(data.get('metadata')),
        )


@dataclass
class SensitiveElement:
    """A single sensitive match inside a text buffer."""
    data_type: str
    masked_value: str
    position: int
    length: int
    confidence: float
    surrounding_context: str
    pattern_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Classification:
    """Aggregate result of running every pattern over a text buffer."""
    data_type: str
    confidence: float
    elements: List[SensitiveElement] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.NONE
    recommended_handling: str = RECOMMENDED_HANDLING[RiskLevel.NONE]

    def elements_for(self, pattern_ids) -> List[SensitiveElement]:
        """Elements produced by any of the given pattern ids, in position order."""
        wanted = set(pattern_ids)
        return [e for e in self.elements if e.pattern_id in wanted]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data_type': self.data_type,
            'confidence': self.confidence,
            'elements': [e.to_dict() for e in self.elements],
            'risk_level': self.risk_level.value,
            'recommended_handling': self.recommended_handling,
        }


@dataclass
class PolicyDecision:
    """Outcome of evaluating one policy against one data context."""
    policy_id: str
    action: PolicyAction
    confidence: float
    reason: str
    triggered_rules: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    triggered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'policy_id': self.policy_id,
            'action': self.action.value,
            'confidence': self.confidence,
            'reason': self.reason,
            'triggered_rules': list(self.triggered_rules),
            'recommendations': list(self.recommendations),
            'metadata': json.dumps(self.metadata, sort_keys=True, default=str),
            'triggered': self.triggered,
        }


@dataclass(frozen=True)
class Violation:
    """A record produced when a policy triggers on a scanned unit.

    Only ``remediation_status`` and ``assignee`` ever change, and only
    through :class:`dlp.violations.ViolationStore`, which swaps in a
    replaced copy.
    """
    id: str
    scan_id: str
    policy_id: str
    policy_name: str
    severity: Severity
    action_taken: PolicyAction
    data_type: str
    source_location: str
    violation_details: str
    sensitive_data_count: int
    context: DataContext
    file_name: Optional[str] = None
    remediation_status: RemediationStatus = RemediationStatus.PENDING
    assignee: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.sensitive_data_count < 1:
            raise ValueError("sensitive_data_count must be at least 1")

    @property
    def is_high_risk(self) -> bool:
        return self.severity in HIGH_RISK_SEVERITIES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'scan_id': self.scan_id,
            'policy_id': self.policy_id,
            'policy_name': self.policy_name,
            'severity': self.severity.value,
            'action_taken': self.action_taken.value,
            'data_type': self.data_type,
            'source_location': self.source_location,
            'file_name': self.file_name,
            'violation_details': self.violation_details,
            'sensitive_data_count': self.sensitive_data_count,
            'context': self.context.to_dict(),
            'remediation_status': self.remediation_status.value,
            'assignee': self.assignee,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class ScanRequest:
    """A request to scan one data source."""
    scan_id: str
    source: str
    target_path: str = ""
    scan_type: ScanType = ScanType.FULL
    include_archives: bool = False
    max_file_size: int = 10 * 1024 * 1024
    file_types: List[str] = field(default_factory=list)
    exclusions: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.source = normalize_source(self.source)
        if not isinstance(self.scan_type, ScanType):
            self.scan_type = ScanType(str(self.scan_type).lower())
        if self.max_file_size <= 0:
            raise ValueError("max_file_size must be positive")

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['scan_type'] = self.scan_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScanRequest':
        return cls(
            scan_id=data['scan_id'],
            source=data.get('source') or data['data_source'],
            target_path=data.get('target_path', ''),
            scan_type=data.get('scan_type', ScanType.FULL.value),
            include_archives=bool(data.get('include_archives', False)),
            max_file_size=int(data.get('max_file_size', 10 * 1024 * 1024)),
            file_types=list(data.get('file_types', [])),
            exclusions=list(data.get('exclusions', [])),
        )


@dataclass
class ScanResult:
    """Outcome of a scan. Written once per scan id."""
    scan_id: str
    status: ScanStatus
    total_scanned: int = 0
    with_violations: int = 0
    total_violations: int = 0
    high_risk_violations: int = 0
    violations_by_type: Dict[str, int] = field(default_factory=dict)
    scan_duration_ms: int = 0
    data_volume_scanned_bytes: int = 0
    violations: List[Violation] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary.

        ``violations_by_type`` is encoded as a JSON object string.
        """
        return {
            'scan_id': self.scan_id,
            'status': self.status.value,
            'total_scanned': self.total_scanned,
            'with_violations': self.with_violations,
            'total_violations': self.total_violations,
            'high_risk_violations': self.high_risk_violations,
            'violations_by_type': json.dumps(self.violations_by_type, sort_keys=True),
            'scan_duration_ms': self.scan_duration_ms,
            'data_volume_scanned_bytes': self.data_volume_scanned_bytes,
            'violations': [v.to_dict() for v in self.violations],
            'timestamp': self.timestamp.isoformat(),
            'error': self.error,
        }


@dataclass(frozen=True)
class EngineStatus:
    """Snapshot of the engine's counters and health."""
    status: str = "operational"
    uptime_seconds: float = 0.0
    processed_events: int = 0
    active_alerts: int = 0
    violations_recorded: int = 0
    last_error: Optional[str] = None

    @property
    def operational(self) -> bool:
        return self.status == "operational"

    @property
    def processed_scans(self) -> int:
        return self.processed_events

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
