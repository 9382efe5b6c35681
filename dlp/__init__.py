"""
Data Loss Prevention (DLP) Module

Provides sensitive data discovery, classification, policy evaluation and
violation tracking.
"""

__version__ = "1.0.0"

from .core import (
    DataContext,
    Classification,
    SensitiveElement,
    PolicyDecision,
    Violation,
    ScanRequest,
    ScanResult,
    EngineStatus,
    SourceKind,
    Severity,
    PolicyAction,
    RiskLevel,
    RemediationStatus,
    ScanStatus,
    ScanType,
)
from .patterns import DataPattern, PatternRegistry
from .policies import DLPPolicy, PolicyCondition, PolicyRegistry, PolicyEvaluator
from .classifiers import ContentClassifier
from .violations import ViolationStore
from .engine import DLPEngine
from .config import Config, ScanSettings

__all__ = [
    'DataContext',
    'Classification',
    'SensitiveElement',
    'PolicyDecision',
    'Violation',
    'ScanRequest',
    'ScanResult',
    'EngineStatus',
    'SourceKind',
    'Severity',
    'PolicyAction',
    'RiskLevel',
    'RemediationStatus',
    'ScanStatus',
    'ScanType',
    'DataPattern',
    'PatternRegistry',
    'DLPPolicy',
    'PolicyCondition',
    'PolicyRegistry',
    'PolicyEvaluator',
    'ContentClassifier',
    'ViolationStore',
    'DLPEngine',
    'Config',
    'ScanSettings',
]
