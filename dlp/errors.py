"""
DLP Errors

Exception hierarchy raised by the DLP registries, stores and scan engine.
"""


class DLPError(Exception):
    """Base class for all DLP engine errors."""


class InvalidPatternError(DLPError):
    """A data pattern failed validation and was not installed."""


class InvalidRegexError(InvalidPatternError):
    """A pattern regex (or one of its false-positive regexes) does not compile."""

    def __init__(self, pattern_id: str, regex: str, reason: str):
        self.pattern_id = pattern_id
        self.regex = regex
        self.reason = reason
        super().__init__(f"Invalid regex for pattern '{pattern_id}': {regex!r} ({reason})")


class InvalidPolicyError(DLPError):
    """A policy failed validation and was not installed."""


class DanglingPatternReferenceError(InvalidPolicyError):
    """A policy references a pattern id that is not registered."""

    def __init__(self, policy_id: str, pattern_id: str):
        self.policy_id = policy_id
        self.pattern_id = pattern_id
        super().__init__(f"Policy '{policy_id}' references unknown pattern '{pattern_id}'")


class UnknownPatternError(DLPError, KeyError):
    """Lookup of a pattern id that is not registered."""

    def __str__(self) -> str:
        return f"Unknown pattern: {self.args[0]}"


class UnknownPolicyError(DLPError, KeyError):
    """Lookup of a policy id that is not registered."""

    def __str__(self) -> str:
        return f"Unknown policy: {self.args[0]}"


class UnknownViolationError(DLPError, KeyError):
    """Lookup of a violation id that is not stored."""

    def __str__(self) -> str:
        return f"Unknown violation: {self.args[0]}"


class PatternInUseError(DLPError):
    """A pattern cannot be removed while a policy or a running scan uses it."""


class PolicyInUseError(DLPError):
    """A policy cannot be removed while a running scan uses it."""


class IllegalRemediationTransitionError(DLPError):
    """A violation's remediation status cannot move to the requested state."""

    def __init__(self, violation_id: str, current: str, requested: str):
        self.violation_id = violation_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Violation '{violation_id}' cannot move from '{current}' to '{requested}'"
        )


class SourceProducerError(DLPError):
    """A source producer failed while enumerating scan units."""


class ScanCancelledError(DLPError):
    """Raised inside a producer or callback to stop a scan early."""


class DuplicateScanError(DLPError):
    """A scan id was reused."""
