"""Exception hierarchy for failures that are not expected business outcomes.

Expected outcomes (insufficient funds, team full, duplicate award, ...) are
returned as typed results by the services. The exceptions below abort the
enclosing transaction.
"""


class CoreError(Exception):
    """Base class for activity engine errors"""


class ValidationError(CoreError):
    """Bad input or reference; rejected before any state changes"""


class TemplateDefinitionError(ValidationError):
    """Stage graph failed definition-time validation"""


class IntegrityViolation(CoreError):
    """An invariant was broken; indicates a bug and must never be repaired silently"""


class TransientFailure(CoreError):
    """Concurrency conflict that persisted after bounded retries"""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class AggregateLockTimeout(TransientFailure):
    """Timed out waiting for an aggregate lock"""
