"""
Exception types for the counseling form engine.

Two families:
- PersistenceError and subclasses: tagged failures raised by the external
  persistence collaborator. FormController never interprets them beyond
  catching; they are carried unchanged inside PersistenceFailed results.
- Programming errors (DerivationCycleError, SchemaError): raised at
  construction/registration time for invalid configuration.
"""


class PersistenceError(Exception):
    """
    Base class for persistence collaborator failures.

    Attributes:
        tag: Stable failure category ('NotFound', 'PermissionDenied',
             'ValidationFailed', 'Unknown')
        details: Optional structured payload from the remote side
    """
    tag = 'Unknown'

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(PersistenceError):
    tag = 'NotFound'


class PermissionDeniedError(PersistenceError):
    tag = 'PermissionDenied'


class ValidationFailedError(PersistenceError):
    tag = 'ValidationFailed'


class UnknownPersistenceError(PersistenceError):
    tag = 'Unknown'


class DerivationCycleError(ValueError):
    """Rule registration would introduce a cycle in the derivation graph"""


class SchemaError(ValueError):
    """Form schema or rule set file is malformed"""
