"""
Error Taxonomy
==============

Typed failures raised by the quality pipeline.

Every error carries a ``kind`` tag and a human-readable message
(``str(err)``). Configuration failures surface from
``QualityOrchestrator.create``; input failures from ``measure``.
State errors are programming-contract violations, not data errors.
"""


class QualityError(Exception):
    """Base class for all pipeline failures"""
    kind = "QualityError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ConfigurationError(QualityError):
    """Measurement configuration was rejected during validation"""
    kind = "ConfigurationError"


class MissingAudioInfoError(ConfigurationError):
    kind = "MissingAudioInfo"


class UnsupportedSampleRateError(ConfigurationError):
    kind = "UnsupportedSampleRate"


class ModelLoadFailureError(ConfigurationError):
    kind = "ModelLoadFailure"

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class InvalidInputSignalError(QualityError):
    """Empty, non-finite or too-short sample sequence at measure time"""
    kind = "InvalidInputSignal"


class OrchestratorStateError(QualityError, RuntimeError):
    """Orchestrator used out of its Create-then-Measure sequence"""
    kind = "OrchestratorState"


class NotConfiguredError(OrchestratorStateError):
    kind = "NotConfigured"


class AlreadyConfiguredError(OrchestratorStateError):
    kind = "AlreadyConfigured"
