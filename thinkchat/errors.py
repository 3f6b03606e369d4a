"""
Error types raised while resolving a model or running a generation.
"""

from enum import Enum


class ResolutionErrorKind(str, Enum):
    """Why a model could not be resolved into a ready handle."""

    NOT_FOUND = "not found"
    DOWNLOAD_FAILED = "download failed"
    CONFIG_INVALID = "invalid configuration"
    WEIGHT_LOAD_FAILED = "weight loading failed"


class GenerationErrorKind(str, Enum):
    """Why a generation run failed after the model was resolved."""

    INPUT_PREP_FAILED = "input preparation failed"
    ENGINE_FAILURE = "engine failure"


class ResolutionError(Exception):
    """Exception raised when a model identity cannot be loaded."""

    def __init__(self, kind: ResolutionErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class GenerationError(Exception):
    """Exception raised when the model fails to produce output."""

    def __init__(self, kind: GenerationErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"
