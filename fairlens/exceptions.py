"""
Exception types raised by the FairLens suitability engine.
"""

from typing import List


class FairLensError(Exception):
    """Base class for all FairLens errors."""


class ConfigurationError(FairLensError):
    """Raised when a required setting (API key, endpoint) is missing."""


class DocumentValidationError(FairLensError):
    """Uploaded documents failed the name/type checks.

    The message is the aggregated, bulleted list of issues and is shown to the
    user verbatim.
    """

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        super().__init__("Document Validation Failed:\n• " + "\n• ".join(self.issues))


class RunCancelled(FairLensError):
    """The run was superseded or cancelled. Never surfaced to the user."""


class DuplicateProductError(FairLensError):
    """Two catalog entries share the same product id."""


class ProductGenerationError(FairLensError):
    """The product-from-text generator returned something unusable."""


class StorageQuotaExceeded(FairLensError):
    """A session snapshot is larger than the backend accepts."""
