"""
Pipeline Errors

Fatal errors abort the invocation and are re-raised to the caller.
Recoverable data problems are recorded as DataQualityIssue entries and
never interrupt a run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple


class PipelineError(Exception):
    """Base class for fatal pipeline errors"""


class ConfigurationError(PipelineError):
    """A required table or column is missing, or an option is invalid"""


class LockTimeoutError(PipelineError):
    """The process-wide pipeline lock could not be acquired in time"""

    def __init__(self, timeout: float, holder: Optional[str] = None):
        self.timeout = timeout
        self.holder = holder
        message = f"Could not acquire pipeline lock within {timeout:g}s"
        if holder:
            message += f" ({holder})"
        super().__init__(message)


@dataclass
class DataQualityIssue:
    """A recovered data problem destined for the Exceptions log"""
    type: str  # MISSING_SKU | SKU_NOT_IN_MATRIX
    order_name: str
    item_id: str
    sku: str
    message: str
    logged_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> Tuple[str, str, str, str]:
        """Identity of the problem, independent of when it was logged"""
        return (self.type, self.order_name, self.item_id, self.sku)
