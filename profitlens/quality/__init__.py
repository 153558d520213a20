"""
Data Quality Module
"""
from .validators import (
    CostConfigValidator,
    CostConfiguration,
    ValidationCheck,
    ValidationResult,
    ValidationSeverity,
    ValidationStatus,
    window_is_valid,
)

__all__ = [
    "CostConfigValidator",
    "CostConfiguration",
    "ValidationCheck",
    "ValidationResult",
    "ValidationSeverity",
    "ValidationStatus",
    "window_is_valid",
]
