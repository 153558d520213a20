"""
Cost Configuration Validation

Rule-based checks over merchant-configured cost rules and variant cost
components. Invalid records are never raised to the caller: they are
reported and treated as inactive so allocation proceeds with the remaining
valid configuration.

Checks:
- Record shape (parses into the entity schema)
- Effective window (effective_to >= effective_from, no unparsable bounds)
- Calculation / frequency vocabulary
- Value sign and percentage bounds
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import structlog
from pydantic import ValidationError

from profitlens.exceptions import MalformedCostConfigError
from profitlens.ingestion.schemas import (
    CALCULATIONS,
    COST_TYPES,
    FREQUENCIES,
    CostRule,
    VariantCostComponent,
)

logger = structlog.get_logger(__name__)


class ValidationSeverity(str, Enum):
    """Severity levels for validation failures"""
    ERROR = "error"  # record is treated as inactive
    WARNING = "warning"  # record is applied, issue is logged
    INFO = "info"


class ValidationStatus(str, Enum):
    """Overall validation status"""
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class ValidationCheck:
    """Single validation check result"""
    name: str
    passed: bool
    severity: ValidationSeverity
    message: str
    record_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class ValidationResult:
    """Complete validation suite result"""
    status: ValidationStatus
    total_checks: int
    passed_checks: int
    failed_checks: int
    warning_count: int
    checks: List[ValidationCheck] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        """Percentage of passed checks"""
        if self.total_checks == 0:
            return 100.0
        return (self.passed_checks / self.total_checks) * 100

    @property
    def rejected_ids(self) -> List[str]:
        return sorted({
            check.record_id for check in self.checks
            if not check.passed and check.severity == ValidationSeverity.ERROR and check.record_id
        })


@dataclass
class CostConfiguration:
    """Validated cost configuration ready for allocation"""
    rules: List[CostRule] = field(default_factory=list)
    components: List[VariantCostComponent] = field(default_factory=list)
    result: Optional[ValidationResult] = None


def _bound(value: Optional[float]) -> Tuple[bool, float]:
    """(valid, value) for an optional window bound"""
    if value is None:
        return True, 0.0
    return not math.isnan(value), value


def window_is_valid(effective_from: Optional[float], effective_to: Optional[float]) -> bool:
    """Open bounds are fine; unparsable bounds or to < from are not"""
    from_ok, start = _bound(effective_from)
    to_ok, end = _bound(effective_to)
    if not (from_ok and to_ok):
        return False
    if effective_from is not None and effective_to is not None and end < start:
        return False
    return True


class CostConfigValidator:
    """
    Validator for cost rules and variant cost components.

    Example:
        validator = CostConfigValidator()
        config = validator.validate(raw_rules, raw_components)
        engine_rules = config.rules  # only the valid ones
    """

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode  # Warnings also reject the record

    def _check_window(self, kind: str, record: Union[CostRule, VariantCostComponent]) -> ValidationCheck:
        passed = window_is_valid(record.effective_from, record.effective_to)
        return ValidationCheck(
            name=f"{kind}_effective_window",
            passed=passed,
            severity=ValidationSeverity.ERROR,
            message="Effective window is valid" if passed else "Effective window is malformed",
            record_id=record.id,
            details={"effective_from": record.effective_from, "effective_to": record.effective_to},
        )

    def check_rule(self, rule: CostRule) -> List[ValidationCheck]:
        """Run every rule check"""
        checks = [self._check_window("rule", rule)]

        calculation_ok = rule.calculation in CALCULATIONS
        checks.append(ValidationCheck(
            name="rule_calculation",
            passed=calculation_ok,
            severity=ValidationSeverity.ERROR,
            message=(
                f"Calculation '{rule.calculation}' is supported" if calculation_ok
                else f"Unsupported calculation '{rule.calculation}'"
            ),
            record_id=rule.id,
        ))

        type_ok = rule.type in COST_TYPES
        checks.append(ValidationCheck(
            name="rule_type",
            passed=type_ok,
            severity=ValidationSeverity.WARNING,
            message=(
                f"Type '{rule.type}' is known" if type_ok
                else f"Unknown type '{rule.type}', routed to other costs"
            ),
            record_id=rule.id,
        ))

        if rule.frequency is not None:
            frequency_ok = rule.frequency in FREQUENCIES
            checks.append(ValidationCheck(
                name="rule_frequency",
                passed=frequency_ok,
                severity=ValidationSeverity.ERROR,
                message=(
                    f"Frequency '{rule.frequency}' is supported" if frequency_ok
                    else f"Unsupported frequency '{rule.frequency}'"
                ),
                record_id=rule.id,
            ))

        checks.append(ValidationCheck(
            name="rule_value_non_negative",
            passed=rule.value >= 0,
            severity=ValidationSeverity.ERROR,
            message="Value is non-negative" if rule.value >= 0 else f"Negative value {rule.value}",
            record_id=rule.id,
        ))

        if rule.calculation == "percentage":
            within = rule.value <= 100
            checks.append(ValidationCheck(
                name="rule_percentage_bounds",
                passed=within,
                severity=ValidationSeverity.WARNING,
                message="Percentage within 0-100" if within else f"Percentage {rule.value} exceeds 100",
                record_id=rule.id,
            ))
        return checks

    def check_component(self, component: VariantCostComponent) -> List[ValidationCheck]:
        """Run every variant component check"""
        checks = [self._check_window("component", component)]
        amounts = {
            "cogs_per_unit": component.cogs_per_unit,
            "shipping_per_unit": component.shipping_per_unit,
            "handling_per_unit": component.handling_per_unit,
            "payment_fee_percent": component.payment_fee_percent,
            "payment_fixed_per_item": component.payment_fixed_per_item,
        }
        negative = {name: value for name, value in amounts.items() if value < 0}
        checks.append(ValidationCheck(
            name="component_amounts_non_negative",
            passed=not negative,
            severity=ValidationSeverity.ERROR,
            message="Amounts are non-negative" if not negative else f"Negative amounts: {sorted(negative)}",
            record_id=component.id,
            details=negative or None,
        ))
        return checks

    def _accepts(self, checks: List[ValidationCheck]) -> bool:
        for check in checks:
            if check.passed:
                continue
            if check.severity == ValidationSeverity.ERROR or self.strict_mode:
                return False
        return True

    def _parse(self, kind: str, model: Any, raw: Any) -> Tuple[Optional[Any], Optional[ValidationCheck]]:
        if isinstance(raw, model):
            return raw, None
        try:
            return model.model_validate(raw), None
        except ValidationError as e:
            identifier = raw.get("id", raw.get("_id")) if isinstance(raw, dict) else None
            return None, ValidationCheck(
                name=f"{kind}_schema",
                passed=False,
                severity=ValidationSeverity.ERROR,
                message=f"Record does not match the {kind} schema",
                record_id=None if identifier is None else str(identifier),
                details={"errors": e.error_count()},
            )

    def validate(
        self,
        rules: Iterable[Any] = (),
        components: Iterable[Any] = (),
    ) -> CostConfiguration:
        """
        Validate raw or parsed cost configuration.

        Args:
            rules: CostRule models or raw store records
            components: VariantCostComponent models or raw store records

        Returns:
            CostConfiguration holding only the accepted records
        """
        result = ValidationResult(
            status=ValidationStatus.PASSED,
            total_checks=0,
            passed_checks=0,
            failed_checks=0,
            warning_count=0,
        )
        config = CostConfiguration(result=result)

        for kind, model, records, target, run in (
            ("rule", CostRule, rules, config.rules, self.check_rule),
            ("component", VariantCostComponent, components, config.components, self.check_component),
        ):
            for raw in records:
                parsed, failure = self._parse(kind, model, raw)
                checks = [failure] if failure else run(parsed)
                result.checks.extend(checks)
                if parsed is not None and self._accepts(checks):
                    target.append(parsed)
                else:
                    logger.warning(
                        "Malformed cost configuration ignored",
                        kind=kind,
                        record_id=checks[0].record_id,
                        failures=[check.name for check in checks if not check.passed],
                    )

        result.total_checks = len(result.checks)
        result.passed_checks = sum(1 for check in result.checks if check.passed)
        result.failed_checks = sum(
            1 for check in result.checks
            if not check.passed and check.severity == ValidationSeverity.ERROR
        )
        result.warning_count = sum(
            1 for check in result.checks
            if not check.passed and check.severity == ValidationSeverity.WARNING
        )
        if result.failed_checks == 0 and result.warning_count == 0:
            result.status = ValidationStatus.PASSED
        elif config.rules or config.components:
            result.status = ValidationStatus.PARTIAL
        else:
            result.status = ValidationStatus.FAILED
        result.completed_at = datetime.now(timezone.utc)

        logger.info(
            "Cost configuration validated",
            status=result.status.value,
            rules=len(config.rules),
            components=len(config.components),
            failed_checks=result.failed_checks,
            warnings=result.warning_count,
        )
        return config

    def require_valid_rule(self, rule: Any) -> CostRule:
        """Parse and validate a single rule, raising when it would be ignored"""
        parsed, failure = self._parse("rule", CostRule, rule)
        if failure is not None:
            raise MalformedCostConfigError(failure.message)
        checks = self.check_rule(parsed)
        if not self._accepts(checks):
            failed = [check.message for check in checks if not check.passed]
            raise MalformedCostConfigError(f"Cost rule {parsed.id} is malformed: {'; '.join(failed)}")
        return parsed
