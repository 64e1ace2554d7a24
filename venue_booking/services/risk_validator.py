"""Service for validating per-customer booking limits and scoring booking risk."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from venue_booking.errors import ValidationError
from venue_booking.services.payment_patterns import PaymentPatternSignal

MIN_REQUESTED_TABLES = 1
MAX_REQUESTED_TABLES = 4

OVERRIDE_TIERS_BOOKING_COUNT = ("GOLD", "PLATINUM")
OVERRIDE_TIERS_TABLE_COUNT = ("PLATINUM",)

# Contractual risk points
BOOKING_LIMIT_REACHED_POINTS = 30
FINAL_BOOKING_POINTS = 10
TABLE_LIMIT_POINTS = 25
PARTY_SIZE_CAP_POINTS = 40
LARGE_PARTY_POINTS = 15
DUPLICATE_PAYMENT_POINTS = 20
EXCESS_ATTEMPT_POINTS = 15
RISK_FLAG_POINTS = 10

# Excess attempts stop being overridable at this count
EXCESS_ATTEMPT_OVERRIDE_LIMIT = 3

MEDIUM_RISK_THRESHOLD = 25
HIGH_RISK_THRESHOLD = 50
VERY_HIGH_RISK_THRESHOLD = 75


@dataclass
class CustomerLimitRecord:
    """A customer's booking standing for one date. Read-only to the validator."""

    customer_id: UUID
    bookings_count: int = 0
    tables_reserved: List[int] = field(default_factory=list)
    attempted_excess_bookings: int = 0
    is_vip_customer: bool = False
    loyalty_tier: str = "BRONZE"
    risk_flags: List[str] = field(default_factory=list)


@dataclass
class LimitPolicy:
    """Base limits; VIP adjustments are applied on top."""

    max_bookings_per_day: int = 2
    max_tables_per_customer: int = 2
    max_tables_per_vip_customer: int = 3
    max_party_size: int = 20
    large_party_warning_size: int = 15

    @classmethod
    def from_settings(cls, settings: Any) -> "LimitPolicy":
        return cls(
            max_bookings_per_day=settings.max_bookings_per_day,
            max_tables_per_customer=settings.max_tables_per_customer,
            max_tables_per_vip_customer=settings.max_tables_per_vip_customer,
            max_party_size=settings.max_party_size,
            large_party_warning_size=settings.large_party_warning_size,
        )


@dataclass
class Violation:
    """A single limit or risk finding."""

    type: str  # booking_count, table_count, party_size, duplicate_risk, fraud_risk
    severity: str  # error, warning, info
    message: str
    can_override: bool
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_blocking(self) -> bool:
        return self.severity == "error" and not self.can_override


@dataclass
class RiskAssessment:
    """Result of validating a booking request against a customer's limits."""

    violations: List[Violation] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    risk_score: int = 0

    @property
    def is_valid(self) -> bool:
        return all(v.severity != "error" or v.can_override for v in self.violations)

    @property
    def risk_level(self) -> str:
        return risk_level(self.risk_score)

    @property
    def blocking_violations(self) -> List[Violation]:
        return [v for v in self.violations if v.is_blocking]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "violations": [asdict(v) for v in self.violations],
            "recommendations": list(self.recommendations),
        }


def risk_level(score: int) -> str:
    if score >= VERY_HIGH_RISK_THRESHOLD:
        return "very_high"
    if score >= HIGH_RISK_THRESHOLD:
        return "high"
    if score >= MEDIUM_RISK_THRESHOLD:
        return "medium"
    return "low"


def clamp_score(score: int) -> int:
    return max(0, min(100, score))


class RiskValidator:
    """
    Checks a booking request against per-customer limits.

    Each rule adds a violation and a fixed number of risk points. The final
    score is clamped to 0-100. A request is valid when every error-level
    violation can be overridden.
    """

    def __init__(self, policy: Optional[LimitPolicy] = None):
        self.policy = policy or LimitPolicy()

    def validate(
        self,
        limits: CustomerLimitRecord,
        requested_tables: int,
        requested_guests: int,
        payment_method_id: Optional[str] = None,
        payment_signal: Optional[PaymentPatternSignal] = None,
    ) -> RiskAssessment:
        if requested_tables < MIN_REQUESTED_TABLES or requested_tables > MAX_REQUESTED_TABLES:
            raise ValidationError(
                f"requested_tables must be between {MIN_REQUESTED_TABLES} and {MAX_REQUESTED_TABLES}"
            )
        if requested_guests < 1:
            raise ValidationError("requested_guests must be at least 1")

        violations: List[Violation] = []
        score = 0

        score += self._check_booking_count(limits, violations)
        score += self._check_table_count(limits, requested_tables, violations)
        score += self._check_party_size(requested_guests, violations)

        if payment_method_id and payment_signal is not None and payment_signal.flagged:
            violations.append(Violation(
                type="duplicate_risk",
                severity="warning",
                message="Multiple payment methods or similar bookings detected",
                can_override=True,
                details={
                    "payment_method_id": payment_method_id,
                    "risk_factors": list(payment_signal.risk_factors),
                },
            ))
            score += DUPLICATE_PAYMENT_POINTS

        if limits.attempted_excess_bookings > 0:
            attempts = limits.attempted_excess_bookings
            violations.append(Violation(
                type="fraud_risk",
                severity="warning",
                message=f"Previous attempts to exceed limits detected ({attempts} attempts)",
                can_override=attempts < EXCESS_ATTEMPT_OVERRIDE_LIMIT,
                details={"attempts": attempts},
            ))
            score += attempts * EXCESS_ATTEMPT_POINTS

        if limits.risk_flags:
            violations.append(Violation(
                type="fraud_risk",
                severity="info",
                message="Customer has risk flags that may require review",
                can_override=True,
                details={"risk_flags": list(limits.risk_flags)},
            ))
            score += len(limits.risk_flags) * RISK_FLAG_POINTS

        risk_score = clamp_score(score)
        return RiskAssessment(
            violations=violations,
            recommendations=self._recommendations(limits, violations, risk_score),
            risk_score=risk_score,
        )

    def max_bookings_for(self, limits: CustomerLimitRecord) -> int:
        bonus = 1 if limits.is_vip_customer else 0
        return self.policy.max_bookings_per_day + bonus

    def max_tables_for(self, limits: CustomerLimitRecord) -> int:
        if limits.is_vip_customer:
            return self.policy.max_tables_per_vip_customer
        return self.policy.max_tables_per_customer

    def _check_booking_count(
        self,
        limits: CustomerLimitRecord,
        violations: List[Violation],
    ) -> int:
        max_bookings = self.max_bookings_for(limits)
        current = limits.bookings_count

        if current >= max_bookings:
            violations.append(Violation(
                type="booking_count",
                severity="error",
                message=f"Maximum {max_bookings} bookings per day exceeded (current: {current})",
                can_override=limits.loyalty_tier in OVERRIDE_TIERS_BOOKING_COUNT,
                details={
                    "current": current,
                    "limit": max_bookings,
                    "is_vip": limits.is_vip_customer,
                },
            ))
            return BOOKING_LIMIT_REACHED_POINTS

        if current == max_bookings - 1:
            violations.append(Violation(
                type="booking_count",
                severity="warning",
                message="This will be your final booking for today",
                can_override=True,
                details={"current": current, "limit": max_bookings},
            ))
            return FINAL_BOOKING_POINTS

        return 0

    def _check_table_count(
        self,
        limits: CustomerLimitRecord,
        requested_tables: int,
        violations: List[Violation],
    ) -> int:
        existing = len(limits.tables_reserved)
        total = existing + requested_tables
        max_tables = self.max_tables_for(limits)

        if total > max_tables:
            violations.append(Violation(
                type="table_count",
                severity="error",
                message=(
                    f"Maximum {max_tables} tables per customer exceeded "
                    f"(requesting {requested_tables}, already have {existing})"
                ),
                can_override=limits.loyalty_tier in OVERRIDE_TIERS_TABLE_COUNT,
                details={
                    "existing": existing,
                    "requested": requested_tables,
                    "total": total,
                    "limit": max_tables,
                },
            ))
            return TABLE_LIMIT_POINTS
        return 0

    def _check_party_size(self, requested_guests: int, violations: List[Violation]) -> int:
        cap = self.policy.max_party_size

        if requested_guests > cap:
            violations.append(Violation(
                type="party_size",
                severity="error",
                message=f"Party size of {requested_guests} exceeds maximum of {cap}",
                can_override=False,
                details={"party_size": requested_guests, "limit": cap},
            ))
            return PARTY_SIZE_CAP_POINTS

        if requested_guests > self.policy.large_party_warning_size:
            violations.append(Violation(
                type="party_size",
                severity="warning",
                message="Large party size may require special arrangements",
                can_override=True,
                details={"party_size": requested_guests},
            ))
            return LARGE_PARTY_POINTS
        return 0

    def _recommendations(
        self,
        limits: CustomerLimitRecord,
        violations: List[Violation],
        risk_score: int,
    ) -> List[str]:
        recommendations: List[str] = []

        if not violations:
            recommendations.append("All booking limits satisfied - can proceed normally")
        elif any(v.severity == "error" for v in violations):
            recommendations.append("Manual review required due to limit violations")
            recommendations.append("Consider contacting customer to discuss alternatives")
            if any(v.severity == "error" and v.can_override for v in violations):
                recommendations.append("Manager override possible for some violations")
        else:
            recommendations.append("Warnings detected but booking can proceed")
            recommendations.append("Monitor for patterns if this is a repeat customer")

        if limits.is_vip_customer:
            recommendations.append("VIP customer - enhanced service protocols apply")

        if risk_score >= HIGH_RISK_THRESHOLD:
            recommendations.append("High risk score - consider additional verification")
            if risk_score >= VERY_HIGH_RISK_THRESHOLD:
                recommendations.append(
                    "Very high risk score - manual review required before confirming"
                )
        elif risk_score >= MEDIUM_RISK_THRESHOLD:
            recommendations.append("Moderate risk - standard verification recommended")

        return recommendations
