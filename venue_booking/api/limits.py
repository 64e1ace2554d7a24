"""
REST API endpoints for booking limit validation.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from venue_booking.api.deps import get_booking_engine
from venue_booking.schemas.limits import (
    CustomerLimitsRead,
    LimitInformationResponse,
    LimitValidationRequest,
    LimitValidationResponse,
    ViolationRead,
)
from venue_booking.services.booking_engine import BookingEngine
from venue_booking.services.risk_validator import CustomerLimitRecord, RiskAssessment

router = APIRouter(prefix="/api/v1/booking", tags=["limits"])


def to_limit_response(
    limits: CustomerLimitRecord,
    assessment: RiskAssessment,
) -> LimitValidationResponse:
    return LimitValidationResponse(
        is_valid=assessment.is_valid,
        risk_score=assessment.risk_score,
        risk_level=assessment.risk_level,
        violations=[ViolationRead.model_validate(v) for v in assessment.violations],
        recommendations=assessment.recommendations,
        customer_limits=CustomerLimitsRead.model_validate(limits),
    )


@router.post("/validate-limits", response_model=LimitValidationResponse)
async def validate_limits(
    data: LimitValidationRequest,
    engine: BookingEngine = Depends(get_booking_engine),
) -> LimitValidationResponse:
    """
    Check a booking request against the customer's limits for the date.

    Always answers 200; ``is_valid`` tells whether the request may proceed.
    """
    limits, assessment = await engine.validate_limits_for_customer(
        data.customer_id,
        data.booking_date,
        requested_tables=data.requested_tables,
        requested_guests=data.requested_guests,
        payment_method_id=data.payment_method_id,
    )
    return to_limit_response(limits, assessment)


@router.get("/limits", response_model=LimitInformationResponse)
async def get_limits(
    engine: BookingEngine = Depends(get_booking_engine),
) -> LimitInformationResponse:
    """Configured booking limits, VIP bonuses and risk thresholds."""
    return LimitInformationResponse(**engine.limit_information())
