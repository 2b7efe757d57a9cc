"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Payment lifecycle errors (2xxxx, payment range)
    PAYMENT_NOT_FOUND = 20101
    PAYMENT_CONFLICT = 20102
    SUBSCRIPTION_NOT_FOUND = 20110
    PLAN_NOT_FOUND = 20111
    UNSUPPORTED_METHOD = 20112

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002


# Canonical gateway statuses understood by the orchestrator
CANONICAL_SUCCEEDED = "succeeded"
CANONICAL_FAILED = "failed"
CANONICAL_PENDING = "pending"
CANONICAL_REQUIRES_ACTION = "requires_action"
CANONICAL_CANCELED = "canceled"


# Provider→canonical status mapping; unknown provider statuses map to pending
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": CANONICAL_REQUIRES_ACTION,
        "requires_confirmation": CANONICAL_REQUIRES_ACTION,
        "requires_action": CANONICAL_REQUIRES_ACTION,
        "processing": CANONICAL_PENDING,
        "requires_capture": CANONICAL_PENDING,
        "succeeded": CANONICAL_SUCCEEDED,
        "canceled": CANONICAL_CANCELED,
    },
    "paypal": {
        # Per Orders v2 order status / Payments v2 capture status
        "CREATED": CANONICAL_PENDING,
        "SAVED": CANONICAL_PENDING,
        "APPROVED": CANONICAL_PENDING,
        "PAYER_ACTION_REQUIRED": CANONICAL_REQUIRES_ACTION,
        "VOIDED": CANONICAL_CANCELED,
        "COMPLETED": CANONICAL_SUCCEEDED,
        "PENDING": CANONICAL_PENDING,
        "DECLINED": CANONICAL_FAILED,
        "FAILED": CANONICAL_FAILED,
    },
}
