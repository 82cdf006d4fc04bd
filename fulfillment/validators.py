"""
Validation utilities for the Fulfillment service.

Provides the order status transition rules and the delivery verification
code (PIN) helpers.
"""
import hashlib
import hmac
import os
import secrets
from typing import Tuple

from .models import OrderStatus

VERIFICATION_SECRET = os.getenv("VERIFICATION_SECRET", "change-me-in-production")

# Forward chain; cancelled sits outside it
STATUS_CHAIN = [
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]


def validate_order_status_transition(old_status: OrderStatus, new_status: OrderStatus) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Statuses only move forward along the chain
    pending -> processing -> ready -> out_for_delivery -> delivered.
    Any status except cancelled may jump to cancelled; for a delivered order
    that jump is the post-delivery reversal. Cancelled is terminal.

    Args:
        old_status: Current order status
        new_status: Requested order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status == new_status:
        return True, ""  # No change is valid

    if old_status == OrderStatus.CANCELLED:
        return False, "Cancelled orders cannot change status"

    if new_status == OrderStatus.CANCELLED:
        return True, ""

    if old_status == OrderStatus.DELIVERED:
        return False, "Delivered orders can only be cancelled"

    if STATUS_CHAIN.index(new_status) < STATUS_CHAIN.index(old_status):
        return False, f"Invalid status transition: {old_status.value} -> {new_status.value}"

    return True, ""


def hash_verification_code(code: str) -> str:
    """Keyed SHA-256 of a delivery verification code, hex encoded."""
    return hmac.new(VERIFICATION_SECRET.encode(), code.encode(), hashlib.sha256).hexdigest()


def generate_verification_code() -> Tuple[str, str]:
    """
    Create a ten digit delivery PIN for the customer and the hash stored on the order.

    Used by the order-creation flow when an order is placed: the code goes to
    the customer and only the hash is stored. Fulfillment itself only checks
    codes (verify_code_and_hash).

    Returns:
        Tuple of (code, hash)
    """
    code = str(secrets.randbelow(9_000_000_000) + 1_000_000_000)
    return code, hash_verification_code(code)


def verify_code_and_hash(code: str, expected_hash: str) -> bool:
    """Check a PIN against the stored hash in constant time."""
    return hmac.compare_digest(hash_verification_code(code), expected_hash)
