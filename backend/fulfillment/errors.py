# Overview: Domain error taxonomy shared by services and routes.

"""
Fulfillment error taxonomy.

Every business-rule failure raised by a service is a FulfillmentError. Each
carries:
- code: machine-readable identifier returned to clients (e.g. "INVALID_TRANSITION")
- status_code: HTTP status used by the JSON error handler
- details: the ids involved (order ids, product ids, session id, ...)

Services raise these BEFORE committing, so a raised error always means the
unit of work was rolled back and no entity changed. None of these are
retried automatically; transient persistence errors are handled separately
by services.concurrency.run_with_retry.
"""

from __future__ import annotations


class FulfillmentError(Exception):
    code = "FULFILLMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(FulfillmentError, ValueError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidStatus(FulfillmentError):
    """Target status is not a node of the order graph."""
    code = "INVALID_STATUS"
    status_code = 400


class InvalidTransition(FulfillmentError):
    """Target status is not an outgoing edge of the current status."""
    code = "INVALID_TRANSITION"
    status_code = 409


class InsufficientStock(FulfillmentError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409


class OrderAlreadyInSession(FulfillmentError):
    code = "ORDER_ALREADY_IN_SESSION"
    status_code = 409


class OrdersNotEligible(FulfillmentError):
    code = "ORDERS_NOT_ELIGIBLE"
    status_code = 409


class OrderNotEligibleForReturn(OrdersNotEligible):
    code = "ORDER_NOT_ELIGIBLE_FOR_RETURN"


class QuantityExceedsOrdered(FulfillmentError):
    code = "QUANTITY_EXCEEDS_ORDERED"
    status_code = 400


class UnconfirmedDiscrepancy(FulfillmentError):
    code = "UNCONFIRMED_DISCREPANCY"
    status_code = 409


class SettlementAlreadyPaid(FulfillmentError):
    code = "SETTLEMENT_ALREADY_PAID"
    status_code = 409


class InvalidSessionState(FulfillmentError):
    """Session is not in the status the requested operation needs."""
    code = "INVALID_SESSION_STATE"
    status_code = 409


class OrderNotDeletable(FulfillmentError):
    code = "ORDER_NOT_DELETABLE"
    status_code = 409


class NotFound(FulfillmentError):
    code = "NOT_FOUND"
    status_code = 404


class ImmutableRecord(FulfillmentError):
    """Attempt to update or delete an append-only ledger row."""
    code = "IMMUTABLE_RECORD"
    status_code = 409
