# rentledger/errors.py
from __future__ import annotations

from flask import jsonify
from werkzeug.exceptions import HTTPException


class BillingError(HTTPException):
    """
    Base class for ledger errors.

    Subclasses carry an HTTP status code so a Flask surface can render them
    directly; services raise them without caring about transport.
    """

    code = 400
    error = "billing_error"

    def __init__(self, description: str | None = None):
        super().__init__(description=description)


# =========================================================
# Input errors (rejected before any persistence)
# =========================================================
class ValidationError(BillingError):
    code = 400
    error = "validation_error"


class AmountExceedsBalance(ValidationError):
    error = "amount_exceeds_balance"


# =========================================================
# Business preconditions (surfaced, no state change)
# =========================================================
class PreconditionFailed(BillingError):
    code = 409
    error = "precondition_failed"


class InvalidState(PreconditionFailed):
    error = "invalid_state"


class InvalidTransition(PreconditionFailed):
    error = "invalid_transition"


class NotFound(BillingError):
    code = 404
    error = "not_found"


# =========================================================
# Defects
# =========================================================
class InvariantViolation(BillingError):
    """Representative duplication or overpayment observed in storage."""

    code = 500
    error = "invariant_violation"


def register_error_handlers(app):
    @app.errorhandler(BillingError)
    def billing_error(e):
        if isinstance(e, InvariantViolation):
            app.logger.critical("Invariant violation surfaced: %s", e.description)
        return jsonify(error=e.error, message=e.description), e.code
