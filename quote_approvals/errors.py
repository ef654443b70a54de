"""
Engine error taxonomy.

Each error carries a machine-readable ``code`` and the HTTP status the API
layer renders it with ({"error": {"code": ..., "message": ...}}).
A workflow selection that matches nothing is not an error: the quote is
simply marked ``not_required``.
"""

from typing import Optional


class ApprovalEngineError(Exception):
    code = "APPROVAL_ENGINE_ERROR"
    status_code = 400

    def __init__(self, message: str, *, subject_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subject_id = subject_id


class NotFound(ApprovalEngineError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidTransition(ApprovalEngineError):
    """Action attempted on an approval that is no longer pending."""

    code = "APPROVAL_INVALID_TRANSITION"
    status_code = 409


class MissingComments(InvalidTransition):
    """Rejection without comments while the workflow requires them."""

    code = "APPROVAL_COMMENTS_REQUIRED"
    status_code = 422


class NotCurrentApprover(ApprovalEngineError):
    code = "APPROVAL_NOT_YOUR_TURN"
    status_code = 403


class DelegationNotAllowed(ApprovalEngineError):
    code = "APPROVAL_DELEGATION_DISABLED"
    status_code = 409


class ChainAlreadyBound(ApprovalEngineError):
    """Approval-relevant edit on a quote whose chain is already instantiated."""

    code = "QUOTE_CHAIN_BOUND"
    status_code = 409


class ResolutionFailure(ApprovalEngineError):
    """Directory lookup for an approver, role or department returned nothing."""

    code = "APPROVER_RESOLUTION_FAILED"
    status_code = 422


class DeliveryFailure(ApprovalEngineError):
    code = "NOTIFICATION_DELIVERY_FAILED"
    status_code = 502
