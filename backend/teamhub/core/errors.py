# teamhub/core/errors.py
"""
Typed failures for team management.

A raised error means the mutation was rolled back. The one write that survives
an error is the lazy expiry of an overdue invitation.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TeamError(Exception):
    """Base exception for authorization and team-management failures."""

    code = "TEAM_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        detail.update(self.context)
        return detail


class NotAMember(TeamError):
    """
    Actor or target has no active membership.

    Also used when the business does not exist, so that non-members cannot discover
    which businesses exist.
    """

    code = "NOT_A_MEMBER"
    status_code = 404

    def __init__(self, message: str = "Business or member not found"):
        super().__init__(message)


class PermissionDenied(TeamError):
    code = "PERMISSION_DENIED"
    status_code = 403

    def __init__(self, required: str):
        super().__init__(
            "You do not have permission to perform this action.",
            required=required,
        )


class InsufficientRank(TeamError):
    code = "INSUFFICIENT_RANK"
    status_code = 403


class SelfEscalationDenied(TeamError):
    code = "SELF_ESCALATION_DENIED"
    status_code = 403

    def __init__(self, message: str = "You cannot change your own role or permissions"):
        super().__init__(message)


class LastOwnerViolation(TeamError):
    code = "LAST_OWNER_VIOLATION"
    status_code = 409

    def __init__(self, message: str = "A business must always keep at least one active owner"):
        super().__init__(message)


class AlreadyMember(TeamError):
    code = "ALREADY_MEMBER"
    status_code = 409

    def __init__(self, message: str = "User is already a member of this business"):
        super().__init__(message)


class InvitationAlreadyPending(TeamError):
    code = "INVITATION_ALREADY_PENDING"
    status_code = 409

    def __init__(self, email: str):
        super().__init__(f"A pending invitation already exists for {email}")


class InvitationNotFound(TeamError):
    code = "INVITATION_NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Invitation not found"):
        super().__init__(message)


class InvitationNotPending(TeamError):
    code = "INVITATION_NOT_PENDING"
    status_code = 409

    def __init__(self, status: Optional[str] = None, message: str = "Invitation is no longer pending"):
        super().__init__(message, status=status)


class InvitationExpired(InvitationNotPending):
    """Accept reached an invitation whose deadline had passed; it is now `expired`."""

    code = "INVITATION_EXPIRED"
    status_code = 410

    def __init__(self, message: str = "Invitation expired"):
        super().__init__("expired", message)


class InvitationEmailMismatch(TeamError):
    code = "INVITE_EMAIL_MISMATCH"
    status_code = 403

    def __init__(self):
        super().__init__("You are signed in with a different email than the invitation.")


class TransferNotConfirmed(TeamError):
    code = "TRANSFER_NOT_CONFIRMED"
    status_code = 400

    def __init__(self):
        super().__init__("Ownership transfer requires a confirmation message of at least 10 characters")


class ConflictingUpdate(TeamError):
    code = "CONFLICTING_UPDATE"
    status_code = 409

    def __init__(self, message: str = "Membership changed while the request was processed; retry"):
        super().__init__(message)


class DeliveryFailed(TeamError):
    """Non-fatal: reported next to a successful invitation write, never raised to callers."""

    code = "DELIVERY_FAILED"
    status_code = 502
