"""Credential verification used by the item-void approval flow."""

import logging
from dataclasses import dataclass

from common import errors
from common.permissions import get_user_role, user_has_capability

logger = logging.getLogger("security.authorization")

APPROVE_CAPABILITY = "bill.item.void.approve"


@dataclass(frozen=True)
class AuthorizerCredentials:
    user: object
    pin: str


def verify_authorizer(credentials, *, requester_id=None):
    """Return the authorizing user or raise ``AuthorizationError``.

    The authorizer must hold the approval capability, present their own
    approval PIN and be a different person from the requester.
    """
    user = credentials.user
    if not user_has_capability(user, APPROVE_CAPABILITY):
        logger.warning(
            "approval_denied reason=capability user=%s role=%s",
            getattr(user, "username", "anonymous"),
            get_user_role(user),
        )
        raise errors.AuthorizationError(
            "Only a supervisor or admin can resolve item cancellation requests.",
            details={"capability": APPROVE_CAPABILITY},
        )

    if requester_id is not None and user.id == requester_id:
        logger.warning("approval_denied reason=self_approval user=%s", user.username)
        raise errors.AuthorizationError("A cancellation request cannot be resolved by its requester.")

    if not user.check_approval_pin(credentials.pin):
        logger.warning("approval_denied reason=pin user=%s", user.username)
        raise errors.AuthorizationError("Approval PIN is incorrect.", details={"pin": "invalid"})

    return user
