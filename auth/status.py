"""
auth/status.py -- Account lifecycle transitions and the session gate.

Transition table:
    active   -> inactive | blocked | deleted
    inactive -> active | blocked | deleted
    blocked  -> deleted
    deleted  -> (terminal)

Every transition is a compare-and-swap on the status column, so two admins
acting on the same account at once cannot both succeed from the same starting
state. Transitions away from active also bump token_version in the same
UPDATE and revoke all refresh tokens: the moment a ban commits, every access
token the user holds fails verification.

ensure_session_allowed() is the single gate consulted before any session is
minted or refreshed. It is a module-level function so TokenService can use it
without depending on the state machine.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

from auth.contracts import CredentialStore, RefreshTokenStore
from auth.errors import AccountInactive, InvalidTransition, UserNotFound
from auth.models import User, UserStatus

logger = logging.getLogger("sessiontrust.auth.status")

_TRANSITIONS: dict[UserStatus, frozenset[UserStatus]] = {
    UserStatus.ACTIVE: frozenset({UserStatus.INACTIVE, UserStatus.BLOCKED, UserStatus.DELETED}),
    UserStatus.INACTIVE: frozenset({UserStatus.ACTIVE, UserStatus.BLOCKED, UserStatus.DELETED}),
    UserStatus.BLOCKED: frozenset({UserStatus.DELETED}),
    UserStatus.DELETED: frozenset(),
}


def can_transition(current: UserStatus, target: UserStatus) -> bool:
    return target in _TRANSITIONS[current]


def ensure_session_allowed(user: User) -> None:
    """Raise AccountInactive unless user may start or continue a session.

    Inactive accounts are reported as reactivatable; blocked and deleted ones
    are not. The exact status is never put on the error.
    """
    if user.status is not UserStatus.ACTIVE:
        raise AccountInactive(reactivatable=user.status is UserStatus.INACTIVE)


class AccountStateMachine:
    def __init__(self, users: CredentialStore, refresh_tokens: RefreshTokenStore) -> None:
        self._users = users
        self._refresh_tokens = refresh_tokens

    def deactivate(self, user_id: str) -> User:
        return self.transition(user_id, UserStatus.INACTIVE)

    def reactivate(self, user_id: str) -> User:
        return self.transition(user_id, UserStatus.ACTIVE)

    def ban(self, user_id: str) -> User:
        return self.transition(user_id, UserStatus.BLOCKED)

    def delete(self, user_id: str) -> User:
        return self.transition(user_id, UserStatus.DELETED)

    def transition(self, user_id: str, target: UserStatus) -> User:
        """Move user_id to target, or raise.

        Raises UserNotFound for an unknown id and InvalidTransition when the
        table forbids the move or another request changed the status first.
        """
        user = self._users.find_by_id(user_id)
        if user is None:
            raise UserNotFound()
        if not can_transition(user.status, target):
            raise InvalidTransition(f"Cannot move account from {user.status.value} to {target.value}.")

        revokes = target is not UserStatus.ACTIVE
        if not self._users.compare_and_set_status(user_id, user.status, target, bump_token_version=revokes):
            logger.warning("Status change %s -> %s for user %s lost a race", user.status.value, target.value, user_id)
            raise InvalidTransition("Account status changed concurrently.")
        if revokes:
            revoked = self._refresh_tokens.revoke_user_refresh_tokens(user_id)
            logger.info(
                "User %s moved %s -> %s; %d refresh tokens revoked",
                user_id,
                user.status.value,
                target.value,
                revoked,
            )
        else:
            logger.info("User %s moved %s -> %s", user_id, user.status.value, target.value)

        updated = self._users.find_by_id(user_id)
        if updated is None:
            raise UserNotFound()
        return updated
