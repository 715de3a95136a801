"""Activation-status state machine.

    pending_activation → activated | sms_failed | email_failed | token_expired
    sms_failed         → pending_activation | email_failed | activated | token_expired
    email_failed       → pending_activation | sms_failed | activated | token_expired
    token_expired      → pending_activation
    activated          (terminal)

Assigning the current status again is a no-op.  Status is only ever
changed through :func:`transition`.
"""
from __future__ import annotations

from enum import StrEnum

from onboarding.core.errors import InvalidTransitionError
from onboarding.db.models import MemberAccount


class ActivationStatus(StrEnum):
    PENDING_ACTIVATION = "pending_activation"
    ACTIVATED = "activated"
    SMS_FAILED = "sms_failed"
    EMAIL_FAILED = "email_failed"
    TOKEN_EXPIRED = "token_expired"


# Allowed transitions: current_status → {valid target statuses}
_TRANSITIONS: dict[ActivationStatus, frozenset[ActivationStatus]] = {
    ActivationStatus.PENDING_ACTIVATION: frozenset({
        ActivationStatus.ACTIVATED,
        ActivationStatus.SMS_FAILED,
        ActivationStatus.EMAIL_FAILED,
        ActivationStatus.TOKEN_EXPIRED,
    }),
    ActivationStatus.SMS_FAILED: frozenset({
        ActivationStatus.PENDING_ACTIVATION,
        ActivationStatus.EMAIL_FAILED,
        ActivationStatus.ACTIVATED,
        ActivationStatus.TOKEN_EXPIRED,
    }),
    ActivationStatus.EMAIL_FAILED: frozenset({
        ActivationStatus.PENDING_ACTIVATION,
        ActivationStatus.SMS_FAILED,
        ActivationStatus.ACTIVATED,
        ActivationStatus.TOKEN_EXPIRED,
    }),
    ActivationStatus.TOKEN_EXPIRED: frozenset({ActivationStatus.PENDING_ACTIVATION}),
    ActivationStatus.ACTIVATED: frozenset(),
}

FAILED_STATUSES: frozenset[ActivationStatus] = frozenset({
    ActivationStatus.SMS_FAILED,
    ActivationStatus.EMAIL_FAILED,
})


def can_transition(current: str, target: str) -> bool:
    """Return whether *current* → *target* is allowed (same state included)."""
    current_status = ActivationStatus(current)
    target_status = ActivationStatus(target)
    if current_status == target_status:
        return True
    return target_status in _TRANSITIONS[current_status]


def transition(account: MemberAccount, target: str) -> ActivationStatus:
    """Move *account* to *target* or raise ``InvalidTransitionError``.

    Unknown status strings also raise ``InvalidTransitionError``.
    """
    try:
        allowed = can_transition(account.activation_status, target)
    except ValueError as exc:
        raise InvalidTransitionError(
            f"Unknown activation status in {account.activation_status!r} → {target!r}"
        ) from exc
    if not allowed:
        raise InvalidTransitionError(
            f"Invalid transition {account.activation_status!r} → {target!r} "
            f"for member {account.member_id}"
        )
    account.activation_status = ActivationStatus(target).value
    return ActivationStatus(target)


def failure_status_for(channel: str) -> ActivationStatus:
    return ActivationStatus(f"{channel}_failed")


def status_after_failure(account: MemberAccount, channel: str) -> ActivationStatus:
    """Status to move to once *channel* failed to deliver.

    When both channels have failed the primary channel's marker wins; the
    email failure is still recorded on ``email_last_error``.  Terminal and
    expired accounts keep their status.
    """
    current = ActivationStatus(account.activation_status)
    if current in (ActivationStatus.ACTIVATED, ActivationStatus.TOKEN_EXPIRED):
        return current
    if current is ActivationStatus.SMS_FAILED:
        return current
    return failure_status_for(channel)


def status_after_success(account: MemberAccount, channel: str, *, other_channel_failed: bool) -> ActivationStatus:
    """Status to move to once *channel* delivered successfully.

    Clears this channel's failure marker; falls back to the other channel's
    failure if it still has one.  Statuses other than ``*_failed`` are kept.
    """
    current = ActivationStatus(account.activation_status)
    if current not in FAILED_STATUSES:
        return current
    other = "email" if channel == "sms" else "sms"
    if other_channel_failed:
        return failure_status_for(other)
    return ActivationStatus.PENDING_ACTIVATION
