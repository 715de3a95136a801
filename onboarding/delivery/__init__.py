"""Post-import delivery work: retries of failed sends and invitation resends.

Both act on one member and one channel at a time and share the keyed
lock in :mod:`onboarding.delivery.locks`, so a retry never races a resend
that is replacing the same temporary secret.
"""
