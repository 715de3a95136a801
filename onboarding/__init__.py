"""Bulk member onboarding: CSV import, temporary credentials, activation notifications."""
