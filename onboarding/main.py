from onboarding.api.main import app

__all__ = ["app"]
