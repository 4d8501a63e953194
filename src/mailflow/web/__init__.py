"""JSON API for the mail pipeline.

Provides a FastAPI app for:
- Account listing, manual sync and sync toggling
- Automation configs, rules and logs
- Reviewing financial suggestions
- Health reporting
"""

from mailflow.web.app import create_app

__all__ = ["create_app"]
