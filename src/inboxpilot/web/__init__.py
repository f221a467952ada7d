"""HTTP surface for InboxPilot.

Provides a FastAPI app for:
- Gmail and Outlook webhooks
- The queue callback that runs delayed actions
- Rule management and executed-rule approvals
"""

from inboxpilot.web.app import create_app

__all__ = ["create_app"]
