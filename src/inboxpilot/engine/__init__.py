"""Rule pipeline for incoming mail.

This package provides:
- Webhook intake for Outlook notifications and Gmail history
- Rule selection and the plan-or-execute gate
- Action execution against the mailbox
- Learning from labels the user removed
"""

from inboxpilot.engine.actions import run_action_function
from inboxpilot.engine.context import Services
from inboxpilot.engine.execute import execute_act
from inboxpilot.engine.learn import learn_from_label_removal
from inboxpilot.engine.process_history import (
    process_gmail_notification,
    process_history_item,
    process_outlook_notification,
)
from inboxpilot.engine.run_rules import RunRulesResult, plan_or_execute_act, run_rules
from inboxpilot.engine.webhook_validation import AccountValidation, validate_webhook_account

__all__ = [
    # Intake
    "process_gmail_notification",
    "process_history_item",
    "process_outlook_notification",
    "validate_webhook_account",
    "AccountValidation",
    # Rules
    "RunRulesResult",
    "plan_or_execute_act",
    "run_rules",
    # Actions
    "execute_act",
    "run_action_function",
    "learn_from_label_removal",
    "Services",
]
