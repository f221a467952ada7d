"""Learn from labels the user took off a message.

When a rule labelled a message and the user later removed that label (an
Outlook category or a Gmail label), that is read as "this sender does not
belong to this rule". An exclusion pattern is saved so the sender is no
longer offered that rule.

Reply-tracking and cold-email rules are excluded: removing their label
means the conversation moved on, not that the rule was wrong.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from inboxpilot.core.logging import get_logger
from inboxpilot.engine.run_rules import sender_address
from inboxpilot.rules.types import ActionType, LearnedPatternSource, SystemType

if TYPE_CHECKING:
    from inboxpilot.db.store import DatabaseStore
    from inboxpilot.providers.base import ParsedMessage
    from inboxpilot.rules.types import Rule

logger = get_logger(__name__)

LEARNABLE_SYSTEM_TYPES = frozenset(
    {
        SystemType.NEWSLETTER,
        SystemType.MARKETING,
        SystemType.RECEIPT,
        SystemType.NOTIFICATION,
        SystemType.CALENDAR,
    }
)

LABEL_REMOVED_REASON = "Label removed"


def is_learnable_rule(rule: Rule) -> bool:
    return rule.system_type is None or rule.system_type in LEARNABLE_SYSTEM_TYPES


async def learn_from_label_removal(
    store: DatabaseStore,
    email_account_id: int,
    message: ParsedMessage,
) -> bool:
    """Save an exclusion pattern if a label applied by a rule is gone.

    Returns:
        True if a pattern was saved
    """
    executed = await store.find_executed_rule(email_account_id, message.thread_id, message.id)
    if executed is None or executed.rule_id is None:
        return False

    label_actions = [a for a in executed.actions if a.type == ActionType.LABEL]
    if not label_actions:
        return False

    rule = await store.get_rule(executed.rule_id)
    if rule is None or not is_learnable_rule(rule):
        return False

    removed = [
        action
        for action in label_actions
        if not message.has_label(label_id=action.label_id, name=action.label)
    ]
    if not removed:
        return False

    sender = sender_address(message)
    if not sender:
        return False

    await store.save_learned_pattern(
        email_account_id=email_account_id,
        rule_id=rule.id,
        sender=sender,
        exclude=True,
        reason=LABEL_REMOVED_REASON,
        source=LearnedPatternSource.LABEL_REMOVED,
    )
    logger.info(
        "learned_from_label_removal",
        rule_id=rule.id,
        message_id=message.id,
        labels=[a.label for a in removed],
    )
    return True
