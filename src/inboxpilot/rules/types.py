"""Domain types shared by the rule pipeline and the database layer.

Usage:
    from inboxpilot.rules.types import ActionItem, ActionType

    item = ActionItem(type=ActionType.LABEL, label="Newsletter")
"""

from dataclasses import dataclass, field, fields, replace
from enum import StrEnum
from typing import Any


class ActionType(StrEnum):
    ARCHIVE = "ARCHIVE"
    LABEL = "LABEL"
    REPLY = "REPLY"
    SEND_EMAIL = "SEND_EMAIL"
    FORWARD = "FORWARD"
    DRAFT_EMAIL = "DRAFT_EMAIL"
    MARK_SPAM = "MARK_SPAM"
    CALL_WEBHOOK = "CALL_WEBHOOK"
    MARK_READ = "MARK_READ"
    MOVE_FOLDER = "MOVE_FOLDER"
    DIGEST = "DIGEST"
    NOTIFY_SENDER = "NOTIFY_SENDER"
    TRACK_THREAD = "TRACK_THREAD"


class SystemType(StrEnum):
    """Built-in rule categories. Custom rules have no system type."""

    TO_REPLY = "TO_REPLY"
    NEWSLETTER = "NEWSLETTER"
    MARKETING = "MARKETING"
    CALENDAR = "CALENDAR"
    RECEIPT = "RECEIPT"
    NOTIFICATION = "NOTIFICATION"
    COLD_EMAIL = "COLD_EMAIL"


class ExecutedRuleStatus(StrEnum):
    PENDING = "PENDING"
    APPLYING = "APPLYING"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


class ScheduledActionStatus(StrEnum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class LearnedPatternSource(StrEnum):
    USER = "USER"
    AI = "AI"
    LABEL_REMOVED = "LABEL_REMOVED"


# Literal value stored in an action field to ask the LLM to fill it at run time
AI_GENERATED_FIELD_VALUE = "___AI_GENERATE___"

# String fields an action can carry, in the order they are presented to the LLM
ACTION_FIELDS: tuple[str, ...] = (
    "label",
    "label_id",
    "subject",
    "content",
    "to",
    "cc",
    "bcc",
    "url",
    "folder_name",
    "folder_id",
)


@dataclass(slots=True)
class ActionItem:
    """One action of a rule, or one resolved action of an executed rule.

    ``id`` is the rules.actions row id while the item is still a template;
    once persisted against an ExecutedRule it is the executed_actions row id.
    """

    type: ActionType
    id: int | None = None
    label: str | None = None
    label_id: str | None = None
    subject: str | None = None
    content: str | None = None
    to: str | None = None
    cc: str | None = None
    bcc: str | None = None
    url: str | None = None
    folder_name: str | None = None
    folder_id: str | None = None
    delay_in_minutes: int | None = None
    draft_id: str | None = None

    def with_fields(self, **changes: Any) -> "ActionItem":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["type"] = str(self.type)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionItem":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["type"] = ActionType(values["type"])
        return cls(**values)


@dataclass(slots=True)
class Rule:
    """A user-defined rule with its ordered actions."""

    id: int
    email_account_id: int
    name: str
    instructions: str
    actions: list[ActionItem] = field(default_factory=list)
    enabled: bool = True
    automate: bool = True
    run_on_threads: bool = False
    system_type: SystemType | None = None
    position: int = 0


@dataclass(frozen=True, slots=True)
class EmailForLLM:
    """The parts of an email the LLM gets to see."""

    id: str
    thread_id: str
    from_: str
    to: str
    subject: str
    content: str
    cc: str | None = None
    reply_to: str | None = None
    date: str | None = None
