"""Full reply drafts written from the whole thread.

A DRAFT_EMAIL action with no content asks for a complete reply rather than
a filled template. The thread is fetched from the provider, drafts are
dropped, and the remaining messages are sent oldest first. The generated
text is HTML-escaped before the account signature is appended.

Usage:
    from inboxpilot.ai.draft import fetch_messages_and_generate_draft

    draft = await fetch_messages_and_generate_draft(
        account, thread_id, provider, llm=llm, config=config
    )
"""

from __future__ import annotations

import html
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from inboxpilot.ai.email_for_llm import get_email_for_llm
from inboxpilot.ai.prompts import build_draft_prompts
from inboxpilot.core.logging import get_logger

if TYPE_CHECKING:
    from inboxpilot.ai.llm import CallContext, LLMClient
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.db.store import EmailAccount
    from inboxpilot.providers.base import EmailProvider, ParsedMessage

logger = get_logger(__name__)

# Keep the prompt bounded on long threads
MAX_THREAD_MESSAGES = 10


def _sort_key(message: ParsedMessage) -> datetime:
    return message.date or datetime.min.replace(tzinfo=UTC)


async def fetch_messages_and_generate_draft(
    account: EmailAccount,
    thread_id: str,
    provider: EmailProvider,
    *,
    llm: LLMClient,
    config: AppConfig,
    context: CallContext | None = None,
) -> str:
    """Generate a reply body for the latest message in a thread.

    Raises:
        ValueError: If the thread has no non-draft messages or the model
            returned an empty draft
        LLMError: If the LLM call fails
        ProviderAPIError: If the thread cannot be fetched
    """
    messages = [m for m in await provider.get_thread_messages(thread_id) if not m.is_draft]
    if not messages:
        raise ValueError(f"Thread {thread_id} has no messages to reply to")

    messages.sort(key=_sort_key)
    thread = [get_email_for_llm(m) for m in messages[-MAX_THREAD_MESSAGES:]]

    system, user = build_draft_prompts(thread, account.email, account_about=account.about)
    text = await llm.complete_text(
        task="draft_reply",
        model=config.llm.draft_model,
        system=system,
        user=user,
        context=context,
    )

    draft = text.strip()
    if not draft:
        raise ValueError("Draft generation did not return content")

    result = html.escape(draft, quote=False)
    if account.signature:
        result = f"{result}\n\n{account.signature}"

    logger.info("draft_generated", thread_id=thread_id, length=len(result))
    return result
