"""Turn a provider message into the compact text the LLM sees.

Bodies are cleaned in a short pipeline before being put in a prompt:
1. Prefer the plain-text part; otherwise strip HTML tags and decode entities
2. Drop quoted history below "On ... wrote:" / Outlook "From: ... Sent:" blocks
3. Collapse excessive whitespace
4. Truncate to max_length

All regex operations use the `regex` library with a timeout so hostile
email content cannot stall a webhook handler.

Usage:
    from inboxpilot.ai.email_for_llm import get_email_for_llm, stringify_email

    email = get_email_for_llm(message)
    prompt_block = stringify_email(email, max_length=2000)
"""

from __future__ import annotations

import html

import regex

from inboxpilot.core.logging import get_logger
from inboxpilot.providers.base import ParsedMessage
from inboxpilot.rules.types import EmailForLLM

logger = get_logger(__name__)

DEFAULT_MAX_LENGTH = 2000

REGEX_TIMEOUT = 1.0

HTML_BLOCK_PATTERN = regex.compile(r"<(script|style)[^>]*>.*?</\1>", regex.IGNORECASE | regex.DOTALL)
HTML_BREAK_PATTERN = regex.compile(r"<\s*(br|/p|/div|/li|/tr)\s*/?>", regex.IGNORECASE)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")

QUOTED_HISTORY_PATTERNS = [
    # "On [date], [name] wrote:" and everything after it
    regex.compile(r"^On .{1,300}? wrote:\s*$.*", regex.MULTILINE | regex.DOTALL),
    # Outlook-style reply header block and everything after it
    regex.compile(r"^From:\s+.+?\nSent:\s+.+?\nTo:\s+.+?\nSubject:\s+.+", regex.MULTILINE | regex.DOTALL),
    # "> quoted" lines
    regex.compile(r"^>.*$\n?", regex.MULTILINE),
]

EXCESSIVE_NEWLINES = regex.compile(r"\n{3,}")
EXCESSIVE_SPACES = regex.compile(r"[ \t]{2,}")


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("Regex timeout while cleaning email body", pattern=pattern.pattern[:50])
        return text


def html_to_text(body: str) -> str:
    text = _safe_sub(HTML_BLOCK_PATTERN, " ", body)
    text = _safe_sub(HTML_BREAK_PATTERN, "\n", text)
    text = _safe_sub(HTML_TAG_PATTERN, " ", text)
    return html.unescape(text)


def clean_body(message: ParsedMessage, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """The message body as plain text without quoted history."""
    if message.text_plain:
        text = message.text_plain
    elif message.text_html:
        text = html_to_text(message.text_html)
    else:
        text = message.snippet or ""

    for pattern in QUOTED_HISTORY_PATTERNS:
        text = _safe_sub(pattern, "", text)

    text = _safe_sub(EXCESSIVE_NEWLINES, "\n\n", text)
    text = _safe_sub(EXCESSIVE_SPACES, " ", text).strip()

    if len(text) > max_length:
        text = text[:max_length]
    return text


def get_email_for_llm(message: ParsedMessage, max_length: int = DEFAULT_MAX_LENGTH) -> EmailForLLM:
    return EmailForLLM(
        id=message.id,
        thread_id=message.thread_id,
        from_=message.from_,
        to=message.to,
        subject=message.subject,
        content=clean_body(message, max_length=max_length),
        cc=message.cc,
        reply_to=message.reply_to,
        date=message.date.isoformat() if message.date else None,
    )


def stringify_email(email: EmailForLLM, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Render an email as the <email> block used in prompts."""
    lines = [f"<from>{email.from_}</from>"]
    if email.reply_to:
        lines.append(f"<replyTo>{email.reply_to}</replyTo>")
    lines.append(f"<to>{email.to}</to>")
    if email.cc:
        lines.append(f"<cc>{email.cc}</cc>")
    if email.date:
        lines.append(f"<date>{email.date}</date>")
    lines.append(f"<subject>{email.subject}</subject>")
    lines.append(f"<body>{email.content[:max_length]}</body>")
    return "\n".join(lines)
