from __future__ import annotations
from html import escape
from typing import Optional, Sequence

from ..retrieval import Passage

HANDOFF_MESSAGE = (
    "I don't have a confident answer to this yet. "
    "Your question has been forwarded to a human volunteer, who will reply here shortly."
)

BUSY_MESSAGE = "The system is busy right now. Please try again in a moment."

INTERNAL_ERROR_MESSAGE = "Something went wrong on our side. Please try again later."

_LINK_STYLE = (
    "display:inline-block; background-color:#b45309; color:white; padding:10px 20px; "
    "border-radius:20px; text-decoration:none; font-weight:bold; margin-top:10px;"
)


def no_context_message(index_url: str) -> str:
    url = escape(index_url, quote=True)
    return (
        "I couldn't find anything about this in the library.<br><br>"
        f'You can browse the general index at: <a href="{url}" target="_blank">{escape(index_url)}</a>'
    )


def source_link(url: Optional[str]) -> str:
    """HTML 'read more' button for web sources; empty for file paths and unknowns."""
    if not url or not url.startswith("http"):
        return ""
    return (
        f'\n\n<br><a href="{escape(url, quote=True)}" target="_blank" '
        f'style="{_LINK_STYLE}">Read more</a>'
    )


def format_answer(text: str, passages: Sequence[Passage], header: str) -> str:
    top = passages[0].source if passages else None
    body = f"{header}\n\n{text}" if header else text
    return body + source_link(top)
