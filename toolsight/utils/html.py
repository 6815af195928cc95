"""HTML-to-text conversion for email bodies.

Billing emails from many vendors are HTML-only with no text/plain part.
Detection rules and prompts work on plain text.
"""

from __future__ import annotations

import re

from bs4 import BeautifulSoup


def html_to_text(html: str) -> str:
    """Convert an HTML email body to plain text.

    Args:
        html: Raw HTML string from the email body.

    Returns:
        Plain text with script/style content removed and blank runs collapsed.
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()

    text = soup.get_text(separator="\n")
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
