"""Sender address helpers shared by the classifier and extractor."""

from __future__ import annotations

import re
from email.utils import parseaddr

from toolsight.detection.lexicon import DetectionLexicon

_DISPLAY_NOISE = re.compile(
    r"\b(billing|payments?|receipts?|invoices?|accounts?|team|support|no-?reply|via \w+)\b",
    re.IGNORECASE,
)


def split_sender(sender: str) -> tuple[str, str]:
    """Return ``(display_name, domain)`` for a From header value."""
    name, address = parseaddr(sender or "")
    domain = address.rpartition("@")[2].lower().strip(".") if "@" in address else ""
    return name.strip().strip('"'), domain


def registrable_domain(domain: str, lexicon: DetectionLexicon) -> str:
    """
    Reduce a host to the domain a company registers.

    "mail.hubspot.com" -> "hubspot.com", "billing.acme.co.uk" -> "acme.co.uk"
    """
    labels = [label for label in domain.lower().split(".") if label]
    if len(labels) <= 2:
        return ".".join(labels)
    if ".".join(labels[-2:]) in lexicon.compound_suffixes:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def vendor_from_sender(sender: str, lexicon: DetectionLexicon) -> str | None:
    """
    Name the vendor behind a sender, or None when the sender cannot name one.

    Personal mailbox domains never name a vendor. Payment processors sending
    on a vendor's behalf name it through the display name.
    """
    display_name, domain = split_sender(sender)
    if not domain:
        return None

    registrable = registrable_domain(domain, lexicon)
    if registrable in lexicon.free_mail_domains:
        return None

    if registrable in lexicon.billing_platform_domains:
        cleaned = _DISPLAY_NOISE.sub("", display_name)
        cleaned = re.sub(r"\s+", " ", cleaned).strip(" -|,")
        return cleaned or None

    label = registrable.split(".")[0]
    if not re.fullmatch(r"[a-z0-9][a-z0-9-]*", label):
        return None
    return label.capitalize()
