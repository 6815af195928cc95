from __future__ import annotations

from toolsight.detection.lexicon import load_lexicon


def test_default_lexicon_loads(lexicon):
    assert "invoice" in lexicon.subscription_keywords
    assert "hubspot.com" in lexicon.known_vendor_domains
    assert "stripe.com" in lexicon.billing_platform_domains
    assert "gmail.com" in lexicon.free_mail_domains
    assert "co.uk" in lexicon.compound_suffixes


def test_matching_is_anchored_at_word_start(lexicon):
    assert lexicon.matches("subscription_keywords", "Your plan renews monthly") == [
        "renew",
        "your plan",
    ]
    assert "charge" in lexicon.matches("subscription_keywords", "You were CHARGED today")
    assert lexicon.matches("subscription_keywords", "Discharge summary") == []


def test_lexicon_from_custom_file(tmp_path):
    path = tmp_path / "lexicon.yaml"
    path.write_text(
        "subscription_keywords: [Invoice]\n"
        "tool_keywords:\n"
        "  marketing: [campaign]\n"
        "known_vendor_domains: [Example.com]\n",
        encoding="utf-8",
    )

    custom = load_lexicon(str(path))

    assert custom.subscription_keywords == ("invoice",)
    assert custom.marketing_keywords == ("campaign",)
    assert custom.infrastructure_keywords == ()
    assert custom.known_vendor_domains == frozenset({"example.com"})
    assert custom.matches("exclusion_keywords", "doordash") == []
