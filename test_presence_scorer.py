"""
Tests for presence detection and 0-5 scoring.
Run with: pytest test_presence_scorer.py -v
"""
import pytest

from presence_scorer import (
    analyze_response,
    brand_variants,
    clean_domain_name,
    detect_list_position,
    detect_presence,
    extract_competitors,
    score_comprehensiveness,
    score_response,
)
from query_types import DetectionMethod, Presence, ProviderError, Sentiment


def test_clean_domain_name():
    assert clean_domain_name("https://www.Example.com/path?x=1") == "example.com"
    assert clean_domain_name("acme.io:8080") == "acme.io"


def test_brand_variants_for_hyphenated_brand():
    assert set(brand_variants("acme-tools")) == {"acme-tools", "acme tools", "acmetools"}
    assert brand_variants("acme") == ["acme"]


def test_url_citation_is_featured():
    text = ("For project tracking the best choice is https://acme.io/pricing. "
            "Other options include Trello and Asana.")
    analysis = detect_presence(text, "acme.io")

    assert analysis.presence == Presence.FEATURED
    assert analysis.detection_method == DetectionMethod.URL
    assert analysis.rank == 1
    assert analysis.sentiment == Sentiment.POSITIVE
    assert analysis.competitors.names == ["Trello", "Asana"]
    assert [m.position for m in analysis.competitors.mentions] == [1, 2]


def test_brand_after_competitors_is_mentioned():
    text = "Common picks are Notion and Trello. Acme is also an option."
    analysis = detect_presence(text, "acme.io")

    assert analysis.presence == Presence.MENTIONED
    assert analysis.detection_method == DetectionMethod.BRAND
    assert analysis.rank == 3
    assert analysis.sentiment == Sentiment.NEUTRAL


def test_plain_text_domain_with_www():
    analysis = detect_presence("You can sign up at www.acme.io in minutes", "acme.io")
    assert analysis.detection_method == DetectionMethod.TEXT
    assert analysis.mentions == 1


def test_url_beats_text_and_brand():
    text = "Acme is fine. See acme.io or https://acme.io/docs for details."
    analysis = detect_presence(text, "acme.io")
    assert analysis.detection_method == DetectionMethod.URL
    assert analysis.mentions == 3


def test_highlight_context_is_capped():
    text = ("x " * 300) + "acme.io" + (" y" * 300)
    analysis = detect_presence(text, "acme.io")
    assert "acme.io" in analysis.highlight_context
    assert len(analysis.highlight_context) <= 280


def test_absent_domain():
    analysis = detect_presence("Use Notion or Slack for notes.", "acme.io")
    assert analysis.presence == Presence.ABSENT
    assert analysis.rank == 0
    assert analysis.competitors.names == ["Notion", "Slack"]


def test_competitors_exclude_target_subdomains():
    text = "Docs live at https://docs.acme.io and you can compare with https://www.rival.com today"
    summary, _ = extract_competitors(text, "acme.io")
    assert [m.domain for m in summary.mentions] == ["rival.com"]
    assert summary.mentions[0].mention_type == "url"


def test_competitors_capped_at_eight():
    text = "Try Notion, Slack, Trello, Asana, ClickUp, Airtable, Figma, Canva, Zoom or Dropbox."
    summary, positions = extract_competitors(text, "acme.io")
    assert summary.total_mentions == 8
    assert len(positions) == 10
    assert summary.names[0] == "Notion"


def test_caller_supplied_competitor_names():
    summary, _ = extract_competitors("Acme and Basecamp both work.", "acme.io", ["basecamp.com"])
    assert summary.names == ["Basecamp"]


def test_competitor_brand_containing_target_name_is_kept():
    # Substrings of the target brand are still competitors
    summary, _ = extract_competitors("Try Bubble or Zapier for no-code apps.", "bubblegum.io")
    assert summary.names == ["Bubble", "Zapier"]

    summary, _ = extract_competitors("Apple and Google dominate.", "pineapple.com")
    assert summary.names == ["Apple", "Google"]


def test_target_brand_is_never_a_competitor():
    summary, _ = extract_competitors("Bubble and Zapier both integrate.", "bubble.io")
    assert summary.names == ["Zapier"]


def test_sentiment_words_match_whole_words():
    analysis = detect_presence("Acme.io is the best choice and offers unlimited projects.", "acme.io")
    assert analysis.sentiment == Sentiment.POSITIVE

    analysis = detect_presence("Acme.io works with Blacksmith Studio and is a top pick.", "acme.io")
    assert analysis.sentiment == Sentiment.POSITIVE

    analysis = detect_presence("Acme.io has limited integrations.", "acme.io")
    assert analysis.sentiment == Sentiment.NEGATIVE


def test_detect_list_position():
    text = "Top picks:\n1. Notion\n2. Acme\n3. Trello"
    assert detect_list_position(text, ["acme"]) == 2


def test_score_comprehensiveness():
    assert score_comprehensiveness("x" * 1001) == 5
    assert score_comprehensiveness("x" * 700) == 3
    assert score_comprehensiveness("short") == 1


def test_score_url_citation():
    text = ("For project tracking the best choice is https://acme.io/pricing. "
            "Other options include Trello and Asana.")
    scores = score_response("best project tracking tool", text, "acme.io")

    assert scores.presence == 1
    assert scores.presence_label == "featured"
    assert scores.accuracy == 5.0
    assert scores.sentiment == 5.0
    assert scores.overall == 5.0
    assert scores.relevance == 4.75
    assert scores.domain_rank == 1
    assert scores.detection_method == "url"
    assert scores.ranking_factors["position"] == 100
    assert scores.competitor_match_score == 20


def test_score_brand_mention_lower_rank():
    text = "Common picks are Notion and Trello. Acme is also an option."
    scores = score_response("project tools", text, "acme.io")

    assert scores.accuracy == 4.0
    assert scores.sentiment == 3.0
    assert scores.overall == 3.2
    assert scores.ranking_factors["position"] == 60


def test_score_negative_mention():
    scores = score_response("acme review", "Acme is not recommended for large teams.", "acme.com")
    assert scores.domain_sentiment == "negative"
    assert scores.sentiment == 1.0
    assert scores.overall == 2.7


def test_absent_scores_are_zero_but_keep_competitors():
    text = "Consider https://rival.com or Notion."
    scores = score_response("best tool", text, "acme.io")

    assert scores.presence == 0
    assert scores.presence_label == "absent"
    assert (scores.relevance, scores.accuracy, scores.sentiment, scores.overall) == (0, 0, 0, 0)
    assert scores.competitor_urls == ["https://rival.com"]
    assert scores.competitors.total_mentions == 2


def test_scores_serialize_camel_case():
    data = score_response("x", "Visit https://acme.io", "acme.io").to_dict()
    assert {"presenceLabel", "domainRank", "highlightContext", "detectionMethod", "rankingFactors"} <= set(data)


class _FailingAnalyzer:
    async def complete_json(self, system_prompt, prompt, model=None):
        raise ProviderError("boom")


class _StaticAnalyzer:
    async def complete_json(self, system_prompt, prompt, model=None):
        return {
            "targetDomain": {
                "isPresent": True, "rank": 2, "context": "positive", "mentions": 2,
                "highlightContext": "Acme is great", "detectionMethod": "brand",
            },
            "competitors": [{"name": "Trello", "domain": "trello.com", "position": 1, "sentiment": "neutral"}],
        }


@pytest.mark.asyncio
async def test_ai_analysis_falls_back_to_heuristics():
    analysis = await analyze_response("See https://acme.io", "acme.io", ai_client=_FailingAnalyzer(), use_ai=True)
    assert analysis.detection_method == DetectionMethod.URL


@pytest.mark.asyncio
async def test_ai_analysis_used_when_enabled():
    analysis = await analyze_response("Trello, then Acme", "acme.io", ai_client=_StaticAnalyzer(), use_ai=True)
    assert analysis.presence == Presence.MENTIONED
    assert analysis.rank == 2
    assert analysis.sentiment == Sentiment.POSITIVE
    assert analysis.competitors.names == ["Trello"]


@pytest.mark.asyncio
async def test_ai_analysis_skipped_when_disabled():
    analysis = await analyze_response("Acme rocks", "acme.io", ai_client=_StaticAnalyzer(), use_ai=False)
    assert analysis.detection_method == DetectionMethod.BRAND
    assert analysis.rank == 1
