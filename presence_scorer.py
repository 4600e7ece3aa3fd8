"""Presence Scorer - Domain Visibility in AI Responses

Given one AI model response and the target domain:
- Classifies presence (featured / mentioned / absent)
- Finds the detection method (url > brand > text), rank and mention count
- Extracts competitor brands/domains by heuristic text matching
- Produces a 0-5 score set (relevance, accuracy, sentiment, overall)

Scoring Philosophy:
- Absent from the answer = every score is 0
- URL citations are the most reliable signal, bare brand names the least
- Being the first entity named carries the most weight for `overall`

An optional LLM pass can replace heuristic detection; it falls back to the
heuristics on any failure.
"""

import re
import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from query_types import (
    AnalysisError,
    CompetitorMention,
    CompetitorSummary,
    DetectionMethod,
    DomainAnalysis,
    NOT_FOUND,
    Presence,
    PresenceScores,
    Sentiment,
)

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r'https?://[^\s\)\]\}"\'<>]+', re.IGNORECASE)
BARE_DOMAIN_PATTERN = re.compile(
    r'(?<![\w@/.-])((?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+'
    r'(?:com|io|ai|co|net|org|app|dev|so|us|uk|de|tech|cloud))(?![\w-])',
    re.IGNORECASE,
)
SENTENCE_END_PATTERN = re.compile(r'[.!?](?=\s|$)|\n')

MAX_COMPETITORS = 8
MAX_HIGHLIGHT_CHARS = 280

# Brands that commonly show up in tool/software recommendations
KNOWN_BRANDS = [
    'notion', 'slack', 'trello', 'asana', 'clickup', 'monday', 'airtable', 'figma', 'canva', 'zoom',
    'dropbox', 'google', 'microsoft', 'apple', 'amazon', 'salesforce', 'hubspot', 'mailchimp', 'stripe',
    'shopify', 'wix', 'squarespace', 'wordpress', 'webflow', 'bubble', 'zapier', 'ifttt',
]

NEGATIVE_PATTERNS = [
    r"\bnot recommend", r"\bavoid", r"\bworst\b", r"\bpoor", r"\bdrawbacks?\b", r"\bcomplain",
    r"\boverpriced\b", r"\blacks?\b", r"\blacking\b", r"\blimited\b", r"\boutdated\b", r"\bunreliable\b",
    r"\bscams?\b",
]
POSITIVE_PATTERNS = [
    r"\brecommend", r"\bbest\b", r"\btop\b", r"\bleading\b", r"\bexcellent\b", r"\bgreat", r"\bpopular\b",
    r"\btrusted\b", r"\bideal\b", r"\bstandout\b", r"\bfavou?rite\b", r"\bhighly rated\b",
]


# ==================== Normalization ====================

def clean_domain_name(value: str) -> str:
    """Normalize to a bare lowercase host: no protocol, www., path or port."""
    cleaned = (value or "").strip().lower()
    cleaned = re.sub(r'^https?://', '', cleaned)
    cleaned = re.sub(r'^www\.', '', cleaned)
    cleaned = re.split(r'[/?#]', cleaned, maxsplit=1)[0]
    return cleaned.split(':')[0].rstrip('.')


def extract_brand_name(domain: str) -> str:
    cleaned = clean_domain_name(domain)
    return cleaned.split('.')[0] or cleaned


def brand_variants(brand: str) -> List[str]:
    """Case-insensitive spellings of a brand, longest first.

    "acme-tools" -> ["acme-tools", "acme tools", "acmetools"]
    """
    brand = brand.lower()
    variants = {brand}
    parts = [p for p in re.split(r'[-_.]', brand) if p]
    if len(parts) > 1:
        variants.add(" ".join(parts))
        variants.add("".join(parts))
    return sorted((v for v in variants if len(v) >= 3 or v == brand), key=len, reverse=True)


def _hostname(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return re.sub(r'^www\.', '', host.lower()).rstrip('.')


def _matches_domain(host: str, domain: str) -> bool:
    """True for the domain itself and any of its subdomains."""
    return bool(host) and (host == domain or host.endswith("." + domain))


def _inside(position: int, spans: List[Tuple[int, int]]) -> bool:
    return any(start <= position < end for start, end in spans)


# ==================== Detection ====================

def _classify_sentiment(text: str, position: int) -> Sentiment:
    """Sentiment of the sentence around `position`."""
    # Dots inside domains ("acme.com") are not sentence ends
    boundaries = [m.end() for m in SENTENCE_END_PATTERN.finditer(text)]
    start = max((b for b in boundaries if b <= position), default=0)
    end = min((b for b in boundaries if b > position), default=len(text))
    window = text[start:end].lower()

    # Negative first: "not recommended" also contains "recommend"
    if any(re.search(p, window) for p in NEGATIVE_PATTERNS):
        return Sentiment.NEGATIVE
    if any(re.search(p, window) for p in POSITIVE_PATTERNS):
        return Sentiment.POSITIVE
    return Sentiment.NEUTRAL


def detect_list_position(text: str, names: List[str]) -> Optional[int]:
    """Detect position in numbered/bulleted lists."""
    pattern = "|".join(re.escape(n) for n in names if n)
    if not pattern:
        return None
    bullet_index = 0
    for line in text.split('\n'):
        numbered = re.match(r'^\s*(\d+)[\.)\s]', line)
        bulleted = re.match(r'^\s*[\*\-\•]\s', line)
        if bulleted:
            bullet_index += 1
        if re.search(pattern, line, re.IGNORECASE):
            if numbered:
                return int(numbered.group(1))
            if bulleted:
                return bullet_index
    return None


def find_target_occurrences(text: str, target_domain: str) -> List[Tuple[int, int, DetectionMethod]]:
    """All (start, end, method) hits of the target, ordered by position."""
    domain = clean_domain_name(target_domain)
    if not domain:
        return []
    brand = extract_brand_name(domain)
    url_spans = [(m.start(), m.end()) for m in URL_PATTERN.finditer(text)]
    hits: List[Tuple[int, int, DetectionMethod]] = []

    for m in URL_PATTERN.finditer(text):
        if _matches_domain(_hostname(m.group(0)), domain):
            hits.append((m.start(), m.end(), DetectionMethod.URL))

    # Plain-text domain, optionally with www. or another subdomain in front
    domain_pattern = re.compile(r'(?<![\w.-])(?:[\w-]+\.)*' + re.escape(domain) + r'(?![\w-])', re.IGNORECASE)
    text_spans = []
    for m in domain_pattern.finditer(text):
        if not _inside(m.start(), url_spans):
            hits.append((m.start(), m.end(), DetectionMethod.TEXT))
            text_spans.append((m.start(), m.end()))

    taken = url_spans + text_spans
    for variant in brand_variants(brand):
        # A trailing ".tld" means a domain, handled above
        pattern = re.compile(r'(?<![\w.-])' + re.escape(variant) + r'(?![\w-])(?!\.[a-z])', re.IGNORECASE)
        for m in pattern.finditer(text):
            if not _inside(m.start(), taken):
                hits.append((m.start(), m.end(), DetectionMethod.BRAND))
                taken.append((m.start(), m.end()))

    return sorted(hits, key=lambda h: h[0])


def extract_competitors(
    text: str,
    target_domain: str,
    extra_names: Optional[List[str]] = None,
) -> Tuple[CompetitorSummary, List[int]]:
    """Extract competitor brands/domains from a response.

    Returns the summary (first-occurrence order, capped at MAX_COMPETITORS) and
    the first positions of every competitor found, uncapped, for ranking.
    """
    domain = clean_domain_name(target_domain)
    target_brand = extract_brand_name(domain) if domain else ""
    url_spans = [(m.start(), m.end()) for m in URL_PATTERN.finditer(text)]

    # label -> (position, name, domain, mention_type)
    found: Dict[str, Tuple[int, str, str, str]] = {}

    def add(label: str, position: int, name: str, comp_domain: str, mention_type: str) -> None:
        if not label or label == target_brand:
            return
        if label not in found or position < found[label][0]:
            found[label] = (position, name, comp_domain, mention_type)

    for m in URL_PATTERN.finditer(text):
        host = _hostname(m.group(0))
        if host and not _matches_domain(host, domain):
            add(extract_brand_name(host), m.start(), host, host, DetectionMethod.URL.value)

    for m in BARE_DOMAIN_PATTERN.finditer(text):
        if _inside(m.start(), url_spans):
            continue
        host = clean_domain_name(m.group(1))
        if not _matches_domain(host, domain):
            add(extract_brand_name(host), m.start(), host, host, DetectionMethod.TEXT.value)

    for brand in list(KNOWN_BRANDS) + list(extra_names or []):
        label = brand.strip().lower()
        if '.' in label:
            label = extract_brand_name(label)
        if not label or label == target_brand:
            continue
        m = re.search(r'(?<![\w.-])' + re.escape(label) + r'(?![\w-])', text, re.IGNORECASE)
        if m and not _inside(m.start(), url_spans):
            existing = found.get(label)
            if existing and existing[0] <= m.start():
                continue
            add(label, m.start(), m.group(0), existing[2] if existing else "", DetectionMethod.BRAND.value)

    ordered = sorted(found.values(), key=lambda entry: entry[0])
    mentions = []
    for index, (position, name, comp_domain, mention_type) in enumerate(ordered[:MAX_COMPETITORS]):
        sentiment = _classify_sentiment(text, position).value
        mentions.append(CompetitorMention(
            name=name,
            domain=comp_domain,
            position=index + 1,
            context=sentiment,
            sentiment=sentiment,
            mention_type=mention_type,
        ))
    return CompetitorSummary(mentions=mentions), [entry[0] for entry in ordered]


def detect_presence(
    response: str,
    target_domain: str,
    competitor_names: Optional[List[str]] = None,
) -> DomainAnalysis:
    """Heuristic presence detection for one response."""
    text = response or ""
    competitors, competitor_positions = extract_competitors(text, target_domain, competitor_names)
    hits = find_target_occurrences(text, target_domain)

    if not hits:
        return DomainAnalysis(presence=Presence.ABSENT, competitors=competitors)

    methods = {method for _, _, method in hits}
    if DetectionMethod.URL in methods:
        detection_method = DetectionMethod.URL
    elif DetectionMethod.BRAND in methods:
        detection_method = DetectionMethod.BRAND
    else:
        detection_method = DetectionMethod.TEXT

    first_start, first_end, _ = hits[0]
    rank = 1 + sum(1 for p in competitor_positions if p < first_start)
    sentiment = _classify_sentiment(text, first_start)

    domain = clean_domain_name(target_domain)
    list_position = detect_list_position(text, [domain] + brand_variants(extract_brand_name(domain)))

    start = max(0, first_start - 100)
    end = min(len(text), first_end + 100)
    highlight = text[start:end].strip()[:MAX_HIGHLIGHT_CHARS]

    presence = Presence.FEATURED if rank == 1 or list_position == 1 else Presence.MENTIONED

    return DomainAnalysis(
        presence=presence,
        rank=rank,
        context=sentiment.value,
        mentions=len(hits),
        highlight_context=highlight,
        detection_method=detection_method,
        sentiment=sentiment,
        list_position=list_position,
        competitors=competitors,
    )


# ==================== LLM-assisted detection ====================

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert at precise text analysis for domain and brand detection. "
    "You MUST return ONLY raw JSON, strictly conforming to the provided schema. "
    "Do not include markdown. Never invent domains."
)


def build_analysis_prompt(response: str, target_domain: str) -> str:
    domain = clean_domain_name(target_domain)
    return f"""Detect the TARGET DOMAIN and COMPETITORS in the RESPONSE below.

- isPresent: is the target domain, its brand name or a sub-brand mentioned?
- rank: order of the target's first mention among all brands (1 = first, 0 = absent)
- detectionMethod: "url" | "brand" | "text" | "none" (priority url > brand > text)
- highlightContext: exact substring (max 280 chars) around the first mention
- competitors: other brands/domains with position, sentiment and mentionType

Return JSON:
{{"targetDomain": {{"isPresent": bool, "rank": int, "context": "positive|neutral|negative|not_found",
  "mentions": int, "highlightContext": str, "detectionMethod": "url|text|brand|none"}},
  "competitors": [{{"name": str, "domain": str, "position": int,
  "sentiment": "positive|neutral|negative", "mentionType": "url|text|brand"}}]}}

RESPONSE:
\"\"\"{response}\"\"\"

TARGET DOMAIN: {domain}
TARGET BRAND: {extract_brand_name(domain)}"""


def parse_ai_analysis(data: Dict) -> DomainAnalysis:
    """Convert the LLM JSON payload into a DomainAnalysis. Raises ValueError if malformed."""
    target = data.get("targetDomain")
    if not isinstance(target, dict):
        raise ValueError("AI analysis missing targetDomain")

    competitors = CompetitorSummary(mentions=[
        CompetitorMention.from_dict(c) for c in (data.get("competitors") or [])[:MAX_COMPETITORS]
        if isinstance(c, dict)
    ])
    if not target.get("isPresent"):
        return DomainAnalysis(presence=Presence.ABSENT, competitors=competitors)

    context = target.get("context") or Sentiment.NEUTRAL.value
    sentiment = Sentiment(context) if context in {s.value for s in Sentiment} else Sentiment.NEUTRAL
    try:
        detection_method = DetectionMethod(target.get("detectionMethod") or "text")
    except ValueError:
        detection_method = DetectionMethod.TEXT
    rank = int(target.get("rank") or 0)

    return DomainAnalysis(
        presence=Presence.FEATURED if rank == 1 else Presence.MENTIONED,
        rank=rank,
        context=sentiment.value,
        mentions=int(target.get("mentions") or 1),
        highlight_context=(target.get("highlightContext") or "")[:MAX_HIGHLIGHT_CHARS],
        detection_method=detection_method,
        sentiment=sentiment,
        competitors=competitors,
    )


async def analyze_response(
    response: str,
    target_domain: str,
    ai_client=None,
    use_ai: bool = False,
    competitor_names: Optional[List[str]] = None,
) -> DomainAnalysis:
    """Detect presence, preferring the LLM pass when enabled."""
    if use_ai and ai_client is not None:
        try:
            data = await ai_client.complete_json(
                ANALYSIS_SYSTEM_PROMPT,
                build_analysis_prompt(response, target_domain),
            )
            return parse_ai_analysis(data)
        except (AnalysisError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"AI presence analysis failed, using heuristics: {e}")
    return detect_presence(response, target_domain, competitor_names)


# ==================== Scoring ====================

def _clamp(value: float, low: float = 1.0, high: float = 5.0) -> float:
    return min(high, max(low, value))


def score_comprehensiveness(response: str) -> int:
    length = len(response)
    if length > 1000:
        return 5
    if length > 800:
        return 4
    if length > 600:
        return 3
    if length > 400:
        return 2
    return 1


def score_response(
    phrase: str,
    response: str,
    target_domain: str,
    analysis: Optional[DomainAnalysis] = None,
    sources: Optional[List[str]] = None,
) -> PresenceScores:
    """Score one response on a 0-5 scale.

    Scores by signal:
    - accuracy: url=5, brand=4, text=3
    - sentiment: positive=5, neutral=3, negative=1
    - relevance: share of phrase words (>3 chars) echoed in the response, +/-1 for sentiment
    - overall: rank score (rank 1 = 5) x sentiment multiplier + context/detection bonuses
    """
    if analysis is None:
        analysis = detect_presence(response, target_domain)

    competitors = analysis.competitors
    competitor_urls = [f"https://{m.domain}" for m in competitors.mentions if m.domain]
    competitor_match_score = competitors.total_mentions * 10

    if not analysis.is_present:
        return PresenceScores(
            sources=list(sources or []),
            competitor_urls=competitor_urls,
            competitor_match_score=competitor_match_score,
            ranking_factors={"position": 0, "prominence": 0, "contextQuality": 0, "mentionType": 0},
            competitors=competitors,
        )

    sentiment = analysis.sentiment
    method = analysis.detection_method

    phrase_words = [w for w in re.findall(r'\w+', phrase.lower()) if len(w) > 3]
    response_words = set(re.findall(r'\w+', response.lower()))
    if phrase_words:
        matched = sum(1 for w in phrase_words if w in response_words)
        base_relevance = _clamp(matched / len(phrase_words) * 5)
    else:
        base_relevance = 3.0
    relevance_boost = {Sentiment.POSITIVE: 1, Sentiment.NEGATIVE: -1}.get(sentiment, 0)
    relevance = _clamp(base_relevance + relevance_boost)

    accuracy = {DetectionMethod.URL: 5.0, DetectionMethod.BRAND: 4.0}.get(method, 3.0)
    sentiment_score = {Sentiment.POSITIVE: 5.0, Sentiment.NEGATIVE: 1.0}.get(sentiment, 3.0)

    rank = analysis.rank or 1
    rank_score = _clamp(6 - rank)
    multiplier = {Sentiment.POSITIVE: 1.2, Sentiment.NEGATIVE: 0.6}.get(sentiment, 1.0)
    context_bonus = {Sentiment.POSITIVE: 0.5, Sentiment.NEGATIVE: -0.5}.get(sentiment, 0.0)
    detection_bonus = {DetectionMethod.URL: 0.3, DetectionMethod.BRAND: 0.2}.get(method, 0.0)
    overall = _clamp(rank_score * multiplier + context_bonus + detection_bonus)

    return PresenceScores(
        presence=1,
        presence_label=analysis.presence.value,
        relevance=round(relevance, 2),
        accuracy=accuracy,
        sentiment=sentiment_score,
        overall=round(overall, 2),
        comprehensiveness=float(score_comprehensiveness(response)),
        domain_rank=analysis.rank,
        found_domains=[clean_domain_name(target_domain)],
        sources=list(sources or []),
        competitor_urls=competitor_urls,
        competitor_match_score=competitor_match_score,
        context=analysis.context if analysis.context != NOT_FOUND else sentiment.value,
        mentions=analysis.mentions,
        highlight_context=analysis.highlight_context,
        detection_method=method.value,
        domain_sentiment=sentiment.value,
        ranking_factors={
            "position": max(0, 100 - (rank - 1) * 20),
            "prominence": min(100, analysis.mentions * 20),
            "contextQuality": {Sentiment.POSITIVE: 80, Sentiment.NEGATIVE: 20}.get(sentiment, 50),
            "mentionType": {DetectionMethod.URL: 100, DetectionMethod.BRAND: 80}.get(method, 60),
        },
        competitors=competitors,
    )
