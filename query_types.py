# ABOUTME: Query dispatch type definitions and error classes
# ABOUTME: Shared by the dispatcher, presence scorer, stats, storage and the stream client

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Presence(str, Enum):
    """How prominently the target domain appears in a response."""
    FEATURED = "featured"
    MENTIONED = "mentioned"
    ABSENT = "absent"


class DetectionMethod(str, Enum):
    """Which signal identified the target. Priority: url > brand > text."""
    URL = "url"
    BRAND = "brand"
    TEXT = "text"
    NONE = "none"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


NOT_FOUND = "not_found"


@dataclass
class CompetitorMention:
    """A brand or domain other than the target found in a response."""
    name: str
    domain: str
    position: int
    context: str = Sentiment.NEUTRAL.value
    sentiment: str = Sentiment.NEUTRAL.value
    mention_type: str = DetectionMethod.TEXT.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "domain": self.domain,
            "position": self.position,
            "context": self.context,
            "sentiment": self.sentiment,
            "mentionType": self.mention_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompetitorMention":
        sentiment = data.get("sentiment")
        if sentiment not in (Sentiment.POSITIVE.value, Sentiment.NEGATIVE.value):
            sentiment = Sentiment.NEUTRAL.value
        mention_type = data.get("mentionType")
        if mention_type not in (DetectionMethod.URL.value, DetectionMethod.BRAND.value):
            mention_type = DetectionMethod.TEXT.value
        return cls(
            name=data.get("name") or data.get("domain") or "",
            domain=data.get("domain") or data.get("name") or "",
            position=int(data.get("position") or 0),
            context=data.get("context") or "",
            sentiment=sentiment,
            mention_type=mention_type,
        )


@dataclass
class CompetitorSummary:
    mentions: List[CompetitorMention] = field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [m.name for m in self.mentions if m.name]

    @property
    def total_mentions(self) -> int:
        return len(self.mentions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "names": self.names,
            "mentions": [m.to_dict() for m in self.mentions],
            "totalMentions": self.total_mentions,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CompetitorSummary":
        if not data:
            return cls()
        mentions = data.get("mentions") or []
        return cls(mentions=[CompetitorMention.from_dict(m) for m in mentions if isinstance(m, dict)])


@dataclass
class DomainAnalysis:
    """Raw detection output for one response, before scoring."""
    presence: Presence
    rank: int = 0
    context: str = NOT_FOUND
    mentions: int = 0
    highlight_context: str = ""
    detection_method: DetectionMethod = DetectionMethod.NONE
    sentiment: Sentiment = Sentiment.NEUTRAL
    list_position: Optional[int] = None
    competitors: CompetitorSummary = field(default_factory=CompetitorSummary)

    @property
    def is_present(self) -> bool:
        return self.presence != Presence.ABSENT


@dataclass
class PresenceScores:
    """0-5 score set for one response plus the detection details behind it."""
    presence: int = 0
    presence_label: str = Presence.ABSENT.value
    relevance: float = 0.0
    accuracy: float = 0.0
    sentiment: float = 0.0
    overall: float = 0.0
    comprehensiveness: float = 0.0
    domain_rank: int = 0
    found_domains: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    competitor_urls: List[str] = field(default_factory=list)
    competitor_match_score: float = 0.0
    context: str = NOT_FOUND
    mentions: int = 0
    highlight_context: str = ""
    detection_method: str = DetectionMethod.NONE.value
    domain_sentiment: str = Sentiment.NEUTRAL.value
    ranking_factors: Dict[str, float] = field(default_factory=dict)
    competitors: CompetitorSummary = field(default_factory=CompetitorSummary)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "presence": self.presence,
            "presenceLabel": self.presence_label,
            "relevance": self.relevance,
            "accuracy": self.accuracy,
            "sentiment": self.sentiment,
            "overall": self.overall,
            "comprehensiveness": self.comprehensiveness,
            "domainRank": self.domain_rank,
            "foundDomains": self.found_domains,
            "sources": self.sources,
            "competitorUrls": self.competitor_urls,
            "competitorMatchScore": self.competitor_match_score,
            "context": self.context,
            "mentions": self.mentions,
            "highlightContext": self.highlight_context,
            "detectionMethod": self.detection_method,
            "domainSentiment": self.domain_sentiment,
            "rankingFactors": self.ranking_factors,
            "competitors": self.competitors.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PresenceScores":
        return cls(
            presence=int(data.get("presence") or 0),
            presence_label=data.get("presenceLabel") or (
                Presence.MENTIONED.value if data.get("presence") else Presence.ABSENT.value
            ),
            relevance=float(data.get("relevance") or 0),
            accuracy=float(data.get("accuracy") or 0),
            sentiment=float(data.get("sentiment") or 0),
            overall=float(data.get("overall") or 0),
            comprehensiveness=float(data.get("comprehensiveness") or 0),
            domain_rank=int(data.get("domainRank") or 0),
            found_domains=list(data.get("foundDomains") or []),
            sources=list(data.get("sources") or []),
            competitor_urls=list(data.get("competitorUrls") or []),
            competitor_match_score=float(data.get("competitorMatchScore") or 0),
            context=data.get("context") or NOT_FOUND,
            mentions=int(data.get("mentions") or 0),
            highlight_context=data.get("highlightContext") or "",
            detection_method=data.get("detectionMethod") or DetectionMethod.NONE.value,
            domain_sentiment=data.get("domainSentiment") or Sentiment.NEUTRAL.value,
            ranking_factors=dict(data.get("rankingFactors") or {}),
            competitors=CompetitorSummary.from_dict(data.get("competitors")),
        )


@dataclass
class QueryTask:
    """One selected phrase to send to every active model."""
    keyword: str
    phrase: str
    domain_id: int
    phrase_id: Optional[int] = None


@dataclass
class ProviderResponse:
    """Answer returned by an AI model for one phrase."""
    response: str
    cost: float = 0.0
    sources: List[str] = field(default_factory=list)
    model_id: str = ""
    tokens: int = 0


@dataclass
class QueryResult:
    """Scored answer of one model for one (keyword, phrase)."""
    keyword: str
    phrase: str
    model: str
    response: str
    scores: PresenceScores
    latency: float = 0.0
    cost: float = 0.0
    progress: float = 0.0
    domain_id: Optional[int] = None
    phrase_id: Optional[int] = None
    id: Optional[int] = None
    sources: List[str] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str, str]:
        """Identity used to reject duplicate results."""
        return (self.model, self.phrase, self.keyword)

    def to_dict(self) -> Dict[str, Any]:
        scores = self.scores.to_dict()
        return {
            "keyword": self.keyword,
            "phrase": self.phrase,
            "model": self.model,
            "response": self.response,
            "latency": round(self.latency, 3),
            "cost": round(self.cost, 6),
            "progress": round(self.progress, 2),
            "domainId": self.domain_id,
            "phraseId": self.phrase_id,
            "aiQueryResultId": self.id,
            "sources": self.sources,
            "scores": scores,
            # Top-level copy for consumers that read competitors directly
            "competitors": scores["competitors"],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryResult":
        """Build from wire format. Raises ValueError on records missing identity fields."""
        if not isinstance(data, dict):
            raise ValueError("result must be an object")
        model = data.get("model")
        scores = data.get("scores")
        if not model or not isinstance(scores, dict):
            raise ValueError("result is missing model or scores")
        return cls(
            keyword=data.get("keyword") or "Unknown",
            phrase=data.get("phrase") or "",
            model=model,
            response=data.get("response") or "",
            scores=PresenceScores.from_dict(scores),
            latency=float(data.get("latency") or 0),
            cost=float(data.get("cost") or 0),
            progress=float(data.get("progress") or 0),
            domain_id=data.get("domainId"),
            phrase_id=data.get("phraseId"),
            id=data.get("aiQueryResultId"),
            sources=list(data.get("sources") or []),
        )


class AnalysisError(Exception):
    """Base analysis error."""
    def __init__(self, message: str, model: str = "", is_retryable: bool = False):
        super().__init__(message)
        self.model = model
        self.is_retryable = is_retryable


class QueryTimeoutError(AnalysisError):
    """Model took longer than the per-query timeout."""
    def __init__(self, message: str = "Query timeout - AI model taking too long to respond", model: str = ""):
        super().__init__(message, model, is_retryable=True)


class ProviderError(AnalysisError):
    """AI provider call failed."""
    pass


class DomainNotFoundError(AnalysisError):
    def __init__(self, domain_id: int):
        super().__init__("Domain not found")
        self.domain_id = domain_id


class PhraseNotFoundError(AnalysisError):
    def __init__(self, phrase_id: int):
        super().__init__(f"Phrase {phrase_id} not found")
        self.phrase_id = phrase_id


class NoSelectedPhrasesError(AnalysisError):
    def __init__(self):
        super().__init__("No selected phrases found for this domain. Please go back and select phrases first.")


class TooManyQueriesError(AnalysisError):
    def __init__(self, total: int, limit: int):
        super().__init__(f"Too many queries requested: {total}. Maximum allowed is {limit}.")
        self.total = total
        self.limit = limit


class ConcurrencyLimitError(AnalysisError):
    """Too many active analysis streams for one domain."""
    def __init__(self, domain_id: int):
        super().__init__(
            "Too many concurrent requests for this domain. "
            "Please wait for the current analysis to complete.",
            is_retryable=True,
        )
        self.domain_id = domain_id
