"""Statistics over scored query results.

Per-result scores are on a 0-5 scale; every average reported here is converted
to 0-100 (x 20) for dashboards. Presence is 0/1 per result and reported as a
percentage rate.

Used in three places:
- Dispatcher: `stats` events after each batch and once at the end of a run
- API: /results, /stats and /competitors endpoints
- Stream client: final per-model / per-keyword statistics
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from query_types import QueryResult

logger = logging.getLogger(__name__)

SCORE_FIELDS = ("presence", "relevance", "accuracy", "sentiment", "overall")


def _coerce(record: Any) -> Optional[QueryResult]:
    """Accept QueryResult objects or wire dicts; None for invalid records."""
    if isinstance(record, QueryResult):
        return record
    try:
        return QueryResult.from_dict(record)
    except (ValueError, TypeError):
        return None


def _valid_results(results: Iterable[Any]) -> List[QueryResult]:
    valid = []
    for record in results or []:
        result = _coerce(record)
        if result is None:
            logger.warning("Skipping invalid result record")
            continue
        valid.append(result)
    return valid


def _pct(total: float, count: int) -> int:
    """Average of a 0-5 score as 0-100."""
    return round(total / count * 20) if count else 0


def _rate(hits: float, count: int) -> int:
    return round(hits / count * 100) if count else 0


def calculate_visibility_band(score: float) -> str:
    """Map a 0-100 visibility score to a band name."""
    if score >= 80:
        return "Dominant"
    if score >= 60:
        return "Strong"
    if score >= 40:
        return "Moderate"
    if score >= 20:
        return "Weak"
    return "Minimal"


def _accumulate(results: List[QueryResult]) -> Dict[str, Dict[str, float]]:
    """Per-model sums, in first-seen model order."""
    sums: Dict[str, Dict[str, float]] = {}
    for r in results:
        s = sums.setdefault(r.model, {
            "total": 0, "presence": 0.0, "relevance": 0.0, "accuracy": 0.0,
            "sentiment": 0.0, "overall": 0.0, "comprehensiveness": 0.0,
            "latency": 0.0, "cost": 0.0,
        })
        s["total"] += 1
        for name in SCORE_FIELDS:
            s[name] += float(getattr(r.scores, name) or 0)
        s["comprehensiveness"] += float(r.scores.comprehensiveness or 0)
        s["latency"] += float(r.latency or 0)
        s["cost"] += float(r.cost or 0)
    return sums


def _overall(results: List[QueryResult]) -> Dict[str, int]:
    total = len(results)
    return {
        "presenceRate": _rate(sum(r.scores.presence for r in results), total),
        "avgRelevance": _pct(sum(r.scores.relevance for r in results), total),
        "avgAccuracy": _pct(sum(r.scores.accuracy for r in results), total),
        "avgSentiment": _pct(sum(r.scores.sentiment for r in results), total),
        "avgOverall": _pct(sum(r.scores.overall for r in results), total),
    }


def calculate_stats(results: Iterable[Any]) -> Dict[str, Any]:
    """Per-model and overall stats streamed after every batch."""
    valid = _valid_results(results)
    sums = _accumulate(valid)

    models = []
    for model, s in sums.items():
        count = int(s["total"])
        models.append({
            "model": model,
            "presenceRate": _rate(s["presence"], count),
            "avgRelevance": _pct(s["relevance"], count),
            "avgAccuracy": _pct(s["accuracy"], count),
            "avgSentiment": _pct(s["sentiment"], count),
            "avgOverall": _pct(s["overall"], count),
            "totalQueries": count,
        })

    return {
        "models": models,
        "overall": _overall(valid),
        "totalResults": len(valid),
    }


def _competitor_table(results: List[QueryResult]) -> List[Dict[str, Any]]:
    """Competitors by how many results mention them.

    Threat level is the share of results naming the competitor:
    >= 50% High, >= 20% Medium, otherwise Low.
    """
    total = len(results)
    table: Dict[str, Dict[str, Any]] = {}
    for r in results:
        seen_here = set()
        for mention in r.scores.competitors.mentions:
            key = (mention.domain or mention.name).lower()
            if not key or key in seen_here:
                continue
            seen_here.add(key)
            entry = table.setdefault(key, {
                "domain": mention.domain,
                "name": mention.name,
                "frequency": 0,
                "positions": [],
                "sentiments": {"positive": 0, "neutral": 0, "negative": 0},
                "models": set(),
            })
            entry["frequency"] += 1
            entry["positions"].append(mention.position)
            entry["sentiments"][mention.sentiment] = entry["sentiments"].get(mention.sentiment, 0) + 1
            entry["models"].add(r.model)

    competitors = []
    for entry in table.values():
        share = entry["frequency"] / total if total else 0
        if share >= 0.5:
            threat = "High"
        elif share >= 0.2:
            threat = "Medium"
        else:
            threat = "Low"
        positions = entry.pop("positions")
        entry["avgPosition"] = round(sum(positions) / len(positions), 2) if positions else 0
        entry["models"] = sorted(entry["models"])
        entry["threatLevel"] = threat
        entry["marketShare"] = round(share * 100)
        competitors.append(entry)

    competitors.sort(key=lambda c: (-c["frequency"], c["avgPosition"]))
    return competitors


def _insights(results: List[QueryResult], competitors: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    strengths, weaknesses, opportunities, threats = [], [], [], []
    seen = set()

    def add(bucket: List[Dict[str, Any]], item: Dict[str, Any]) -> None:
        key = (id(bucket), item.get("area"), item.get("description") or item.get("action"))
        if key not in seen:
            seen.add(key)
            bucket.append(item)

    for r in results:
        s = r.scores
        if s.relevance >= 4.0:
            add(strengths, {
                "area": "Content Relevance",
                "score": round(s.relevance * 20),
                "description": f'Strong relevance for "{r.phrase}" - AI models rate this content highly relevant',
            })
        if s.accuracy >= 4.0:
            add(strengths, {
                "area": "Content Accuracy",
                "score": round(s.accuracy * 20),
                "description": f'High accuracy for "{r.phrase}" - Domain is cited directly',
            })
        if s.presence < 0.5:
            add(weaknesses, {
                "area": "Domain Visibility",
                "score": round(s.presence * 100),
                "description": f'Low domain presence for "{r.phrase}" - Domain not appearing in AI responses',
            })
        elif s.overall < 2.5:
            add(weaknesses, {
                "area": "Overall Performance",
                "score": round(s.overall * 20),
                "description": f'Poor overall performance for "{r.phrase}" - Multiple metrics need improvement',
            })
        if s.presence < 0.5 and s.competitors.total_mentions > 0:
            add(opportunities, {
                "area": "Visibility Improvement",
                "potential": "40-60% increase",
                "action": f'Optimize content for "{r.phrase}" - Competitors appear where the domain does not',
            })
        if s.presence > 0.5 and s.relevance < 3.5:
            add(opportunities, {
                "area": "Content Enhancement",
                "potential": "25-35% improvement",
                "action": f'Enhance content relevance for "{r.phrase}" - Visible but needs better relevance',
            })

    high_threat = [c for c in competitors if c["threatLevel"] == "High"]
    if high_threat:
        threats.append({
            "area": "Competitive Pressure",
            "risk": f"{len(high_threat)} high-threat competitors identified",
            "mitigation": "Focus on unique value propositions and niche market positioning",
        })

    return {
        "strengths": strengths,
        "weaknesses": weaknesses,
        "opportunities": opportunities,
        "threats": threats,
    }


def generate_recommendations(stats: Dict[str, Any]) -> List[Dict[str, str]]:
    """Action items derived from overall averages and competitor threats."""
    overall = stats.get("overall") or {}
    recommendations = []

    if overall.get("presenceRate", 0) < 50:
        recommendations.append({
            "priority": "High",
            "type": "Domain Visibility",
            "description": "Improve domain presence in AI answers by optimizing content for target phrases",
            "impact": "Could increase AI visibility by 40-60%",
        })
    if overall.get("avgRelevance", 0) < 60:
        recommendations.append({
            "priority": "High",
            "type": "Content Optimization",
            "description": "Enhance content relevance to better match user search intent",
            "impact": "Expected 25-35% improvement in answer relevance",
        })
    if overall.get("avgOverall", 0) < 50:
        recommendations.append({
            "priority": "Medium",
            "type": "Competitive Analysis",
            "description": "Focus on competitor gaps identified in AI analysis",
            "impact": "Potential to capture share in identified niches",
        })

    high_threat = [c for c in stats.get("competitors", []) if c.get("threatLevel") == "High"]
    if high_threat:
        recommendations.append({
            "priority": "Medium",
            "type": "Competitive Strategy",
            "description": f"Address competitive pressure from {len(high_threat)} high-threat competitors",
            "impact": "Focus on unique value propositions and niche positioning",
        })
    return recommendations


def calculate_comprehensive_stats(results: Iterable[Any]) -> Dict[str, Any]:
    """Final stats for a run: models, overall, competitors, insights, recommendations."""
    valid = _valid_results(results)
    sums = _accumulate(valid)

    models = []
    for model, s in sums.items():
        count = int(s["total"])
        models.append({
            "model": model,
            "presenceRate": _rate(s["presence"], count),
            "avgRelevance": _pct(s["relevance"], count),
            "avgAccuracy": _pct(s["accuracy"], count),
            "avgSentiment": _pct(s["sentiment"], count),
            "avgOverall": _pct(s["overall"], count),
            "avgComprehensiveness": _pct(s["comprehensiveness"], count),
            "avgLatency": round(s["latency"] / count, 2) if count else 0,
            "avgCost": round(s["cost"] / count, 4) if count else 0,
            "totalQueries": count,
        })

    competitors = _competitor_table(valid)
    stats = {
        "models": models,
        "overall": _overall(valid),
        "totalResults": len(valid),
        "competitors": competitors,
        "insights": _insights(valid, competitors),
    }
    stats["recommendations"] = generate_recommendations(stats)
    return stats


def calculate_keyword_stats(results: Iterable[Any]) -> Dict[str, Any]:
    """Totals plus a per-keyword breakdown."""
    valid = _valid_results(results)
    total = len(valid)
    mentions = sum(1 for r in valid if r.scores.presence > 0)

    by_keyword: Dict[str, List[QueryResult]] = {}
    for r in valid:
        by_keyword.setdefault(r.keyword or "Unknown", []).append(r)

    keyword_stats = []
    for keyword, items in by_keyword.items():
        count = len(items)
        hits = sum(1 for r in items if r.scores.presence > 0)
        keyword_stats.append({
            "keyword": keyword,
            "totalQueries": count,
            "mentions": hits,
            "mentionRate": _rate(hits, count),
            "avgRelevance": _pct(sum(r.scores.relevance for r in items), count),
            "avgAccuracy": _pct(sum(r.scores.accuracy for r in items), count),
            "avgSentiment": _pct(sum(r.scores.sentiment for r in items), count),
            "avgOverall": _pct(sum(r.scores.overall for r in items), count),
        })

    overall = _overall(valid)
    return {
        "totalQueries": total,
        "mentions": mentions,
        "mentionRate": _rate(mentions, total),
        "avgRelevance": overall["avgRelevance"],
        "avgAccuracy": overall["avgAccuracy"],
        "avgSentiment": overall["avgSentiment"],
        "avgOverall": overall["avgOverall"],
        "keywordStats": keyword_stats,
    }


def build_dashboard_snapshot(stats: Dict[str, Any]) -> Dict[str, Any]:
    """Dashboard metrics recorded after a run, from comprehensive stats.

    Averages go back to the 0-5 scale for display; visibility stays 0-100.
    """
    overall = stats.get("overall") or {}
    total_queries = stats.get("totalResults", 0)
    visibility = max(0, min(100, round(overall.get("avgOverall", 0))))
    mention_rate = overall.get("presenceRate", 0)

    model_performance = []
    for m in stats.get("models", []):
        model_performance.append({
            "model": m["model"],
            "score": m.get("avgOverall", 0),
            "mentions": round(m.get("presenceRate", 0) * m.get("totalQueries", 0) / 100),
            "totalQueries": m.get("totalQueries", 0),
            "avgLatency": m.get("avgLatency", 0),
            "avgCost": m.get("avgCost", 0),
            "avgRelevance": round(m.get("avgRelevance", 0) / 20, 1),
            "avgAccuracy": round(m.get("avgAccuracy", 0) / 20, 1),
            "avgSentiment": round(m.get("avgSentiment", 0) / 20, 1),
            "avgOverall": round(m.get("avgOverall", 0) / 20, 1),
        })

    return {
        "createdAt": datetime.now(timezone.utc).isoformat(),
        "metrics": {
            "visibilityScore": visibility,
            "band": calculate_visibility_band(visibility),
            "mentionRate": mention_rate,
            "avgRelevance": round(overall.get("avgRelevance", 0) / 20, 1),
            "avgAccuracy": round(overall.get("avgAccuracy", 0) / 20, 1),
            "avgSentiment": round(overall.get("avgSentiment", 0) / 20, 1),
            "avgOverall": round(overall.get("avgOverall", 0) / 20, 1),
            "totalQueries": total_queries,
            "modelPerformance": model_performance,
            "performanceData": [{
                "date": datetime.now(timezone.utc).date().isoformat(),
                "score": visibility,
                "mentions": round(mention_rate * total_queries / 100),
                "queries": total_queries,
            }],
        },
        "insights": stats.get("insights", {}),
        "competitors": stats.get("competitors", []),
    }
