"""Political news aggregation for elected officials.

Articles come from NewsAPI.org and are stored permanently in
``news_articles`` so coverage of an official can be reviewed later. Lookups
read stored articles first, then a short-lived in-memory cache, and only then
call the API.
"""

from __future__ import annotations

import os
import re
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .config import NewsConfig
from .db import dumps, execute, query_all
from .llm_client import LLMClient
from .logger import get_logger, log_extra
from .utils import to_iso, utc_now

log = get_logger(__name__)

RELEVANCE_KEYWORDS = ["congress", "senate", "house", "representative", "senator", "vote", "bill", "legislation"]
POLITICAL_TERMS = RELEVANCE_KEYWORDS + ["committee", "republican", "democrat", "election", "campaign"]
POSITIVE_WORDS = [
    "praise", "success", "achievement", "victory", "approve", "support", "endorse",
    "commend", "excellent", "outstanding", "effective", "beneficial", "progress",
]
NEGATIVE_WORDS = [
    "criticize", "scandal", "controversy", "failure", "oppose", "condemn", "investigate",
    "allegations", "crisis", "resign", "corrupt", "ineffective", "harmful",
]
SOURCE_TYPES: List[Tuple[str, Tuple[str, ...]]] = [
    ("NEWSPAPER", ("times", "post", "herald", "tribune")),
    ("WIRE_SERVICE", ("reuters", "associated press", "bloomberg")),
    ("BROADCAST", ("cnn", "fox", "msnbc", "nbc", "cbs")),
    ("GOVERNMENT", ("gov",)),
    ("BLOG", ("blog", "medium", "substack")),
]
SENTIMENT_VALUES = {"POSITIVE": 1.0, "NEGATIVE": -1.0}
TRENDING_QUERY = "politics election congress senate house"

_NON_WORD_RE = re.compile(r"[^\w\s]")


def relevance_score(article: Dict[str, Any], official_name: str) -> float:
    title = (article.get("title") or "").lower()
    description = (article.get("description") or "").lower()
    name = official_name.lower()
    score = 0.5
    if name in title:
        score += 0.3
    if name in description:
        score += 0.2
    score += 0.05 * sum(1 for k in RELEVANCE_KEYWORDS if k in title or k in description)
    return min(score, 1.0)


def sentiment_score(text: str) -> Tuple[float, str]:
    """Return ``(score, category)`` with score in [-1, 1]."""
    lower = text.lower()
    words = lower.split()
    positive = sum(lower.count(w) for w in POSITIVE_WORDS)
    negative = sum(lower.count(w) for w in NEGATIVE_WORDS)
    score = 0.0
    if positive + negative > 0:
        score = (positive - negative) / max(positive + negative, len(words) / 10)
        score = max(-1.0, min(1.0, score))
    if score > 0.3:
        category = "POSITIVE"
    elif score < -0.3:
        category = "NEGATIVE"
    elif positive > 0 and negative > 0:
        category = "MIXED"
    else:
        category = "NEUTRAL"
    return score, category


def extract_keywords(text: str) -> List[str]:
    words = _NON_WORD_RE.sub("", text.lower()).split()
    return [w for w in words if len(w) > 3 and w in POLITICAL_TERMS]


def top_keywords(articles: List[Dict[str, Any]], count: int = 10) -> List[str]:
    counts: Counter[str] = Counter()
    for article in articles:
        counts.update(article.get("keywords") or [])
    return [k for k, _ in counts.most_common(count)]


def average_sentiment(articles: List[Dict[str, Any]]) -> float:
    if not articles:
        return 0.0
    return sum(SENTIMENT_VALUES.get(a.get("sentiment") or "", 0.0) for a in articles) / len(articles)


def infer_source_type(source_name: Optional[str]) -> str:
    name = (source_name or "").lower()
    for source_type, markers in SOURCE_TYPES:
        if any(m in name for m in markers):
            return source_type
    return "NEWSPAPER"


def extractive_summary(title: str, description: Optional[str]) -> str:
    summary = title
    if description:
        sentences = [s.strip() for s in re.split(r"[.!?]+", description) if len(s.strip()) > 10]
        if sentences:
            summary += ": " + sentences[0]
    if len(summary) > 400:
        summary = summary[:397] + "..."
    return summary


class NewsService:
    def __init__(
        self,
        db_path: str,
        config: Optional[NewsConfig] = None,
        llm: Optional[LLMClient] = None,
        api_key: Optional[str] = None,
        now_fn: Callable[[], datetime] = utc_now,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self.config = config or NewsConfig()
        self.llm = llm or LLMClient()
        self.api_key = api_key or os.getenv("NEWS_API_KEY")
        self.now_fn = now_fn
        self.clock = clock
        self._cache: Dict[str, Tuple[float, Any]] = {}

    def _cached(self, key: str) -> Any:
        entry = self._cache.get(key)
        if entry and entry[0] > self.clock():
            return entry[1]
        self._cache.pop(key, None)
        return None

    def _store_cache(self, key: str, value: Any, minutes: float) -> None:
        self._cache[key] = (self.clock() + minutes * 60, value)

    def search_news_api(self, query: str, days_back: int, limit: int) -> List[Dict[str, Any]]:
        if not self.api_key:
            return []
        params = {
            "q": query,
            "from": (self.now_fn() - timedelta(days=days_back)).strftime("%Y-%m-%d"),
            "sortBy": "relevancy",
            "pageSize": str(min(limit, 100)),
            "language": "en",
        }
        headers = {"X-Api-Key": self.api_key}
        url = f"{self.config.base_url.rstrip('/')}/everything"
        max_attempts = 3
        backoff = 1.0
        data: Dict[str, Any] = {}
        for attempt in range(1, max_attempts + 1):
            try:
                with httpx.Client(timeout=self.config.timeout_seconds) as client:
                    resp = client.get(url, params=params, headers=headers)
                if resp.status_code == 429 or 500 <= resp.status_code < 600:
                    if attempt < max_attempts:
                        time.sleep(backoff)
                        backoff *= 2
                        continue
                resp.raise_for_status()
                data = resp.json()
                break
            except (httpx.HTTPError, ValueError) as e:
                log.error("NewsAPI request attempt %d failed: %s", attempt, e)
                if attempt < max_attempts:
                    time.sleep(backoff)
                    backoff *= 2
                    continue
                return []

        articles = []
        for item in data.get("articles") or []:
            if not item.get("url") or not item.get("title"):
                continue
            source_name = (item.get("source") or {}).get("name") or ""
            text = f"{item['title']} {item.get('description') or ''}"
            articles.append(
                {
                    "title": item["title"],
                    "description": item.get("description"),
                    "url": item["url"],
                    "publishedAt": item.get("publishedAt"),
                    "sourceName": source_name,
                    "sourceType": infer_source_type(source_name),
                    "author": item.get("author"),
                    "keywords": extract_keywords(text),
                }
            )
        return articles

    def generate_summary(self, title: str, description: Optional[str]) -> str:
        if self.llm.enabled:
            text = " ".join(p for p in (title, description) if p)
            prompt = (
                "Summarize this political news article in 2-3 sentences (200-400 characters), "
                "focusing on what the official said or did:\n\n" + text
            )
            summary = self.llm.ask(prompt, max_tokens=150, temperature=0.5)
            if summary:
                return summary.strip()
        return extractive_summary(title, description)

    def _enrich(self, article: Dict[str, Any], official_name: Optional[str]) -> Dict[str, Any]:
        summary = self.generate_summary(article["title"], article.get("description"))
        score, category = sentiment_score(f"{article['title']} {summary}")
        return {
            **article,
            "aiSummary": summary,
            "sentiment": category,
            "sentimentScore": score,
            "relevanceScore": relevance_score(article, official_name) if official_name else None,
        }

    def store_article(self, article: Dict[str, Any], official_name: Optional[str] = None, official_id: Optional[str] = None) -> None:
        execute(
            self.db_path,
            """
            INSERT INTO news_articles (url, title, description, source_name, source_type, author, published_at,
                                       official_id, official_name, sentiment, sentiment_score, relevance_score,
                                       keywords, ai_summary, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(url) DO NOTHING;
            """,
            (
                article["url"], article["title"], article.get("description"), article.get("sourceName"),
                article.get("sourceType"), article.get("author"), article.get("publishedAt"), official_id,
                official_name, article.get("sentiment"), article.get("sentimentScore"),
                article.get("relevanceScore"), dumps(article.get("keywords") or []), article.get("aiSummary"),
                to_iso(self.now_fn()),
            ),
        )

    def stored_articles(self, official_name: str, limit: int, days_back: int) -> List[Dict[str, Any]]:
        since = to_iso(self.now_fn() - timedelta(days=days_back))
        rows = query_all(
            self.db_path,
            """
            SELECT * FROM news_articles
            WHERE official_name LIKE ? AND published_at >= ?
            ORDER BY relevance_score DESC, published_at DESC
            LIMIT ?;
            """,
            (f"%{official_name}%", since, limit),
        )
        return [
            {
                "title": r["title"],
                "aiSummary": r["ai_summary"],
                "url": r["url"],
                "publishedAt": r["published_at"],
                "sourceName": r["source_name"],
                "sourceType": r["source_type"],
                "author": r["author"],
                "sentiment": r["sentiment"],
                "sentimentScore": r["sentiment_score"],
                "relevanceScore": r["relevance_score"],
                "keywords": r["keywords"] or [],
            }
            for r in rows
        ]

    def search_official_news(
        self,
        official_name: str,
        official_id: Optional[str] = None,
        limit: int = 20,
        days_back: int = 30,
    ) -> Dict[str, Any]:
        stored = self.stored_articles(official_name, limit, days_back)
        if stored and len(stored) >= limit / 2:
            log.info("Using stored articles for %s", official_name, extra=log_extra(count=len(stored)))
            return self._result(official_name, official_id, stored)

        cache_key = f"official_{'_'.join(official_name.split())}_{limit}_{days_back}"
        cached = self._cached(cache_key)
        if cached is not None:
            return cached

        if not self.api_key:
            return self._result(official_name, official_id, stored)

        unique: Dict[str, Dict[str, Any]] = {}
        for article in self.search_news_api(official_name, days_back, limit):
            unique.setdefault(article["url"], article)
        ranked = sorted(
            unique.values(),
            key=lambda a: (relevance_score(a, official_name), a.get("publishedAt") or ""),
            reverse=True,
        )[:limit]
        articles = [self._enrich(a, official_name) for a in ranked]
        for article in articles:
            self.store_article(article, official_name, official_id)

        result = self._result(official_name, official_id, articles)
        self._store_cache(cache_key, result, self.config.official_cache_minutes)
        return result

    @staticmethod
    def _result(official_name: str, official_id: Optional[str], articles: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "officialName": official_name,
            "officialId": official_id,
            "articles": articles,
            "totalCount": len(articles),
            "averageSentiment": average_sentiment(articles),
            "topKeywords": top_keywords(articles),
        }

    def trending_political_news(self, limit: int = 50) -> List[Dict[str, Any]]:
        cache_key = f"trending_{limit}"
        cached = self._cached(cache_key)
        if cached is not None:
            return cached
        unique: Dict[str, Dict[str, Any]] = {}
        for article in self.search_news_api(TRENDING_QUERY, 1, limit):
            unique.setdefault(article["url"], article)
        articles = sorted(unique.values(), key=lambda a: a.get("publishedAt") or "", reverse=True)[:limit]
        articles = [self._enrich(a, None) for a in articles]
        for article in articles:
            self.store_article(article)
        self._store_cache(cache_key, articles, self.config.trending_cache_minutes)
        return articles
