"""Trending topic aggregation with dual-vector stance detection.

ALGORITHM:

1. Fetch recent political posts that carry embeddings (newest first,
   optionally restricted to the author's state or city).
2. Greedy clustering. Each unassigned post seeds a cluster and pulls in every
   other unassigned post whose cosine similarity to the seed is at or above
   the threshold. A cluster smaller than ``min_posts_per_topic`` is dropped
   and its members become available to later seeds.
3. Stance split. Every post in a cluster is classified as support, oppose or
   neutral. A cluster with no support post or no oppose post is not a debate
   and is skipped. Each side gets a centroid, its "stance vector".
4. Scoring. Recency ``exp(-age_h / 48) * 10`` per post, engagement
   ``likes * 2 + comments * 3``, velocity 5 per post under 6 hours old and a
   geographic boost (10 per local post, 7 per in-state post).
5. Sort by score, truncate and cache for ``cache_minutes`` per
   scope/state/city key.

The stance classifier and metadata writer use the chat model; without one a
keyword heuristic and fixed titles keep the pipeline deterministic.
"""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import TopicsConfig
from .db import query_all
from .embeddings import centroid, cosine_similarity
from .errors import NotFoundError, ValidationError
from .llm_client import LLMClient
from .logger import get_logger
from .prometheus_metrics import track_topic_aggregation
from .utils import hours_since, new_id, to_iso, utc_now

log = get_logger(__name__)

STANCES = ("support", "oppose", "neutral")
SCOPES = ("national", "state", "local")

_SUPPORT_WORDS = {
    "support", "supports", "supporting", "agree", "favor", "approve", "yes", "pass", "love",
    "great", "good", "need", "should", "proud", "endorse", "backing",
}
_OPPOSE_WORDS = {
    "oppose", "opposes", "opposing", "against", "disagree", "reject", "no", "stop", "wrong",
    "bad", "terrible", "repeal", "block", "never", "veto", "shouldn't",
}
_WORD_RE = re.compile(r"[a-z']+")

STANCE_SYSTEM_PROMPT = 'Analyze the stance of this post. Respond with ONLY one word: "support", "oppose", or "neutral"'
METADATA_SYSTEM_PROMPT = (
    "Generate a concise topic title and summaries for both viewpoints. "
    "Format: TITLE: [title]\nSUPPORT: [summary]\nOPPOSE: [summary]"
)


@dataclass
class StanceVector:
    vector: List[float]
    posts: List[Dict[str, Any]]
    summary: str
    percentage: int


@dataclass
class AggregatedTopic:
    id: str
    title: str
    support: StanceVector
    oppose: StanceVector
    neutral_posts: List[Dict[str, Any]]
    neutral_percentage: int
    total_posts: int
    score: float
    geographic_scope: str
    state: Optional[str] = None
    city: Optional[str] = None
    created_at: str = ""
    expires_at: str = ""

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "support": {
                "percentage": self.support.percentage,
                "summary": self.support.summary,
                "postCount": len(self.support.posts),
            },
            "oppose": {
                "percentage": self.oppose.percentage,
                "summary": self.oppose.summary,
                "postCount": len(self.oppose.posts),
            },
            "neutral": {"percentage": self.neutral_percentage, "postCount": len(self.neutral_posts)},
            "totalPosts": self.total_posts,
            "score": round(self.score, 2),
            "geographicScope": self.geographic_scope,
            "state": self.state,
            "city": self.city,
        }

    def stance_of(self, post_id: str) -> str:
        if any(p["id"] == post_id for p in self.support.posts):
            return "support"
        if any(p["id"] == post_id for p in self.oppose.posts):
            return "oppose"
        return "neutral"


@dataclass
class StanceAnalysis:
    support_posts: List[Dict[str, Any]]
    oppose_posts: List[Dict[str, Any]]
    neutral_posts: List[Dict[str, Any]]
    support_vector: List[float]
    oppose_vector: List[float]
    support_percentage: int
    oppose_percentage: int
    neutral_percentage: int


@dataclass
class AggregationOptions:
    timeframe_hours: Optional[int] = None
    min_posts_per_topic: Optional[int] = None
    max_topics: Optional[int] = None
    geographic_scope: str = "national"
    user_state: Optional[str] = None
    user_city: Optional[str] = None
    similarity_threshold: Optional[float] = None


def _percent(part: int, total: int) -> int:
    # rounds half up
    if total <= 0:
        return 0
    return int(math.floor(part * 100.0 / total + 0.5))


def heuristic_stance(text: str) -> str:
    words = _WORD_RE.findall((text or "").lower())
    support = sum(1 for w in words if w in _SUPPORT_WORDS)
    oppose = sum(1 for w in words if w in _OPPOSE_WORDS)
    if support > oppose:
        return "support"
    if oppose > support:
        return "oppose"
    return "neutral"


def cluster_posts(posts: List[Dict[str, Any]], threshold: float, min_size: int) -> List[List[Dict[str, Any]]]:
    clusters: List[List[Dict[str, Any]]] = []
    assigned: set[str] = set()
    for seed in posts:
        if seed["id"] in assigned:
            continue
        members = [seed]
        for other in posts:
            if other["id"] == seed["id"] or other["id"] in assigned:
                continue
            if cosine_similarity(seed["embedding"], other["embedding"]) >= threshold:
                members.append(other)
        if len(members) >= min_size:
            assigned.update(p["id"] for p in members)
            clusters.append(members)
    return clusters


class TopicAggregationService:
    def __init__(
        self,
        db_path: str,
        config: Optional[TopicsConfig] = None,
        llm: Optional[LLMClient] = None,
        now_fn: Callable[[], datetime] = utc_now,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self.config = config or TopicsConfig()
        self.llm = llm or LLMClient()
        self.now_fn = now_fn
        self.clock = clock
        self._cache: Dict[str, Tuple[float, List[AggregatedTopic]]] = {}

    # -- cache ------------------------------------------------------------

    def _cached(self, key: str) -> Optional[List[AggregatedTopic]]:
        entry = self._cache.get(key)
        if not entry:
            return None
        stored_at, topics = entry
        if self.clock() - stored_at < self.config.cache_minutes * 60:
            return topics
        del self._cache[key]
        return None

    def refresh(self) -> None:
        self._cache.clear()
        log.info("Topic cache cleared")

    # -- pipeline ---------------------------------------------------------

    def fetch_posts(
        self,
        timeframe_hours: int,
        scope: str,
        user_state: Optional[str],
        user_city: Optional[str],
    ) -> List[Dict[str, Any]]:
        cutoff = to_iso(self.now_fn() - timedelta(hours=timeframe_hours))
        sql = """
            SELECT p.*, u.username AS author_username, u.state AS author_state, u.city AS author_city
            FROM posts p JOIN users u ON u.id = p.author_id
            WHERE p.created_at >= ? AND p.is_political = 1
              AND p.embedding IS NOT NULL AND p.embedding != '[]'
        """
        params: List[Any] = [cutoff]
        if scope == "state" and user_state:
            sql += " AND u.state = ?"
            params.append(user_state)
        elif scope == "local" and user_state and user_city:
            sql += " AND u.city = ? AND u.state = ?"
            params.extend([user_city, user_state])
        sql += " ORDER BY p.created_at DESC LIMIT ?;"
        params.append(self.config.max_posts)
        return query_all(self.db_path, sql, tuple(params))

    def classify_stance(self, post: Dict[str, Any]) -> str:
        if not self.llm.enabled:
            return heuristic_stance(post.get("content", ""))
        reply = self.llm.ask(post.get("content", ""), system=STANCE_SYSTEM_PROMPT, max_tokens=10, temperature=0.3)
        stance = (reply or "").strip().lower().strip(".\"'")
        return stance if stance in STANCES else "neutral"

    def analyze_stances(self, posts: List[Dict[str, Any]]) -> Optional[StanceAnalysis]:
        sides: Dict[str, List[Dict[str, Any]]] = {s: [] for s in STANCES}
        for post in posts:
            sides[self.classify_stance(post)].append({**post, "similarity": 1.0})

        if not sides["support"] or not sides["oppose"]:
            return None

        total = len(posts)
        return StanceAnalysis(
            support_posts=sides["support"],
            oppose_posts=sides["oppose"],
            neutral_posts=sides["neutral"],
            support_vector=centroid([p["embedding"] for p in sides["support"]]),
            oppose_vector=centroid([p["embedding"] for p in sides["oppose"]]),
            support_percentage=_percent(len(sides["support"]), total),
            oppose_percentage=_percent(len(sides["oppose"]), total),
            neutral_percentage=_percent(len(sides["neutral"]), total),
        )

    def generate_metadata(self, support_posts: List[Dict[str, Any]], oppose_posts: List[Dict[str, Any]]) -> Dict[str, str]:
        fallback = {
            "title": "Trending Discussion",
            "support_summary": "Supporting this position",
            "oppose_summary": "Opposing this position",
        }
        if not self.llm.enabled:
            return fallback
        support_sample = "\n".join(p["content"] for p in support_posts[:3])
        oppose_sample = "\n".join(p["content"] for p in oppose_posts[:3])
        reply = self.llm.ask(
            f"Supporting posts:\n{support_sample}\n\nOpposing posts:\n{oppose_sample}",
            system=METADATA_SYSTEM_PROMPT,
            max_tokens=150,
            temperature=0.7,
        )
        if not reply:
            return fallback

        def field_value(prefix: str, default: str) -> str:
            for line in reply.splitlines():
                if line.strip().startswith(prefix):
                    value = line.strip()[len(prefix):].strip()
                    return value or default
            return default

        return {
            "title": field_value("TITLE:", "Trending Topic"),
            "support_summary": field_value("SUPPORT:", "Supporting viewpoint"),
            "oppose_summary": field_value("OPPOSE:", "Opposing viewpoint"),
        }

    def calculate_score(
        self,
        posts: List[Dict[str, Any]],
        scope: str,
        user_state: Optional[str],
        user_city: Optional[str],
    ) -> float:
        now = self.now_fn()
        score = 0.0
        for post in posts:
            age = hours_since(post.get("created_at"), now)
            score += math.exp(-age / 48.0) * 10
            score += int(post.get("likes_count") or 0) * 2 + int(post.get("comments_count") or 0) * 3
            if age < 6:
                score += 5
        if scope == "local":
            score += 10 * sum(
                1 for p in posts if p.get("author_city") == user_city and p.get("author_state") == user_state
            )
        elif scope == "state":
            score += 7 * sum(1 for p in posts if p.get("author_state") == user_state)
        return score

    @staticmethod
    def determine_scope(
        posts: List[Dict[str, Any]], user_state: Optional[str], user_city: Optional[str]
    ) -> Tuple[str, Optional[str], Optional[str]]:
        states = {p["author_state"] for p in posts if p.get("author_state")}
        cities = {p["author_city"] for p in posts if p.get("author_city")}
        if len(cities) == 1 and user_city and user_city in cities:
            return "local", user_state, user_city
        if len(states) == 1 and user_state and user_state in states:
            return "state", user_state, None
        return "national", None, None

    def aggregate_topics(self, options: Optional[AggregationOptions] = None) -> List[AggregatedTopic]:
        opts = options or AggregationOptions()
        scope = opts.geographic_scope if opts.geographic_scope in SCOPES else "national"
        timeframe = opts.timeframe_hours or self.config.timeframe_hours
        min_posts = opts.min_posts_per_topic or self.config.min_posts_per_topic
        max_topics = opts.max_topics or self.config.max_topics
        threshold = opts.similarity_threshold or self.config.similarity_threshold

        cache_key = f"{scope}_{opts.user_state}_{opts.user_city}"
        cached = self._cached(cache_key)
        if cached is not None:
            return cached

        started = time.perf_counter()
        posts = self.fetch_posts(timeframe, scope, opts.user_state, opts.user_city)
        if len(posts) < min_posts:
            log.info("Only %d political posts in window; no topics", len(posts))
            return []

        now = self.now_fn()
        topics: List[AggregatedTopic] = []
        for members in cluster_posts(posts, threshold, min_posts):
            stances = self.analyze_stances(members)
            if stances is None:
                continue
            meta = self.generate_metadata(stances.support_posts, stances.oppose_posts)
            topic_scope, state, city = self.determine_scope(members, opts.user_state, opts.user_city)
            topics.append(
                AggregatedTopic(
                    id=f"topic_{new_id()[:16]}",
                    title=meta["title"],
                    support=StanceVector(
                        vector=stances.support_vector,
                        posts=stances.support_posts,
                        summary=meta["support_summary"],
                        percentage=stances.support_percentage,
                    ),
                    oppose=StanceVector(
                        vector=stances.oppose_vector,
                        posts=stances.oppose_posts,
                        summary=meta["oppose_summary"],
                        percentage=stances.oppose_percentage,
                    ),
                    neutral_posts=stances.neutral_posts,
                    neutral_percentage=stances.neutral_percentage,
                    total_posts=len(members),
                    score=self.calculate_score(members, scope, opts.user_state, opts.user_city),
                    geographic_scope=topic_scope,
                    state=state,
                    city=city,
                    created_at=to_iso(now),
                    expires_at=to_iso(now + timedelta(minutes=self.config.cache_minutes)),
                )
            )

        topics.sort(key=lambda t: t.score, reverse=True)
        topics = topics[:max_topics]
        self._cache[cache_key] = (self.clock(), topics)
        track_topic_aggregation(scope, time.perf_counter() - started, len(topics))
        log.info("Aggregated %d topics from %d posts (%s)", len(topics), len(posts), cache_key)
        return topics

    # -- views ------------------------------------------------------------

    def get_map_topics(
        self, user_state: Optional[str] = None, user_city: Optional[str] = None, count: int = 3
    ) -> List[AggregatedTopic]:
        topics = self.aggregate_topics(
            AggregationOptions(geographic_scope="national", user_state=user_state, user_city=user_city)
        )
        window = int(self.clock() * 1000) // (self.config.map_rotation_seconds * 1000)
        start = window % max(1, len(topics) - count + 1)
        return topics[start:start + count]

    def find_topic(self, topic_id: str) -> Optional[AggregatedTopic]:
        for _, topics in self._cache.values():
            for topic in topics:
                if topic.id == topic_id:
                    return topic
        return None

    def get_topic_posts(
        self,
        topic_id: str,
        stance: str = "all",
        page: int = 1,
        limit: int = 20,
        user_state: Optional[str] = None,
        user_city: Optional[str] = None,
    ) -> Dict[str, Any]:
        if stance not in (*STANCES, "all"):
            raise ValidationError("stance must be one of support, oppose, neutral, all")
        topic = self.find_topic(topic_id)
        if topic is None:
            self.aggregate_topics(AggregationOptions(user_state=user_state, user_city=user_city))
            topic = self.find_topic(topic_id)
        if topic is None:
            raise NotFoundError("Topic not found", {"topicId": topic_id})

        posts: List[Dict[str, Any]] = []
        if stance in ("support", "all"):
            posts.extend(topic.support.posts)
        if stance in ("oppose", "all"):
            posts.extend(topic.oppose.posts)
        if stance in ("neutral", "all"):
            posts.extend(topic.neutral_posts)
        posts.sort(key=lambda p: p.get("created_at") or "", reverse=True)

        page = max(1, page)
        start = (page - 1) * limit
        end = start + limit
        return {
            "topic": {
                "id": topic.id,
                "title": topic.title,
                "supportSummary": topic.support.summary,
                "opposeSummary": topic.oppose.summary,
                "supportPercentage": topic.support.percentage,
                "opposePercentage": topic.oppose.percentage,
            },
            "posts": [
                {**{k: v for k, v in p.items() if k != "embedding"}, "stance": topic.stance_of(p["id"])}
                for p in posts[start:end]
            ],
            "pagination": {"page": page, "limit": limit, "total": len(posts), "hasMore": end < len(posts)},
        }
