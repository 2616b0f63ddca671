"""Probability-cloud feed ranking.

Candidates are scored on five dimensions, each in [0, 1]:

- recency: ``exp(-hours / 24)``
- similarity: mean cosine similarity to the reader's recent likes and own
  posts, clamped to [0, 1]; 0.5 when either side has no embedding
- social: 1.0 for followed authors, 0.1 otherwise
- trending: engagement score / 100, capped at 1
- reputation: author reputation / 100

The weighted sum is multiplied by the author's visibility multiplier. The
feed is then drawn by weighted random sampling without replacement, so the
highest score is the most likely pick but never a guaranteed one, and every
candidate keeps a floor weight of ``selection_floor``.
"""

from __future__ import annotations

import math
import random
import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from .config import FeedConfig, ReputationConfig
from .db import list_comments, list_comments_for_posts, query_all
from .embeddings import cosine_similarity
from .engagement import EngagementMetrics, calculate_comment_engagement, calculate_score, get_profile
from .errors import ValidationError
from .logger import get_logger
from .prometheus_metrics import track_feed_generation
from .reputation import visibility_multiplier
from .utils import hours_since, to_iso, utc_now

log = get_logger(__name__)


@dataclass
class FeedWeights:
    recency: float = 0.30
    similarity: float = 0.25
    social: float = 0.25
    trending: float = 0.10
    reputation: float = 0.10

    @classmethod
    def merged(cls, base: "FeedWeights", custom: Optional[Mapping[str, Any]] = None) -> "FeedWeights":
        values = asdict(base)
        for key, value in (custom or {}).items():
            if key not in values:
                raise ValidationError(f"Unknown feed weight '{key}'")
            try:
                values[key] = float(value)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Feed weight '{key}' must be a number") from e
        return cls(**values)


@dataclass
class PostScore:
    post_id: str
    recency_score: float
    similarity_score: float
    social_score: float
    trending_score: float
    reputation_score: float
    visibility_multiplier: float
    final_score: float


@dataclass
class UserProfile:
    user_id: str
    followed_ids: Set[str]
    interaction_embeddings: List[List[float]]


@dataclass
class ScoredPost:
    score: PostScore
    post: Dict[str, Any]


def probability_sample(
    scored: Sequence[ScoredPost],
    limit: int,
    rng: Optional[random.Random] = None,
    floor: float = 0.1,
) -> List[ScoredPost]:
    """Weighted sampling without replacement (roulette wheel per draw)."""
    rng = rng or random.Random()
    remaining = sorted(scored, key=lambda s: s.score.final_score, reverse=True)
    selected: List[ScoredPost] = []
    while remaining and len(selected) < limit:
        weights = [max(floor, s.score.final_score) for s in remaining]
        target = rng.random() * sum(weights)
        acc = 0.0
        index = len(remaining) - 1
        for i, w in enumerate(weights):
            acc += w
            if target <= acc:
                index = i
                break
        selected.append(remaining.pop(index))
    return selected


class ProbabilityFeedService:
    def __init__(
        self,
        db_path: str,
        config: Optional[FeedConfig] = None,
        reputation_config: Optional[ReputationConfig] = None,
        engagement_algorithm: str = "balanced",
        rng: Optional[random.Random] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.config = config or FeedConfig()
        self.reputation_config = reputation_config or ReputationConfig()
        self.engagement_profile = get_profile(engagement_algorithm)
        self.rng = rng or random.Random()
        self.now_fn = now_fn
        self.default_weights = FeedWeights(**self.config.weights.model_dump())

    def get_user_profile(self, user_id: str) -> UserProfile:
        followed = query_all(self.db_path, "SELECT following_id FROM follows WHERE follower_id = ?;", (user_id,))
        liked = query_all(
            self.db_path,
            """
            SELECT p.embedding FROM likes l JOIN posts p ON p.id = l.post_id
            WHERE l.user_id = ? ORDER BY l.created_at DESC LIMIT ?;
            """,
            (user_id, self.config.liked_history),
        )
        own = query_all(
            self.db_path,
            "SELECT embedding FROM posts WHERE author_id = ? ORDER BY created_at DESC LIMIT ?;",
            (user_id, self.config.own_history),
        )
        embeddings = [r["embedding"] for r in liked + own if isinstance(r.get("embedding"), list) and r["embedding"]]
        return UserProfile(
            user_id=user_id,
            followed_ids={r["following_id"] for r in followed},
            interaction_embeddings=embeddings,
        )

    def get_candidate_posts(self, user_id: str) -> List[Dict[str, Any]]:
        allowed = list(dict.fromkeys(self.config.feed_post_tags))
        if not allowed:
            return []
        cutoff = to_iso(self.now_fn() - timedelta(days=self.config.candidate_window_days))
        placeholders = ", ".join("?" for _ in allowed)
        return query_all(
            self.db_path,
            f"""
            SELECT p.*, u.username AS author_username, u.first_name AS author_first_name,
                   u.last_name AS author_last_name, u.reputation_score AS author_current_reputation
            FROM posts p JOIN users u ON u.id = p.author_id
            WHERE p.created_at >= ? AND p.author_id != ?
              AND EXISTS (SELECT 1 FROM json_each(p.tags) WHERE json_each.value IN ({placeholders}))
            ORDER BY p.created_at DESC
            LIMIT ?;
            """,
            (cutoff, user_id, *allowed, self.config.candidate_pool_size),
        )

    def score_post(
        self,
        post: Dict[str, Any],
        profile: UserProfile,
        weights: FeedWeights,
        comments: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> PostScore:
        now = self.now_fn()
        recency = math.exp(-hours_since(post.get("created_at"), now) / self.config.recency_decay_hours)

        social = (
            self.config.followed_social_score
            if post["author_id"] in profile.followed_ids
            else self.config.unfollowed_social_score
        )

        author_rep = post.get("author_reputation")
        if author_rep is None:
            author_rep = post.get("author_current_reputation")
        if author_rep is None:
            author_rep = self.config.default_author_reputation

        metrics = EngagementMetrics.from_post(post)
        if metrics.comments:
            if comments is None:
                comments = list_comments(self.db_path, post["id"])
            metrics.comment_engagement = calculate_comment_engagement(comments)
        engagement = calculate_score(metrics, post.get("created_at"), author_rep, self.engagement_profile, now)
        trending = min(1.0, engagement["score"] / self.config.trending_normalizer)

        similarity = 0.5
        embedding = post.get("embedding")
        if isinstance(embedding, list) and embedding and profile.interaction_embeddings:
            sims = [cosine_similarity(embedding, e) for e in profile.interaction_embeddings]
            similarity = max(0.0, min(1.0, sum(sims) / len(sims)))

        reputation = float(author_rep) / 100.0
        multiplier = visibility_multiplier(float(author_rep), self.reputation_config)
        base = (
            recency * weights.recency
            + similarity * weights.similarity
            + social * weights.social
            + trending * weights.trending
            + reputation * weights.reputation
        )
        return PostScore(
            post_id=post["id"],
            recency_score=recency,
            similarity_score=similarity,
            social_score=social,
            trending_score=trending,
            reputation_score=reputation,
            visibility_multiplier=multiplier,
            final_score=base * multiplier,
        )

    def generate_feed(
        self,
        user_id: str,
        limit: int = 50,
        custom_weights: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        weights = FeedWeights.merged(self.default_weights, custom_weights)
        profile = self.get_user_profile(user_id)
        candidates = self.get_candidate_posts(user_id)
        if not candidates:
            track_feed_generation("fallback-empty", time.perf_counter() - started)
            return {"posts": [], "algorithm": "fallback-empty", "weights": asdict(weights), "stats": {}}

        comments = list_comments_for_posts(self.db_path, [p["id"] for p in candidates if p.get("comments_count")])
        scored = [ScoredPost(self.score_post(p, profile, weights, comments.get(p["id"])), p) for p in candidates]
        selected = probability_sample(scored, limit, self.rng, self.config.selection_floor)

        def avg(name: str) -> float:
            return sum(getattr(s.score, name) for s in scored) / len(scored)

        stats: Dict[str, Any] = {"candidateCount": len(candidates)}
        for f in fields(PostScore):
            if f.name in ("post_id", "final_score"):
                continue
            stats[f"avg_{f.name}"] = avg(f.name)

        track_feed_generation("probability-cloud", time.perf_counter() - started)
        log.debug("Feed for %s: %d of %d candidates", user_id, len(selected), len(candidates))
        return {
            "posts": [{**{k: v for k, v in s.post.items() if k != "embedding"}, "feedScore": asdict(s.score)} for s in selected],
            "algorithm": "probability-cloud",
            "weights": asdict(weights),
            "stats": stats,
        }
