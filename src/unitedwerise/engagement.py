from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

from .logger import get_logger
from .utils import hours_since

log = get_logger(__name__)


@dataclass(frozen=True)
class EngagementWeights:
    likes: float = 1.0
    dislikes: float = 0.8
    agrees: float = 1.2
    disagrees: float = 1.5
    comments: float = 2.0
    shares: float = 3.0
    views: float = 0.1
    community_notes: float = 2.5
    reports: float = -0.5
    comment_engagement: float = 1.5


@dataclass(frozen=True)
class EngagementModifiers:
    time_decay_enabled: bool = True
    time_decay_factor: float = 0.95  # per hour
    controversy_boost: bool = True
    controversy_threshold: float = 1.5
    quality_bias: bool = True
    new_content_boost: bool = True
    author_reputation_weight: float = 0.3


@dataclass(frozen=True)
class EngagementProfile:
    algorithm: str = "balanced"
    weights: EngagementWeights = field(default_factory=EngagementWeights)
    modifiers: EngagementModifiers = field(default_factory=EngagementModifiers)
    min_score: float = 0.0
    max_score: float = 1000.0


PRESETS: Dict[str, EngagementProfile] = {
    "standard": EngagementProfile(
        algorithm="standard",
        weights=EngagementWeights(
            likes=1.0, dislikes=0.0, agrees=1.0, disagrees=0.0, comments=2.0, shares=3.0, views=0.1,
            community_notes=1.0, reports=-1.0, comment_engagement=1.0,
        ),
        modifiers=EngagementModifiers(controversy_boost=False, author_reputation_weight=0.2),
    ),
    "controversy": EngagementProfile(
        algorithm="controversy",
        weights=EngagementWeights(
            likes=0.5, dislikes=1.0, agrees=0.5, disagrees=2.0, comments=1.5, shares=2.0, views=0.1,
            community_notes=3.0, reports=0.0, comment_engagement=2.0,
        ),
        modifiers=EngagementModifiers(
            time_decay_factor=0.98, controversy_threshold=1.2, quality_bias=False,
            new_content_boost=False, author_reputation_weight=0.1,
        ),
    ),
    "quality": EngagementProfile(
        algorithm="quality",
        weights=EngagementWeights(
            likes=1.5, dislikes=-0.5, agrees=2.0, disagrees=0.5, comments=2.5, shares=4.0, views=0.05,
            community_notes=1.0, reports=-2.0, comment_engagement=3.0,
        ),
        modifiers=EngagementModifiers(
            time_decay_factor=0.92, controversy_boost=False, author_reputation_weight=0.5,
        ),
    ),
    "balanced": EngagementProfile(),
}


@dataclass
class EngagementMetrics:
    likes: int = 0
    dislikes: int = 0
    agrees: int = 0
    disagrees: int = 0
    comments: int = 0
    shares: int = 0
    views: int = 0
    community_notes: int = 0
    reports: int = 0
    comment_engagement: Optional[Dict[str, float]] = None

    @classmethod
    def from_post(cls, post: Mapping[str, Any]) -> "EngagementMetrics":
        return cls(
            likes=int(post.get("likes_count") or 0),
            dislikes=int(post.get("dislikes_count") or 0),
            agrees=int(post.get("agrees_count") or 0),
            disagrees=int(post.get("disagrees_count") or 0),
            comments=int(post.get("comments_count") or 0),
            shares=int(post.get("shares_count") or 0),
            views=int(post.get("views_count") or 0),
            reports=int(post.get("reports_count") or 0),
        )


def get_profile(algorithm: str, custom: Optional[EngagementProfile] = None) -> EngagementProfile:
    """Resolve a preset name. ``custom`` keeps the caller-supplied profile."""
    if algorithm == "custom":
        return replace(custom or EngagementProfile(), algorithm="custom")
    if algorithm not in PRESETS:
        log.warning("Unknown engagement algorithm '%s'; using balanced", algorithm)
        return PRESETS["balanced"]
    return PRESETS[algorithm]


def is_controversial(m: EngagementMetrics, threshold: float) -> bool:
    agreement = m.likes + m.agrees
    disagreement = m.dislikes + m.disagrees
    if agreement == 0 and disagreement == 0:
        return False
    return (disagreement / max(1, agreement)) >= threshold or (agreement / max(1, disagreement)) >= threshold


def quality_ratio(m: EngagementMetrics) -> float:
    positive = m.likes + m.agrees + m.comments * 0.5 + m.shares * 2
    negative = m.dislikes + m.disagrees + m.reports * 3
    total = positive + negative
    if total == 0:
        return 0.5
    return positive / total


def _comment_component(ce: Mapping[str, float]) -> float:
    return (
        ce.get("total_reactions", 0.0) * 0.5
        + ce.get("avg_reactions_per_comment", 0.0) * 2.0
        + ce.get("quality_score", 0.0) * 3.0
    )


def calculate_score(
    metrics: EngagementMetrics,
    created_at: Optional[str],
    author_reputation: float = 70.0,
    profile: Optional[EngagementProfile] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Engagement score with a breakdown of each modifier applied."""
    p = profile or PRESETS["balanced"]
    w = p.weights
    mods = p.modifiers

    components = {
        "likes": metrics.likes * w.likes,
        "dislikes": metrics.dislikes * w.dislikes,
        "agrees": metrics.agrees * w.agrees,
        "disagrees": metrics.disagrees * w.disagrees,
        "comments": metrics.comments * w.comments,
        "shares": metrics.shares * w.shares,
        "views": metrics.views * w.views,
        "community_notes": metrics.community_notes * w.community_notes,
        "reports": metrics.reports * w.reports,
        "comment_engagement": (
            _comment_component(metrics.comment_engagement) * w.comment_engagement
            if metrics.comment_engagement else 0.0
        ),
    }
    score = sum(components.values())
    breakdown: Dict[str, Any] = {"base_components": components, "base_score": score, "modifiers": {}}
    age_hours = hours_since(created_at, now)

    if mods.time_decay_enabled:
        decay = mods.time_decay_factor ** age_hours
        score *= decay
        breakdown["modifiers"]["time_decay"] = {"hours_age": age_hours, "multiplier": decay}

    if mods.controversy_boost and is_controversial(metrics, mods.controversy_threshold):
        score *= 1.3
        breakdown["modifiers"]["controversy_boost"] = {"multiplier": 1.3}

    if mods.quality_bias:
        ratio = quality_ratio(metrics)
        multiplier = 0.8 + ratio * 0.4
        score *= multiplier
        breakdown["modifiers"]["quality_bias"] = {"quality_ratio": ratio, "multiplier": multiplier}

    if mods.new_content_boost and age_hours < 24:
        score *= 1.2
        breakdown["modifiers"]["new_content_boost"] = {"multiplier": 1.2}

    if mods.author_reputation_weight > 0:
        normalized = max(0.0, min(100.0, author_reputation)) / 100.0
        multiplier = 1 + (normalized - 0.5) * mods.author_reputation_weight
        score *= multiplier
        breakdown["modifiers"]["author_reputation"] = {"normalized": normalized, "multiplier": multiplier}

    final = max(p.min_score, min(p.max_score, score))
    breakdown["final_score"] = final
    return {"score": round(final, 2), "breakdown": breakdown, "algorithm": p.algorithm}


def calculate_comment_engagement(comments: Iterable[Mapping[str, Any]]) -> Dict[str, float]:
    rows = list(comments)
    if not rows:
        return {"total_reactions": 0.0, "avg_reactions_per_comment": 0.0, "quality_score": 0.0}
    positive = sum(int(c.get("likes_count") or 0) + int(c.get("agrees_count") or 0) for c in rows)
    negative = sum(int(c.get("dislikes_count") or 0) + int(c.get("disagrees_count") or 0) for c in rows)
    total = positive + negative
    return {
        "total_reactions": float(total),
        "avg_reactions_per_comment": total / len(rows),
        "quality_score": positive / total if total > 0 else 0.5,
    }
