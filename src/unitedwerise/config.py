from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .logger import get_logger

log = get_logger(__name__)


class LLMConfig(BaseModel):
    provider: str = "dummy"  # dummy, azure, openai
    model: Optional[str] = None  # deployment name for azure
    temperature: float = 0.3
    api_version: str = "2024-02-01"
    timeout_seconds: float = 30.0
    max_attempts: int = 3


class EmbeddingsConfig(BaseModel):
    provider: str = "hash"  # hash, azure, openai
    model: Optional[str] = None
    dimension: int = 256
    max_cache_size: int = 10000


class ReputationConfig(BaseModel):
    starting_score: float = 70.0
    min_score: float = 0.0
    max_score: float = 100.0
    daily_max_gain: float = 2.0
    boosted_threshold: float = 95.0
    normal_threshold: float = 50.0
    suppressed_threshold: float = 30.0
    penalties: Dict[str, float] = Field(
        default_factory=lambda: {
            "hate_speech": -10.0,
            "harassment": -8.0,
            "spam": -2.0,
            "excessive_profanity": -3.0,
            "personal_attack": -1.0,
        }
    )
    rewards: Dict[str, float] = Field(
        default_factory=lambda: {
            "quality_post": 0.5,
            "constructive": 0.25,
            "helpful": 0.25,
            "positive_feedback": 0.25,
        }
    )
    report_confidence_threshold: float = 0.7
    appeal_confidence_threshold: float = 0.7


class TopicsConfig(BaseModel):
    timeframe_hours: int = 168
    min_posts_per_topic: int = 5
    similarity_threshold: float = 0.70
    max_topics: int = 15
    cache_minutes: float = 15.0
    max_posts: int = 1000
    map_rotation_seconds: int = 15


class FeedWeightsConfig(BaseModel):
    recency: float = 0.30
    similarity: float = 0.25
    social: float = 0.25
    trending: float = 0.10
    reputation: float = 0.10


class FeedConfig(BaseModel):
    weights: FeedWeightsConfig = Field(default_factory=FeedWeightsConfig)
    candidate_window_days: int = 30
    candidate_pool_size: int = 500
    selection_floor: float = 0.1
    recency_decay_hours: float = 24.0
    followed_social_score: float = 1.0
    unfollowed_social_score: float = 0.1
    trending_normalizer: float = 100.0
    default_author_reputation: float = 70.0
    liked_history: int = 50
    own_history: int = 20
    feed_post_tags: List[str] = Field(default_factory=lambda: ["Public Post", "Candidate Post", "Official Post"])


class EngagementConfig(BaseModel):
    algorithm: str = "balanced"


class SecurityConfig(BaseModel):
    max_login_attempts: int = 5
    lockout_minutes: int = 15
    event_retention_days: int = 90
    alert_min_risk: int = 75


class ModerationConfig(BaseModel):
    spam_threshold: float = 0.7
    toxicity_threshold: float = 0.8
    hate_speech_threshold: float = 0.7
    duplicate_similarity: float = 0.95
    auto_moderate_confidence: float = 0.9
    final_warning_suspension_days: int = 7


class ImageModerationConfig(BaseModel):
    endpoint: Optional[str] = None
    adult_threshold: float = 0.5
    gore_threshold: float = 0.6
    racy_threshold: float = 0.5
    strict_mode: bool = True
    timeout_seconds: float = 20.0


class NewsConfig(BaseModel):
    base_url: str = "https://newsapi.org/v2"
    official_cache_minutes: float = 15.0
    trending_cache_minutes: float = 30.0
    timeout_seconds: float = 15.0


class DistrictsConfig(BaseModel):
    geocodio_url: str = "https://api.geocod.io/v1.7/geocode"
    cache_days: int = 30
    timeout_seconds: float = 15.0


class RateLimitSettings(BaseModel):
    enabled: bool = True
    anonymous_max_requests: int = 100
    user_max_requests: int = 600
    window_seconds: int = 60


class SchedulerConfig(BaseModel):
    topic_refresh_minutes: int = 15
    suspension_cleanup_minutes: int = 60
    security_cleanup_hour: int = 3


class NotificationsConfig(BaseModel):
    slack_webhook_url: Optional[str] = None


class AppConfig(BaseModel):
    database_path: str = "data/unitedwerise.db"
    llm: LLMConfig = Field(default_factory=LLMConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    reputation: ReputationConfig = Field(default_factory=ReputationConfig)
    topics: TopicsConfig = Field(default_factory=TopicsConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    engagement: EngagementConfig = Field(default_factory=EngagementConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    moderation: ModerationConfig = Field(default_factory=ModerationConfig)
    image_moderation: ImageModerationConfig = Field(default_factory=ImageModerationConfig)
    news: NewsConfig = Field(default_factory=NewsConfig)
    districts: DistrictsConfig = Field(default_factory=DistrictsConfig)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)


class Settings(BaseModel):
    app: AppConfig = Field(default_factory=AppConfig)


def _find_settings_path(explicit: Optional[str]) -> Optional[Path]:
    candidates = []
    if explicit:
        candidates.append(Path(explicit))
    env = os.getenv("UWR_CONFIG")
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path("settings.yaml"),
        Path("settings.yml"),
        Path("config/settings.yaml"),
    ])
    for p in candidates:
        if p and p.exists() and p.is_file():
            return p
    return None


def _apply_env_overrides(s: Settings) -> Settings:
    if db_path := os.getenv("UWR_DB_PATH"):
        s.app.database_path = db_path
    if llm_provider := os.getenv("UWR_LLM_PROVIDER"):
        s.app.llm.provider = llm_provider
    if llm_model := os.getenv("UWR_LLM_MODEL"):
        s.app.llm.model = llm_model
    if emb_provider := os.getenv("UWR_EMBEDDING_PROVIDER"):
        s.app.embeddings.provider = emb_provider
    if webhook := os.getenv("SLACK_WEBHOOK_URL"):
        s.app.notifications.slack_webhook_url = webhook
    if os.getenv("RATE_LIMITING_ENABLED", "").lower() == "false":
        s.app.rate_limit.enabled = False
    return s


def load_settings(path: Optional[str] = None) -> Settings:
    p = _find_settings_path(path)
    if not p:
        log.warning("No settings file found; using defaults")
        return _apply_env_overrides(Settings())

    with open(p, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    try:
        s = Settings(**raw)
    except ValidationError as e:
        log.error("Settings validation failed: %s", e)
        raise
    return _apply_env_overrides(s)
