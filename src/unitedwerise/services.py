from __future__ import annotations

from dataclasses import dataclass

from .admin import AdminService
from .config import Settings
from .districts import DistrictService
from .embeddings import EmbeddingClient
from .feed import ProbabilityFeedService
from .feedback import FeedbackService
from .image_moderation import ImageModerationService
from .llm_client import LLMClient
from .moderation import ModerationService
from .news import NewsService
from .notifier import SlackNotifier
from .quests import QuestService
from .reputation import ReputationService
from .security import SecurityService
from .topics import TopicAggregationService


@dataclass
class Services:
    """Every service wired against one database and one set of settings."""

    settings: Settings
    llm: LLMClient
    embeddings: EmbeddingClient
    notifier: SlackNotifier
    reputation: ReputationService
    topics: TopicAggregationService
    feed: ProbabilityFeedService
    security: SecurityService
    moderation: ModerationService
    feedback: FeedbackService
    news: NewsService
    images: ImageModerationService
    districts: DistrictService
    quests: QuestService
    admin: AdminService

    @property
    def db_path(self) -> str:
        return self.settings.app.database_path


def build_services(settings: Settings) -> Services:
    app = settings.app
    db_path = app.database_path
    llm = LLMClient(app.llm)
    embeddings = EmbeddingClient(app.embeddings)
    notifier = SlackNotifier(app.notifications.slack_webhook_url)
    return Services(
        settings=settings,
        llm=llm,
        embeddings=embeddings,
        notifier=notifier,
        reputation=ReputationService(db_path, app.reputation, llm),
        topics=TopicAggregationService(db_path, app.topics, llm),
        feed=ProbabilityFeedService(db_path, app.feed, app.reputation, app.engagement.algorithm),
        security=SecurityService(db_path, app.security, notifier),
        moderation=ModerationService(db_path, app.moderation, llm, embeddings),
        feedback=FeedbackService(db_path, llm, embeddings),
        news=NewsService(db_path, app.news, llm),
        images=ImageModerationService(app.image_moderation),
        districts=DistrictService(db_path, app.districts),
        quests=QuestService(db_path),
        admin=AdminService(db_path),
    )
