from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, FakeLLM
from unitedwerise.config import TopicsConfig
from unitedwerise.db import create_post
from unitedwerise.errors import NotFoundError, ValidationError
from unitedwerise.topics import (
    AggregationOptions,
    TopicAggregationService,
    cluster_posts,
    heuristic_stance,
)
from unitedwerise.utils import to_iso

DIM = 8
TRANSIT = [1.0] + [0.0] * (DIM - 1)
PARKS = [0.0, 1.0] + [0.0] * (DIM - 2)

DEBATE = [
    ("u-alice", "I support this bus plan and agree with the council"),
    ("u-bob", "We should support more routes, I agree"),
    ("u-alice", "Great idea, I support it"),
    ("u-bob", "I oppose this plan, it is wrong"),
    ("u-alice", "Stop the bus plan, I am against it"),
    ("u-bob", "The council met about buses today"),
]


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def seeded(db_path, users):
    for i, (author, content) in enumerate(DEBATE):
        create_post(
            db_path, author, content, embedding=TRANSIT, is_political=True,
            likes_count=i, created_at=to_iso(FIXED_NOW - timedelta(hours=i)),
        )
    create_post(db_path, "u-carol", "Parks need shade trees", embedding=PARKS, is_political=True,
                created_at=to_iso(FIXED_NOW - timedelta(hours=1)))
    # outside the window, not political, no embedding
    create_post(db_path, "u-bob", "Old bus news", embedding=TRANSIT, is_political=True,
                created_at=to_iso(FIXED_NOW - timedelta(days=30)))
    create_post(db_path, "u-bob", "Lunch was good", embedding=TRANSIT, created_at=to_iso(FIXED_NOW))
    create_post(db_path, "u-bob", "Unembedded opinion", is_political=True, created_at=to_iso(FIXED_NOW))
    return db_path


def make_service(db_path, llm=None, clock=None):
    return TopicAggregationService(
        db_path, TopicsConfig(min_posts_per_topic=5), llm or FakeLLM(enabled=False),
        now_fn=lambda: FIXED_NOW, clock=clock or Clock(),
    )


def test_heuristic_stance():
    assert heuristic_stance("I support and agree") == "support"
    assert heuristic_stance("I oppose, this is wrong") == "oppose"
    assert heuristic_stance("The meeting is at noon") == "neutral"
    assert heuristic_stance("") == "neutral"


def test_cluster_posts_drops_small_groups():
    posts = [
        {"id": "a", "embedding": [1.0, 0.0]},
        {"id": "b", "embedding": [0.0, 1.0]},
        {"id": "c", "embedding": [1.0, 0.1]},
        {"id": "d", "embedding": [0.9, 0.0]},
    ]
    clusters = cluster_posts(posts, 0.9, 3)
    assert [[p["id"] for p in c] for c in clusters] == [["a", "c", "d"]]
    assert cluster_posts(posts, 0.9, 5) == []


def test_fetch_posts_filters_window_and_flags(seeded):
    service = make_service(seeded)
    posts = service.fetch_posts(168, "national", None, None)
    assert len(posts) == 7
    assert posts[0]["author_username"] in {"alice", "bob"}
    assert {p["author_state"] for p in service.fetch_posts(168, "state", "TX", None)} == {"TX"}
    local = service.fetch_posts(168, "local", "CA", "Fresno")
    assert {p["author_id"] for p in local} == {"u-bob"}


def test_aggregate_topics_builds_debate(seeded):
    topics = make_service(seeded).aggregate_topics()
    assert len(topics) == 1
    summary = topics[0].summary()
    assert summary["title"] == "Trending Discussion"
    assert summary["support"] == {"percentage": 50, "summary": "Supporting this position", "postCount": 3}
    assert summary["oppose"]["percentage"] == 33
    assert summary["neutral"] == {"percentage": 17, "postCount": 1}
    assert summary["totalPosts"] == 6
    assert summary["geographicScope"] == "national"
    assert topics[0].support.vector == pytest.approx(TRANSIT)
    assert topics[0].id.startswith("topic_")


def test_state_scope(seeded):
    topics = make_service(seeded).aggregate_topics(AggregationOptions(geographic_scope="state", user_state="CA"))
    assert topics[0].geographic_scope == "state"
    assert topics[0].state == "CA"
    assert topics[0].city is None


def test_one_sided_cluster_is_not_a_topic(db_path, users):
    for i in range(5):
        create_post(db_path, "u-alice", "I support and agree", embedding=TRANSIT, is_political=True,
                    created_at=to_iso(FIXED_NOW - timedelta(hours=i)))
    assert make_service(db_path).aggregate_topics() == []


def test_too_few_posts(db_path, users):
    create_post(db_path, "u-alice", "I support it", embedding=TRANSIT, is_political=True,
                created_at=to_iso(FIXED_NOW))
    assert make_service(db_path).aggregate_topics() == []


def test_results_are_cached_until_expiry(seeded):
    clock = Clock()
    service = make_service(seeded, clock=clock)
    first = service.aggregate_topics()
    assert service.aggregate_topics() is first

    clock.now += 15 * 60 + 1
    assert service.aggregate_topics() is not first

    second = service.aggregate_topics()
    service.refresh()
    assert service.aggregate_topics() is not second


def test_calculate_score():
    service = TopicAggregationService(":memory:", TopicsConfig(), FakeLLM(enabled=False), now_fn=lambda: FIXED_NOW)
    post = {
        "created_at": to_iso(FIXED_NOW), "likes_count": 1, "comments_count": 1,
        "author_state": "CA", "author_city": "Fresno",
    }
    assert service.calculate_score([post], "national", None, None) == pytest.approx(20.0)
    assert service.calculate_score([post], "state", "CA", None) == pytest.approx(27.0)
    assert service.calculate_score([post], "local", "CA", "Fresno") == pytest.approx(30.0)


def test_model_stance_and_metadata():
    llm = FakeLLM(text_reply="Support.")
    service = TopicAggregationService(":memory:", TopicsConfig(), llm)
    assert service.classify_stance({"content": "anything"}) == "support"
    llm.text_reply = "maybe"
    assert service.classify_stance({"content": "anything"}) == "neutral"

    llm.text_reply = "TITLE: Bus Expansion\nSUPPORT: More service\nOPPOSE:"
    meta = service.generate_metadata([{"content": "yes"}], [{"content": "no"}])
    assert meta == {"title": "Bus Expansion", "support_summary": "More service", "oppose_summary": "Opposing viewpoint"}


def test_topic_posts(seeded):
    service = make_service(seeded)
    topic = service.aggregate_topics()[0]

    page = service.get_topic_posts(topic.id, stance="support", limit=2)
    assert page["topic"]["supportPercentage"] == 50
    assert len(page["posts"]) == 2
    assert all(p["stance"] == "support" for p in page["posts"])
    assert all("embedding" not in p for p in page["posts"])
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "hasMore": True}

    everything = service.get_topic_posts(topic.id)
    assert {p["stance"] for p in everything["posts"]} == {"support", "oppose", "neutral"}

    with pytest.raises(ValidationError):
        service.get_topic_posts(topic.id, stance="maybe")
    with pytest.raises(NotFoundError):
        service.get_topic_posts("topic_missing")


def test_map_topics(seeded):
    service = make_service(seeded)
    assert len(service.get_map_topics(count=3)) == 1
    assert service.find_topic("nope") is None
