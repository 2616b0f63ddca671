from __future__ import annotations

import math
import random
from datetime import timedelta

import pytest

from conftest import FIXED_NOW
from unitedwerise.config import FeedConfig
from unitedwerise.db import create_comment, create_post, follow, get_post, like_post
from unitedwerise.errors import ValidationError
from unitedwerise.feed import (
    FeedWeights,
    PostScore,
    ProbabilityFeedService,
    ScoredPost,
    UserProfile,
    probability_sample,
)
from unitedwerise.utils import to_iso

TRANSIT = [1.0, 0.0, 0.0]
PARKS = [0.0, 1.0, 0.0]


class FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


def scored(post_id: str, final: float) -> ScoredPost:
    return ScoredPost(PostScore(post_id, 0, 0, 0, 0, 0, 1.0, final), {"id": post_id})


def make_service(db_path, rng=None):
    return ProbabilityFeedService(db_path, FeedConfig(), rng=rng or random.Random(7), now_fn=lambda: FIXED_NOW)


class TestWeights:
    def test_merge_overrides(self):
        merged = FeedWeights.merged(FeedWeights(), {"recency": "0.6"})
        assert merged.recency == 0.6
        assert merged.social == 0.25

    def test_unknown_key(self):
        with pytest.raises(ValidationError):
            FeedWeights.merged(FeedWeights(), {"virality": 1})

    def test_non_numeric(self):
        with pytest.raises(ValidationError):
            FeedWeights.merged(FeedWeights(), {"recency": "high"})


class TestProbabilitySample:
    def test_low_draw_takes_highest_first(self):
        pool = [scored("low", 0.2), scored("high", 0.9), scored("mid", 0.5)]
        picked = probability_sample(pool, 2, FixedRandom(0.0))
        assert [s.score.post_id for s in picked] == ["high", "mid"]

    def test_high_draw_takes_lowest_first(self):
        pool = [scored("low", 0.2), scored("high", 0.9), scored("mid", 0.5)]
        picked = probability_sample(pool, 3, FixedRandom(0.9999))
        assert [s.score.post_id for s in picked] == ["low", "mid", "high"]

    def test_zero_scores_keep_floor_weight(self):
        pool = [scored("a", 0.0), scored("b", 0.0)]
        assert len(probability_sample(pool, 5, random.Random(1))) == 2

    def test_empty(self):
        assert probability_sample([], 10) == []

    @pytest.mark.parametrize("seed", range(20))
    @pytest.mark.parametrize("limit", [1, 5, 40])
    def test_sample_is_a_distinct_subset(self, seed, limit):
        rng = random.Random(seed)
        pool = [scored(f"p{i}", rng.choice([0.0, rng.random()])) for i in range(25)]
        picked = probability_sample(pool, limit, random.Random(seed))
        ids = [s.score.post_id for s in picked]
        assert len(ids) == len(set(ids)) == min(limit, len(pool))
        assert set(ids) <= {s.score.post_id for s in pool}

    def test_zero_score_post_can_be_drawn_first(self):
        pool = [scored("zero", 0.0), scored("strong", 0.9)]
        firsts = {probability_sample(pool, 1, random.Random(seed))[0].score.post_id for seed in range(200)}
        assert firsts == {"zero", "strong"}


class TestScoring:
    def test_followed_fresh_post(self, db_path, users):
        post = create_post(db_path, "u-bob", "Bus plan", embedding=TRANSIT, author_reputation=96.0,
                           created_at=to_iso(FIXED_NOW))
        service = make_service(db_path)
        profile = UserProfile("u-alice", {"u-bob"}, [TRANSIT])
        score = service.score_post(post, profile, FeedWeights())

        assert score.recency_score == pytest.approx(1.0)
        assert score.similarity_score == pytest.approx(1.0)
        assert score.social_score == 1.0
        assert score.reputation_score == pytest.approx(0.96)
        assert score.visibility_multiplier == 1.1
        base = 0.30 + 0.25 + 0.25 + score.trending_score * 0.10 + 0.096
        assert score.final_score == pytest.approx(base * 1.1)

    def test_unfollowed_old_unrelated_post(self, db_path, users):
        post = create_post(db_path, "u-carol", "Parks", embedding=PARKS,
                           created_at=to_iso(FIXED_NOW - timedelta(hours=24)))
        service = make_service(db_path)
        score = service.score_post(post, UserProfile("u-alice", set(), [TRANSIT]), FeedWeights())
        assert score.recency_score == pytest.approx(math.exp(-1))
        assert score.similarity_score == 0.0
        assert score.social_score == 0.1
        assert score.reputation_score == pytest.approx(0.70)

    def test_similarity_defaults_without_history(self, db_path, users):
        post = create_post(db_path, "u-carol", "Parks", embedding=PARKS, created_at=to_iso(FIXED_NOW))
        score = make_service(db_path).score_post(post, UserProfile("u-alice", set(), []), FeedWeights())
        assert score.similarity_score == 0.5


class TestGenerateFeed:
    def test_feed_excludes_own_and_untagged_posts(self, db_path, users):
        create_post(db_path, "u-alice", "My own post", created_at=to_iso(FIXED_NOW))
        create_post(db_path, "u-bob", "Draft", tags=["Private"], created_at=to_iso(FIXED_NOW))
        create_post(db_path, "u-bob", "Too old", created_at=to_iso(FIXED_NOW - timedelta(days=40)))
        bob_post = create_post(db_path, "u-bob", "Bus plan", embedding=TRANSIT, created_at=to_iso(FIXED_NOW))
        carol_post = create_post(db_path, "u-carol", "Vote Tuesday", tags=["Candidate Post"],
                                 created_at=to_iso(FIXED_NOW - timedelta(hours=2)))
        follow(db_path, "u-alice", "u-bob")

        feed = make_service(db_path).generate_feed("u-alice", limit=10)
        assert feed["algorithm"] == "probability-cloud"
        assert {p["id"] for p in feed["posts"]} == {bob_post["id"], carol_post["id"]}
        assert all("embedding" not in p for p in feed["posts"])
        by_id = {p["id"]: p for p in feed["posts"]}
        assert by_id[bob_post["id"]]["feedScore"]["social_score"] == 1.0
        assert by_id[carol_post["id"]]["author_username"] == "carol"
        assert feed["stats"]["candidateCount"] == 2
        assert feed["stats"]["avg_social_score"] == pytest.approx(0.55)
        assert feed["weights"]["recency"] == 0.30

    def test_limit_and_custom_weights(self, db_path, users):
        for i in range(5):
            create_post(db_path, "u-bob", f"post {i}", created_at=to_iso(FIXED_NOW - timedelta(hours=i)))
        feed = make_service(db_path).generate_feed("u-alice", limit=3, custom_weights={"social": 0})
        assert len(feed["posts"]) == 3
        assert len({p["id"] for p in feed["posts"]}) == 3
        assert feed["weights"]["social"] == 0.0

    def test_profile_uses_likes_and_own_posts(self, db_path, users):
        liked = create_post(db_path, "u-bob", "Bus plan", embedding=TRANSIT)
        create_post(db_path, "u-alice", "Parks", embedding=PARKS)
        create_post(db_path, "u-alice", "No vector")
        like_post(db_path, "u-alice", liked["id"])
        follow(db_path, "u-alice", "u-carol")

        profile = make_service(db_path).get_user_profile("u-alice")
        assert profile.followed_ids == {"u-carol"}
        assert sorted(profile.interaction_embeddings) == sorted([TRANSIT, PARKS])

    def test_empty_feed(self, db_path, users):
        feed = make_service(db_path).generate_feed("u-alice")
        assert feed == {"posts": [], "algorithm": "fallback-empty", "weights": feed["weights"], "stats": {}}


class TestCandidates:
    def test_pool_size_is_applied_in_query(self, db_path, users):
        for i in range(6):
            create_post(db_path, "u-bob", f"post {i}", created_at=to_iso(FIXED_NOW - timedelta(hours=i)))
        service = ProbabilityFeedService(
            db_path, FeedConfig(candidate_pool_size=3), rng=random.Random(7), now_fn=lambda: FIXED_NOW
        )
        assert [p["content"] for p in service.get_candidate_posts("u-alice")] == ["post 0", "post 1", "post 2"]

    def test_tag_filter(self, db_path, users):
        create_post(db_path, "u-bob", "Official notice", tags=["Official Post", "transit"], created_at=to_iso(FIXED_NOW))
        create_post(db_path, "u-bob", "Untagged", tags=[], created_at=to_iso(FIXED_NOW))
        create_post(db_path, "u-bob", "Draft", tags=["Private"], created_at=to_iso(FIXED_NOW))
        candidates = make_service(db_path).get_candidate_posts("u-alice")
        assert [p["content"] for p in candidates] == ["Official notice"]
        assert candidates[0]["tags"] == ["Official Post", "transit"]

        service = ProbabilityFeedService(db_path, FeedConfig(feed_post_tags=[]), now_fn=lambda: FIXED_NOW)
        assert service.get_candidate_posts("u-alice") == []

    def test_comments_are_loaded_in_one_batch(self, db_path, users, monkeypatch):
        post = create_post(db_path, "u-bob", "Bus plan", created_at=to_iso(FIXED_NOW))
        create_comment(db_path, post["id"], "u-carol", "Yes please", likes_count=3)
        service = make_service(db_path)
        stored = get_post(db_path, post["id"])
        expected = service.score_post(stored, UserProfile("u-alice", set(), []), FeedWeights())

        def per_post_lookup(*args, **kwargs):
            raise AssertionError("comments should come from the batch query")

        monkeypatch.setattr("unitedwerise.feed.list_comments", per_post_lookup)
        feed = service.generate_feed("u-alice", limit=5)
        assert feed["posts"][0]["feedScore"]["trending_score"] == pytest.approx(expected.trending_score)
        assert expected.trending_score > 0
