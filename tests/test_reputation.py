from __future__ import annotations

import pytest

from conftest import FIXED_NOW, FakeLLM
from unitedwerise.config import ReputationConfig
from unitedwerise.db import create_post, get_user, query_all, query_one, update_user
from unitedwerise.errors import NotFoundError, ValidationError
from unitedwerise.reputation import ReputationEvent, ReputationService, get_tier, visibility_multiplier


def make_service(db_path, llm=None):
    return ReputationService(db_path, ReputationConfig(), llm or FakeLLM(enabled=False), now_fn=lambda: FIXED_NOW)


class TestTiers:
    def test_thresholds(self):
        assert get_tier(95) == "boosted"
        assert get_tier(94.9) == "normal"
        assert get_tier(50) == "normal"
        assert get_tier(30) == "suppressed"
        assert get_tier(29.9) == "heavily_suppressed"

    def test_visibility_multipliers(self):
        assert visibility_multiplier(100) == 1.1
        assert visibility_multiplier(70) == 1.0
        assert visibility_multiplier(40) == 0.9
        assert visibility_multiplier(0) == 0.8


class TestReputationChanges:
    def test_new_user_starts_at_seventy(self, db_path, users):
        rep = make_service(db_path).get_user_reputation("u-alice")
        assert rep["current"] == 70.0
        assert rep["tier"] == "normal"
        assert rep["visibilityMultiplier"] == 1.0
        assert get_user(db_path, "u-alice")["reputation_score"] == 70.0

    def test_unknown_user(self, db_path):
        with pytest.raises(NotFoundError):
            make_service(db_path).get_user_reputation("ghost")

    def test_unvalidated_penalty_is_ignored(self, db_path, users):
        service = make_service(db_path)
        score = service.apply_reputation_change(
            ReputationEvent("u-alice", "PENALTY_COMMUNITY_REPORT", -8.0, "harassment")
        )
        assert score == 70.0
        assert service.get_history("u-alice") == []

    def test_rewards_are_capped_per_day(self, db_path, users):
        service = make_service(db_path)
        scores = [service.award_reputation("u-alice", "quality_post") for _ in range(5)]
        assert scores == [70.5, 71.0, 71.5, 72.0, 72.0]
        assert len(service.get_history("u-alice")) == 4

    def test_partial_reward_fills_remaining_cap(self, db_path, users):
        service = make_service(db_path)
        service.apply_reputation_change(ReputationEvent("u-alice", "REWARD_QUALITY_POST", 1.8, "quality_post", validated=True))
        assert service.apply_reputation_change(
            ReputationEvent("u-alice", "REWARD_QUALITY_POST", 0.5, "quality_post", validated=True)
        ) == pytest.approx(72.0)

    def test_unknown_award_reason_rejected(self, db_path, users):
        service = make_service(db_path)
        with pytest.raises(ValidationError) as exc:
            service.award_reputation("u-alice", "being_nice")
        assert exc.value.details == {"reason": "being_nice"}
        assert service.get_user_reputation("u-alice")["current"] == 70.0

    def test_duplicate_penalty_for_same_post_rejected(self, db_path, users):
        service = make_service(db_path)
        event = ReputationEvent("u-bob", "PENALTY_AI_ANALYSIS", -2.0, "spam", post_id="p1", validated=True)
        assert service.apply_reputation_change(event) == 68.0
        assert service.apply_reputation_change(event) == 68.0

    def test_score_is_clamped(self, db_path, users):
        service = make_service(db_path)
        event = ReputationEvent("u-bob", "PENALTY_ADMIN", -500.0, "abuse", validated=True)
        assert service.apply_reputation_change(event) == 0.0
        history = service.get_history("u-bob")
        assert history[0]["details"] == {"oldScore": 70.0, "newScore": 0.0}


class TestContentAnalysis:
    def test_without_model_nothing_is_flagged(self, db_path, users):
        service = make_service(db_path)
        assert not any(service.analyze_content("anything").values())
        assert service.analyze_and_apply_penalties("anything", "u-alice", "p1")["penalties"] == []

    def test_penalties_are_summed_into_one_event(self, db_path, users):
        llm = FakeLLM(json_reply={"hate_speech": True, "spam": True})
        service = make_service(db_path, llm)
        result = service.analyze_and_apply_penalties("bad post", "u-alice", "p1")
        assert result == {"penalties": ["hate_speech", "spam"], "totalImpact": -12.0, "newScore": 58.0}
        event = service.get_history("u-alice")[0]
        assert event["event_type"] == "PENALTY_AI_ANALYSIS"
        assert event["ai_generated"] == 1
        assert llm.calls[0]["temperature"] == 0.1

    def test_content_warning(self, db_path, users):
        service = make_service(db_path, FakeLLM(json_reply={"personal_attack": True}))
        warning = service.generate_content_warning("you are a fool", "u-alice")
        assert warning["hasWarning"] is True
        assert warning["issues"] == ["personal attack"]
        assert warning["potentialPenalty"] == -1.0
        assert "1 points" in warning["message"]

    def test_no_warning_for_clean_content(self, db_path, users):
        service = make_service(db_path, FakeLLM(json_reply={}))
        assert service.generate_content_warning("lovely park", "u-alice")["hasWarning"] is False


class TestReports:
    def test_report_accepted_when_model_is_confident(self, db_path, users):
        post = create_post(db_path, "u-bob", "buy pills")
        service = make_service(db_path, FakeLLM(json_reply={"valid": True, "confidence": 0.9}))
        assert service.process_report("u-alice", "u-bob", post["id"], "spam", post["content"]) == {
            "accepted": True,
            "penalty": -2.0,
        }
        assert service.get_user_reputation("u-bob")["current"] == 68.0

        with pytest.raises(ValidationError, match="already reported"):
            service.check_report_allowed("u-alice", "u-bob", post["id"])
        assert service.check_report_allowed("u-carol", "u-bob", post["id"])["id"] == post["id"]

    def test_other_reasons_cost_one_point(self, db_path, users):
        post = create_post(db_path, "u-bob", "the moon is cheese")
        service = make_service(db_path, FakeLLM(json_reply={"valid": True, "confidence": 0.95}))
        assert service.process_report("u-alice", "u-bob", post["id"], "misinformation", post["content"])["penalty"] == -1.0

    def test_low_confidence_report_rejected(self, db_path, users):
        service = make_service(db_path, FakeLLM(json_reply={"valid": True, "confidence": 0.7}))
        assert service.process_report("u-alice", "u-bob", "p1", "spam", "text") == {"accepted": False}

    def test_report_checks(self, db_path, users):
        post = create_post(db_path, "u-bob", "hello")
        service = make_service(db_path)
        with pytest.raises(ValidationError):
            service.check_report_allowed("u-bob", "u-bob", post["id"])
        with pytest.raises(NotFoundError):
            service.check_report_allowed("u-alice", "u-bob", "missing")
        with pytest.raises(ValidationError, match="does not belong"):
            service.check_report_allowed("u-alice", "u-carol", post["id"])


class TestAppeals:
    def _penalize(self, service):
        service.apply_reputation_change(
            ReputationEvent("u-alice", "PENALTY_AI_ANALYSIS", -10.0, "hate_speech", post_id="p1", validated=True)
        )
        return service.get_history("u-alice")[0]["id"]

    def test_overturned_appeal_restores_score(self, db_path, users):
        llm = FakeLLM(json_reply={"overturn": True, "confidence": 0.9, "explanation": "Political speech"})
        service = make_service(db_path, llm)
        event_id = self._penalize(service)

        assert service.process_appeal("u-alice", event_id, "It was satire") == {
            "decision": "overturned",
            "explanation": "Political speech",
        }
        assert service.get_user_reputation("u-alice")["current"] == 70.0
        original = query_one(db_path, "SELECT details FROM reputation_events WHERE id = ?;", (event_id,))
        assert original["details"]["overturned"] is True
        assert original["details"]["appealReason"] == "It was satire"

    def test_upheld_appeal(self, db_path, users):
        llm = FakeLLM(json_reply={"overturn": False, "confidence": 0.8, "explanation": "Clear slur"})
        service = make_service(db_path, llm)
        event_id = self._penalize(service)
        assert service.process_appeal("u-alice", event_id, "no")["decision"] == "upheld"
        assert service.get_user_reputation("u-alice")["current"] == 60.0

    def test_unsure_review_goes_to_admins(self, db_path, users):
        service = make_service(db_path)
        event_id = self._penalize(service)
        assert service.process_appeal("u-alice", event_id, "please")["decision"] == "under_review"

    def test_unknown_event(self, db_path, users):
        with pytest.raises(NotFoundError):
            make_service(db_path).process_appeal("u-alice", "nope", "why")


def test_stats_and_low_reputation(db_path, users):
    update_user(db_path, "u-alice", reputation_score=96.0)
    update_user(db_path, "u-bob", reputation_score=20.0)
    service = make_service(db_path)
    service.apply_reputation_change(ReputationEvent("u-bob", "PENALTY_ADMIN", -5.0, "abuse", validated=True))

    stats = service.get_reputation_stats("day")
    assert stats["totalUsers"] == 2
    assert stats["tierDistribution"]["boosted"] == 1
    assert stats["tierDistribution"]["heavily_suppressed"] == 1
    assert stats["tierPercentages"]["boosted"] == "50.0"
    assert stats["averageScore"] == "55.5"

    low = service.list_low_reputation(threshold=30)
    assert [u["id"] for u in low] == ["u-bob"]
    assert low[0]["recentEvents"][0]["event_type"] == "PENALTY_ADMIN"
    assert len(query_all(db_path, "SELECT id FROM reputation_events;")) == 1
