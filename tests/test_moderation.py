from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, FakeLLM
from unitedwerise.config import EmbeddingsConfig, ModerationConfig
from unitedwerise.db import create_comment, create_post, get_user, query_all
from unitedwerise.embeddings import EmbeddingClient, hash_embedding
from unitedwerise.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from unitedwerise.moderation import ModerationService, detect_spam, report_priority, spam_indicators
from unitedwerise.utils import to_iso

SPAMMY = "FREE MONEY!!! CLICK HERE!!! ACT NOW!!! http://a.io http://b.io http://c.io http://d.io"


class MovableClock:
    def __init__(self):
        self.now = FIXED_NOW

    def __call__(self):
        return self.now


@pytest.fixture()
def clock():
    return MovableClock()


def make_service(db_path, clock, llm=None):
    return ModerationService(
        db_path, ModerationConfig(), llm or FakeLLM(enabled=False),
        EmbeddingClient(EmbeddingsConfig()), now_fn=clock,
    )


@pytest.fixture()
def moderation(db_path, users, clock):
    return make_service(db_path, clock)


class TestSpamHeuristics:
    def test_spammy_post(self):
        assert detect_spam(SPAMMY) == pytest.approx(3 / 13 * 0.5 + 0.2 + 0.4)
        indicators = spam_indicators(SPAMMY)
        assert 'Contains spam keyword: "click here"' in indicators
        assert "Excessive links" in indicators

    def test_ordinary_post(self):
        assert detect_spam("The library is open late on Thursdays.") == 0.0
        assert detect_spam("") == 0.0

    def test_shouting_and_repetition(self):
        assert detect_spam("VOTE VOTE VOTE VOTE VOTE VOTE VOTE VOTE") == pytest.approx(0.6)

    def test_report_priority(self):
        assert report_priority("SELF_HARM") == "URGENT"
        assert report_priority("HARASSMENT") == "HIGH"
        assert report_priority("MISINFORMATION") == "MEDIUM"
        assert report_priority("SPAM") == "LOW"


class TestAnalyzeContent:
    def test_flags_spam_and_toxicity(self, moderation):
        flags = moderation.analyze_content(SPAMMY, "POST", "p-spam")
        assert [f["flag_type"] for f in flags] == ["SPAM"]
        assert flags[0]["auto_moderated"] is False

        toxic = moderation.analyze_content("stupid idiot moron trash worthless", "COMMENT", "c-1")
        assert toxic[0]["flag_type"] == "TOXICITY"
        assert toxic[0]["confidence"] == 1.0
        assert toxic[0]["auto_moderated"] is True

        stored = moderation.list_flags()
        assert {f["content_id"] for f in stored} == {"p-spam", "c-1"}
        assert stored[0]["source"] == "AUTOMATED"

    def test_clean_content(self, moderation):
        assert moderation.analyze_content("Thanks for organizing the cleanup!", "POST", "p-1") == []

    def test_bad_content_type(self, moderation):
        with pytest.raises(ValidationError):
            moderation.analyze_content("hi", "STORY", "x")

    def test_hate_speech_fallback_stays_below_threshold(self, moderation):
        assert moderation.detect_hate_speech("you people are vermin") == pytest.approx(0.7)
        assert moderation.analyze_content("those vermin again", "POST", "p-2") == []

    def test_model_scores(self, db_path, users, clock):
        llm = FakeLLM(json_reply={"toxicityScore": 0.1, "hateSpeechScore": 0.95})
        service = make_service(db_path, clock, llm)
        flags = service.analyze_content("some hateful text", "POST", "p-3")
        assert [f["flag_type"] for f in flags] == ["HATE_SPEECH"]
        assert flags[0]["auto_moderated"] is True
        assert len(llm.calls) == 2

    def test_model_failure_uses_keywords(self, db_path, users, clock):
        service = make_service(db_path, clock, FakeLLM(json_reply=None))
        assert service.detect_toxicity("hate hate trash") == pytest.approx(0.4)

    def test_duplicate_detection(self, moderation, db_path):
        text = "Join us at city hall to support the transit levy"
        existing = create_post(db_path, "u-bob", text, embedding=hash_embedding(text),
                               created_at=to_iso(FIXED_NOW - timedelta(hours=1)))
        assert moderation.detect_duplicate_content(text)
        assert not moderation.detect_duplicate_content(text, exclude_id=existing["id"])
        assert not moderation.detect_duplicate_content("Completely different words about parks")

        flags = moderation.analyze_content(text, "POST", "p-new")
        assert flags[0]["flag_type"] == "DUPLICATE_CONTENT"
        assert flags[0]["confidence"] == 0.9

    def test_old_posts_are_not_duplicates(self, moderation, db_path):
        text = "Join us at city hall"
        create_post(db_path, "u-bob", text, embedding=hash_embedding(text),
                    created_at=to_iso(FIXED_NOW - timedelta(days=2)))
        assert not moderation.detect_duplicate_content(text)

    def test_resolve_flag(self, moderation):
        flag = moderation.analyze_content(SPAMMY, "POST", "p-spam")[0]
        resolved = moderation.resolve_flag(flag["id"], "u-carol")
        assert resolved["resolved"] == 1
        assert moderation.list_flags() == []
        assert len(moderation.list_flags(resolved=True)) == 1
        with pytest.raises(ConflictError):
            moderation.resolve_flag(flag["id"], "u-carol")
        with pytest.raises(NotFoundError):
            moderation.resolve_flag("missing", "u-carol")


class TestReports:
    def test_create_and_list(self, moderation, db_path):
        post = create_post(db_path, "u-bob", "offensive post")
        assert moderation.create_report("u-alice", "POST", post["id"], "HATE_SPEECH")["priority"] == "HIGH"
        urgent = moderation.create_report("u-alice", "USER", "u-bob", "VIOLENCE_THREATS", "threatened me")
        assert urgent["priority"] == "URGENT"

        reports = moderation.list_reports()
        assert [r["priority"] for r in reports] == ["URGENT", "HIGH"]
        assert len(moderation.list_reports(priority="HIGH")) == 1
        assert moderation.list_reports(reporter_id="u-carol") == []

        with pytest.raises(ConflictError):
            moderation.create_report("u-alice", "POST", post["id"], "SPAM")

    def test_validation(self, moderation):
        with pytest.raises(ValidationError):
            moderation.create_report("u-alice", "PHOTO", "x", "SPAM")
        with pytest.raises(ValidationError):
            moderation.create_report("u-alice", "POST", "x", "RUDE")
        with pytest.raises(NotFoundError):
            moderation.create_report("u-alice", "POST", "missing", "SPAM")

    def test_resolve_with_warning(self, moderation, db_path):
        post = create_post(db_path, "u-bob", "rude post")
        report = moderation.create_report("u-alice", "POST", post["id"], "HARASSMENT")
        assert moderation.resolve_report(report["reportId"], "u-carol", "WARNING_ISSUED", "be nice") == {
            "reportId": report["reportId"],
            "action": "WARNING_ISSUED",
        }
        warnings = query_all(db_path, "SELECT * FROM user_warnings WHERE user_id = 'u-bob';")
        assert warnings[0]["severity"] == "MINOR"
        assert warnings[0]["reason"] == "Report resolution: HARASSMENT"
        assert moderation.list_reports(status="RESOLVED")[0]["action_taken"] == "WARNING_ISSUED"

        with pytest.raises(ValidationError):
            moderation.resolve_report(report["reportId"], "u-carol", "NO_ACTION")

    def test_resolve_with_suspension(self, moderation, db_path):
        post = create_post(db_path, "u-alice", "topic")
        comment = create_comment(db_path, post["id"], "u-bob", "threatening reply")
        report = moderation.create_report("u-alice", "COMMENT", comment["id"], "VIOLENCE_THREATS")
        moderation.resolve_report(report["reportId"], "u-carol", "USER_SUSPENDED")

        status = moderation.get_user_suspension_status("u-bob")
        assert status["isSuspended"] is True
        assert status["canPost"] is False
        assert status["suspension"]["type"] == "TEMPORARY"
        assert status["suspension"]["ends_at"] == to_iso(FIXED_NOW + timedelta(days=7))

    def test_resolve_with_ban(self, moderation):
        report = moderation.create_report("u-alice", "USER", "u-bob", "FAKE_ACCOUNT")
        moderation.resolve_report(report["reportId"], "u-carol", "USER_BANNED")
        assert moderation.get_user_suspension_status("u-bob")["suspension"]["ends_at"] is None

    def test_resolve_errors(self, moderation):
        with pytest.raises(ValidationError):
            moderation.resolve_report("any", "u-carol", "SHADOW_BAN")
        with pytest.raises(NotFoundError):
            moderation.resolve_report("missing", "u-carol", "NO_ACTION")


class TestSuspensions:
    def test_final_warning_suspends(self, moderation, db_path):
        result = moderation.issue_warning("u-bob", "u-carol", "repeated harassment", "FINAL")
        assert result["suspended"] is True
        assert get_user(db_path, "u-bob")["is_suspended"] == 1

    def test_warning_validation(self, moderation):
        with pytest.raises(ValidationError):
            moderation.issue_warning("u-bob", "u-carol", "x", "SEVERE")
        with pytest.raises(NotFoundError):
            moderation.issue_warning("ghost", "u-carol", "x", "MINOR")

    def test_admins_cannot_be_suspended(self, moderation):
        with pytest.raises(PermissionDenied):
            moderation.suspend_user("u-admin", "u-carol", "nope", "TEMPORARY", days=1)

    def test_restrictions(self, moderation):
        moderation.suspend_user("u-bob", "u-carol", "spam links", "POSTING_RESTRICTED", days=3)
        status = moderation.get_user_suspension_status("u-bob")
        assert (status["canPost"], status["canComment"]) == (False, True)

        moderation.suspend_user("u-bob", "u-carol", "flame wars", "COMMENTING_RESTRICTED", days=3)
        status = moderation.get_user_suspension_status("u-bob")
        assert (status["canPost"], status["canComment"]) == (True, False)

    def test_unsuspend(self, moderation, db_path):
        moderation.suspend_user("u-bob", "u-carol", "cool off", "TEMPORARY", days=1)
        assert moderation.unsuspend_user("u-bob", "u-carol") == 1
        assert get_user(db_path, "u-bob")["is_suspended"] == 0
        assert moderation.get_user_suspension_status("u-bob") == {
            "isSuspended": False, "canPost": True, "canComment": True,
        }
        with pytest.raises(NotFoundError):
            moderation.unsuspend_user("ghost", "u-carol")

    def test_cleanup_expired(self, moderation, db_path, clock):
        moderation.suspend_user("u-bob", "u-carol", "cool off", "TEMPORARY", days=1)
        moderation.suspend_user("u-alice", "u-carol", "banned", "PERMANENT")
        assert moderation.cleanup_expired_suspensions() == 0

        clock.now = FIXED_NOW + timedelta(days=2)
        assert moderation.cleanup_expired_suspensions() == 1
        assert get_user(db_path, "u-bob")["is_suspended"] == 0
        assert get_user(db_path, "u-alice")["is_suspended"] == 1
