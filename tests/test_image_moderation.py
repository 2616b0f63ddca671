from __future__ import annotations

import base64

import pytest

from conftest import FakeResponse
from unitedwerise.config import ImageModerationConfig
from unitedwerise.image_moderation import (
    ContentFlags,
    ImageModerationService,
    classify_content_type,
    extract_flags,
    make_decision,
)


def analysis(**severities):
    return {"categoriesAnalysis": [{"category": k, "severity": v} for k, v in severities.items()]}


def decide(config=None, **severities):
    flags = extract_flags(analysis(**severities))
    content_type = classify_content_type(flags)
    return content_type, make_decision(content_type, flags, config or ImageModerationConfig())


class TestFlags:
    def test_severity_mapping(self):
        flags = extract_flags(analysis(Sexual=2, Violence=0, SelfHarm=4, Hate=2))
        assert flags.is_racy and not flags.is_adult
        assert flags.is_gory
        assert flags.is_political
        assert flags.gore_score == pytest.approx(4 / 6)
        assert flags.racy_score == pytest.approx(2 / 6)

    def test_missing_categories(self):
        assert extract_flags({}) == ContentFlags()


class TestDecisions:
    def test_explicit_content_is_prohibited(self):
        content_type, decision = decide(Sexual=6)
        assert content_type == "PORNOGRAPHY"
        assert decision["category"] == "BLOCK"
        assert decision["reason"] == "Content contains prohibited material"

    def test_adult_above_threshold(self):
        content_type, decision = decide(Sexual=4)
        assert content_type == "UNKNOWN"
        assert decision["reason"] == "Adult content detected above threshold"
        assert decision["confidence"] == pytest.approx(4 / 6)

    def test_extreme_violence(self):
        content_type, decision = decide(Violence=6)
        assert content_type == "EXTREME_VIOLENCE"
        assert decision["approved"] is False

    def test_graphic_above_threshold(self):
        content_type, decision = decide(Violence=4)
        assert content_type == "MILD_VIOLENCE"
        assert decision["reason"] == "Graphic content detected above threshold"

    def test_mild_violence_is_approved(self):
        content_type, decision = decide(Violence=2)
        assert content_type == "MILD_VIOLENCE"
        assert decision["category"] == "APPROVE"

    def test_racy_warns_in_strict_mode(self):
        strict = ImageModerationConfig(racy_threshold=0.3)
        lenient = ImageModerationConfig(racy_threshold=0.3, strict_mode=False)
        assert decide(strict, Sexual=2)[1]["category"] == "WARN"
        assert decide(strict, Sexual=2)[1]["approved"] is False
        assert decide(lenient, Sexual=2)[1]["approved"] is True

    def test_clean(self):
        content_type, decision = decide(Sexual=0, Violence=0, Hate=2)
        assert content_type == "CLEAN"
        assert decision == {
            "category": "APPROVE",
            "approved": True,
            "reason": "Content passed safety checks",
            "description": "No safety issues detected in content",
            "confidence": 0.9,
        }


class TestService:
    def test_unconfigured_blocks(self):
        result = ImageModerationService().analyze_image(b"\x89PNG")
        assert result.category == "BLOCK"
        assert result.approved is False
        assert result.model == "not-configured"
        assert result.confidence == 0.1

    def test_configuration_from_environment(self, monkeypatch):
        monkeypatch.setenv("AZURE_CONTENT_SAFETY_ENDPOINT", "https://safety.example.com")
        monkeypatch.setenv("AZURE_CONTENT_SAFETY_KEY", "secret")
        assert ImageModerationService().configured is True

    def test_remote_analysis(self, fake_http):
        http = fake_http(FakeResponse(200, analysis(Sexual=0, Violence=0, Hate=0, SelfHarm=0)))
        service = ImageModerationService(ImageModerationConfig(endpoint="https://safety.example.com/"), api_key="secret")
        result = service.analyze_image(b"image-bytes", user_id="u1")

        assert result.category == "APPROVE"
        assert result.content_type == "CLEAN"
        assert result.model == "Azure Content Safety"
        request = http.requests[0]
        assert request["url"] == "https://safety.example.com/contentsafety/image:analyze?api-version=2023-10-01"
        assert request["headers"]["Ocp-Apim-Subscription-Key"] == "secret"
        assert request["json"] == {"image": {"content": base64.b64encode(b"image-bytes").decode("ascii")}}
        assert result.to_dict()["flags"]["is_adult"] is False

    def test_remote_failure_blocks(self, fake_http):
        fake_http(FakeResponse(500))
        service = ImageModerationService(ImageModerationConfig(endpoint="https://safety.example.com"), api_key="secret")
        result = service.analyze_image(b"image-bytes")
        assert result.category == "BLOCK"
        assert result.model == "error-fallback"
        assert result.reason.startswith("Moderation error:")
