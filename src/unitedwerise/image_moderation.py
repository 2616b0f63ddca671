from __future__ import annotations

import base64
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .config import ImageModerationConfig
from .logger import get_logger, log_extra

log = get_logger(__name__)

# Azure Content Safety reports severities of 0, 2, 4 or 6
SEVERITY_BLOCK = 4
SEVERITY_WARN = 2
API_VERSION = "2023-10-01"

BLOCKED_CONTENT_TYPES = ("PORNOGRAPHY", "EXTREME_VIOLENCE")


@dataclass
class ContentFlags:
    is_adult: bool = False
    is_racy: bool = False
    is_gory: bool = False
    is_political: bool = False
    adult_score: float = 0.0
    racy_score: float = 0.0
    gore_score: float = 0.0


@dataclass
class ImageModerationResult:
    category: str
    approved: bool
    reason: str
    description: str
    content_type: str
    confidence: float
    model: str
    processing_ms: int = 0
    flags: ContentFlags = field(default_factory=ContentFlags)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def extract_flags(analysis: Dict[str, Any]) -> ContentFlags:
    categories: List[Dict[str, Any]] = analysis.get("categoriesAnalysis") or []

    def severity(name: str) -> int:
        for c in categories:
            if c.get("category") == name:
                return int(c.get("severity") or 0)
        return 0

    sexual = severity("Sexual")
    violence = severity("Violence")
    self_harm = severity("SelfHarm")
    return ContentFlags(
        is_adult=sexual >= SEVERITY_BLOCK,
        is_racy=SEVERITY_WARN <= sexual < SEVERITY_BLOCK,
        is_gory=violence >= SEVERITY_WARN or self_harm >= SEVERITY_WARN,
        is_political=severity("Hate") >= SEVERITY_WARN,
        adult_score=sexual / 6.0,
        racy_score=sexual / 6.0,
        gore_score=max(violence, self_harm) / 6.0,
    )


def classify_content_type(flags: ContentFlags) -> str:
    if flags.is_adult and flags.adult_score > 0.7:
        return "PORNOGRAPHY"
    if flags.is_gory and flags.gore_score > 0.8:
        return "EXTREME_VIOLENCE"
    if flags.is_gory and flags.gore_score > 0.2:
        return "MILD_VIOLENCE"
    if not (flags.is_adult or flags.is_racy or flags.is_gory):
        return "CLEAN"
    return "UNKNOWN"


def make_decision(content_type: str, flags: ContentFlags, config: ImageModerationConfig) -> Dict[str, Any]:
    if content_type in BLOCKED_CONTENT_TYPES:
        return {
            "category": "BLOCK",
            "approved": False,
            "reason": "Content contains prohibited material",
            "description": f"Content classified as {content_type} and blocked per community guidelines",
            "confidence": 0.9,
        }
    if flags.is_adult and flags.adult_score > config.adult_threshold:
        return {
            "category": "BLOCK",
            "approved": False,
            "reason": "Adult content detected above threshold",
            "description": f"Adult content score ({flags.adult_score:.2f}) exceeds limit ({config.adult_threshold})",
            "confidence": flags.adult_score,
        }
    if flags.is_gory and flags.gore_score > config.gore_threshold:
        return {
            "category": "BLOCK",
            "approved": False,
            "reason": "Graphic content detected above threshold",
            "description": f"Gore content score ({flags.gore_score:.2f}) exceeds limit ({config.gore_threshold})",
            "confidence": flags.gore_score,
        }
    if flags.is_racy and flags.racy_score > config.racy_threshold:
        return {
            "category": "WARN",
            "approved": not config.strict_mode,
            "reason": "Suggestive content detected",
            "description": f"Racy content score ({flags.racy_score:.2f}) above threshold ({config.racy_threshold})",
            "confidence": flags.racy_score,
        }
    return {
        "category": "APPROVE",
        "approved": True,
        "reason": "Content passed safety checks",
        "description": "No safety issues detected in content",
        "confidence": 0.9,
    }


class ImageModerationService:
    """Screens uploaded images with Azure Content Safety.

    Images are blocked when the service is unconfigured or the call fails.
    """

    def __init__(self, config: Optional[ImageModerationConfig] = None, api_key: Optional[str] = None) -> None:
        self.config = config or ImageModerationConfig()
        self.endpoint = self.config.endpoint or os.getenv("AZURE_CONTENT_SAFETY_ENDPOINT")
        self.api_key = api_key or os.getenv("AZURE_CONTENT_SAFETY_KEY")

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    def _fallback(self, started: float, reason: str, description: str, model: str) -> ImageModerationResult:
        return ImageModerationResult(
            category="BLOCK",
            approved=False,
            reason=reason,
            description=description,
            content_type="UNKNOWN",
            confidence=0.1,
            model=model,
            processing_ms=int((time.perf_counter() - started) * 1000),
        )

    def analyze_remote(self, image: bytes) -> Dict[str, Any]:
        url = f"{(self.endpoint or '').rstrip('/')}/contentsafety/image:analyze?api-version={API_VERSION}"
        headers = {"Ocp-Apim-Subscription-Key": self.api_key or "", "Content-Type": "application/json"}
        body = {"image": {"content": base64.b64encode(image).decode("ascii")}}
        with httpx.Client(timeout=self.config.timeout_seconds) as client:
            resp = client.post(url, headers=headers, json=body)
        resp.raise_for_status()
        return resp.json()

    def analyze_image(self, image: bytes, user_id: Optional[str] = None) -> ImageModerationResult:
        started = time.perf_counter()
        if not self.configured:
            log.warning("Azure Content Safety not configured")
            return self._fallback(
                started,
                "Azure Content Safety not configured",
                "Content moderation service unavailable - blocked for safety",
                "not-configured",
            )
        try:
            analysis = self.analyze_remote(image)
        except (httpx.HTTPError, ValueError) as e:
            log.error("Image content moderation failed: %s", e, extra=log_extra(user_id=user_id))
            return self._fallback(
                started,
                f"Moderation error: {e}",
                "Content moderation failed - blocked for safety",
                "error-fallback",
            )

        flags = extract_flags(analysis)
        content_type = classify_content_type(flags)
        decision = make_decision(content_type, flags, self.config)
        result = ImageModerationResult(
            content_type=content_type,
            model="Azure Content Safety",
            processing_ms=int((time.perf_counter() - started) * 1000),
            flags=flags,
            **decision,
        )
        log.info(
            "Image moderation %s (%s)",
            result.category,
            content_type,
            extra=log_extra(user_id=user_id, approved=result.approved, confidence=result.confidence),
        )
        return result
