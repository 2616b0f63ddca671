"""Reputation scoring.

Every user carries a bounded score (0-100, starting at 70). Fixed-size
penalties come from AI content analysis and validated community reports;
small rewards come from quality contributions and are capped per UTC day.
The score maps to a tier whose visibility multiplier is applied by the feed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .config import ReputationConfig
from .db import dumps, execute, get_post, get_user, query_all, query_one, query_scalar, update_user
from .errors import NotFoundError, ValidationError
from .llm_client import LLMClient
from .logger import get_logger, log_extra
from .prometheus_metrics import track_reputation_event
from .utils import new_id, to_iso, utc_now

log = get_logger(__name__)

PENALTY_PREFIX = "PENALTY_"
REWARD_PREFIX = "REWARD_"
APPEAL_OVERTURNED = "REWARD_APPEAL_OVERTURNED"

# Report reasons with their own penalty; anything else costs one point
REPORTABLE_REASONS = ("hate_speech", "harassment", "spam", "personal_attack")
AWARD_REASONS = ("quality_post", "constructive", "helpful", "positive_feedback")

ISSUE_LABELS = {
    "hate_speech": "hate speech",
    "harassment": "harassment",
    "spam": "spam/duplicate content",
    "excessive_profanity": "excessive profanity",
    "personal_attack": "personal attack",
}

ANALYSIS_SYSTEM_PROMPT = (
    "You are a content moderation system. Be conservative - only flag clear violations. "
    "Political opinions and passionate expression are allowed. Focus on behavior, not content."
)
REPORT_SYSTEM_PROMPT = (
    "You validate user reports. Be skeptical of reports against unpopular political opinions. "
    "Only validate clear behavioral violations."
)
APPEAL_SYSTEM_PROMPT = (
    "You review appeals of reputation penalties. Err on the side of free speech - "
    "overturn penalties if there's reasonable doubt."
)


@dataclass
class ReputationEvent:
    user_id: str
    event_type: str
    impact: float
    reason: str
    post_id: Optional[str] = None
    validated: bool = False
    ai_generated: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


def get_tier(score: float, config: Optional[ReputationConfig] = None) -> str:
    c = config or ReputationConfig()
    if score >= c.boosted_threshold:
        return "boosted"
    if score >= c.normal_threshold:
        return "normal"
    if score >= c.suppressed_threshold:
        return "suppressed"
    return "heavily_suppressed"


def visibility_multiplier(score: float, config: Optional[ReputationConfig] = None) -> float:
    return {
        "boosted": 1.1,
        "normal": 1.0,
        "suppressed": 0.9,
        "heavily_suppressed": 0.8,
    }[get_tier(score, config)]


def _no_violations() -> Dict[str, bool]:
    return {key: False for key in ISSUE_LABELS}


class ReputationService:
    def __init__(
        self,
        db_path: str,
        config: Optional[ReputationConfig] = None,
        llm: Optional[LLMClient] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.config = config or ReputationConfig()
        self.llm = llm or LLMClient()
        self.now_fn = now_fn

    def _clamp(self, score: float) -> float:
        return max(self.config.min_score, min(self.config.max_score, score))

    def get_user_reputation(self, user_id: str) -> Dict[str, Any]:
        user = get_user(self.db_path, user_id)
        if not user:
            raise NotFoundError("User not found", {"userId": user_id})
        score = user.get("reputation_score")
        updated_at = user.get("reputation_updated_at")
        if score is None:
            score = self.config.starting_score
            updated_at = to_iso(self.now_fn())
            update_user(self.db_path, user_id, reputation_score=score, reputation_updated_at=updated_at)
        return {
            "current": score,
            "tier": get_tier(score, self.config),
            "visibilityMultiplier": visibility_multiplier(score, self.config),
            "lastUpdated": updated_at,
        }

    def _today_gain(self, user_id: str) -> float:
        midnight = self.now_fn().replace(hour=0, minute=0, second=0, microsecond=0)
        total = query_scalar(
            self.db_path,
            """
            SELECT COALESCE(SUM(impact), 0) FROM reputation_events
            WHERE user_id = ? AND event_type LIKE 'REWARD\\_%' ESCAPE '\\'
              AND event_type != ? AND created_at >= ?;
            """,
            (user_id, APPEAL_OVERTURNED, to_iso(midnight)),
        )
        return float(total or 0.0)

    def _has_penalty_for_post(self, user_id: str, post_id: str) -> bool:
        row = query_one(
            self.db_path,
            """
            SELECT id FROM reputation_events
            WHERE user_id = ? AND post_id = ? AND event_type LIKE 'PENALTY\\_%' ESCAPE '\\'
            LIMIT 1;
            """,
            (user_id, post_id),
        )
        return row is not None

    def apply_reputation_change(self, event: ReputationEvent) -> float:
        """Apply one event and return the resulting score.

        Unvalidated penalties, rewards past the daily cap and repeat
        penalties for the same post leave the score unchanged.
        """
        current = float(self.get_user_reputation(event.user_id)["current"])
        impact = float(event.impact)
        is_penalty = event.event_type.startswith(PENALTY_PREFIX)

        if is_penalty and not event.validated:
            log.warning("Ignoring unvalidated penalty %s for user %s", event.event_type, event.user_id)
            return current

        if impact > 0 and event.event_type.startswith(REWARD_PREFIX) and event.event_type != APPEAL_OVERTURNED:
            remaining = self.config.daily_max_gain - self._today_gain(event.user_id)
            if remaining <= 0:
                log.info("Daily reputation gain cap reached for user %s", event.user_id)
                return current
            impact = min(impact, remaining)

        if is_penalty and event.post_id and self._has_penalty_for_post(event.user_id, event.post_id):
            log.info("Duplicate penalty for post %s rejected", event.post_id)
            return current

        new_score = self._clamp(current + impact)
        now_iso = to_iso(self.now_fn())
        update_user(self.db_path, event.user_id, reputation_score=new_score, reputation_updated_at=now_iso)
        execute(
            self.db_path,
            """
            INSERT INTO reputation_events (id, user_id, event_type, impact, reason, post_id, details,
                                           ai_generated, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                new_id(), event.user_id, event.event_type, impact, event.reason, event.post_id,
                dumps({**event.details, "oldScore": current, "newScore": new_score}),
                int(event.ai_generated), now_iso,
            ),
        )
        track_reputation_event(event.event_type)
        log.info(
            "Reputation %s %.2f -> %.2f",
            event.event_type,
            current,
            new_score,
            extra=log_extra(user_id=event.user_id, impact=impact, reason=event.reason),
        )
        return new_score

    # -- content analysis -------------------------------------------------

    def analyze_content(self, content: str) -> Dict[str, bool]:
        if not self.llm.enabled:
            return _no_violations()
        prompt = (
            "Analyze this content for community standards violations:\n"
            f'"{content[:1000]}"\n\n'
            "Check for:\n"
            "1. Hate speech targeting identity groups\n"
            "2. Harassment of specific individuals\n"
            "3. Spam or duplicate-like content\n"
            "4. Excessive profanity (7+ instances, but consider context - is it offensive or just expressive?)\n"
            "5. Direct personal attacks on users\n\n"
            "Respond with JSON only:\n"
            '{"hate_speech": boolean, "harassment": boolean, "spam": boolean, '
            '"excessive_profanity": boolean, "personal_attack": boolean}'
        )
        result = self.llm.ask_json(prompt, system=ANALYSIS_SYSTEM_PROMPT, max_tokens=150, temperature=0.1)
        if result is None:
            log.warning("Content analysis failed, defaulting to no violations")
            return _no_violations()
        return {key: bool(result.get(key, False)) for key in ISSUE_LABELS}

    def analyze_and_apply_penalties(self, content: str, user_id: str, post_id: str) -> Dict[str, Any]:
        analysis = self.analyze_content(content)
        penalties = [key for key, flagged in analysis.items() if flagged]
        if not penalties:
            return {"penalties": [], "totalImpact": 0.0, "newScore": None}

        total = sum(self.config.penalties.get(p, -1.0) for p in penalties)
        new_score = self.apply_reputation_change(
            ReputationEvent(
                user_id=user_id,
                event_type="PENALTY_AI_ANALYSIS",
                impact=total,
                reason=", ".join(penalties),
                post_id=post_id,
                validated=True,
                ai_generated=True,
                details={"analysis": analysis},
            )
        )
        return {"penalties": penalties, "totalImpact": total, "newScore": new_score}

    def generate_content_warning(self, content: str, user_id: str) -> Dict[str, Any]:
        analysis = self.analyze_content(content)
        issues = [ISSUE_LABELS[key] for key, flagged in analysis.items() if flagged]
        if not issues:
            return {"hasWarning": False, "issues": [], "potentialPenalty": 0.0, "message": ""}

        potential = sum(self.config.penalties.get(key, -1.0) for key, flagged in analysis.items() if flagged)
        current = self.get_user_reputation(user_id)["current"]
        message = (
            f"This post may contain {', '.join(issues)}. "
            f"Posting it could lower your reputation by {abs(potential):g} points "
            f"(currently {current:g}) and reduce its visibility in feeds."
        )
        return {"hasWarning": True, "issues": issues, "potentialPenalty": potential, "message": message}

    def award_reputation(self, user_id: str, reason: str, post_id: Optional[str] = None) -> float:
        if reason not in AWARD_REASONS:
            raise ValidationError(
                f"reason must be one of {', '.join(AWARD_REASONS)}", {"reason": reason}
            )
        amount = self.config.rewards.get(reason, 0.0)
        if amount <= 0:
            return float(self.get_user_reputation(user_id)["current"])
        return self.apply_reputation_change(
            ReputationEvent(
                user_id=user_id,
                event_type="REWARD_QUALITY_POST",
                impact=amount,
                reason=reason,
                post_id=post_id,
                validated=True,
            )
        )

    # -- reports and appeals ----------------------------------------------

    def validate_report(self, content: str, reason: str) -> bool:
        if not self.llm.enabled:
            return False
        prompt = (
            f'A user reported this content for "{reason}":\n"{content}"\n\n'
            "Is this report valid? Consider:\n"
            "- Is the content actually violating the stated reason?\n"
            "- Are users potentially weaponizing reports against opinions they disagree with?\n"
            "- Focus on behavior/tone, not political positions\n\n"
            'Respond with JSON: {"valid": boolean, "confidence": 0.0-1.0}'
        )
        result = self.llm.ask_json(prompt, system=REPORT_SYSTEM_PROMPT, max_tokens=100, temperature=0.1)
        if not result:
            log.warning("Report validation failed")
            return False
        try:
            confidence = float(result.get("confidence", 0.0))
        except (TypeError, ValueError):
            return False
        return bool(result.get("valid")) and confidence > self.config.report_confidence_threshold

    def process_report(
        self,
        reporter_id: str,
        target_user_id: str,
        post_id: str,
        reason: str,
        content: str,
    ) -> Dict[str, Any]:
        if not self.validate_report(content, reason):
            log.info("Report by %s on post %s not validated", reporter_id, post_id)
            return {"accepted": False}

        key = reason.lower()
        penalty = self.config.penalties[key] if key in REPORTABLE_REASONS else -1.0
        self.apply_reputation_change(
            ReputationEvent(
                user_id=target_user_id,
                event_type="PENALTY_COMMUNITY_REPORT",
                impact=penalty,
                reason=f"community_report_{reason}",
                post_id=post_id,
                validated=True,
                details={"reporterId": reporter_id},
            )
        )
        return {"accepted": True, "penalty": penalty}

    def review_appeal(self, event: Dict[str, Any], appeal_reason: str) -> Dict[str, Any]:
        fallback = {
            "overturn": False,
            "confidence": 0.5,
            "explanation": "Unable to process appeal automatically. Flagged for admin review.",
        }
        if not self.llm.enabled:
            return fallback
        prompt = (
            "Review this reputation penalty appeal:\n\n"
            f'Original penalty: {event["impact"]} points for "{event["reason"]}"\n'
            f'User\'s appeal: "{appeal_reason}"\n\n'
            "Was the original penalty justified? Consider:\n"
            "- Could this have been an error in AI judgment?\n"
            "- Is this a case of legitimate political speech being penalized?\n"
            "- Does the user provide compelling context?\n\n"
            'Respond with JSON:\n{"overturn": boolean, "confidence": 0.0-1.0, "explanation": "brief reasoning"}'
        )
        result = self.llm.ask_json(prompt, system=APPEAL_SYSTEM_PROMPT, max_tokens=200, temperature=0.2)
        if not result:
            log.warning("Appeal review failed")
            return fallback
        try:
            confidence = float(result.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return {
            "overturn": bool(result.get("overturn")),
            "confidence": confidence,
            "explanation": str(result.get("explanation") or ""),
        }

    def process_appeal(self, user_id: str, event_id: str, reason: str) -> Dict[str, Any]:
        event = query_one(
            self.db_path,
            "SELECT * FROM reputation_events WHERE id = ? AND user_id = ?;",
            (event_id, user_id),
        )
        if not event:
            raise NotFoundError("Reputation event not found", {"eventId": event_id})

        review = self.review_appeal(event, reason)
        if review["confidence"] < self.config.appeal_confidence_threshold:
            log.info(
                "Appeal flagged for admin review",
                extra=log_extra(event_id=event_id, appeal_reason=reason, ai_review=review),
            )
            return {
                "decision": "under_review",
                "explanation": "Your appeal has been flagged for admin review. You will be notified within 48 hours.",
            }

        if review["overturn"]:
            self.apply_reputation_change(
                ReputationEvent(
                    user_id=user_id,
                    event_type=APPEAL_OVERTURNED,
                    impact=abs(float(event["impact"])),
                    reason="Appeal overturned",
                    post_id=event.get("post_id"),
                    validated=True,
                    details={"originalEventId": event_id},
                )
            )
            details = event.get("details") if isinstance(event.get("details"), dict) else {}
            details.update({"overturned": True, "appealReason": reason})
            execute(
                self.db_path,
                "UPDATE reputation_events SET details = ? WHERE id = ?;",
                (dumps(details), event_id),
            )
            return {"decision": "overturned", "explanation": review["explanation"]}

        return {"decision": "upheld", "explanation": review["explanation"]}

    # -- reporting --------------------------------------------------------

    def get_history(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        return query_all(
            self.db_path,
            "SELECT * FROM reputation_events WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?;",
            (user_id, limit, offset),
        )

    def get_reputation_stats(self, timeframe: str = "week") -> Dict[str, Any]:
        days = {"day": 1, "week": 7, "month": 30}.get(timeframe, 7)
        since = to_iso(self.now_fn() - timedelta(days=days))
        scores = [
            float(r["reputation_score"])
            for r in query_all(self.db_path, "SELECT reputation_score FROM users WHERE reputation_score IS NOT NULL;")
        ]
        distribution = {"boosted": 0, "normal": 0, "suppressed": 0, "heavily_suppressed": 0}
        for score in scores:
            distribution[get_tier(score, self.config)] += 1
        total = len(scores)
        events = query_all(
            self.db_path,
            "SELECT event_type, reason, impact FROM reputation_events WHERE created_at >= ? ORDER BY created_at DESC;",
            (since,),
        )
        return {
            "timeframe": timeframe,
            "totalUsers": total,
            "tierDistribution": distribution,
            "tierPercentages": {
                tier: f"{(count / total * 100) if total else 0.0:.1f}" for tier, count in distribution.items()
            },
            "recentEvents": [
                {"type": e["event_type"], "reason": e["reason"], "impact": e["impact"]} for e in events
            ],
            "averageScore": f"{sum(scores) / total:.1f}" if total else "70.0",
        }

    def list_low_reputation(self, threshold: float = 30, limit: int = 20) -> List[Dict[str, Any]]:
        users = query_all(
            self.db_path,
            """
            SELECT id, username, email, reputation_score, reputation_updated_at, created_at
            FROM users WHERE reputation_score < ? ORDER BY reputation_score ASC LIMIT ?;
            """,
            (threshold, limit),
        )
        for user in users:
            user["recentEvents"] = self.get_history(user["id"], limit=5)
        return users

    def check_report_allowed(self, reporter_id: str, target_user_id: str, post_id: str) -> Dict[str, Any]:
        """Return the reported post, raising when the report cannot be filed."""
        if reporter_id == target_user_id:
            raise ValidationError("Cannot report your own content")
        post = get_post(self.db_path, post_id)
        if not post:
            raise NotFoundError("Post not found", {"postId": post_id})
        if post["author_id"] != target_user_id:
            raise ValidationError("Post does not belong to target user")
        already = query_one(
            self.db_path,
            """
            SELECT id FROM reputation_events
            WHERE user_id = ? AND post_id = ? AND event_type = 'PENALTY_COMMUNITY_REPORT'
              AND json_extract(details, '$.reporterId') = ?;
            """,
            (target_user_id, post_id, reporter_id),
        )
        if already:
            raise ValidationError("You have already reported this post")
        return post
