"""Automated content screening, user reports, warnings and suspensions."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from .config import ModerationConfig
from .db import dumps, execute, get_post, get_user, query_all, query_one, update_user
from .embeddings import EmbeddingClient, cosine_similarity
from .errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from .llm_client import LLMClient
from .logger import get_logger, log_extra
from .utils import new_id, to_iso, utc_now

log = get_logger(__name__)

SPAM_KEYWORDS = [
    "click here", "buy now", "free money", "guaranteed", "make money fast",
    "lose weight fast", "get rich quick", "no risk", "limited time",
    "act now", "urgent", "congratulations you won", "claim your prize",
]
TOXIC_WORDS = [
    "hate", "kill", "die", "stupid", "idiot", "moron", "retard",
    "nazi", "terrorist", "scum", "trash", "worthless",
]

CONTENT_TYPES = ("POST", "COMMENT", "MESSAGE")
TARGET_TYPES = ("POST", "COMMENT", "USER")
REPORT_REASONS = (
    "SPAM", "HARASSMENT", "HATE_SPEECH", "MISINFORMATION", "INAPPROPRIATE_CONTENT",
    "FAKE_ACCOUNT", "IMPERSONATION", "COPYRIGHT_VIOLATION", "VIOLENCE_THREATS",
    "SELF_HARM", "ILLEGAL_CONTENT", "OTHER",
)
REPORT_ACTIONS = (
    "NO_ACTION", "WARNING_ISSUED", "CONTENT_HIDDEN", "CONTENT_DELETED", "USER_SUSPENDED", "USER_BANNED",
)
WARNING_SEVERITIES = ("MINOR", "MODERATE", "MAJOR", "FINAL")
SUSPENSION_TYPES = ("TEMPORARY", "PERMANENT", "POSTING_RESTRICTED", "COMMENTING_RESTRICTED")

_URGENT = {"VIOLENCE_THREATS", "SELF_HARM", "ILLEGAL_CONTENT"}
_HIGH = {"HATE_SPEECH", "HARASSMENT", "FAKE_ACCOUNT"}
_MEDIUM = {"MISINFORMATION", "IMPERSONATION"}

_CAPS_RE = re.compile(r"[A-Z]")
_PUNCT_RE = re.compile(r"[!?]{2,}")
_LINK_RE = re.compile(r"https?://\S+", re.IGNORECASE)


def detect_spam(content: str) -> float:
    if not content:
        return 0.0
    lower = content.lower()
    score = sum(1 for k in SPAM_KEYWORDS if k in lower) / len(SPAM_KEYWORDS) * 0.5
    if len(_CAPS_RE.findall(content)) / len(content) > 0.5:
        score += 0.3
    if len(_PUNCT_RE.findall(content)) > 2:
        score += 0.2
    if len(_LINK_RE.findall(content)) > 3:
        score += 0.4
    words = content.split(" ")
    if 1 - len(set(words)) / len(words) > 0.7:
        score += 0.3
    return min(score, 1.0)


def spam_indicators(content: str) -> List[str]:
    lower = content.lower()
    indicators = [f'Contains spam keyword: "{k}"' for k in SPAM_KEYWORDS if k in lower]
    if content and len(_CAPS_RE.findall(content)) / len(content) > 0.5:
        indicators.append("Excessive capitalization")
    if len(_LINK_RE.findall(content)) > 3:
        indicators.append("Excessive links")
    return indicators


def report_priority(reason: str) -> str:
    if reason in _URGENT:
        return "URGENT"
    if reason in _HIGH:
        return "HIGH"
    if reason in _MEDIUM:
        return "MEDIUM"
    return "LOW"


def _clamp01(value: Any) -> float:
    try:
        return min(max(float(value), 0.0), 1.0)
    except (TypeError, ValueError):
        return 0.0


class ModerationService:
    def __init__(
        self,
        db_path: str,
        config: Optional[ModerationConfig] = None,
        llm: Optional[LLMClient] = None,
        embeddings: Optional[EmbeddingClient] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.config = config or ModerationConfig()
        self.llm = llm or LLMClient()
        self.embeddings = embeddings or EmbeddingClient()
        self.now_fn = now_fn

    def _now_iso(self, **delta: float) -> str:
        return to_iso(self.now_fn() - timedelta(**delta))

    # -- detectors ------------------------------------------------------------

    def detect_toxicity(self, content: str) -> float:
        if self.llm.enabled:
            prompt = (
                "Analyze this content for toxicity, harassment, or harmful language. Focus on:\n"
                "- Personal attacks or threats\n"
                "- Hate speech targeting individuals or groups\n"
                "- Severely inappropriate language\n"
                "- Content that could cause harm\n\n"
                f'Content: "{content[:1000]}"\n\n'
                'Respond with JSON only:\n{"toxicityScore": 0.0-1.0, "reasoning": "brief explanation", '
                '"categories": ["category1", "category2"]}'
            )
            result = self.llm.ask_json(
                prompt,
                system=(
                    "You are a content moderation assistant. Analyze content objectively and provide "
                    "toxicity scores. Be conservative - only flag genuinely harmful content, not political opinions."
                ),
                max_tokens=200,
                temperature=0.1,
            )
            if result is not None:
                return _clamp01(result.get("toxicityScore", 0))
            log.warning("Toxicity detection failed, using keyword fallback")
        lower = content.lower()
        return min(sum(1 for w in TOXIC_WORDS if w in lower) / 5, 1.0)

    def detect_hate_speech(self, content: str) -> float:
        if self.llm.enabled:
            prompt = (
                "Analyze this content for hate speech targeting individuals or groups based on:\n"
                "- Race, ethnicity, or nationality\n"
                "- Religion or beliefs\n"
                "- Gender identity or sexual orientation\n"
                "- Disability or other protected characteristics\n\n"
                f'Content: "{content[:1000]}"\n\n'
                'Respond with JSON only:\n{"hateSpeechScore": 0.0-1.0, "reasoning": "brief explanation", '
                '"targetedGroups": ["group1", "group2"]}'
            )
            result = self.llm.ask_json(
                prompt,
                system=(
                    "You are a hate speech detection system. Focus on content that targets or dehumanizes "
                    "specific groups. Political criticism or disagreement is not hate speech unless it targets "
                    "identity groups."
                ),
                max_tokens=200,
                temperature=0.1,
            )
            if result is not None:
                return _clamp01(result.get("hateSpeechScore", 0))
            log.warning("Hate speech detection failed, using pattern fallback")
        lower = content.lower()
        score = 0.0
        if "you people" in lower or "your kind" in lower:
            score += 0.3
        if "animals" in lower or "vermin" in lower:
            score += 0.4
        return min(score, 1.0)

    def detect_duplicate_content(self, content: str, exclude_id: Optional[str] = None) -> bool:
        since = self._now_iso(hours=24)
        try:
            vector = self.embeddings.embed(content)
        except (httpx.HTTPError, RuntimeError, KeyError, ValueError) as e:
            log.warning("Semantic duplicate detection failed, using exact match: %s", e)
            row = query_one(
                self.db_path,
                "SELECT id FROM posts WHERE content = ? AND created_at >= ? AND id != ? LIMIT 1;",
                (content, since, exclude_id or ""),
            )
            return row is not None

        recent = query_all(
            self.db_path,
            """
            SELECT id, embedding FROM posts
            WHERE created_at >= ? AND embedding IS NOT NULL AND id != ?
            ORDER BY created_at DESC LIMIT 100;
            """,
            (since, exclude_id or ""),
        )
        for post in recent:
            embedding = post.get("embedding")
            if isinstance(embedding, list) and cosine_similarity(vector, embedding) > self.config.duplicate_similarity:
                log.info("Potential duplicate of post %s", post["id"])
                return True
        return False

    def analyze_content(self, content: str, content_type: str, content_id: str) -> List[Dict[str, Any]]:
        """Run every detector, persist the resulting flags and return them."""
        if content_type not in CONTENT_TYPES:
            raise ValidationError(f"content_type must be one of {', '.join(CONTENT_TYPES)}")
        flags: List[Dict[str, Any]] = []

        spam = detect_spam(content)
        if spam > self.config.spam_threshold:
            flags.append({"flag_type": "SPAM", "confidence": spam, "details": {"spamIndicators": spam_indicators(content)}})

        toxicity = self.detect_toxicity(content)
        if toxicity > self.config.toxicity_threshold:
            flags.append({"flag_type": "TOXICITY", "confidence": toxicity, "details": {"toxicityScore": toxicity}})

        hate = self.detect_hate_speech(content)
        if hate > self.config.hate_speech_threshold:
            flags.append(
                {
                    "flag_type": "HATE_SPEECH",
                    "confidence": hate,
                    "details": {"flaggedTerms": ["Potentially offensive language detected"]},
                }
            )

        if self.detect_duplicate_content(content, exclude_id=content_id):
            flags.append({"flag_type": "DUPLICATE_CONTENT", "confidence": 0.9, "details": {"duplicateDetection": True}})

        now = self._now_iso()
        for flag in flags:
            flag.update(
                id=new_id(),
                content_type=content_type,
                content_id=content_id,
                source="AUTOMATED",
                resolved=0,
                created_at=now,
                auto_moderated=(
                    flag["confidence"] > self.config.auto_moderate_confidence
                    and flag["flag_type"] in ("TOXICITY", "HATE_SPEECH", "SPAM")
                ),
            )
            execute(
                self.db_path,
                """
                INSERT INTO content_flags (id, content_type, content_id, flag_type, confidence, source, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    flag["id"], content_type, content_id, flag["flag_type"], flag["confidence"],
                    "AUTOMATED", dumps(flag["details"]), now,
                ),
            )
            if flag["auto_moderated"]:
                log.warning(
                    "High-confidence %s on %s %s",
                    flag["flag_type"],
                    content_type,
                    content_id,
                    extra=log_extra(confidence=flag["confidence"]),
                )
        return flags

    def list_flags(self, resolved: bool = False, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return query_all(
            self.db_path,
            "SELECT * FROM content_flags WHERE resolved = ? ORDER BY confidence DESC, created_at DESC LIMIT ? OFFSET ?;",
            (int(resolved), limit, offset),
        )

    def resolve_flag(self, flag_id: str, moderator_id: str) -> Dict[str, Any]:
        flag = query_one(self.db_path, "SELECT * FROM content_flags WHERE id = ?;", (flag_id,))
        if not flag:
            raise NotFoundError("Flag not found", {"flagId": flag_id})
        if flag["resolved"]:
            raise ConflictError("Flag already resolved")
        execute(
            self.db_path,
            "UPDATE content_flags SET resolved = 1, resolved_by = ?, resolved_at = ? WHERE id = ?;",
            (moderator_id, self._now_iso(), flag_id),
        )
        return {**flag, "resolved": 1, "resolved_by": moderator_id}

    # -- reports --------------------------------------------------------------

    def _target_exists(self, target_type: str, target_id: str) -> bool:
        if target_type == "POST":
            return get_post(self.db_path, target_id) is not None
        if target_type == "COMMENT":
            return query_one(self.db_path, "SELECT id FROM comments WHERE id = ?;", (target_id,)) is not None
        return get_user(self.db_path, target_id) is not None

    def create_report(
        self,
        reporter_id: str,
        target_type: str,
        target_id: str,
        reason: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        if target_type not in TARGET_TYPES:
            raise ValidationError(f"targetType must be one of {', '.join(TARGET_TYPES)}")
        if reason not in REPORT_REASONS:
            raise ValidationError(f"reason must be one of {', '.join(REPORT_REASONS)}")
        existing = query_one(
            self.db_path,
            """
            SELECT id FROM reports
            WHERE reporter_id = ? AND target_type = ? AND target_id = ? AND status IN ('PENDING', 'IN_REVIEW');
            """,
            (reporter_id, target_type, target_id),
        )
        if existing:
            raise ConflictError("You have already reported this content")
        if not self._target_exists(target_type, target_id):
            raise NotFoundError("Reported content not found", {"targetId": target_id})

        priority = report_priority(reason)
        report_id = new_id()
        execute(
            self.db_path,
            """
            INSERT INTO reports (id, reporter_id, target_type, target_id, reason, description, priority, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (report_id, reporter_id, target_type, target_id, reason, description, priority, self._now_iso()),
        )
        if priority == "URGENT":
            log.warning("Urgent report %s escalated", report_id, extra=log_extra(reason=reason, target_id=target_id))
        return {"reportId": report_id, "priority": priority}

    def list_reports(
        self,
        status: Optional[str] = "PENDING",
        priority: Optional[str] = None,
        reporter_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if priority:
            clauses.append("priority = ?")
            params.append(priority)
        if reporter_id:
            clauses.append("reporter_id = ?")
            params.append(reporter_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return query_all(
            self.db_path,
            f"""
            SELECT * FROM reports {where}
            ORDER BY CASE priority WHEN 'URGENT' THEN 0 WHEN 'HIGH' THEN 1 WHEN 'MEDIUM' THEN 2 ELSE 3 END,
                     created_at DESC
            LIMIT ? OFFSET ?;
            """,
            (*params, limit, offset),
        )

    def _target_owner(self, target_type: str, target_id: str) -> Optional[str]:
        if target_type == "USER":
            return target_id
        table = "posts" if target_type == "POST" else "comments"
        row = query_one(self.db_path, f"SELECT author_id FROM {table} WHERE id = ?;", (target_id,))
        return row["author_id"] if row else None

    def resolve_report(self, report_id: str, moderator_id: str, action: str, notes: Optional[str] = None) -> Dict[str, Any]:
        if action not in REPORT_ACTIONS:
            raise ValidationError(f"action must be one of {', '.join(REPORT_ACTIONS)}")
        report = query_one(self.db_path, "SELECT * FROM reports WHERE id = ?;", (report_id,))
        if not report:
            raise NotFoundError("Report not found", {"reportId": report_id})
        if report["status"] == "RESOLVED":
            raise ValidationError("Report already resolved")
        execute(
            self.db_path,
            """
            UPDATE reports SET status = 'RESOLVED', moderator_id = ?, moderated_at = ?, moderator_notes = ?,
                               action_taken = ?
            WHERE id = ?;
            """,
            (moderator_id, self._now_iso(), notes, action, report_id),
        )
        owner = self._target_owner(report["target_type"], report["target_id"])
        reason = f"Report resolution: {report['reason']}"
        if owner and action == "WARNING_ISSUED":
            self.issue_warning(owner, moderator_id, reason, "MINOR", notes)
        elif owner and action == "USER_SUSPENDED":
            self.suspend_user(owner, moderator_id, reason, "TEMPORARY", days=self.config.final_warning_suspension_days)
        elif owner and action == "USER_BANNED":
            self.suspend_user(owner, moderator_id, reason, "PERMANENT")
        log.info("Report %s resolved with %s", report_id, action)
        return {"reportId": report_id, "action": action}

    # -- warnings and suspensions -----------------------------------------------

    def get_user_suspension_status(self, user_id: str) -> Dict[str, Any]:
        suspension = query_one(
            self.db_path,
            """
            SELECT * FROM user_suspensions
            WHERE user_id = ? AND is_active = 1 AND (ends_at IS NULL OR ends_at >= ?)
            ORDER BY created_at DESC LIMIT 1;
            """,
            (user_id, self._now_iso()),
        )
        if not suspension:
            return {"isSuspended": False, "canPost": True, "canComment": True}
        kind = suspension["type"]
        return {
            "isSuspended": True,
            "suspension": suspension,
            "canPost": kind not in ("PERMANENT", "TEMPORARY", "POSTING_RESTRICTED"),
            "canComment": kind not in ("PERMANENT", "TEMPORARY", "COMMENTING_RESTRICTED"),
        }

    def issue_warning(
        self,
        user_id: str,
        moderator_id: str,
        reason: str,
        severity: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        if severity not in WARNING_SEVERITIES:
            raise ValidationError(f"severity must be one of {', '.join(WARNING_SEVERITIES)}")
        if not get_user(self.db_path, user_id):
            raise NotFoundError("User not found", {"userId": user_id})
        warning_id = new_id()
        execute(
            self.db_path,
            """
            INSERT INTO user_warnings (id, user_id, moderator_id, reason, severity, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (warning_id, user_id, moderator_id, reason, severity, notes, self._now_iso()),
        )
        suspended = False
        if severity == "FINAL":
            self.suspend_user(
                user_id, moderator_id, "Final warning issued", "TEMPORARY",
                days=self.config.final_warning_suspension_days,
            )
            suspended = True
        return {"warningId": warning_id, "suspended": suspended}

    def suspend_user(
        self,
        user_id: str,
        moderator_id: str,
        reason: str,
        suspension_type: str,
        days: Optional[float] = None,
    ) -> Dict[str, Any]:
        if suspension_type not in SUSPENSION_TYPES:
            raise ValidationError(f"type must be one of {', '.join(SUSPENSION_TYPES)}")
        user = get_user(self.db_path, user_id)
        if not user:
            raise NotFoundError("User not found", {"userId": user_id})
        if user.get("is_admin"):
            raise PermissionDenied("Cannot suspend admin users")

        now = self.now_fn()
        ends_at = to_iso(now + timedelta(days=days)) if days and suspension_type != "PERMANENT" else None
        execute(
            self.db_path,
            "UPDATE user_suspensions SET is_active = 0 WHERE user_id = ? AND is_active = 1;",
            (user_id,),
        )
        suspension_id = new_id()
        execute(
            self.db_path,
            """
            INSERT INTO user_suspensions (id, user_id, moderator_id, reason, type, starts_at, ends_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (suspension_id, user_id, moderator_id, reason, suspension_type, to_iso(now), ends_at, to_iso(now)),
        )
        update_user(self.db_path, user_id, is_suspended=1)
        log.info("User %s suspended (%s) until %s", user_id, suspension_type, ends_at or "further notice")
        return {"suspensionId": suspension_id, "type": suspension_type, "endsAt": ends_at}

    def unsuspend_user(self, user_id: str, moderator_id: str) -> int:
        if not get_user(self.db_path, user_id):
            raise NotFoundError("User not found", {"userId": user_id})
        count = execute(
            self.db_path,
            "UPDATE user_suspensions SET is_active = 0 WHERE user_id = ? AND is_active = 1;",
            (user_id,),
        )
        update_user(self.db_path, user_id, is_suspended=0)
        log.info("User %s unsuspended by %s", user_id, moderator_id)
        return count

    def cleanup_expired_suspensions(self) -> int:
        now = self._now_iso()
        expired = query_all(
            self.db_path,
            "SELECT id, user_id FROM user_suspensions WHERE is_active = 1 AND ends_at IS NOT NULL AND ends_at <= ?;",
            (now,),
        )
        for suspension in expired:
            execute(self.db_path, "UPDATE user_suspensions SET is_active = 0 WHERE id = ?;", (suspension["id"],))
            other = query_one(
                self.db_path,
                "SELECT id FROM user_suspensions WHERE user_id = ? AND is_active = 1 AND id != ?;",
                (suspension["user_id"], suspension["id"]),
            )
            if not other:
                update_user(self.db_path, suspension["user_id"], is_suspended=0)
        if expired:
            log.info("Expired %d suspensions", len(expired))
        return len(expired)
