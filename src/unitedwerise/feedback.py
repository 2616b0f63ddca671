from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .db import dumps, execute, query_all, query_one
from .embeddings import EmbeddingClient, cosine_similarity
from .errors import NotFoundError, ValidationError
from .llm_client import LLMClient
from .logger import get_logger
from .utils import new_id, to_iso, utc_now

log = get_logger(__name__)

FEEDBACK_KEYWORDS: Dict[str, List[str]] = {
    "suggestion": [
        "suggest", "recommend", "should add", "would be nice", "feature request",
        "could improve", "better if", "enhance", "upgrade", "add feature",
        "would be great", "maybe you could", "it would help", "consider adding",
    ],
    "bug_report": [
        "bug", "error", "broken", "not working", "glitch", "issue", "problem",
        "crash", "freeze", "loading", "fail", "incorrect", "wrong",
    ],
    "concern": [
        "concern", "worried about", "problem with", "disappointed",
        "frustrated", "confusing", "unclear", "difficult", "hard to",
    ],
    "ui_ux": [
        "interface", "design", "layout", "button", "menu", "navigation",
        "hard to find", "confusing layout", "user experience", "mobile",
    ],
    "performance": [
        "slow", "fast", "loading", "lag", "speed", "performance",
        "timeout", "response time", "optimization",
    ],
    "accessibility": [
        "accessibility", "screen reader", "keyboard", "contrast",
        "font size", "color blind", "disability", "inclusive",
    ],
}

PLATFORM_PHRASES = [
    "unitedwerise", "this site", "this website", "this platform", "this app",
    "the site", "the website", "the platform", "navigation menu", "dark mode",
    "notification system", "website is", "platform to", "using this",
]

REFERENCE_PHRASES: Dict[str, List[str]] = {
    "bug_report": [
        "The website is broken and not working properly",
        "This site has bugs and errors that need fixing",
        "The platform is slow and crashes frequently",
        "There are performance issues with loading",
    ],
    "suggestion": [
        "It would be great if this website had new features",
        "I suggest improving the user interface design",
        "The platform could be enhanced with better functionality",
        "Maybe you could add more useful tools",
    ],
    "concern": [
        "I'm worried about the usability of this site",
        "The website design is confusing and unclear",
        "It's difficult to navigate this platform effectively",
        "This interface is frustrating to use",
    ],
    "ui_ux": [
        "The navigation menu needs better design",
        "The user interface could be more intuitive",
        "Dark mode would improve the visual experience",
        "The layout and buttons need repositioning",
    ],
    "performance": [
        "The website loads too slowly",
        "Performance optimization is needed urgently",
        "Loading times are unacceptably long",
        "The site speed needs improvement",
    ],
}

AREA_TYPES = ("ui_ux", "performance", "accessibility")
CRITICAL_KEYWORDS = ("crash", "broken", "not working", "error", "bug")
FEEDBACK_STATUSES = ("new", "acknowledged", "in_progress", "resolved", "dismissed")
STATS_WINDOWS = {"day": 1, "week": 7, "month": 30}

AI_PROMPT = """Analyze this user post to determine if it contains feedback, suggestions, concerns, or bug reports about the UnitedWeRise website/platform itself.

Post content: "{content}"

Consider:
- Is this specifically about the website/platform functionality, not general political discussion?
- What type of feedback is it?
- How actionable is it?
- What priority should it have?

Respond with JSON only:
{{
    "isFeedback": boolean,
    "type": "suggestion|bug_report|concern|feature_request|null",
    "category": "ui_ux|performance|functionality|accessibility|moderation|content|general|null",
    "priority": "low|medium|high|critical|null",
    "summary": "brief actionable summary or null",
    "confidence": 0.0-1.0,
    "actionable": boolean
}}"""


@dataclass
class FeedbackAnalysis:
    is_feedback: bool = False
    confidence: float = 0.0
    type: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    summary: Optional[str] = None
    actionable: Optional[bool] = None
    keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["isFeedback"] = data.pop("is_feedback")
        return data


def keyword_analysis(content: str) -> FeedbackAnalysis:
    """Cheap first pass; confidence is the hit rate of the best keyword list."""
    lower = content.lower()
    confidence = 0.0
    detected_type: Optional[str] = None
    detected_category: Optional[str] = None
    found: List[str] = []

    for kind, keywords in FEEDBACK_KEYWORDS.items():
        matches = [k for k in keywords if k in lower]
        found.extend(matches)
        if not matches:
            continue
        kind_confidence = len(matches) / len(keywords)
        if kind_confidence > confidence:
            confidence = kind_confidence
            if kind in AREA_TYPES:
                detected_category = kind
                detected_type = "suggestion"
            else:
                detected_type = kind

    if confidence > 0 and any(p in lower for p in PLATFORM_PHRASES):
        confidence = min(confidence * 1.5, 1.0)

    return FeedbackAnalysis(
        is_feedback=confidence > 0.4,
        confidence=confidence,
        type=detected_type,
        category=detected_category,
        keywords=found,
    )


def determine_priority(kind: Optional[str], keywords: List[str]) -> str:
    if any(k in CRITICAL_KEYWORDS for k in keywords):
        return "critical"
    if kind == "bug_report":
        return "high"
    if kind in ("concern", "feature_request"):
        return "medium"
    return "low"


def combine_analyses(keyword: FeedbackAnalysis, vector: FeedbackAnalysis, ai: FeedbackAnalysis) -> FeedbackAnalysis:
    confidence = keyword.confidence * 0.2 + vector.confidence * 0.5 + ai.confidence * 0.3
    kind = ai.type or vector.type or keyword.type
    category = ai.category or vector.category or keyword.category
    is_feedback = (
        (ai.is_feedback and ai.confidence > 0.7)
        or (vector.is_feedback and vector.confidence > 0.75)
        or confidence > 0.6
    )
    summary_parts = [ai.summary, vector.summary]
    if keyword.keywords:
        summary_parts.append(f"Keywords: {', '.join(keyword.keywords)}")
    return FeedbackAnalysis(
        is_feedback=bool(is_feedback),
        confidence=confidence,
        type=kind,
        category=category,
        priority=ai.priority or determine_priority(kind, keyword.keywords),
        summary=" | ".join(p for p in summary_parts if p),
        actionable=ai.actionable,
        keywords=keyword.keywords,
    )


class FeedbackService:
    def __init__(
        self,
        db_path: str,
        llm: Optional[LLMClient] = None,
        embeddings: Optional[EmbeddingClient] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.llm = llm or LLMClient()
        self.embeddings = embeddings or EmbeddingClient()
        self.now_fn = now_fn
        self._references: Optional[List[Tuple[str, str, List[float]]]] = None

    def _reference_embeddings(self) -> List[Tuple[str, str, List[float]]]:
        if self._references is None:
            refs = []
            for category, phrases in REFERENCE_PHRASES.items():
                for phrase in phrases:
                    refs.append((category, phrase, self.embeddings.embed(phrase)))
            self._references = refs
            log.info("Feedback reference embeddings initialized (%d phrases)", len(refs))
        return self._references

    def vector_analysis(self, content: str) -> FeedbackAnalysis:
        try:
            vector = self.embeddings.embed(content)
            references = self._reference_embeddings()
        except (httpx.HTTPError, RuntimeError, KeyError, ValueError) as e:
            log.warning("Vector feedback analysis failed: %s", e)
            return FeedbackAnalysis()

        best_similarity, best_category, best_phrase = 0.0, None, ""
        for category, phrase, reference in references:
            similarity = cosine_similarity(vector, reference)
            if similarity > best_similarity:
                best_similarity, best_category, best_phrase = similarity, category, phrase
        if best_category is None:
            return FeedbackAnalysis()
        return FeedbackAnalysis(
            is_feedback=best_similarity > 0.7,
            confidence=best_similarity,
            type="suggestion" if best_category in ("ui_ux", "performance") else best_category,
            category=best_category,
            summary=f'Vector similarity match: "{best_phrase}" ({round(best_similarity * 100)}%)',
        )

    def ai_analysis(self, content: str) -> FeedbackAnalysis:
        if not self.llm.enabled:
            return FeedbackAnalysis()
        result = self.llm.ask_json(AI_PROMPT.format(content=content), max_tokens=300)
        if not result or not isinstance(result.get("isFeedback"), bool):
            log.warning("AI feedback analysis returned no usable result")
            return FeedbackAnalysis()
        try:
            confidence = float(result.get("confidence", 0))
        except (TypeError, ValueError):
            return FeedbackAnalysis()
        return FeedbackAnalysis(
            is_feedback=result["isFeedback"],
            confidence=confidence,
            type=result.get("type") or None,
            category=result.get("category") or None,
            priority=result.get("priority") or None,
            summary=result.get("summary") or None,
            actionable=result.get("actionable"),
        )

    def analyze_post(self, content: str) -> FeedbackAnalysis:
        keyword = keyword_analysis(content)
        vector = self.vector_analysis(content)
        ai = FeedbackAnalysis()
        if keyword.confidence > 0.3 and vector.confidence == 0:
            ai = self.ai_analysis(content)
        return combine_analyses(keyword, vector, ai)

    def process_post(self, post_id: Optional[str], user_id: Optional[str], content: str) -> Optional[Dict[str, Any]]:
        """Analyze a post and store it as feedback when it qualifies."""
        analysis = self.analyze_post(content)
        if not analysis.is_feedback:
            return None
        feedback_id = new_id()
        now = to_iso(self.now_fn())
        execute(
            self.db_path,
            """
            INSERT INTO feedback (id, post_id, user_id, content, type, category, priority, summary,
                                  confidence, keywords, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                feedback_id, post_id, user_id, content, analysis.type, analysis.category,
                analysis.priority, analysis.summary, analysis.confidence, dumps(analysis.keywords), now, now,
            ),
        )
        log.info("Stored feedback %s (%s/%s)", feedback_id, analysis.type, analysis.priority)
        return {"id": feedback_id, **analysis.to_dict()}

    def list_feedback(
        self,
        status: Optional[str] = None,
        kind: Optional[str] = None,
        priority: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        clauses, params = [], []
        for column, value in (("status", status), ("type", kind), ("priority", priority)):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return query_all(
            self.db_path,
            f"SELECT * FROM feedback {where} ORDER BY created_at DESC LIMIT ? OFFSET ?;",
            (*params, limit, offset),
        )

    def get_stats(self, timeframe: str = "week") -> Dict[str, Any]:
        since = to_iso(self.now_fn() - timedelta(days=STATS_WINDOWS.get(timeframe, 7)))

        def grouped(column: str) -> Dict[str, int]:
            rows = query_all(
                self.db_path,
                f"SELECT {column} AS k, COUNT(*) AS n FROM feedback WHERE created_at >= ? GROUP BY {column};",
                (since,),
            )
            return {(r["k"] or "unknown"): r["n"] for r in rows}

        totals = query_one(
            self.db_path,
            "SELECT COUNT(*) AS n, AVG(confidence) AS avg FROM feedback WHERE created_at >= ?;",
            (since,),
        ) or {}
        return {
            "timeframe": timeframe,
            "totalFeedback": totals.get("n") or 0,
            "byType": grouped("type"),
            "byPriority": grouped("priority"),
            "byCategory": grouped("category"),
            "byStatus": grouped("status"),
            "avgConfidence": round(totals.get("avg") or 0.0, 3),
        }

    def update_status(self, feedback_id: str, status: str, admin_id: str) -> Dict[str, Any]:
        if status not in FEEDBACK_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(FEEDBACK_STATUSES)}")
        updated = execute(
            self.db_path,
            "UPDATE feedback SET status = ?, updated_at = ? WHERE id = ?;",
            (status, to_iso(self.now_fn()), feedback_id),
        )
        if not updated:
            raise NotFoundError("Feedback not found", {"feedbackId": feedback_id})
        log.info("Feedback %s status changed to %s by admin %s", feedback_id, status, admin_id)
        return query_one(self.db_path, "SELECT * FROM feedback WHERE id = ?;", (feedback_id,)) or {}
