"""Daily and weekly civic quests with completion streaks."""

from __future__ import annotations

import random
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .db import dumps, execute, get_user, query_all, query_one, query_scalar, update_user
from .errors import NotFoundError
from .logger import get_logger
from .prometheus_metrics import track_reputation_event
from .utils import new_id, parse_iso, to_iso, utc_now

log = get_logger(__name__)

QUEST_TYPES = ("DAILY_HABIT", "DAILY_CIVIC", "SOCIAL_ENGAGEMENT", "WEEKLY_ENGAGEMENT", "SPECIAL_EVENT")
QUEST_CATEGORIES = ("INFORMATION", "PARTICIPATION", "COMMUNITY", "ADVOCACY", "EDUCATION", "SOCIAL")
QUEST_TIMEFRAMES = ("DAILY", "WEEKLY", "MONTHLY", "ONGOING")
SOCIAL_ACTIONS = ("FOLLOW_ADDED", "FRIEND_REQUEST_SENT")
NEW_ACCOUNT_DAYS = 30


class QuestRequirement(BaseModel):
    type: Literal["LOGIN", "READ_POSTS", "CIVIC_ACTION", "SOCIAL_INTERACTION", "COMPLETE_QUESTS"]
    target: int = Field(ge=1)
    timeframe: Literal["daily", "weekly", "monthly"] = "daily"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QuestReward(BaseModel):
    reputationPoints: Optional[float] = None
    experiencePoints: Optional[int] = None
    badges: List[str] = Field(default_factory=list)
    specialRecognition: Optional[str] = None


class QuestCreate(BaseModel):
    type: str
    category: str
    title: str = Field(min_length=1)
    description: str = ""
    shortDescription: Optional[str] = None
    requirements: QuestRequirement
    rewards: QuestReward
    timeframe: str = "DAILY"
    displayOrder: int = 0
    isActive: bool = True
    startDate: Optional[str] = None
    endDate: Optional[str] = None


class QuestUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    shortDescription: Optional[str] = None
    requirements: Optional[QuestRequirement] = None
    rewards: Optional[QuestReward] = None
    displayOrder: Optional[int] = None
    isActive: Optional[bool] = None
    startDate: Optional[str] = None
    endDate: Optional[str] = None


DAILY_HABIT = QuestCreate(
    type="DAILY_HABIT",
    category="INFORMATION",
    title="Daily Check-In",
    description="Start your day by checking in with your community. Read at least 3 posts from your feed to stay informed.",
    shortDescription="Read 3 posts from your feed",
    requirements=QuestRequirement(type="READ_POSTS", target=3),
    rewards=QuestReward(reputationPoints=2, experiencePoints=10),
    displayOrder=1,
)

CIVIC_ACTIONS = [
    {
        "title": "Voice Your Opinion",
        "description": "Share your thoughts on a local issue or policy. Create a post about something happening in your community.",
        "shortDescription": "Create a civic-minded post",
        "actionType": "POST_CREATED",
    },
    {
        "title": "Support a Cause",
        "description": "Find and sign a petition that aligns with your values. Every signature counts!",
        "shortDescription": "Sign a petition",
        "actionType": "PETITION_SIGNED",
    },
    {
        "title": "Engage in Discussion",
        "description": "Join the conversation on important issues. Comment on at least 2 civic posts.",
        "shortDescription": "Comment on 2 civic posts",
        "actionType": "COMMENT_CREATED",
    },
]

SOCIAL_QUEST = QuestCreate(
    type="SOCIAL_ENGAGEMENT",
    category="COMMUNITY",
    title="Build Your Network",
    description="Connect with like-minded citizens. Follow or friend request at least 1 new person today.",
    shortDescription="Connect with 1 new person",
    requirements=QuestRequirement(type="SOCIAL_INTERACTION", target=1),
    rewards=QuestReward(reputationPoints=1, experiencePoints=15),
    displayOrder=3,
)

WEEKLY_CHAMPION = QuestCreate(
    type="WEEKLY_ENGAGEMENT",
    category="COMMUNITY",
    title="Weekly Civic Champion",
    description="Complete at least 5 daily quests this week to maintain your civic engagement streak.",
    shortDescription="Complete 5 daily quests",
    requirements=QuestRequirement(
        type="COMPLETE_QUESTS",
        target=5,
        timeframe="weekly",
        metadata={"questTypes": ["DAILY_HABIT", "DAILY_CIVIC"]},
    ),
    rewards=QuestReward(reputationPoints=10, experiencePoints=100),
    timeframe="WEEKLY",
    displayOrder=10,
)


def civic_quest(action: Dict[str, str]) -> QuestCreate:
    return QuestCreate(
        type="DAILY_CIVIC",
        category="PARTICIPATION",
        title=action["title"],
        description=action["description"],
        shortDescription=action["shortDescription"],
        requirements=QuestRequirement(
            type="CIVIC_ACTION",
            target=2 if action["actionType"] == "COMMENT_CREATED" else 1,
            metadata={"actionType": action["actionType"]},
        ),
        rewards=QuestReward(reputationPoints=3, experiencePoints=20),
        displayOrder=2,
    )


def requirement_matches(requirement: Dict[str, Any], action_type: str) -> bool:
    kind = requirement.get("type")
    if kind == "LOGIN":
        return action_type == "USER_LOGIN"
    if kind == "READ_POSTS":
        return action_type == "POST_VIEWED"
    if kind == "CIVIC_ACTION":
        return (requirement.get("metadata") or {}).get("actionType") == action_type
    if kind == "SOCIAL_INTERACTION":
        return action_type in SOCIAL_ACTIONS
    return False


def _week_number(day: date) -> int:
    return (day - date(1970, 1, 1)).days // 7


class QuestService:
    def __init__(
        self,
        db_path: str,
        rng: Optional[random.Random] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.rng = rng or random.Random()
        self.now_fn = now_fn

    # -- quest catalogue --------------------------------------------------------

    def create_quest(self, data: QuestCreate, created_by: Optional[str] = None) -> Dict[str, Any]:
        quest_id = new_id()
        execute(
            self.db_path,
            """
            INSERT INTO quests (id, type, category, title, description, short_description, requirements, rewards,
                                timeframe, display_order, is_active, start_date, end_date, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                quest_id, data.type, data.category, data.title, data.description, data.shortDescription,
                dumps(data.requirements.model_dump()), dumps(data.rewards.model_dump(exclude_none=True)),
                data.timeframe, data.displayOrder, int(data.isActive), data.startDate, data.endDate,
                created_by, to_iso(self.now_fn()),
            ),
        )
        return self.get_quest(quest_id)

    def get_quest(self, quest_id: str) -> Dict[str, Any]:
        quest = query_one(self.db_path, "SELECT * FROM quests WHERE id = ?;", (quest_id,))
        if not quest:
            raise NotFoundError("Quest not found", {"questId": quest_id})
        return quest

    def update_quest(self, quest_id: str, updates: QuestUpdate) -> Dict[str, Any]:
        self.get_quest(quest_id)
        columns = {
            "title": "title",
            "description": "description",
            "shortDescription": "short_description",
            "displayOrder": "display_order",
            "isActive": "is_active",
            "startDate": "start_date",
            "endDate": "end_date",
        }
        sets, params = [], []
        for key, value in updates.model_dump(exclude_unset=True).items():
            if key == "requirements":
                sets.append("requirements = ?")
                params.append(dumps(updates.requirements.model_dump() if updates.requirements else None))
            elif key == "rewards":
                sets.append("rewards = ?")
                params.append(dumps(updates.rewards.model_dump(exclude_none=True) if updates.rewards else None))
            else:
                sets.append(f"{columns[key]} = ?")
                params.append(int(value) if key == "isActive" else value)
        if sets:
            execute(self.db_path, f"UPDATE quests SET {', '.join(sets)} WHERE id = ?;", (*params, quest_id))
        return self.get_quest(quest_id)

    def list_quests(self) -> List[Dict[str, Any]]:
        return query_all(
            self.db_path,
            """
            SELECT q.*, (SELECT COUNT(*) FROM user_quest_progress p WHERE p.quest_id = q.id) AS participant_count
            FROM quests q
            ORDER BY q.is_active DESC, q.display_order ASC, q.created_at DESC;
            """,
        )

    def create_weekly_quest(self) -> Dict[str, Any]:
        return self.create_quest(WEEKLY_CHAMPION)

    def _get_or_create(self, template: QuestCreate) -> Dict[str, Any]:
        existing = query_one(
            self.db_path,
            "SELECT * FROM quests WHERE type = ? AND title = ? AND timeframe = ? AND is_active = 1 LIMIT 1;",
            (template.type, template.title, template.timeframe),
        )
        return existing or self.create_quest(template)

    # -- per-user progress --------------------------------------------------------

    def _assign(self, user_id: str, quest_id: str) -> None:
        execute(
            self.db_path,
            "INSERT INTO user_quest_progress (id, user_id, quest_id, progress, started_at) VALUES (?, ?, ?, ?, ?);",
            (new_id(), user_id, quest_id, dumps({"completed": 0, "target": 0}), to_iso(self.now_fn())),
        )

    def _enroll_weekly(self, user_id: str, since: datetime) -> None:
        weekly = query_all(
            self.db_path,
            """
            SELECT q.id FROM quests q
            WHERE q.timeframe = 'WEEKLY' AND q.is_active = 1 AND NOT EXISTS (
                SELECT 1 FROM user_quest_progress p
                WHERE p.quest_id = q.id AND p.user_id = ? AND p.started_at >= ?
            );
            """,
            (user_id, to_iso(since)),
        )
        for row in weekly:
            self._assign(user_id, row["id"])

    def generate_daily_quests(self, user_id: str) -> List[Dict[str, Any]]:
        user = get_user(self.db_path, user_id)
        if not user:
            raise NotFoundError("User not found", {"userId": user_id})

        now = self.now_fn()
        day_start = datetime(now.year, now.month, now.day, tzinfo=now.tzinfo)
        self._enroll_weekly(user_id, day_start - timedelta(days=6))
        existing = query_all(
            self.db_path,
            """
            SELECT q.* FROM user_quest_progress p JOIN quests q ON q.id = p.quest_id
            WHERE p.user_id = ? AND p.started_at >= ? AND p.started_at < ? AND q.timeframe = 'DAILY'
            ORDER BY q.display_order;
            """,
            (user_id, to_iso(day_start), to_iso(day_start + timedelta(days=1))),
        )
        if existing:
            return existing

        templates = [DAILY_HABIT, civic_quest(self.rng.choice(CIVIC_ACTIONS))]
        created = parse_iso(user.get("created_at"))
        if created and (now - created).days < NEW_ACCOUNT_DAYS:
            templates.append(SOCIAL_QUEST)

        quests = []
        for template in templates:
            quest = self._get_or_create(template)
            self._assign(user_id, quest["id"])
            quests.append(quest)
        log.info("Generated %d daily quests for %s", len(quests), user_id)
        return quests

    def update_quest_progress(self, user_id: str, action_type: str) -> List[Dict[str, Any]]:
        """Advance matching active quests; returns the quests completed by this action."""
        return self._advance(user_id, lambda req: requirement_matches(req, action_type))

    def _advance(self, user_id: str, matches: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        active = query_all(
            self.db_path,
            """
            SELECT p.id AS progress_id, p.progress, q.id AS quest_id, q.title, q.type, q.requirements, q.rewards
            FROM user_quest_progress p JOIN quests q ON q.id = p.quest_id
            WHERE p.user_id = ? AND p.completed = 0;
            """,
            (user_id,),
        )
        completed = []
        for row in active:
            requirement = row["requirements"] or {}
            if not matches(requirement):
                continue
            target = int(requirement.get("target") or 1)
            progress = dict(row["progress"] or {})
            progress["completed"] = int(progress.get("completed") or 0) + 1
            progress["target"] = target
            done = progress["completed"] >= target
            execute(
                self.db_path,
                "UPDATE user_quest_progress SET progress = ?, completed = ?, completed_at = ? WHERE id = ?;",
                (dumps(progress), int(done), to_iso(self.now_fn()) if done else None, row["progress_id"]),
            )
            if done:
                self._complete(user_id, row)
                completed.append({"questId": row["quest_id"], "title": row["title"]})
        return completed

    def _complete(self, user_id: str, quest: Dict[str, Any]) -> None:
        points = (quest.get("rewards") or {}).get("reputationPoints")
        user = get_user(self.db_path, user_id)
        if points and user:
            current = user.get("reputation_score")
            new_score = min(100.0, (current if current is not None else 70.0) + points)
            now = to_iso(self.now_fn())
            update_user(self.db_path, user_id, reputation_score=new_score, reputation_updated_at=now)
            execute(
                self.db_path,
                """
                INSERT INTO reputation_events (id, user_id, event_type, impact, reason, details, created_at)
                VALUES (?, ?, 'QUEST_COMPLETED', ?, ?, ?, ?);
                """,
                (
                    new_id(), user_id, points, f"Completed quest: {quest['title']}",
                    dumps({"questId": quest["quest_id"], "questTitle": quest["title"]}), now,
                ),
            )
            track_reputation_event("QUEST_COMPLETED")

        self.update_streak(user_id)
        log.info("User %s completed quest %s", user_id, quest["title"])

        if quest.get("type") in ("DAILY_HABIT", "DAILY_CIVIC"):
            quest_type = quest["type"]
            self._advance(
                user_id,
                lambda req: req.get("type") == "COMPLETE_QUESTS"
                and quest_type in ((req.get("metadata") or {}).get("questTypes") or [quest_type]),
            )

    def update_streak(self, user_id: str) -> Dict[str, Any]:
        today = self.now_fn().date()
        streak = query_one(self.db_path, "SELECT * FROM user_quest_streaks WHERE user_id = ?;", (user_id,))
        if not streak:
            execute(
                self.db_path,
                """
                INSERT INTO user_quest_streaks (user_id, current_daily_streak, longest_daily_streak,
                                                last_completed_date, total_quests_completed)
                VALUES (?, 1, 1, ?, 1);
                """,
                (user_id, today.isoformat()),
            )
        else:
            last = date.fromisoformat(streak["last_completed_date"]) if streak["last_completed_date"] else None
            gap = (today - last).days if last else None

            daily = streak["current_daily_streak"]
            if gap == 1:
                daily += 1
            elif gap != 0:
                daily = 1

            weekly = streak["current_weekly_streak"]
            this_week = _week_number(today)
            last_week = _week_number(last) if last else 0
            if this_week == last_week + 1:
                weekly += 1
            elif this_week > last_week + 1:
                weekly = 1

            execute(
                self.db_path,
                """
                UPDATE user_quest_streaks SET current_daily_streak = ?, longest_daily_streak = ?,
                    current_weekly_streak = ?, longest_weekly_streak = ?, last_completed_date = ?,
                    total_quests_completed = total_quests_completed + 1
                WHERE user_id = ?;
                """,
                (
                    daily, max(daily, streak["longest_daily_streak"]), weekly,
                    max(weekly, streak["longest_weekly_streak"]), today.isoformat(), user_id,
                ),
            )
        return query_one(self.db_path, "SELECT * FROM user_quest_streaks WHERE user_id = ?;", (user_id,)) or {}

    def get_user_quest_progress(self, user_id: str) -> Dict[str, Any]:
        rows = query_all(
            self.db_path,
            """
            SELECT p.*, q.title, q.type, q.category, q.timeframe, q.short_description, q.requirements, q.rewards
            FROM user_quest_progress p JOIN quests q ON q.id = p.quest_id
            WHERE p.user_id = ?
            ORDER BY p.completed ASC, p.started_at DESC;
            """,
            (user_id,),
        )
        streak = query_one(self.db_path, "SELECT * FROM user_quest_streaks WHERE user_id = ?;", (user_id,))
        completed = [r for r in rows if r["completed"]]
        return {
            "dailyQuests": [r for r in rows if r["timeframe"] == "DAILY"],
            "weeklyQuests": [r for r in rows if r["timeframe"] == "WEEKLY"],
            "activeQuests": [r for r in rows if not r["completed"]],
            "completedQuests": completed,
            "streak": streak,
            "stats": {
                "totalCompleted": len(completed),
                "dailyStreak": (streak or {}).get("current_daily_streak") or 0,
                "weeklyStreak": (streak or {}).get("current_weekly_streak") or 0,
                "longestStreak": (streak or {}).get("longest_daily_streak") or 0,
            },
        }

    def quest_analytics(self) -> Dict[str, Any]:
        completion = query_all(
            self.db_path,
            """
            SELECT quest_id AS questId, completed, COUNT(*) AS count
            FROM user_quest_progress GROUP BY quest_id, completed;
            """,
        )
        streaks = query_one(
            self.db_path,
            """
            SELECT AVG(current_daily_streak) AS avgCurrentDailyStreak, AVG(longest_daily_streak) AS avgLongestDailyStreak,
                   AVG(total_quests_completed) AS avgTotalCompleted, MAX(current_daily_streak) AS maxCurrentDailyStreak,
                   MAX(longest_daily_streak) AS maxLongestDailyStreak, MAX(total_quests_completed) AS maxTotalCompleted
            FROM user_quest_streaks;
            """,
        )
        return {
            "totalQuests": query_scalar(self.db_path, "SELECT COUNT(*) FROM quests;") or 0,
            "activeQuests": query_scalar(self.db_path, "SELECT COUNT(*) FROM quests WHERE is_active = 1;") or 0,
            "completionRates": [{**r, "completed": bool(r["completed"])} for r in completion],
            "streakStats": streaks or {},
        }
