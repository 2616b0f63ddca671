from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .db import get_user, query_all, query_scalar, update_user
from .errors import NotFoundError, ValidationError
from .logger import get_logger
from .utils import to_iso, utc_now

log = get_logger(__name__)

ROLES = ("user", "moderator", "admin")


class AdminService:
    """Read models for the admin dashboard plus user role management."""

    def __init__(self, db_path: str, now_fn: Callable[[], datetime] = utc_now) -> None:
        self.db_path = db_path
        self.now_fn = now_fn

    def _count(self, sql: str, params: tuple = ()) -> int:
        return int(query_scalar(self.db_path, sql, params) or 0)

    def dashboard(self) -> Dict[str, Any]:
        now = self.now_fn()
        day_ago = to_iso(now - timedelta(hours=24))
        month_ago = to_iso(now - timedelta(days=30))
        overview = {
            "totalUsers": self._count("SELECT COUNT(*) FROM users;"),
            "activeUsers": self._count("SELECT COUNT(*) FROM users WHERE last_seen_at >= ?;", (day_ago,)),
            "totalPosts": self._count("SELECT COUNT(*) FROM posts;"),
            "totalComments": self._count("SELECT COUNT(*) FROM comments;"),
            "pendingReports": self._count("SELECT COUNT(*) FROM reports WHERE status = 'PENDING';"),
            "resolvedReports": self._count("SELECT COUNT(*) FROM reports WHERE status = 'RESOLVED';"),
            "activeSuspensions": self._count("SELECT COUNT(*) FROM user_suspensions WHERE is_active = 1;"),
            "unresolvedFlags": self._count("SELECT COUNT(*) FROM content_flags WHERE resolved = 0;"),
            "moderatorCount": self._count("SELECT COUNT(*) FROM users WHERE is_moderator = 1 OR is_admin = 1;"),
        }
        growth = {
            "newUsers": self._count("SELECT COUNT(*) FROM users WHERE created_at >= ?;", (month_ago,)),
            "newPosts": self._count("SELECT COUNT(*) FROM posts WHERE created_at >= ?;", (month_ago,)),
            "newComments": self._count("SELECT COUNT(*) FROM comments WHERE created_at >= ?;", (month_ago,)),
        }
        urgent = query_all(
            self.db_path,
            """
            SELECT r.*, u.username AS reporter_username FROM reports r LEFT JOIN users u ON u.id = r.reporter_id
            WHERE r.priority IN ('HIGH', 'URGENT') AND r.status = 'PENDING'
            ORDER BY r.created_at DESC LIMIT 10;
            """,
        )
        return {"overview": overview, "growth": growth, "recentActivity": {"urgentReports": urgent}}

    def list_users(
        self,
        search: Optional[str] = None,
        status: Optional[str] = None,
        role: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        clauses: List[str] = []
        params: List[Any] = []
        if search:
            clauses.append("(username LIKE ? OR email LIKE ? OR first_name LIKE ? OR last_name LIKE ?)")
            params.extend([f"%{search}%"] * 4)
        if status == "suspended":
            clauses.append("is_suspended = 1")
        elif status == "active":
            clauses.append("is_suspended = 0")
        if role == "admin":
            clauses.append("is_admin = 1")
        elif role == "moderator":
            clauses.append("is_moderator = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        users = query_all(
            self.db_path,
            f"""
            SELECT id, username, email, first_name, last_name, state, city, is_admin, is_moderator,
                   is_suspended, reputation_score, last_seen_at, created_at,
                   (SELECT COUNT(*) FROM posts p WHERE p.author_id = users.id) AS post_count,
                   (SELECT COUNT(*) FROM reports r WHERE r.target_type = 'USER' AND r.target_id = users.id) AS report_count
            FROM users {where}
            ORDER BY created_at DESC LIMIT ? OFFSET ?;
            """,
            (*params, limit, offset),
        )
        total = self._count(f"SELECT COUNT(*) FROM users {where};", tuple(params))
        return {"users": users, "pagination": {"limit": limit, "offset": offset, "total": total}}

    def set_role(self, user_id: str, role: str, admin_id: str) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValidationError(f"role must be one of {', '.join(ROLES)}")
        if not get_user(self.db_path, user_id):
            raise NotFoundError("User not found", {"userId": user_id})
        update_user(
            self.db_path,
            user_id,
            is_admin=int(role == "admin"),
            is_moderator=int(role in ("admin", "moderator")),
        )
        log.info("User %s role set to %s by %s", user_id, role, admin_id)
        return {"userId": user_id, "role": role}
