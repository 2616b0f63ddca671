from __future__ import annotations

import json
import os
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from .errors import UnitedWeRiseError
from .logger import get_logger
from .utils import new_id, utc_now_iso

log = get_logger(__name__)

INTEGRITY_ERRORS: tuple[type[Exception], ...] = (sqlite3.IntegrityError,)

# Columns stored as JSON text and decoded on read
JSON_COLUMNS = (
    "embedding",
    "tags",
    "details",
    "keywords",
    "interests",
    "requirements",
    "rewards",
    "progress",
)

SCHEMA_VERSION = 1


def connect(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        db_dir = os.path.dirname(os.path.abspath(db_path))
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    return conn


def row_to_dict(row: Any) -> Dict[str, Any]:
    """Convert a ``sqlite3.Row`` into a plain dict with JSON columns decoded."""
    data = dict(row)
    for column in JSON_COLUMNS:
        raw = data.get(column)
        if isinstance(raw, str) and raw:
            try:
                data[column] = json.loads(raw)
            except json.JSONDecodeError:
                continue
    return data


def rows_to_dicts(rows: Iterable[Any]) -> List[Dict[str, Any]]:
    return [row_to_dict(r) for r in rows]


def dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def query_all(db_path: str, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
    conn = connect(db_path)
    try:
        return rows_to_dicts(conn.execute(sql, params).fetchall())
    finally:
        conn.close()


def query_one(db_path: str, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
    conn = connect(db_path)
    try:
        row = conn.execute(sql, params).fetchone()
        return row_to_dict(row) if row else None
    finally:
        conn.close()


def query_scalar(db_path: str, sql: str, params: tuple = ()) -> Any:
    conn = connect(db_path)
    try:
        row = conn.execute(sql, params).fetchone()
        return row[0] if row else None
    finally:
        conn.close()


def execute(db_path: str, sql: str, params: tuple = ()) -> int:
    """Run a single write statement and return the affected row count."""
    conn = connect(db_path)
    try:
        with conn:
            cur = conn.execute(sql, params)
            return cur.rowcount
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    conn = connect(db_path)
    try:
        with conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    email TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    state TEXT,
                    city TEXT,
                    zip_code TEXT,
                    interests TEXT, -- JSON array
                    is_admin INTEGER DEFAULT 0,
                    is_moderator INTEGER DEFAULT 0,
                    is_suspended INTEGER DEFAULT 0,
                    reputation_score REAL,
                    reputation_updated_at TEXT,
                    login_attempts INTEGER DEFAULT 0,
                    locked_until TEXT,
                    last_login_at TEXT,
                    last_login_ip TEXT,
                    suspicious_activity_count INTEGER DEFAULT 0,
                    last_seen_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS follows (
                    follower_id TEXT NOT NULL,
                    following_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (follower_id, following_id)
                );

                CREATE TABLE IF NOT EXISTS posts (
                    id TEXT PRIMARY KEY,
                    author_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    embedding TEXT, -- JSON array of floats
                    is_political INTEGER DEFAULT 0,
                    tags TEXT, -- JSON array
                    likes_count INTEGER DEFAULT 0,
                    dislikes_count INTEGER DEFAULT 0,
                    agrees_count INTEGER DEFAULT 0,
                    disagrees_count INTEGER DEFAULT 0,
                    comments_count INTEGER DEFAULT 0,
                    shares_count INTEGER DEFAULT 0,
                    views_count INTEGER DEFAULT 0,
                    reports_count INTEGER DEFAULT 0,
                    engagement_score REAL DEFAULT 0,
                    author_reputation REAL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS likes (
                    user_id TEXT NOT NULL,
                    post_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, post_id)
                );

                CREATE TABLE IF NOT EXISTS comments (
                    id TEXT PRIMARY KEY,
                    post_id TEXT NOT NULL,
                    author_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    likes_count INTEGER DEFAULT 0,
                    dislikes_count INTEGER DEFAULT 0,
                    agrees_count INTEGER DEFAULT 0,
                    disagrees_count INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reputation_events (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    impact REAL NOT NULL,
                    reason TEXT,
                    post_id TEXT,
                    details TEXT, -- JSON object
                    ai_generated INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS security_events (
                    id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    user_id TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    details TEXT,
                    risk_score INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS blocked_ips (
                    ip_address TEXT PRIMARY KEY,
                    reason TEXT NOT NULL,
                    blocked_by TEXT,
                    blocked_at TEXT NOT NULL,
                    expires_at TEXT,
                    is_active INTEGER DEFAULT 1,
                    unblocked_at TEXT,
                    unblocked_by TEXT
                );

                CREATE TABLE IF NOT EXISTS content_flags (
                    id TEXT PRIMARY KEY,
                    content_type TEXT NOT NULL,
                    content_id TEXT NOT NULL,
                    flag_type TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    source TEXT NOT NULL,
                    details TEXT,
                    resolved INTEGER DEFAULT 0,
                    resolved_by TEXT,
                    resolved_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reports (
                    id TEXT PRIMARY KEY,
                    reporter_id TEXT NOT NULL,
                    target_type TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    description TEXT,
                    status TEXT DEFAULT 'PENDING',
                    priority TEXT DEFAULT 'LOW',
                    moderator_id TEXT,
                    moderator_notes TEXT,
                    action_taken TEXT,
                    moderated_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_warnings (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    moderator_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    notes TEXT,
                    acknowledged INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_suspensions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    moderator_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    type TEXT NOT NULL,
                    starts_at TEXT NOT NULL,
                    ends_at TEXT,
                    is_active INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS feedback (
                    id TEXT PRIMARY KEY,
                    post_id TEXT,
                    user_id TEXT,
                    content TEXT NOT NULL,
                    type TEXT,
                    category TEXT,
                    priority TEXT,
                    summary TEXT,
                    confidence REAL,
                    keywords TEXT,
                    status TEXT DEFAULT 'new',
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                );

                CREATE TABLE IF NOT EXISTS news_articles (
                    url TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT,
                    source_name TEXT,
                    source_type TEXT,
                    author TEXT,
                    published_at TEXT,
                    official_id TEXT,
                    official_name TEXT,
                    sentiment TEXT,
                    sentiment_score REAL,
                    relevance_score REAL,
                    keywords TEXT,
                    ai_summary TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS electoral_districts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    level TEXT NOT NULL,
                    identifier TEXT NOT NULL,
                    state TEXT NOT NULL,
                    data_source TEXT,
                    updated_at TEXT,
                    UNIQUE (identifier, state, type)
                );

                CREATE TABLE IF NOT EXISTS address_district_mappings (
                    id TEXT PRIMARY KEY,
                    address TEXT,
                    zip_code TEXT,
                    state TEXT,
                    lat REAL,
                    lng REAL,
                    confidence REAL,
                    source TEXT,
                    district_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS offices (
                    id TEXT PRIMARY KEY,
                    district_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    holder_name TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS quests (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    category TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    short_description TEXT,
                    requirements TEXT NOT NULL,
                    rewards TEXT NOT NULL,
                    timeframe TEXT NOT NULL,
                    display_order INTEGER DEFAULT 0,
                    is_active INTEGER DEFAULT 1,
                    start_date TEXT,
                    end_date TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_quest_progress (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    quest_id TEXT NOT NULL,
                    progress TEXT,
                    completed INTEGER DEFAULT 0,
                    completed_at TEXT,
                    started_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_quest_streaks (
                    user_id TEXT PRIMARY KEY,
                    current_daily_streak INTEGER DEFAULT 0,
                    longest_daily_streak INTEGER DEFAULT 0,
                    current_weekly_streak INTEGER DEFAULT 0,
                    longest_weekly_streak INTEGER DEFAULT 0,
                    last_completed_date TEXT,
                    total_quests_completed INTEGER DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT
                );
                """
            )
    finally:
        conn.close()
    run_migrations(db_path)


def get_schema_version(db_path: str) -> int:
    value = query_scalar(db_path, "SELECT MAX(version) FROM schema_version;")
    return int(value or 0)


def set_schema_version(db_path: str, version: int) -> None:
    execute(
        db_path,
        """
        INSERT INTO schema_version (version, applied_at)
        VALUES (?, ?)
        ON CONFLICT(version) DO UPDATE SET applied_at = excluded.applied_at;
        """,
        (version, utc_now_iso()),
    )


def run_migrations(db_path: str) -> None:
    current_version = get_schema_version(db_path)
    if current_version >= SCHEMA_VERSION:
        return
    log.info("Current database schema version: %d", current_version)

    # Migration 1: query indexes
    if current_version < 1:
        log.info("Applying migration 1: adding indexes")
        conn = connect(db_path)
        try:
            with conn:
                conn.execute("CREATE INDEX IF NOT EXISTS idx_posts_created ON posts(created_at);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_posts_author ON posts(author_id);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_rep_events_user ON reputation_events(user_id, created_at);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_rep_events_post ON reputation_events(post_id);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_sec_events_created ON security_events(created_at);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_sec_events_ip ON security_events(ip_address);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_flags_content ON content_flags(content_type, content_id);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_status ON reports(status, priority);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_quest_progress_user ON user_quest_progress(user_id);")
            set_schema_version(db_path, 1)
        finally:
            conn.close()


def _stored(row: Optional[Dict[str, Any]], kind: str, row_id: str) -> Dict[str, Any]:
    if row is None:
        raise UnitedWeRiseError(f"{kind} {row_id} was not stored", {"id": row_id})
    return row


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def create_user(
    db_path: str,
    username: str,
    *,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    state: Optional[str] = None,
    city: Optional[str] = None,
    zip_code: Optional[str] = None,
    is_admin: bool = False,
    is_moderator: bool = False,
    reputation_score: Optional[float] = None,
    interests: Optional[List[str]] = None,
    created_at: Optional[str] = None,
) -> Dict[str, Any]:
    uid = user_id or new_id()
    execute(
        db_path,
        """
        INSERT INTO users (id, username, email, state, city, zip_code, interests, is_admin,
                           is_moderator, reputation_score, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            uid, username, email, state, city, zip_code, dumps(interests or []),
            int(is_admin), int(is_moderator), reputation_score, created_at or utc_now_iso(),
        ),
    )
    return _stored(get_user(db_path, uid), "User", uid)


def get_user(db_path: str, user_id: str) -> Optional[Dict[str, Any]]:
    return query_one(db_path, "SELECT * FROM users WHERE id = ?;", (user_id,))


def get_user_by_username(db_path: str, username: str) -> Optional[Dict[str, Any]]:
    return query_one(db_path, "SELECT * FROM users WHERE username = ?;", (username,))


def update_user(db_path: str, user_id: str, **fields: Any) -> int:
    if not fields:
        return 0
    assignments = ", ".join(f"{k} = ?" for k in fields)
    return execute(db_path, f"UPDATE users SET {assignments} WHERE id = ?;", (*fields.values(), user_id))


def touch_user(db_path: str, user_id: str) -> None:
    update_user(db_path, user_id, last_seen_at=utc_now_iso())


def follow(db_path: str, follower_id: str, following_id: str) -> None:
    execute(
        db_path,
        "INSERT OR IGNORE INTO follows (follower_id, following_id, created_at) VALUES (?, ?, ?);",
        (follower_id, following_id, utc_now_iso()),
    )


def following_ids(db_path: str, user_id: str) -> List[str]:
    rows = query_all(db_path, "SELECT following_id FROM follows WHERE follower_id = ?;", (user_id,))
    return [r["following_id"] for r in rows]


# ---------------------------------------------------------------------------
# Posts, likes, comments
# ---------------------------------------------------------------------------

def create_post(
    db_path: str,
    author_id: str,
    content: str,
    *,
    post_id: Optional[str] = None,
    embedding: Optional[List[float]] = None,
    is_political: bool = False,
    tags: Optional[List[str]] = None,
    likes_count: int = 0,
    comments_count: int = 0,
    shares_count: int = 0,
    engagement_score: float = 0.0,
    author_reputation: Optional[float] = None,
    created_at: Optional[str] = None,
) -> Dict[str, Any]:
    pid = post_id or new_id()
    execute(
        db_path,
        """
        INSERT INTO posts (id, author_id, content, embedding, is_political, tags, likes_count,
                           comments_count, shares_count, engagement_score, author_reputation, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            pid, author_id, content, dumps(embedding), int(is_political),
            dumps(tags if tags is not None else ["Public Post"]), likes_count, comments_count,
            shares_count, engagement_score, author_reputation, created_at or utc_now_iso(),
        ),
    )
    return _stored(get_post(db_path, pid), "Post", pid)


def get_post(db_path: str, post_id: str) -> Optional[Dict[str, Any]]:
    return query_one(db_path, "SELECT * FROM posts WHERE id = ?;", (post_id,))


def like_post(db_path: str, user_id: str, post_id: str) -> None:
    conn = connect(db_path)
    try:
        with conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO likes (user_id, post_id, created_at) VALUES (?, ?, ?);",
                (user_id, post_id, utc_now_iso()),
            )
            if cur.rowcount:
                conn.execute("UPDATE posts SET likes_count = likes_count + 1 WHERE id = ?;", (post_id,))
    finally:
        conn.close()


def liked_post_ids(db_path: str, user_id: str, post_ids: List[str]) -> set[str]:
    if not post_ids:
        return set()
    placeholders = ",".join("?" for _ in post_ids)
    rows = query_all(
        db_path,
        f"SELECT post_id FROM likes WHERE user_id = ? AND post_id IN ({placeholders});",
        (user_id, *post_ids),
    )
    return {r["post_id"] for r in rows}


def create_comment(
    db_path: str,
    post_id: str,
    author_id: str,
    content: str,
    **reactions: int,
) -> Dict[str, Any]:
    cid = new_id()
    conn = connect(db_path)
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO comments (id, post_id, author_id, content, likes_count, dislikes_count,
                                      agrees_count, disagrees_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    cid, post_id, author_id, content,
                    reactions.get("likes_count", 0), reactions.get("dislikes_count", 0),
                    reactions.get("agrees_count", 0), reactions.get("disagrees_count", 0),
                    utc_now_iso(),
                ),
            )
            conn.execute("UPDATE posts SET comments_count = comments_count + 1 WHERE id = ?;", (post_id,))
    finally:
        conn.close()
    return _stored(query_one(db_path, "SELECT * FROM comments WHERE id = ?;", (cid,)), "Comment", cid)


def list_comments(db_path: str, post_id: str) -> List[Dict[str, Any]]:
    return query_all(db_path, "SELECT * FROM comments WHERE post_id = ? ORDER BY created_at;", (post_id,))


def list_comments_for_posts(db_path: str, post_ids: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
    """Comments grouped by post id, one query for the whole batch."""
    ids = list(dict.fromkeys(post_ids))
    grouped: Dict[str, List[Dict[str, Any]]] = {pid: [] for pid in ids}
    if not ids:
        return grouped
    placeholders = ", ".join("?" for _ in ids)
    rows = query_all(
        db_path,
        f"SELECT * FROM comments WHERE post_id IN ({placeholders}) ORDER BY created_at;",
        tuple(ids),
    )
    for row in rows:
        grouped[row["post_id"]].append(row)
    return grouped
