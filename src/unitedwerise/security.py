"""Security event log, login risk heuristics and the IP block list."""

from __future__ import annotations

import ipaddress
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .config import SecurityConfig
from .db import dumps, execute, get_user, query_all, query_one, query_scalar, update_user
from .errors import ConflictError, NotFoundError, UnitedWeRiseError, ValidationError
from .logger import get_logger, log_extra
from .notifier import SlackNotifier
from .prometheus_metrics import track_security_event
from .utils import new_id, parse_iso, to_iso, utc_now

log = get_logger(__name__)


class EventType:
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_SUCCESS = "PASSWORD_RESET_SUCCESS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    MULTIPLE_FAILED_LOGINS = "MULTIPLE_FAILED_LOGINS"
    SUSPICIOUS_LOGIN_LOCATION = "SUSPICIOUS_LOGIN_LOCATION"
    RAPID_REQUESTS = "RAPID_REQUESTS"
    EMAIL_VERIFICATION_FAILED = "EMAIL_VERIFICATION_FAILED"
    SESSION_HIJACK_ATTEMPT = "SESSION_HIJACK_ATTEMPT"
    UNUSUAL_USER_AGENT = "UNUSUAL_USER_AGENT"
    BRUTE_FORCE_DETECTED = "BRUTE_FORCE_DETECTED"
    SPAM_DETECTED = "SPAM_DETECTED"
    CONTENT_VIOLATION = "CONTENT_VIOLATION"
    ADMIN_ACTION = "ADMIN_ACTION"
    SECURITY_ALERT = "SECURITY_ALERT"
    IP_BLOCKED = "IP_BLOCKED"
    IP_UNBLOCKED = "IP_UNBLOCKED"
    ALL_IPS_UNBLOCKED = "ALL_IPS_UNBLOCKED"


RISK_LOW = 25
RISK_MEDIUM = 50
RISK_HIGH = 75
RISK_CRITICAL = 90

BASE_RISK = {
    EventType.LOGIN_FAILED: 20,
    EventType.PASSWORD_RESET_REQUEST: 10,
    EventType.MULTIPLE_FAILED_LOGINS: 40,
    EventType.ACCOUNT_LOCKED: 70,
    EventType.SUSPICIOUS_LOGIN_LOCATION: 60,
    EventType.RAPID_REQUESTS: 50,
    EventType.SESSION_HIJACK_ATTEMPT: 90,
    EventType.BRUTE_FORCE_DETECTED: 85,
    EventType.SPAM_DETECTED: 30,
    EventType.LOGIN_SUCCESS: 5,
    EventType.PASSWORD_RESET_SUCCESS: 15,
}

DETAIL_RISK = {
    "newLocation": 25,
    "multipleFailures": 30,
    "rateLimitHit": 20,
    "unusualUserAgent": 15,
    "rapidSuccession": 25,
    "adminAction": 40,
}

STATS_WINDOWS = {"24h": 24, "7d": 168, "30d": 720}


def risk_level(score: int) -> str:
    if score >= RISK_CRITICAL:
        return "critical"
    if score >= RISK_HIGH:
        return "high"
    if score >= RISK_MEDIUM:
        return "medium"
    if score >= RISK_LOW:
        return "low"
    return "minimal"


def calculate_risk_score(event_type: str, details: Optional[Mapping[str, Any]] = None) -> int:
    score = BASE_RISK.get(event_type, 10)
    for flag, bonus in DETAIL_RISK.items():
        if details and details.get(flag):
            score += bonus
    return min(score, 100)


def is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _normalize_expiry(value: Optional[Union[datetime, str]]) -> Optional[str]:
    """Normalise a block expiry to UTC ``to_iso`` text."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = parse_iso(value.strip())
        except ValueError as e:
            raise ValidationError("expiresAt must be an ISO 8601 timestamp", {"expiresAt": value}) from e
        if value is None:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return to_iso(value)


class SecurityService:
    def __init__(
        self,
        db_path: str,
        config: Optional[SecurityConfig] = None,
        notifier: Optional[SlackNotifier] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.config = config or SecurityConfig()
        self.notifier = notifier
        self.now_fn = now_fn

    def _now_iso(self, **delta: float) -> str:
        return to_iso(self.now_fn() - timedelta(**delta))

    # -- event log ----------------------------------------------------------

    def log_event(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        risk_score: Optional[int] = None,
    ) -> Optional[str]:
        """Record an event; failures are logged, never raised."""
        score = calculate_risk_score(event_type, details) if risk_score is None else int(risk_score)
        event_id = new_id()
        try:
            execute(
                self.db_path,
                """
                INSERT INTO security_events (id, event_type, user_id, ip_address, user_agent, details,
                                             risk_score, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (event_id, event_type, user_id, ip_address, user_agent, dumps(details), score, self._now_iso()),
            )
        except sqlite3.Error as e:
            log.error("Failed to log security event %s: %s", event_type, e)
            return None

        track_security_event(event_type, risk_level(score))
        log.info("Security event logged", extra=log_extra(event_type=event_type, risk_score=score))
        if score >= RISK_HIGH:
            self._handle_high_risk(
                {
                    "event_type": event_type,
                    "user_id": user_id,
                    "ip_address": ip_address,
                    "details": details,
                    "risk_score": score,
                }
            )
        return event_id

    def _handle_high_risk(self, event: Dict[str, Any]) -> None:
        score = event["risk_score"]
        if score >= RISK_CRITICAL:
            log.error("CRITICAL SECURITY EVENT", extra=log_extra(**event))
        else:
            log.warning("HIGH RISK SECURITY EVENT", extra=log_extra(event_type=event["event_type"], risk_score=score))
        if self.notifier and self.notifier.enabled and score >= self.config.alert_min_risk:
            self.notifier.notify_security_event(event)

    # -- logins ---------------------------------------------------------------

    def handle_failed_login(
        self, user_id: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> Dict[str, Any]:
        user = get_user(self.db_path, user_id)
        if not user:
            return {"attempts": 0, "locked": False}
        attempts = int(user.get("login_attempts") or 0) + 1
        locked = attempts >= self.config.max_login_attempts
        fields: Dict[str, Any] = {
            "login_attempts": attempts,
            "suspicious_activity_count": int(user.get("suspicious_activity_count") or 0) + 1,
        }
        if locked:
            fields["locked_until"] = to_iso(self.now_fn() + timedelta(minutes=self.config.lockout_minutes))
        update_user(self.db_path, user_id, **fields)

        details: Dict[str, Any] = {"attempts": attempts, "locked": locked}
        if locked:
            details["lockoutMinutes"] = self.config.lockout_minutes
        self.log_event(
            EventType.ACCOUNT_LOCKED if locked else EventType.LOGIN_FAILED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
            risk_score=80 if locked else 20 + attempts * 10,
        )
        return {"attempts": attempts, "locked": locked}

    def assess_login_risk(self, user_id: str, ip_address: Optional[str] = None) -> int:
        risk = 5
        if ip_address:
            failures = query_scalar(
                self.db_path,
                "SELECT COUNT(*) FROM security_events WHERE ip_address = ? AND event_type = ? AND created_at >= ?;",
                (ip_address, EventType.LOGIN_FAILED, self._now_iso(hours=1)),
            )
            risk += int(failures or 0) * 10
        recent_logins = query_scalar(
            self.db_path,
            "SELECT COUNT(*) FROM security_events WHERE user_id = ? AND event_type = ? AND created_at >= ?;",
            (user_id, EventType.LOGIN_SUCCESS, self._now_iso(minutes=5)),
        )
        if int(recent_logins or 0) > 3:
            risk += 30
        return min(risk, 100)

    def handle_successful_login(
        self, user_id: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None
    ) -> int:
        user = get_user(self.db_path, user_id)
        previous_ip = user.get("last_login_ip") if user else None
        update_user(
            self.db_path,
            user_id,
            last_login_at=self._now_iso(),
            last_login_ip=ip_address,
            login_attempts=0,
        )
        risk = self.assess_login_risk(user_id, ip_address)
        self.log_event(
            EventType.LOGIN_SUCCESS,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"previousLoginIp": previous_ip, "locationChanged": False},
            risk_score=risk,
        )
        return risk

    def is_account_locked(self, user_id: str) -> bool:
        user = get_user(self.db_path, user_id)
        locked_until = parse_iso(user.get("locked_until")) if user else None
        return bool(locked_until and self.now_fn() < locked_until)

    # -- reporting ------------------------------------------------------------

    def get_security_events(
        self,
        limit: int = 100,
        offset: int = 0,
        event_type: Optional[str] = None,
        min_risk_score: int = 0,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        sql = """
            SELECT e.*, u.username AS username, u.email AS email,
                   u.is_admin AS user_is_admin, u.is_moderator AS user_is_moderator
            FROM security_events e LEFT JOIN users u ON u.id = e.user_id
            WHERE e.risk_score >= ?
        """
        params: List[Any] = [min_risk_score]
        if event_type:
            sql += " AND e.event_type = ?"
            params.append(event_type)
        if start_date and end_date:
            sql += " AND e.created_at >= ? AND e.created_at <= ?"
            params.extend([start_date, end_date])
        sql += " ORDER BY e.risk_score DESC, e.created_at DESC LIMIT ? OFFSET ?;"
        params.extend([limit, offset])
        return query_all(self.db_path, sql, tuple(params))

    def get_security_stats(self, timeframe: str = "24h") -> Dict[str, Any]:
        if timeframe not in STATS_WINDOWS:
            raise ValidationError("timeframe must be one of 24h, 7d, 30d")
        since = self._now_iso(hours=STATS_WINDOWS[timeframe])
        row = query_one(
            self.db_path,
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN event_type = ? THEN 1 ELSE 0 END) AS failed,
                   SUM(CASE WHEN risk_score >= ? THEN 1 ELSE 0 END) AS high_risk,
                   COUNT(DISTINCT ip_address) AS unique_ips,
                   AVG(risk_score) AS avg_risk
            FROM security_events WHERE created_at >= ?;
            """,
            (EventType.LOGIN_FAILED, RISK_HIGH, since),
        ) or {}
        locked = query_scalar(
            self.db_path, "SELECT COUNT(*) FROM users WHERE locked_until > ?;", (self._now_iso(),)
        )
        return {
            "totalEvents": int(row.get("total") or 0),
            "failedLogins": int(row.get("failed") or 0),
            "highRiskEvents": int(row.get("high_risk") or 0),
            "uniqueIPs": int(row.get("unique_ips") or 0),
            "lockedAccounts": int(locked or 0),
            "avgRiskScore": int(round(row.get("avg_risk") or 0)),
            "timeframe": timeframe,
            "generatedAt": self._now_iso(),
        }

    def cleanup_old_events(self, days_to_keep: Optional[int] = None) -> int:
        days = self.config.event_retention_days if days_to_keep is None else days_to_keep
        count = execute(
            self.db_path,
            "DELETE FROM security_events WHERE created_at < ? AND risk_score < ?;",
            (self._now_iso(days=days), RISK_HIGH),
        )
        log.info("Cleaned up %d old security events", count)
        return count

    # -- IP block list --------------------------------------------------------

    def is_ip_blocked(self, ip: str) -> bool:
        try:
            row = query_one(
                self.db_path,
                """
                SELECT ip_address FROM blocked_ips
                WHERE ip_address = ? AND is_active = 1 AND (expires_at IS NULL OR expires_at > ?);
                """,
                (ip, self._now_iso()),
            )
        except sqlite3.Error as e:
            # fail open
            log.error("Failed to check IP block status for %s: %s", ip, e)
            return False
        return row is not None

    def block_ip(
        self,
        ip: str,
        reason: str,
        blocked_by: str,
        expires_at: Optional[Union[datetime, str]] = None,
    ) -> Dict[str, Any]:
        if not is_valid_ip(ip):
            raise ValidationError("Invalid IP address format")
        reason = (reason or "").strip()
        if len(reason) < 5:
            raise ValidationError("Reason must be at least 5 characters")
        expiry = _normalize_expiry(expires_at)
        existing = query_one(self.db_path, "SELECT * FROM blocked_ips WHERE ip_address = ?;", (ip,))
        if existing and existing["is_active"]:
            raise ConflictError("IP address is already blocked")

        execute(
            self.db_path,
            """
            INSERT INTO blocked_ips (ip_address, reason, blocked_by, blocked_at, expires_at, is_active)
            VALUES (?, ?, ?, ?, ?, 1)
            ON CONFLICT(ip_address) DO UPDATE SET
                reason = excluded.reason,
                blocked_by = excluded.blocked_by,
                blocked_at = excluded.blocked_at,
                expires_at = excluded.expires_at,
                is_active = 1,
                unblocked_at = NULL,
                unblocked_by = NULL;
            """,
            (ip, reason, blocked_by, self._now_iso(), expiry),
        )
        self.log_event(
            EventType.IP_BLOCKED,
            user_id=blocked_by,
            ip_address=ip,
            details={"reason": reason, "expiresAt": expiry},
            risk_score=0,
        )
        log.info("IP address %s blocked by %s", ip, blocked_by)
        block = query_one(self.db_path, "SELECT * FROM blocked_ips WHERE ip_address = ?;", (ip,))
        if block is None:
            raise UnitedWeRiseError("IP block was not stored", {"ip": ip})
        return block

    def unblock_ip(self, ip: str, unblocked_by: str) -> None:
        block = query_one(self.db_path, "SELECT * FROM blocked_ips WHERE ip_address = ?;", (ip,))
        if not block or not block["is_active"]:
            raise NotFoundError("IP address is not blocked", {"ip": ip})
        execute(
            self.db_path,
            "UPDATE blocked_ips SET is_active = 0, unblocked_at = ?, unblocked_by = ? WHERE ip_address = ?;",
            (self._now_iso(), unblocked_by, ip),
        )
        self.log_event(
            EventType.IP_UNBLOCKED,
            user_id=unblocked_by,
            ip_address=ip,
            details={"originalReason": block["reason"]},
            risk_score=0,
        )
        log.info("IP address %s unblocked by %s", ip, unblocked_by)

    def get_blocked_ips(self, include_expired: bool = False, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        sql = """
            SELECT b.*, u.username AS blocked_by_username
            FROM blocked_ips b LEFT JOIN users u ON u.id = b.blocked_by
        """
        params: List[Any] = []
        if not include_expired:
            sql += " WHERE b.is_active = 1 AND (b.expires_at IS NULL OR b.expires_at > ?)"
            params.append(self._now_iso())
        sql += " ORDER BY b.blocked_at DESC LIMIT ? OFFSET ?;"
        params.extend([limit, offset])
        return query_all(self.db_path, sql, tuple(params))

    def clear_all_blocked_ips(self, admin_id: str) -> int:
        count = execute(
            self.db_path,
            "UPDATE blocked_ips SET is_active = 0, unblocked_at = ?, unblocked_by = ? WHERE is_active = 1;",
            (self._now_iso(), admin_id),
        )
        self.log_event(
            EventType.ALL_IPS_UNBLOCKED,
            user_id=admin_id,
            details={"clearedCount": count},
            risk_score=0,
        )
        log.warning("All blocked IPs cleared by %s (%d)", admin_id, count)
        return count
