import os
import sys
import json
import time
import uuid
import sqlite3
import logging
import calendar
import re
import threading
from datetime import datetime, timedelta, date, timezone, time as dtime
from typing import Dict, List, Optional, Tuple, Any, Callable, Iterable
from dataclasses import dataclass, field, asdict
from collections import defaultdict
from contextlib import contextmanager
from enum import Enum
from zoneinfo import ZoneInfo

import requests
from flask import Flask, jsonify, request
from flask_cors import CORS

logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
log = logging.getLogger('checkin')


# =============================================================================
# CONFIGURATION
# =============================================================================

# Recurring series where same-day co-occurrence is coincidental, not duplication
DEFAULT_NEVER_MERGE = [
    r'sunday\s*reading\s*room',
    r'friday\s*drinks',
    r'open\s*projects?\s*night',
    r'club\s*drinks',
    r'book\s*club',
    r'sewing\s*club',
    r'movie\s*nights?',
    r'lunchtime\s*video',
    r'screening\s*(of)?\s*["\'“‘]',
    r'workshop',
]

# Product names for the restricted-access (members-only) ticket variant
DEFAULT_MEMBERS_ONLY = [
    r'members?\s*only',
    r'members?\s*booking',
    r'members?\s*link',
    r'community\s*member',
    r'-\s*members$',
]

DEFAULT_SOCIAL_KEYWORDS = ['walk', 'party', 'drinks']
DEFAULT_SEASON_WORDS = ['winter', 'spring', 'summer', 'autumn', 'fall', 'solstice', 'equinox']
DEFAULT_CELEBRATION_WORDS = ['celebration']

# Unfilled form fields come through as their own labels
PLACEHOLDER_VALUES = [
    'first name', 'last name', 'family name', 'surname', 'given name',
    'name', 'full name', 'your name', 'email', 'email address',
]


@dataclass
class EventPatterns:
    """Event-name classification table (merge exclusions, variants, social events)."""
    never_merge: List[str] = field(default_factory=lambda: list(DEFAULT_NEVER_MERGE))
    members_only: List[str] = field(default_factory=lambda: list(DEFAULT_MEMBERS_ONLY))
    social_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_SOCIAL_KEYWORDS))
    season_words: List[str] = field(default_factory=lambda: list(DEFAULT_SEASON_WORDS))
    celebration_words: List[str] = field(default_factory=lambda: list(DEFAULT_CELEBRATION_WORDS))

    def __post_init__(self):
        self._never_merge = [re.compile(p, re.IGNORECASE) for p in self.never_merge]
        self._members_only = [re.compile(p, re.IGNORECASE) for p in self.members_only]

    @classmethod
    def from_file(cls, path: str) -> 'EventPatterns':
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
        known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def should_never_merge(self, name: str) -> bool:
        return any(p.search(name or '') for p in self._never_merge)

    def is_members_only(self, name: str) -> bool:
        return any(p.search(name or '') for p in self._members_only)

    def strip_members_only(self, name: str) -> str:
        for p in self._members_only:
            name = p.sub(' ', name)
        return name

    def is_social(self, name: str) -> bool:
        """Social/seasonal events count as attendance but not toward membership."""
        lower = (name or '').lower()
        if any(k in lower for k in self.social_keywords):
            return True
        has_season = any(s in lower for s in self.season_words)
        has_celebration = any(c in lower for c in self.celebration_words)
        return has_season and has_celebration


class MergeMode(Enum):
    TOMBSTONE = "tombstone"
    DELETE = "delete"


@dataclass
class Config:
    """Process-wide settings, built once and handed to every component."""
    woocommerce_url: str = ""
    consumer_key: str = ""
    consumer_secret: str = ""
    timeout_seconds: int = 30
    request_delay: float = 0.5
    per_page: int = 100
    max_pages: int = 50

    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    db_path: str = "checkin_ledger.db"
    venue_timezone: str = "Europe/London"
    freeze_hour: int = 23

    sync_ttl_seconds: int = 8 * 60 * 60
    orders_ttl_seconds: int = 8 * 60 * 60
    order_window_before_days: int = 60
    order_window_after_days: int = 7
    order_statuses: str = "completed,processing,on-hold,pending,cancelled,refunded,failed"

    membership_window_months: int = 9
    membership_min_events: int = 3
    membership_min_recent: int = 1

    merge_mode: MergeMode = MergeMode.TOMBSTONE
    merge_lock_ttl_seconds: int = 15 * 60

    member_list_webhook_url: str = ""
    member_list_api_key: str = ""

    patterns: EventPatterns = field(default_factory=EventPatterns)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.venue_timezone)

    @classmethod
    def from_env(cls) -> 'Config':
        env = os.environ
        patterns_file = env.get('EVENT_PATTERNS_FILE')
        patterns = EventPatterns.from_file(patterns_file) if patterns_file else EventPatterns()

        return cls(
            woocommerce_url=env.get('WOOCOMMERCE_URL', ''),
            consumer_key=env.get('WOOCOMMERCE_CONSUMER_KEY', ''),
            consumer_secret=env.get('WOOCOMMERCE_CONSUMER_SECRET', ''),
            timeout_seconds=int(env.get('WOOCOMMERCE_TIMEOUT', '30')),
            request_delay=float(env.get('WOOCOMMERCE_REQUEST_DELAY', '0.5')),
            db_path=env.get('DB_PATH', 'checkin_ledger.db'),
            venue_timezone=env.get('VENUE_TIMEZONE', 'Europe/London'),
            sync_ttl_seconds=int(env.get('SYNC_TTL_SECONDS', str(8 * 60 * 60))),
            merge_mode=MergeMode(env.get('MERGE_MODE', 'tombstone')),
            member_list_webhook_url=env.get('MEMBER_LIST_WEBHOOK_URL', ''),
            member_list_api_key=env.get('MEMBER_LIST_API_KEY', ''),
            patterns=patterns,
        )


# =============================================================================
# ERRORS
# =============================================================================

class CheckinError(Exception):
    """Base class for ledger errors."""


class TransientApiError(CheckinError):
    """Retryable upstream failure (rate limit, 5xx)."""

    def __init__(self, message: str, status_code: int = None, retry_after: float = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class WooCommerceError(CheckinError):
    """WooCommerce call failed for good (after retries, or non-retryable)."""

    def __init__(self, message: str, status_code: int = None, code: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class EventNotFoundError(CheckinError):
    pass


class MemberNotFoundError(CheckinError):
    pass


# =============================================================================
# TIME HELPERS
# =============================================================================

# Event dates are stored as venue wall-clock time (naive ISO); bookkeeping
# timestamps (cache, check-in, audit) are stored as aware UTC ISO.

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).isoformat(timespec='microseconds')
    return dt.isoformat(timespec='seconds')


def now_iso() -> str:
    return to_iso(utcnow())


def parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, dtime())
    try:
        return datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        return None


def local_naive(dt: Optional[datetime], tz: ZoneInfo) -> Optional[datetime]:
    """Venue wall-clock view of a datetime, without tzinfo."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(tz).replace(tzinfo=None)


def local_now(tz: ZoneInfo) -> datetime:
    return local_naive(utcnow(), tz)


def local_event_date(event_date: Any, tz: ZoneInfo) -> Optional[date]:
    dt = local_naive(parse_dt(event_date), tz)
    return dt.date() if dt else None


def add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def format_event_date(d: date) -> str:
    """Monday, January 5, 2026"""
    return f"{d.strftime('%A')}, {d.strftime('%B')} {d.day}, {d.year}"


def event_date_str(value: Any) -> str:
    dt = parse_dt(value)
    if dt is None:
        raise ValueError(f"Invalid event date: {value!r}")
    return dt.replace(tzinfo=None).isoformat(timespec='seconds')


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


# =============================================================================
# DATA MODELS
# =============================================================================

ACTIVE_ORDER_STATUSES = ('completed', 'processing', 'on-hold', 'pending')
INACTIVE_ORDER_STATUSES = ('cancelled', 'refunded', 'failed')
SOFT_DELETED_STATUS = 'deleted'


@dataclass
class TicketHolder:
    """One ticket extracted from an order line item."""
    ticket_id: str
    email: str
    first_name: str
    last_name: str
    booker_email: str
    booker_first_name: str
    booker_last_name: str
    order_id: str
    order_date: Optional[str]
    order_status: str
    product_id: str
    ticket_type: Optional[str] = None
    is_synthetic: bool = False


@dataclass
class SyncResult:
    event_id: str
    synced: bool
    reason: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    products_synced: int = 0
    failed_products: List[str] = field(default_factory=list)
    cache_age_seconds: Optional[int] = None
    error: Optional[str] = None


@dataclass
class BatchSyncResult:
    total: int = 0
    start_offset: int = 0
    processed: int = 0
    synced: int = 0
    not_synced: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    details: List[dict] = field(default_factory=list)


@dataclass
class DuplicateGroup:
    event_day: date
    events: List[dict]
    shared_base: str

    def to_dict(self) -> dict:
        return {
            'event_day': self.event_day.isoformat(),
            'shared_base': self.shared_base,
            'events': [
                {
                    'id': e['id'], 'name': e['name'],
                    'woocommerce_product_id': e.get('woocommerce_product_id'),
                    'attendee_count': e.get('attendee_count', 0),
                }
                for e in self.events
            ],
        }


@dataclass
class MergeResult:
    success: bool
    primary_event_id: str = ""
    primary_event_name: str = ""
    merged_event_ids: List[str] = field(default_factory=list)
    product_ids: List[str] = field(default_factory=list)
    attendees_moved: int = 0
    affected_member_count: int = 0
    error: Optional[str] = None


@dataclass
class BatchMergeResult:
    lock_acquired: bool = True
    groups_found: int = 0
    groups_merged: int = 0
    groups_failed: int = 0
    total_events_merged: int = 0
    total_attendees_affected: int = 0
    details: List[dict] = field(default_factory=list)


@dataclass
class MembershipResult:
    member_id: str
    email: str
    total_events: int
    recent_events: int
    is_active: bool
    expires_at: Optional[str]
    last_event_date: Optional[str]
    status_changed: bool = False
    created: bool = False


# =============================================================================
# DATABASE - UNIFIED SCHEMA
# =============================================================================

UNIFIED_SCHEMA = """
-- Events (one per sellable product, merged duplicates become tombstones)
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    event_date TEXT NOT NULL,             -- venue wall-clock
    woocommerce_product_id TEXT UNIQUE,
    merged_product_ids TEXT NOT NULL DEFAULT '[]',  -- JSON list, absorbed via merges
    merged_into_event_id TEXT,
    is_members_only INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Attendees (one row per ticket)
CREATE TABLE IF NOT EXISTS attendees (
    id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    email TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    ticket_id TEXT,
    woocommerce_order_id TEXT,
    order_date TEXT,
    order_status TEXT NOT NULL DEFAULT 'completed',
    ticket_type TEXT,
    booker_email TEXT,
    booker_first_name TEXT,
    booker_last_name TEXT,
    source_product_id TEXT,
    is_synthetic INTEGER NOT NULL DEFAULT 0,
    locally_modified INTEGER NOT NULL DEFAULT 0,
    manually_added INTEGER NOT NULL DEFAULT 0,
    checked_in INTEGER NOT NULL DEFAULT 0,
    checked_in_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(ticket_id, event_id),
    FOREIGN KEY (event_id) REFERENCES events(id)
);

-- Members (derived from checked-in attendance)
CREATE TABLE IF NOT EXISTS members (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    first_name TEXT,
    last_name TEXT,
    is_active_member INTEGER NOT NULL DEFAULT 0,
    total_events_attended INTEGER NOT NULL DEFAULT 0,
    last_event_date TEXT,
    membership_expires_at TEXT,
    manually_added INTEGER NOT NULL DEFAULT 0,
    manual_expires_at TEXT,
    notes TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Freshness cache
CREATE TABLE IF NOT EXISTS woocommerce_cache (
    cache_key TEXT PRIMARY KEY,
    cache_data TEXT NOT NULL,   -- JSON
    cached_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    event_id TEXT
);

-- Cross-process leases
CREATE TABLE IF NOT EXISTS advisory_locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT,
    expires_at TEXT
);

-- Member-list hook audit trail
CREATE TABLE IF NOT EXISTS member_sync_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    member_id TEXT,
    email TEXT NOT NULL,
    operation TEXT NOT NULL,    -- add, remove
    status TEXT NOT NULL,       -- success, failed
    error_message TEXT,
    synced_at TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_events_date ON events(event_date);
CREATE INDEX IF NOT EXISTS idx_events_merged_into ON events(merged_into_event_id);
CREATE INDEX IF NOT EXISTS idx_attendees_event ON attendees(event_id);
CREATE INDEX IF NOT EXISTS idx_attendees_email ON attendees(email);
CREATE INDEX IF NOT EXISTS idx_cache_expires ON woocommerce_cache(expires_at);
CREATE INDEX IF NOT EXISTS idx_cache_event ON woocommerce_cache(event_id);
"""


def _event_row(row) -> dict:
    d = dict(row)
    d['merged_product_ids'] = json.loads(d.get('merged_product_ids') or '[]')
    d['is_members_only'] = bool(d['is_members_only'])
    return d


def _attendee_row(row) -> dict:
    d = dict(row)
    for key in ('is_synthetic', 'locally_modified', 'manually_added', 'checked_in'):
        d[key] = bool(d[key])
    return d


def _member_row(row) -> dict:
    d = dict(row)
    d['is_active_member'] = bool(d['is_active_member'])
    d['manually_added'] = bool(d['manually_added'])
    return d


def _normalize_email(email: Optional[str]) -> str:
    return (email or '').lower().strip()


def _placeholders(n: int) -> str:
    return ', '.join('?' * n)


class Database:
    """Attendee ledger on SQLite."""

    # Columns an operator may edit; editing any of them marks the row locally_modified
    LOCAL_EDIT_FIELDS = ('email', 'first_name', 'last_name', 'ticket_type',
                         'booker_email', 'booker_first_name', 'booker_last_name')

    def __init__(self, path: str = "checkin_ledger.db"):
        self.path = path
        self.conn = sqlite3.connect(path, check_same_thread=False, timeout=10)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode = WAL")
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def _init_schema(self):
        self.conn.executescript(UNIFIED_SCHEMA)
        self.conn.commit()

    def close(self):
        self.conn.close()

    @contextmanager
    def transaction(self):
        """Commit on success, roll back on error; nested calls join the outer one."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                yield self.conn
                self.conn.commit()
            except Exception as e:
                self.conn.rollback()
                raise e
            finally:
                self._depth = 0

    # === Events ===

    def insert_event(self, name: str, event_date: Any, product_id: Any = None,
                     is_members_only: bool = False, event_id: str = None) -> str:
        event_id = event_id or new_id('evt')
        now = now_iso()
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO events
                (id, name, event_date, woocommerce_product_id, is_members_only, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                event_id, name, event_date_str(event_date),
                str(product_id) if product_id is not None else None,
                int(bool(is_members_only)), now, now
            ))
        return event_id

    def update_event(self, event_id: str, name: str = None, event_date: Any = None,
                     is_members_only: bool = None):
        sets, params = [], []
        if name is not None:
            sets.append("name = ?")
            params.append(name)
        if event_date is not None:
            sets.append("event_date = ?")
            params.append(event_date_str(event_date))
        if is_members_only is not None:
            sets.append("is_members_only = ?")
            params.append(int(bool(is_members_only)))
        if not sets:
            return
        sets.append("updated_at = ?")
        params.extend([now_iso(), event_id])
        with self.transaction() as conn:
            conn.execute(f"UPDATE events SET {', '.join(sets)} WHERE id = ?", params)

    def get_event(self, event_id: str) -> Optional[dict]:
        row = self.conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return _event_row(row) if row else None

    def get_event_by_product(self, product_id: Any) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT * FROM events WHERE woocommerce_product_id = ?", (str(product_id),)
        ).fetchone()
        return _event_row(row) if row else None

    def get_events(self, live_only: bool = True, with_product_only: bool = False,
                   since: Any = None) -> List[dict]:
        query = "SELECT * FROM events"
        conditions = []
        params = []

        if live_only:
            conditions.append("merged_into_event_id IS NULL")
        if with_product_only:
            conditions.append("woocommerce_product_id IS NOT NULL")
        if since is not None:
            conditions.append("event_date >= ?")
            params.append(event_date_str(since))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY event_date, id"
        rows = self.conn.execute(query, params).fetchall()
        return [_event_row(r) for r in rows]

    def get_events_between(self, start: datetime, end: datetime) -> List[dict]:
        rows = self.conn.execute("""
            SELECT * FROM events
            WHERE merged_into_event_id IS NULL AND event_date >= ? AND event_date <= ?
            ORDER BY event_date
        """, (event_date_str(start), event_date_str(end))).fetchall()
        return [_event_row(r) for r in rows]

    def get_absorbed_product_ids(self) -> Dict[str, str]:
        """product id -> live event that absorbed it through a merge"""
        absorbed = {}
        for event in self.get_events(live_only=True):
            for pid in event['merged_product_ids']:
                absorbed[str(pid)] = event['id']
        return absorbed

    def set_event_merge_state(self, event_id: str, name: str, merged_product_ids: List[str]):
        with self.transaction() as conn:
            conn.execute("""
                UPDATE events SET name = ?, merged_product_ids = ?, updated_at = ?
                WHERE id = ?
            """, (name, json.dumps(merged_product_ids), now_iso(), event_id))

    def tombstone_events(self, event_ids: List[str], merged_into: str):
        if not event_ids:
            return
        with self.transaction() as conn:
            conn.execute(f"""
                UPDATE events SET merged_into_event_id = ?, updated_at = ?
                WHERE id IN ({_placeholders(len(event_ids))})
            """, [merged_into, now_iso(), *event_ids])

    def repoint_tombstones(self, from_ids: List[str], to_id: str):
        if not from_ids:
            return
        with self.transaction() as conn:
            conn.execute(f"""
                UPDATE events SET merged_into_event_id = ?, updated_at = ?
                WHERE merged_into_event_id IN ({_placeholders(len(from_ids))})
            """, [to_id, now_iso(), *from_ids])

    def delete_events(self, event_ids: List[str]):
        if not event_ids:
            return
        with self.transaction() as conn:
            conn.execute(
                f"DELETE FROM events WHERE id IN ({_placeholders(len(event_ids))})", event_ids
            )

    # === Attendees ===

    def count_attendees(self, event_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) as cnt FROM attendees WHERE event_id = ?", (event_id,)
        ).fetchone()
        return row['cnt'] if row else 0

    def get_attendee(self, attendee_id: str) -> Optional[dict]:
        row = self.conn.execute("SELECT * FROM attendees WHERE id = ?", (attendee_id,)).fetchone()
        return _attendee_row(row) if row else None

    def find_attendee_by_ticket(self, ticket_id: str, event_id: str) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT * FROM attendees WHERE ticket_id = ? AND event_id = ?", (ticket_id, event_id)
        ).fetchone()
        return _attendee_row(row) if row else None

    def get_attendees_for_event(self, event_id: str) -> List[dict]:
        rows = self.conn.execute("""
            SELECT * FROM attendees WHERE event_id = ?
            ORDER BY last_name COLLATE NOCASE, first_name COLLATE NOCASE, created_at
        """, (event_id,)).fetchall()
        return [_attendee_row(r) for r in rows]

    def get_event_emails(self, event_id: str, checked_in_only: bool = False) -> List[str]:
        query = "SELECT DISTINCT email FROM attendees WHERE event_id = ?"
        if checked_in_only:
            query += " AND checked_in = 1"
        rows = self.conn.execute(query, (event_id,)).fetchall()
        return [r['email'] for r in rows]

    def insert_attendee(self, event_id: str, email: str, first_name: str = None,
                        last_name: str = None, ticket_id: str = None, **fields) -> Optional[str]:
        """INSERT OR IGNORE; returns the new id, or None when (ticket_id, event_id) already exists."""
        allowed = ('woocommerce_order_id', 'order_date', 'order_status', 'ticket_type',
                   'booker_email', 'booker_first_name', 'booker_last_name',
                   'source_product_id', 'is_synthetic', 'locally_modified',
                   'manually_added', 'checked_in', 'checked_in_at')
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown attendee fields: {sorted(unknown)}")

        attendee_id = new_id('att')
        now = now_iso()
        columns = ['id', 'event_id', 'email', 'first_name', 'last_name', 'ticket_id',
                   'created_at', 'updated_at']
        values = [attendee_id, event_id, _normalize_email(email), first_name or None,
                  last_name or None, ticket_id, now, now]
        for key in allowed:
            if key in fields:
                value = fields[key]
                columns.append(key)
                values.append(int(value) if isinstance(value, bool) else value)

        with self.transaction() as conn:
            cur = conn.execute(f"""
                INSERT OR IGNORE INTO attendees ({', '.join(columns)})
                VALUES ({_placeholders(len(values))})
            """, values)
        return attendee_id if cur.rowcount == 1 else None

    def insert_attendee_from_sync(self, event_id: str, ticket: TicketHolder) -> Optional[str]:
        return self.insert_attendee(
            event_id, ticket.email, ticket.first_name, ticket.last_name, ticket.ticket_id,
            woocommerce_order_id=ticket.order_id,
            order_date=ticket.order_date,
            order_status=ticket.order_status,
            ticket_type=ticket.ticket_type,
            booker_email=_normalize_email(ticket.booker_email) or None,
            booker_first_name=ticket.booker_first_name or None,
            booker_last_name=ticket.booker_last_name or None,
            source_product_id=ticket.product_id,
            is_synthetic=ticket.is_synthetic,
            checked_in=False,
        )

    def update_attendee_from_sync(self, attendee_id: str, ticket: TicketHolder, order_status: str):
        # Check-in state and the modified/manual flags are operator-owned
        with self.transaction() as conn:
            conn.execute("""
                UPDATE attendees SET
                    email = ?, first_name = ?, last_name = ?,
                    woocommerce_order_id = ?, order_date = ?, order_status = ?,
                    ticket_type = COALESCE(?, ticket_type),
                    booker_email = ?, booker_first_name = ?, booker_last_name = ?,
                    source_product_id = ?, is_synthetic = ?, updated_at = ?
                WHERE id = ?
            """, (
                _normalize_email(ticket.email), ticket.first_name or None, ticket.last_name or None,
                ticket.order_id, ticket.order_date, order_status, ticket.ticket_type,
                _normalize_email(ticket.booker_email) or None,
                ticket.booker_first_name or None, ticket.booker_last_name or None,
                ticket.product_id, int(ticket.is_synthetic), now_iso(), attendee_id
            ))

    def add_manual_attendee(self, event_id: str, email: str, first_name: str = None,
                            last_name: str = None, checked_in: bool = False) -> str:
        """Door sale: no external ticket, never touched by sync."""
        return self.insert_attendee(
            event_id, email, first_name, last_name, None,
            manually_added=True,
            checked_in=checked_in,
            checked_in_at=now_iso() if checked_in else None,
        )

    def set_checked_in(self, attendee_id: str, checked_in: bool = True) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("""
                UPDATE attendees SET checked_in = ?, checked_in_at = ?, updated_at = ?
                WHERE id = ?
            """, (int(checked_in), now_iso() if checked_in else None, now_iso(), attendee_id))
        return cur.rowcount == 1

    def update_attendee_local(self, attendee_id: str, **fields) -> bool:
        """Operator edit; the row becomes sticky against future syncs."""
        unknown = set(fields) - set(self.LOCAL_EDIT_FIELDS)
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")
        if 'email' in fields:
            fields['email'] = _normalize_email(fields['email'])

        sets = [f"{k} = ?" for k in fields] + ["locally_modified = 1", "updated_at = ?"]
        params = list(fields.values()) + [now_iso(), attendee_id]
        with self.transaction() as conn:
            cur = conn.execute(f"UPDATE attendees SET {', '.join(sets)} WHERE id = ?", params)
        return cur.rowcount == 1

    def soft_delete_attendee(self, attendee_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE attendees SET order_status = ?, updated_at = ? WHERE id = ?",
                (SOFT_DELETED_STATUS, now_iso(), attendee_id)
            )
        return cur.rowcount == 1

    def delete_attendee(self, attendee_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM attendees WHERE id = ?", (attendee_id,))
        return cur.rowcount == 1

    def move_attendees(self, from_event_ids: List[str], to_event_id: str) -> int:
        """Rewrite event references, remembering which product each ticket arrived via."""
        if not from_event_ids:
            return 0
        with self.transaction() as conn:
            cur = conn.execute(f"""
                UPDATE attendees SET
                    source_product_id = COALESCE(
                        source_product_id,
                        (SELECT woocommerce_product_id FROM events WHERE events.id = attendees.event_id)
                    ),
                    event_id = ?,
                    updated_at = ?
                WHERE event_id IN ({_placeholders(len(from_event_ids))})
            """, [to_event_id, now_iso(), *from_event_ids])
        return cur.rowcount

    def get_checked_in_attendance(self, email: str) -> List[dict]:
        rows = self.conn.execute("""
            SELECT a.event_id, e.name as event_name, e.event_date
            FROM attendees a
            JOIN events e ON a.event_id = e.id
            WHERE a.email = ? AND a.checked_in = 1 AND a.order_status != ?
            ORDER BY e.event_date DESC
        """, (_normalize_email(email), SOFT_DELETED_STATUS)).fetchall()
        return [dict(r) for r in rows]

    # === Members ===

    def upsert_member_stub(self, email: str, first_name: str = None, last_name: str = None):
        """Create if absent; fill in a missing name, never overwrite one."""
        now = now_iso()
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO members
                (id, email, first_name, last_name, is_active_member, total_events_attended,
                 created_at, updated_at)
                VALUES (?, ?, NULLIF(?, ''), NULLIF(?, ''), 0, 0, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    first_name = COALESCE(NULLIF(members.first_name, ''), excluded.first_name),
                    last_name = COALESCE(NULLIF(members.last_name, ''), excluded.last_name),
                    updated_at = excluded.updated_at
            """, (new_id('mem'), _normalize_email(email), first_name or '', last_name or '', now, now))

    def add_manual_member(self, email: str, first_name: str = None, last_name: str = None,
                          manual_expires_at: Any = None, notes: str = None) -> dict:
        self.upsert_member_stub(email, first_name, last_name)
        expires = parse_dt(manual_expires_at)
        with self.transaction() as conn:
            conn.execute("""
                UPDATE members SET manually_added = 1, manual_expires_at = ?,
                    notes = COALESCE(?, notes), updated_at = ?
                WHERE email = ?
            """, (expires.isoformat(timespec='seconds') if expires else None, notes,
                  now_iso(), _normalize_email(email)))
        return self.get_member_by_email(email)

    def get_member(self, member_id: str) -> Optional[dict]:
        row = self.conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        return _member_row(row) if row else None

    def get_member_by_email(self, email: str) -> Optional[dict]:
        row = self.conn.execute(
            "SELECT * FROM members WHERE email = ?", (_normalize_email(email),)
        ).fetchone()
        return _member_row(row) if row else None

    def get_members(self, active_only: bool = False, limit: int = 100, offset: int = 0) -> List[dict]:
        query = "SELECT * FROM members"
        if active_only:
            query += " WHERE is_active_member = 1"
        query += " ORDER BY email LIMIT ? OFFSET ?"
        rows = self.conn.execute(query, (limit, offset)).fetchall()
        return [_member_row(r) for r in rows]

    def get_all_member_emails(self) -> List[str]:
        rows = self.conn.execute("SELECT email FROM members ORDER BY email").fetchall()
        return [r['email'] for r in rows]

    def get_member_count(self, active_only: bool = False) -> int:
        query = "SELECT COUNT(*) as cnt FROM members"
        if active_only:
            query += " WHERE is_active_member = 1"
        row = self.conn.execute(query).fetchone()
        return row['cnt'] if row else 0

    def update_member_status(self, member_id: str, is_active: bool, total_events: int,
                             last_event_date: Optional[str], expires_at: Optional[str]):
        with self.transaction() as conn:
            conn.execute("""
                UPDATE members SET is_active_member = ?, total_events_attended = ?,
                    last_event_date = ?, membership_expires_at = ?, updated_at = ?
                WHERE id = ?
            """, (int(is_active), total_events, last_event_date, expires_at, now_iso(), member_id))

    def log_member_sync(self, member_id: Optional[str], email: str, operation: str,
                        status: str, error: str = None):
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO member_sync_log (member_id, email, operation, status, error_message, synced_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (member_id, email, operation, status, (error or '')[:1000] or None, now_iso()))

    def get_member_sync_log(self, email: str = None) -> List[dict]:
        query = "SELECT * FROM member_sync_log"
        params = []
        if email:
            query += " WHERE email = ?"
            params.append(_normalize_email(email))
        query += " ORDER BY id"
        return [dict(r) for r in self.conn.execute(query, params).fetchall()]


# =============================================================================
# FRESHNESS CACHE
# =============================================================================

class FreshnessCache:
    """TTL key/value store on the ledger database. Best effort: storage errors read as misses."""

    def __init__(self, db: Database):
        self.db = db

    def _row(self, key: str):
        return self.db.conn.execute(
            "SELECT * FROM woocommerce_cache WHERE cache_key = ?", (key,)
        ).fetchone()

    def _expired(self, row) -> bool:
        return parse_dt(row['expires_at']) <= utcnow()

    def get(self, key: str) -> Optional[Any]:
        try:
            row = self._row(key)
            if not row:
                return None
            if self._expired(row):
                self.invalidate(key)
                return None
            return json.loads(row['cache_data'])
        except (sqlite3.Error, ValueError) as e:
            log.error(f"[cache] Error reading {key}: {e}")
            return None

    def set(self, key: str, payload: Any, ttl_seconds: int, event_id: str = None):
        now = utcnow()
        expires = now + timedelta(seconds=ttl_seconds)
        try:
            with self.db.transaction() as conn:
                conn.execute("""
                    INSERT INTO woocommerce_cache (cache_key, cache_data, cached_at, expires_at, event_id)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        cache_data = excluded.cache_data,
                        cached_at = excluded.cached_at,
                        expires_at = excluded.expires_at,
                        event_id = excluded.event_id
                """, (key, json.dumps(payload), to_iso(now), to_iso(expires), event_id))
            log.debug(f"[cache] Cached {key} (TTL: {ttl_seconds}s)")
        except sqlite3.Error as e:
            log.error(f"[cache] Error setting {key}: {e}")

    def invalidate(self, key: str) -> bool:
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM woocommerce_cache WHERE cache_key = ?", (key,))
        return cur.rowcount > 0

    def invalidate_prefix(self, prefix: str) -> int:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM woocommerce_cache WHERE substr(cache_key, 1, ?) = ?",
                (len(prefix), prefix)
            )
        return cur.rowcount

    def invalidate_event(self, event_id: str) -> int:
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM woocommerce_cache WHERE event_id = ?", (event_id,))
        return cur.rowcount

    def age_seconds(self, key: str) -> Optional[int]:
        try:
            row = self._row(key)
            if not row:
                return None
            if self._expired(row):
                self.invalidate(key)
                return None
            return int((utcnow() - parse_dt(row['cached_at'])).total_seconds())
        except sqlite3.Error as e:
            log.error(f"[cache] Error reading age of {key}: {e}")
            return None

    def sweep_expired(self) -> int:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM woocommerce_cache WHERE expires_at <= ?", (now_iso(),)
            )
        log.info(f"[cache] Swept {cur.rowcount} expired entries")
        return cur.rowcount


# =============================================================================
# ADVISORY LOCK
# =============================================================================

class AdvisoryLock:
    """Named lease row; acquired by conditional update so only one holder wins."""

    def __init__(self, db: Database, name: str, ttl_seconds: int = 900):
        self.db = db
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.holder = f"{os.getpid()}-{uuid.uuid4().hex[:12]}"

    def acquire(self) -> bool:
        now = utcnow()
        with self.db.transaction() as conn:
            conn.execute("INSERT OR IGNORE INTO advisory_locks (name) VALUES (?)", (self.name,))
            # An expired lease belongs to a holder that died without releasing
            cur = conn.execute("""
                UPDATE advisory_locks SET holder = ?, acquired_at = ?, expires_at = ?
                WHERE name = ? AND (holder IS NULL OR expires_at IS NULL OR expires_at <= ?)
            """, (self.holder, to_iso(now), to_iso(now + timedelta(seconds=self.ttl_seconds)),
                  self.name, to_iso(now)))
        return cur.rowcount == 1

    def release(self):
        with self.db.transaction() as conn:
            conn.execute("""
                UPDATE advisory_locks SET holder = NULL, acquired_at = NULL, expires_at = NULL
                WHERE name = ? AND holder = ?
            """, (self.name, self.holder))

    @contextmanager
    def held(self):
        """Yields whether the lock was acquired; releases on every exit path."""
        acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()


# =============================================================================
# RETRY POLICY
# =============================================================================

def is_transient_error(exc: BaseException) -> bool:
    return isinstance(exc, (
        requests.ConnectionError,
        requests.Timeout,
        requests.exceptions.ChunkedEncodingError,
        TransientApiError,
    ))


@dataclass
class RetryPolicy:
    """Exponential backoff around a callable; honours Retry-After when the error carries one."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_config(cls, config: Config) -> 'RetryPolicy':
        return cls(max_attempts=config.retry_attempts, base_delay=config.retry_base_delay,
                   max_delay=config.retry_max_delay)

    def delay_for(self, attempt: int, exc: BaseException = None) -> float:
        retry_after = getattr(exc, 'retry_after', None)
        if retry_after is not None:
            return min(float(retry_after), self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def call(self, fn: Callable, *args, **kwargs):
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                if attempt >= self.max_attempts or not self.retryable(e):
                    raise
                delay = self.delay_for(attempt, e)
                log.warning(f"Transient error: {e} - retrying in {delay:.1f}s "
                            f"(attempt {attempt}/{self.max_attempts})")
                self.sleep(delay)


# =============================================================================
# WOOCOMMERCE SYNC CLIENT
# =============================================================================

def describe_request_error(exc: BaseException) -> Tuple[str, str]:
    """(message, code) for a network failure"""
    if isinstance(exc, requests.Timeout):
        return "WooCommerce API request timed out", "ETIMEDOUT"
    if isinstance(exc, requests.ConnectionError):
        text = str(exc).lower()
        if 'reset' in text:
            return "WooCommerce API connection reset - API may be temporarily unavailable", "ECONNRESET"
        if 'name or service' in text or 'resolve' in text:
            return "WooCommerce API host could not be resolved", "ENOTFOUND"
        return f"WooCommerce API connection failed: {exc}", "ECONNERROR"
    if isinstance(exc, TransientApiError):
        return f"WooCommerce API unavailable: {exc}", f"HTTP{exc.status_code or ''}"
    return str(exc) or exc.__class__.__name__, "EUNKNOWN"


class WooCommerceClient:
    """WooCommerce REST (wc/v3) integration. Sequential, throttled, retried."""

    API_PATH = "/wp-json/wc/v3"

    def __init__(self, config: Config, retry: RetryPolicy = None, session: requests.Session = None):
        self.config = config
        self.base_url = config.woocommerce_url.rstrip('/') + self.API_PATH
        self.session = session or requests.Session()
        self.session.auth = (config.consumer_key, config.consumer_secret)
        self.retry = retry or RetryPolicy.from_config(config)
        self._last_request = 0.0

    def _throttle(self):
        wait = self.config.request_delay - (time.monotonic() - self._last_request)
        if wait > 0:
            time.sleep(wait)
        self._last_request = time.monotonic()

    def _request_once(self, endpoint: str, params: dict) -> Any:
        self._throttle()
        url = f"{self.base_url}{endpoint}"
        response = self.session.get(url, params=params, timeout=self.config.timeout_seconds)

        if response.status_code == 429:
            retry_after = response.headers.get('Retry-After')
            log.warning(f"[woocommerce] Rate limited on {endpoint}")
            raise TransientApiError(
                "rate limited", status_code=429,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if response.status_code >= 500:
            raise TransientApiError(f"server error {response.status_code}", status_code=response.status_code)

        if response.status_code != 200:
            raise WooCommerceError(
                f"API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError:
            raise WooCommerceError(f"Invalid JSON from {endpoint}", status_code=response.status_code)

    def _get(self, endpoint: str, params: dict = None) -> Any:
        try:
            return self.retry.call(self._request_once, endpoint, dict(params or {}))
        except WooCommerceError:
            raise
        except (requests.RequestException, TransientApiError) as e:
            message, code = describe_request_error(e)
            log.error(f"[woocommerce] {endpoint} failed: {message}")
            raise WooCommerceError(message, status_code=getattr(e, 'status_code', None), code=code) from e

    def _paginate(self, endpoint: str, params: dict = None) -> List[dict]:
        params = dict(params or {})
        params['per_page'] = self.config.per_page
        results = []
        page = 1

        while True:
            params['page'] = page
            batch = self._get(endpoint, params)
            if not isinstance(batch, list):
                raise WooCommerceError(f"Unexpected response shape from {endpoint}")

            results.extend(batch)
            if len(batch) < self.config.per_page:
                break

            page += 1
            if page > self.config.max_pages:
                log.warning(f"[woocommerce] Reached page limit ({self.config.max_pages}) for {endpoint}")
                break

        return results

    def get_products(self) -> List[dict]:
        log.info("[woocommerce] Fetching products...")
        products = self._paginate('/products')
        log.info(f"[woocommerce] Fetched {len(products)} products")
        return products

    def get_product(self, product_id: str) -> dict:
        product = self._get(f'/products/{product_id}')
        if not isinstance(product, dict):
            raise WooCommerceError(f"Unexpected product payload for {product_id}")
        return product

    def get_orders_for_product(self, product_id: str, event_date: datetime = None) -> List[dict]:
        """Orders containing the product, optionally windowed around the event date."""
        product = self.get_product(product_id)

        params = {'status': self.config.order_statuses}
        if event_date:
            after = event_date - timedelta(days=self.config.order_window_before_days)
            before = event_date + timedelta(days=self.config.order_window_after_days)
            params['after'] = after.isoformat(timespec='seconds')
            params['before'] = before.isoformat(timespec='seconds')

        variations = product.get('variations') or []
        if product.get('type') == 'variable' and variations:
            # The product filter misses variation line items on some stores
            variation_ids = {str(v) for v in variations}
            orders = self._paginate('/orders', params)
            matching = [
                o for o in orders
                if isinstance(o, dict) and any(
                    isinstance(item, dict) and (
                        str(item.get('product_id')) == str(product_id)
                        or str(item.get('variation_id')) in variation_ids
                    )
                    for item in o.get('line_items') or []
                )
            ]
            log.info(f"[woocommerce] {len(matching)} orders for variable product {product_id}")
            return matching

        params['product'] = product_id
        orders = self._paginate('/orders', params)
        log.info(f"[woocommerce] {len(orders)} orders for product {product_id}")
        return orders


# =============================================================================
# ORDER DECODING
# =============================================================================

# Orders arrive as loosely typed JSON. Decoders fail closed: an unexpected shape
# yields None ("no usable data") instead of an exception.

@dataclass
class TicketEntry:
    uid: str
    index: int
    fields: Dict[str, str]


@dataclass
class LineItem:
    id: str
    product_id: str
    variation_id: str
    quantity: int
    name: str
    meta: List[Tuple[str, Any]]
    ticket_entries: Optional[List[TicketEntry]] = None

    def meta_value(self, key: str) -> Any:
        for k, v in self.meta:
            if k == key:
                return v
        return None


@dataclass
class Order:
    id: str
    status: str
    date_created: Optional[str]
    billing_email: str
    billing_first_name: str
    billing_last_name: str
    line_items: List[LineItem]


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, bool)):
        return ''
    return str(value).strip()


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _decode_meta(raw: Any) -> List[Tuple[str, Any]]:
    if not isinstance(raw, list):
        return []
    meta = []
    for m in raw:
        if isinstance(m, dict) and isinstance(m.get('key'), str):
            meta.append((m['key'], m.get('value')))
    return meta


def decode_ticket_data(value: Any) -> Optional[List[TicketEntry]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if isinstance(value, dict):
        value = list(value.values())
    if not isinstance(value, list):
        return None

    entries = []
    for position, raw in enumerate(value):
        if not isinstance(raw, dict) or not isinstance(raw.get('fields'), dict):
            log.warning(f"[decode] Skipping malformed ticket entry at position {position}")
            continue
        fields = {str(k): _text(v) for k, v in raw['fields'].items()}
        entries.append(TicketEntry(
            uid=_text(raw.get('uid')) or str(position),
            index=_int(raw.get('index'), position),
            fields=fields,
        ))
    return entries or None


def decode_line_item(raw: Any) -> Optional[LineItem]:
    if not isinstance(raw, dict) or raw.get('id') is None:
        return None
    meta = _decode_meta(raw.get('meta_data'))
    item = LineItem(
        id=_text(raw.get('id')),
        product_id=_text(raw.get('product_id')),
        variation_id=_text(raw.get('variation_id')),
        quantity=max(_int(raw.get('quantity'), 1), 1),
        name=_text(raw.get('name')),
        meta=meta,
    )
    item.ticket_entries = decode_ticket_data(item.meta_value('_ticket_data'))
    return item


def decode_order(raw: Any) -> Optional[Order]:
    if not isinstance(raw, dict) or raw.get('id') is None:
        return None
    billing = raw.get('billing') if isinstance(raw.get('billing'), dict) else {}
    items = raw.get('line_items') if isinstance(raw.get('line_items'), list) else []
    return Order(
        id=_text(raw.get('id')),
        status=_text(raw.get('status')).lower() or 'pending',
        date_created=_text(raw.get('date_created')) or None,
        billing_email=_normalize_email(_text(billing.get('email'))),
        billing_first_name=_text(billing.get('first_name')),
        billing_last_name=_text(billing.get('last_name')),
        line_items=[li for li in (decode_line_item(i) for i in items) if li],
    )


# =============================================================================
# TICKET EXTRACTOR
# =============================================================================

class FieldKind(Enum):
    EMAIL = "email"
    PLACEHOLDER = "placeholder"
    NAME = "name"
    OTHER = "other"


@dataclass
class FieldGuess:
    key: str
    value: str
    kind: FieldKind


MAX_NAME_LENGTH = 50
TICKET_TYPE_MAX_LENGTH = 40
DATE_LIKE = re.compile(r'\d{1,4}[/-]\d{1,2}[/-]\d{1,4}|\b\d{4}\b')


class TicketExtractor:
    """Turns one order line item into ticket holders."""

    def __init__(self, placeholders: Iterable[str] = None):
        self.placeholders = {p.lower() for p in (placeholders or PLACEHOLDER_VALUES)}

    def classify(self, value: str) -> FieldKind:
        v = (value or '').strip()
        if not v:
            return FieldKind.OTHER
        if '@' in v:
            return FieldKind.EMAIL
        if v.lower().strip(' :*.') in self.placeholders:
            return FieldKind.PLACEHOLDER
        if len(v) < MAX_NAME_LENGTH and any(c.isalpha() for c in v):
            return FieldKind.NAME
        return FieldKind.OTHER

    def guess_fields(self, fields: Dict[str, str]) -> List[FieldGuess]:
        # Keys are opaque hashes; sorting keeps the order stable across orders of one product
        return [FieldGuess(k, fields[k].strip(), self.classify(fields[k])) for k in sorted(fields)]

    def parse_fields(self, fields: Dict[str, str]) -> Tuple[str, str, str]:
        """(email, first_name, last_name)"""
        guesses = self.guess_fields(fields)
        email = next((g.value for g in guesses if g.kind == FieldKind.EMAIL), '')

        # A placeholder keeps its slot so a real last name is not promoted to first name
        slots = [g for g in guesses if g.kind in (FieldKind.NAME, FieldKind.PLACEHOLDER)][:2]
        names = [g.value if g.kind == FieldKind.NAME else '' for g in slots]
        names += [''] * (2 - len(names))

        return _normalize_email(email), names[0], names[1]

    def ticket_type(self, line_item: LineItem) -> Optional[str]:
        if line_item.variation_id and line_item.variation_id != '0':
            for key, value in line_item.meta:
                if key.startswith('_') or not isinstance(value, str):
                    continue
                value = value.strip()
                if value and len(value) <= TICKET_TYPE_MAX_LENGTH and '@' not in value:
                    return value

        if ' - ' in line_item.name:
            suffix = line_item.name.rsplit(' - ', 1)[1].strip()
            if suffix and len(suffix) <= TICKET_TYPE_MAX_LENGTH and not DATE_LIKE.search(suffix):
                return suffix
        return None

    def extract(self, order: Order, line_item: LineItem) -> List[TicketHolder]:
        ticket_type = self.ticket_type(line_item)

        if not line_item.ticket_entries:
            return self._fallback(order, line_item, ticket_type)

        holders = []
        for entry in line_item.ticket_entries:
            email, first_name, last_name = self.parse_fields(entry.fields)

            ticket_id = _text(line_item.meta_value(f'_ticket_id_for_{entry.uid}'))
            if not ticket_id:
                ticket_id = f"{line_item.id}-{entry.index}"

            if not email:
                log.warning(f"[extract] Ticket {ticket_id} in order {order.id} has no email, dropping")
                continue

            holders.append(self._holder(order, line_item, ticket_id, email, first_name,
                                        last_name, ticket_type, is_synthetic=False))
        return holders

    def _fallback(self, order: Order, line_item: LineItem,
                  ticket_type: Optional[str]) -> List[TicketHolder]:
        """No structured ticket data: one synthetic ticket per unit, all carrying the booker identity."""
        if not order.billing_email:
            log.warning(f"[extract] Order {order.id} line {line_item.id} has neither ticket data "
                        f"nor a billing email, dropping")
            return []

        log.warning(f"[extract] No ticket data on line {line_item.id} of order {order.id}, "
                    f"synthesizing {line_item.quantity} ticket(s) from billing")
        return [
            self._holder(order, line_item, f"{line_item.id}-fallback-{i}", order.billing_email,
                         order.billing_first_name, order.billing_last_name, ticket_type,
                         is_synthetic=True)
            for i in range(line_item.quantity)
        ]

    def _holder(self, order: Order, line_item: LineItem, ticket_id: str, email: str,
                first_name: str, last_name: str, ticket_type: Optional[str],
                is_synthetic: bool) -> TicketHolder:
        return TicketHolder(
            ticket_id=ticket_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            booker_email=order.billing_email,
            booker_first_name=order.billing_first_name,
            booker_last_name=order.billing_last_name,
            order_id=order.id,
            order_date=order.date_created,
            order_status=order.status,
            product_id=line_item.product_id,
            ticket_type=ticket_type,
            is_synthetic=is_synthetic,
        )


# =============================================================================
# MEMBER LIST HOOK
# =============================================================================

class MemberListHook:
    """External member-list collaborator, notified on active/inactive transitions."""

    def add(self, member: dict):
        raise NotImplementedError

    def remove(self, email: str):
        raise NotImplementedError


class LoggingMemberListHook(MemberListHook):
    """Used when no member-list service is configured."""

    def add(self, member: dict):
        log.info(f"[member-list] Would add {member['email']} (no service configured)")

    def remove(self, email: str):
        log.info(f"[member-list] Would remove {email} (no service configured)")


class WebhookMemberListHook(MemberListHook):
    """POSTs add/remove calls to a member-list service."""

    def __init__(self, url: str, api_key: str = "", retry: RetryPolicy = None,
                 session: requests.Session = None, timeout: int = 30):
        self.url = url.rstrip('/')
        self.session = session or requests.Session()
        if api_key:
            self.session.headers['Authorization'] = f'Bearer {api_key}'
        self.retry = retry or RetryPolicy()
        self.timeout = timeout

    def _post_once(self, endpoint: str, payload: dict):
        response = self.session.post(f"{self.url}{endpoint}", json=payload, timeout=self.timeout)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientApiError(f"member list {response.status_code}", status_code=response.status_code)
        if response.status_code >= 400:
            raise CheckinError(f"Member list error {response.status_code}: {response.text[:200]}")

    def add(self, member: dict):
        self.retry.call(self._post_once, '/add', {
            'email': member['email'],
            'firstName': member.get('first_name') or '',
            'lastName': member.get('last_name') or '',
            'membershipExpiresAt': member.get('membership_expires_at'),
        })

    def remove(self, email: str):
        self.retry.call(self._post_once, '/remove', {'email': email})


def build_member_list_hook(config: Config) -> MemberListHook:
    if config.member_list_webhook_url:
        return WebhookMemberListHook(config.member_list_webhook_url, config.member_list_api_key,
                                     retry=RetryPolicy.from_config(config),
                                     timeout=config.timeout_seconds)
    return LoggingMemberListHook()


# =============================================================================
# MEMBERSHIP CALCULATOR
# =============================================================================

class MembershipCalculator:
    """Derives member status from checked-in attendance."""

    def __init__(self, db: Database, config: Config, hook: MemberListHook = None):
        self.db = db
        self.config = config
        self.hook = hook or LoggingMemberListHook()

    def qualifies(self, event_name: str) -> bool:
        return not self.config.patterns.is_social(event_name)

    def _resolve(self, member_id_or_email: str, first_name: str = None,
                 last_name: str = None) -> Tuple[dict, bool]:
        if '@' in member_id_or_email:
            member = self.db.get_member_by_email(member_id_or_email)
            if member:
                return member, False
            self.db.upsert_member_stub(member_id_or_email, first_name, last_name)
            return self.db.get_member_by_email(member_id_or_email), True

        member = self.db.get_member(member_id_or_email)
        if not member:
            raise MemberNotFoundError(f"Member not found: {member_id_or_email}")
        return member, False

    def recalculate(self, member_id_or_email: str, first_name: str = None,
                    last_name: str = None) -> MembershipResult:
        member, created = self._resolve(member_id_or_email, first_name, last_name)
        tz = self.config.tz
        months = self.config.membership_window_months
        window_start = add_months(local_now(tz), -months)

        # Distinct events; two tickets for one event count once
        qualifying: Dict[str, datetime] = {}
        for row in self.db.get_checked_in_attendance(member['email']):
            event_dt = local_naive(parse_dt(row['event_date']), tz)
            if event_dt and self.qualifies(row['event_name']):
                qualifying[row['event_id']] = event_dt

        total = len(qualifying)
        recent = sum(1 for d in qualifying.values() if d >= window_start)
        is_active = (total >= self.config.membership_min_events
                     and recent >= self.config.membership_min_recent)

        last_event = max(qualifying.values()) if qualifying else None
        event_expiry = add_months(last_event, months) if last_event else None

        manual_expiry = local_naive(parse_dt(member.get('manual_expires_at')), tz)
        if member['manually_added'] and manual_expiry:
            # Manual overrides only ever extend
            expires = max(manual_expiry, event_expiry) if event_expiry else manual_expiry
        else:
            expires = event_expiry

        status_changed = member['is_active_member'] != is_active
        expires_iso = expires.isoformat(timespec='seconds') if expires else None
        last_iso = last_event.isoformat(timespec='seconds') if last_event else None

        self.db.update_member_status(member['id'], is_active, total, last_iso, expires_iso)
        log.info(f"[membership] {member['email']}: {total} events ({recent} recent), active: {is_active}")

        if status_changed:
            self._notify(self.db.get_member(member['id']), is_active)

        return MembershipResult(
            member_id=member['id'],
            email=member['email'],
            total_events=total,
            recent_events=recent,
            is_active=is_active,
            expires_at=expires_iso,
            last_event_date=last_iso,
            status_changed=status_changed,
            created=created,
        )

    def _notify(self, member: dict, became_active: bool):
        operation = 'add' if became_active else 'remove'
        try:
            if became_active:
                self.hook.add(member)
            else:
                self.hook.remove(member['email'])
        except Exception as e:
            log.error(f"[membership] Member list {operation} failed for {member['email']}: {e}")
            self.db.log_member_sync(member['id'], member['email'], operation, 'failed', str(e))
            return
        self.db.log_member_sync(member['id'], member['email'], operation, 'success')
        log.info(f"[membership] Member list {operation}: {member['email']}")

    def recalculate_many(self, emails: Iterable[str]) -> Tuple[List[MembershipResult], List[str]]:
        results, errors = [], []
        for email in emails:
            try:
                results.append(self.recalculate(email))
            except Exception as e:
                log.error(f"[membership] Error recalculating {email}: {e}")
                errors.append(f"{email}: {e}")
        return results, errors

    def recalculate_for_event(self, event_id: str) -> List[MembershipResult]:
        emails = self.db.get_event_emails(event_id, checked_in_only=True)
        log.info(f"[membership] Recalculating {len(emails)} checked-in attendees of {event_id}")
        results, _ = self.recalculate_many(emails)
        return results

    def find_events_needing_recalculation(self) -> List[dict]:
        """Events that started 2-3 hours ago."""
        now = local_now(self.config.tz)
        return self.db.get_events_between(now - timedelta(hours=3), now - timedelta(hours=2))

    def recalculate_recent_events(self) -> dict:
        events = self.find_events_needing_recalculation()
        log.info(f"[membership] Sweep found {len(events)} events to process")

        details = []
        for event in events:
            results = self.recalculate_for_event(event['id'])
            details.append({
                'event_id': event['id'],
                'event_name': event['name'],
                'event_date': event['event_date'],
                'members_updated': len(results),
            })

        return {'events_processed': len(events), 'results': details}

    def recalculate_all(self, start_offset: int = 0, checkpoint_every: int = 100) -> dict:
        emails = self.db.get_all_member_emails()
        result = {'total': len(emails), 'start_offset': start_offset, 'processed': 0,
                  'active': 0, 'changed': 0, 'errors': []}

        for i in range(start_offset, len(emails)):
            results, errors = self.recalculate_many([emails[i]])
            result['processed'] += 1
            result['errors'].extend(errors)
            for r in results:
                result['active'] += int(r.is_active)
                result['changed'] += int(r.status_changed)

            if (i + 1) % checkpoint_every == 0:
                log.info(f"[membership] Progress: {i + 1}/{len(emails)} (resume with --offset {i + 1})")

        log.info(f"[membership] Recalculated {result['processed']} members, "
                 f"{result['active']} active, {result['changed']} changed")
        return result


# =============================================================================
# SYNC ORCHESTRATOR
# =============================================================================

class SyncOrchestrator:
    """Per-event WooCommerce -> ledger reconciliation."""

    def __init__(self, db: Database, cache: FreshnessCache, client: WooCommerceClient,
                 config: Config, membership: MembershipCalculator = None,
                 extractor: TicketExtractor = None):
        self.db = db
        self.cache = cache
        self.client = client
        self.config = config
        self.membership = membership
        self.extractor = extractor or TicketExtractor()

    @staticmethod
    def sync_cache_key(event_id: str) -> str:
        return f"sync:event:{event_id}"

    @staticmethod
    def orders_cache_key(product_id: str, event_day: Optional[date]) -> str:
        day = event_day.isoformat() if event_day else 'all'
        return f"orders:product:{product_id}:date:{day}"

    def freeze_cutoff(self, event: dict) -> datetime:
        """23:00 venue time on the event's calendar date, as an aware instant."""
        tz = self.config.tz
        day = local_event_date(event['event_date'], tz)
        return datetime.combine(day, dtime(hour=self.config.freeze_hour), tzinfo=tz)

    def is_frozen(self, event: dict) -> bool:
        return utcnow() > self.freeze_cutoff(event)

    @staticmethod
    def product_ids(event: dict) -> List[str]:
        ids = []
        for pid in [event.get('woocommerce_product_id'), *event.get('merged_product_ids', [])]:
            if pid and str(pid) not in ids:
                ids.append(str(pid))
        return ids

    def sync(self, event_id: str, force_refresh: bool = False) -> SyncResult:
        try:
            return self._sync(event_id, force_refresh)
        except Exception as e:
            log.error(f"[sync] Unexpected error syncing {event_id}: {e}", exc_info=True)
            return SyncResult(event_id, synced=False, reason="error", error=str(e))

    def _sync(self, event_id: str, force_refresh: bool) -> SyncResult:
        event = self.db.get_event(event_id)
        if not event:
            return SyncResult(event_id, synced=False, reason="not_found")

        if event['merged_into_event_id']:
            log.info(f"[sync] {event['name']} was merged into {event['merged_into_event_id']}, skipping")
            return SyncResult(event_id, synced=False, reason="merged")

        if self.is_frozen(event):
            log.info(f"[sync] {event['name']} is past its {self.config.freeze_hour}:00 cutoff, "
                     f"using ledger records")
            return SyncResult(event_id, synced=False, reason="past_cutoff")

        product_ids = self.product_ids(event)
        if not product_ids:
            log.warning(f"[sync] {event['name']} has no WooCommerce product ID")
            return SyncResult(event_id, synced=False, reason="no_product_id")

        cache_key = self.sync_cache_key(event_id)
        if not force_refresh:
            age = self.cache.age_seconds(cache_key)
            if age is not None and age < self.config.sync_ttl_seconds:
                log.info(f"[sync] {event['name']} synced {age // 60} minutes ago, using cache")
                return SyncResult(event_id, synced=False, reason="cached", cache_age_seconds=age)

        log.info(f"[sync] Syncing {event['name']} across {len(product_ids)} product(s)")
        result = SyncResult(event_id, synced=True, reason="synced")
        touched = {}

        for product_id in product_ids:
            try:
                raw_orders = self._fetch_orders(product_id, event, force_refresh)
            except WooCommerceError as e:
                log.error(f"[sync] Orders for product {product_id} failed: {e}")
                result.failed_products.append(product_id)
                continue

            self._apply_orders(event_id, product_id, raw_orders, result, touched)
            result.products_synced += 1

        if result.products_synced == 0:
            return SyncResult(event_id, synced=False, reason="woocommerce_error",
                              failed_products=result.failed_products,
                              error=f"all {len(product_ids)} product(s) failed")

        if result.failed_products:
            result.reason = "partial"

        self.cache.set(cache_key, {
            'created': result.created,
            'updated': result.updated,
            'timestamp': now_iso(),
        }, self.config.sync_ttl_seconds, event_id=event_id)

        if self.membership and touched:
            self.membership.recalculate_many(touched)

        log.info(f"[sync] {event['name']}: {result.created} created, {result.updated} updated, "
                 f"{result.skipped} skipped, {result.errors} errors")
        return result

    def _fetch_orders(self, product_id: str, event: dict, force_refresh: bool) -> List[dict]:
        event_dt = local_naive(parse_dt(event['event_date']), self.config.tz)
        key = self.orders_cache_key(product_id, event_dt.date() if event_dt else None)

        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                log.info(f"[sync] Using {len(cached)} cached orders for product {product_id}")
                return cached

        orders = self.client.get_orders_for_product(product_id, event_dt)
        self.cache.set(key, orders, self.config.orders_ttl_seconds, event_id=event['id'])
        return orders

    def _apply_orders(self, event_id: str, product_id: str, raw_orders: List[Any],
                      result: SyncResult, touched: Dict[str, None]):
        for raw in raw_orders:
            order = decode_order(raw)
            if not order:
                log.warning(f"[sync] Skipping undecodable order payload for product {product_id}")
                continue

            line_items = [li for li in order.line_items if li.product_id == product_id]
            if not line_items:
                continue

            for line_item in line_items:
                for ticket in self.extractor.extract(order, line_item):
                    try:
                        outcome = self._upsert_ticket(event_id, ticket)
                    except sqlite3.Error as e:
                        log.error(f"[sync] Database error on ticket {ticket.ticket_id}: {e}")
                        result.errors += 1
                        continue

                    if outcome == 'created':
                        result.created += 1
                    elif outcome == 'updated':
                        result.updated += 1
                    else:
                        result.skipped += 1
                    if outcome in ('created', 'updated'):
                        touched[ticket.email] = None

    def _upsert_ticket(self, event_id: str, ticket: TicketHolder) -> str:
        existing = self.db.find_attendee_by_ticket(ticket.ticket_id, event_id)

        if existing:
            if existing['locally_modified']:
                return 'skipped'
            status = ticket.order_status
            if existing['order_status'] == SOFT_DELETED_STATUS:
                status = SOFT_DELETED_STATUS
            self.db.update_attendee_from_sync(existing['id'], ticket, status)
            outcome = 'updated'
        else:
            if ticket.order_status in INACTIVE_ORDER_STATUSES:
                return 'skipped'
            # The lookup is the primary defense; INSERT OR IGNORE is the safety net
            inserted = self.db.insert_attendee_from_sync(event_id, ticket)
            outcome = 'created' if inserted else 'duplicate'

        self.db.upsert_member_stub(ticket.email, ticket.first_name, ticket.last_name)
        return outcome

    def resync_all(self, start_offset: int = 0, force_refresh: bool = True,
                   checkpoint_every: int = 10, include_frozen: bool = False) -> BatchSyncResult:
        """Sequential pass over live events; restart from any offset is safe."""
        events = [e for e in self.db.get_events(live_only=True, with_product_only=True)
                  if include_frozen or not self.is_frozen(e)]
        batch = BatchSyncResult(total=len(events), start_offset=start_offset)
        log.info(f"[sync] Resyncing {len(events)} events from offset {start_offset}")

        for i in range(start_offset, len(events)):
            event = events[i]
            result = self.sync(event['id'], force_refresh=force_refresh)
            batch.processed += 1
            batch.created += result.created
            batch.updated += result.updated

            if result.synced:
                batch.synced += 1
            elif result.reason in ('woocommerce_error', 'error'):
                batch.failed += 1
            else:
                batch.not_synced += 1

            batch.details.append({
                'event_id': event['id'], 'name': event['name'],
                'synced': result.synced, 'reason': result.reason,
                'created': result.created, 'updated': result.updated,
            })

            if (i + 1) % checkpoint_every == 0:
                log.info(f"[sync] Progress: {i + 1}/{len(events)} (resume with --offset {i + 1})")

        log.info(f"[sync] Resync done: {batch.synced} synced, {batch.not_synced} not synced, "
                 f"{batch.failed} failed")
        return batch


# =============================================================================
# EVENT MERGE ENGINE
# =============================================================================

# Embedded dates trail the product name in every format the store has used
NAME_DATE_SUFFIXES = [
    re.compile(r'\s*-?\s*\d{1,2}/\d{1,2}/\d{4}\s*$'),                     # DD/MM/YYYY
    re.compile(r'\s*-?\s*\d{4}-\d{1,2}-\d{1,2}\s*$'),                     # YYYY-MM-DD
    re.compile(r'\s*-?\s*(?:[A-Za-z]+,\s+)?[A-Za-z]+\s+\d{1,2},?\s*\d{4}\s*$'),  # [Monday,] January 5, 2026
]

MAX_EVENT_NAME_LENGTH = 255


def _product_sort_key(product_id: Optional[str]) -> Tuple[int, int, str]:
    pid = str(product_id or '')
    if pid.isdigit():
        return (0, int(pid), pid)
    return (1, 0, pid)


class EventMergeEngine:
    """Finds same-day regular/members-only product pairs and folds them into one event."""

    LOCK_NAME = "event-merge"

    def __init__(self, db: Database, cache: FreshnessCache, membership: MembershipCalculator,
                 config: Config):
        self.db = db
        self.cache = cache
        self.membership = membership
        self.config = config
        self.patterns = config.patterns

    # === Name handling ===

    def strip_dates(self, name: str) -> str:
        name = (name or '').strip()
        for pattern in NAME_DATE_SUFFIXES:
            name = pattern.sub('', name).strip()
        return name

    def display_base(self, name: str) -> str:
        base = self.patterns.strip_members_only(self.strip_dates(name))
        base = re.sub(r'\s+', ' ', base)
        return base.strip(' -:|()')

    def name_base(self, name: str) -> str:
        return self.display_base(name).lower()

    @staticmethod
    def bases_related(a: str, b: str) -> bool:
        if not a or not b:
            return False
        if a == b:
            return True
        shorter, longer = sorted((a, b), key=len)
        return longer.startswith(shorter + ' ')

    def is_members_only_event(self, event: dict) -> bool:
        return bool(event.get('is_members_only')) or self.patterns.is_members_only(event['name'])

    def is_candidate_pair(self, a: dict, b: dict) -> bool:
        if self.patterns.should_never_merge(a['name']) or self.patterns.should_never_merge(b['name']):
            return False
        if self.is_members_only_event(a) == self.is_members_only_event(b):
            return False
        return self.bases_related(self.name_base(a['name']), self.name_base(b['name']))

    def best_regular_for(self, variant: dict, regulars: List[dict]) -> Optional[dict]:
        """Regular event a members-only variant belongs to: equal base first, then the closest prefix."""
        variant_base = self.name_base(variant['name'])
        matches = [r for r in regulars if self.is_candidate_pair(r, variant)]
        if not matches:
            return None
        # max() keeps the first of equal keys, so product order breaks ties
        return max(matches, key=lambda r: (
            self.name_base(r['name']) == variant_base,
            -abs(len(self.name_base(r['name'])) - len(variant_base)),
        ))

    # === Detection ===

    def find_duplicate_events(self) -> List[DuplicateGroup]:
        tz = self.config.tz
        by_day: Dict[date, List[dict]] = defaultdict(list)
        for event in self.db.get_events(live_only=True, with_product_only=True):
            day = local_event_date(event['event_date'], tz)
            if day and event['name'].strip():
                by_day[day].append(event)

        groups = []
        for day in sorted(by_day):
            day_events = sorted(by_day[day], key=lambda e: _product_sort_key(e['woocommerce_product_id']))
            if len(day_events) < 2:
                continue

            # Each members-only variant joins the one regular event it matches best
            members: Dict[str, List[dict]] = defaultdict(list)
            regulars = [e for e in day_events if not self.is_members_only_event(e)]
            for variant in day_events:
                if not self.is_members_only_event(variant):
                    continue
                best = self.best_regular_for(variant, regulars)
                if best:
                    members[best['id']].append(variant)

            for regular in regulars:
                if regular['id'] not in members:
                    continue
                group_events = [regular, *members[regular['id']]]
                for e in group_events:
                    e['attendee_count'] = self.db.count_attendees(e['id'])
                group_events.sort(key=lambda e: _product_sort_key(e['woocommerce_product_id']))
                groups.append(DuplicateGroup(day, group_events, self.display_base(regular['name'])))

        log.info(f"[merge] Found {len(groups)} duplicate groups")
        return groups

    # === Execution ===

    def merged_event_name(self, base: str, event_day: date) -> str:
        name = f"{base} - {format_event_date(event_day)}"
        if len(name) > MAX_EVENT_NAME_LENGTH:
            name = name[:MAX_EVENT_NAME_LENGTH - 3] + "..."
        return name

    def merge_group(self, group: DuplicateGroup) -> MergeResult:
        try:
            return self._merge_group(group)
        except Exception as e:
            log.error(f"[merge] Group '{group.shared_base}' on {group.event_day} failed: {e}")
            return MergeResult(success=False,
                               merged_event_ids=[ev['id'] for ev in group.events],
                               error=str(e))

    def _merge_group(self, group: DuplicateGroup) -> MergeResult:
        events = []
        for stale in group.events:
            event = self.db.get_event(stale['id'])
            if not event or event['merged_into_event_id']:
                raise CheckinError(f"Event {stale['id']} is no longer live")
            event['attendee_count'] = self.db.count_attendees(event['id'])
            events.append(event)
        if len(events) < 2:
            raise CheckinError("A merge group needs at least two events")

        # Fresh counts decide; product ordering breaks ties
        events.sort(key=lambda e: _product_sort_key(e['woocommerce_product_id']))
        primary = max(events, key=lambda e: e['attendee_count'])
        secondaries = [e for e in events if e['id'] != primary['id']]
        secondary_ids = [e['id'] for e in secondaries]

        regulars = [e for e in events if not self.is_members_only_event(e)]
        name_source = max(regulars, key=lambda e: e['attendee_count']) if regulars else primary
        new_name = self.merged_event_name(self.display_base(name_source['name']), group.event_day)

        product_ids = []
        for event in [primary, *secondaries]:
            for pid in [event['woocommerce_product_id'], *event['merged_product_ids']]:
                if pid and str(pid) not in product_ids:
                    product_ids.append(str(pid))
        absorbed = [pid for pid in product_ids if pid != primary['woocommerce_product_id']]

        log.info(f"[merge] Merging {[e['name'] for e in events]} into {primary['id']} as '{new_name}'")

        with self.db.transaction():
            moved = self.db.move_attendees(secondary_ids, primary['id'])
            self.db.set_event_merge_state(primary['id'], new_name, absorbed)
            self.db.update_event(primary['id'], is_members_only=False)
            self.db.repoint_tombstones(secondary_ids, primary['id'])
            if self.config.merge_mode == MergeMode.DELETE:
                self.db.delete_events(secondary_ids)
            else:
                self.db.tombstone_events(secondary_ids, primary['id'])

        for pid in product_ids:
            self.cache.invalidate_prefix(f"orders:product:{pid}:")
        self.cache.invalidate(SyncOrchestrator.sync_cache_key(primary['id']))
        for secondary_id in secondary_ids:
            self.cache.invalidate_event(secondary_id)

        emails = self.db.get_event_emails(primary['id'])
        if self.membership:
            self.membership.recalculate_many(emails)

        log.info(f"[merge] Moved {moved} attendees, {len(emails)} members recalculated")
        return MergeResult(
            success=True,
            primary_event_id=primary['id'],
            primary_event_name=new_name,
            merged_event_ids=secondary_ids,
            product_ids=product_ids,
            attendees_moved=moved,
            affected_member_count=len(emails),
        )

    def merge_all(self) -> BatchMergeResult:
        lock = AdvisoryLock(self.db, self.LOCK_NAME, self.config.merge_lock_ttl_seconds)
        with lock.held() as acquired:
            if not acquired:
                log.info("[merge] Another merge pass holds the lock, skipping")
                return BatchMergeResult(lock_acquired=False)

            batch = BatchMergeResult()
            groups = self.find_duplicate_events()
            batch.groups_found = len(groups)

            for group in groups:
                result = self.merge_group(group)
                if result.success:
                    batch.groups_merged += 1
                    batch.total_events_merged += len(result.merged_event_ids) + 1
                    batch.total_attendees_affected += result.attendees_moved
                else:
                    batch.groups_failed += 1

                batch.details.append({
                    'event_day': group.event_day.isoformat(),
                    'original_names': [e['name'] for e in group.events],
                    'merged_name': result.primary_event_name,
                    'attendees_moved': result.attendees_moved,
                    'success': result.success,
                    'error': result.error,
                })

            log.info(f"[merge] {batch.groups_merged}/{batch.groups_found} groups merged, "
                     f"{batch.groups_failed} failed")
            return batch


# =============================================================================
# EVENT DISCOVERY
# =============================================================================

NAME_DATE_DMY = re.compile(r'(\d{1,2})/(\d{1,2})/(\d{4})')
NAME_DATE_YMD = re.compile(r'(\d{4})-(\d{1,2})-(\d{1,2})')
META_DATE_COMPACT = re.compile(r'^\d{8}$')


def _safe_date(year: str, month: str, day: str) -> Optional[datetime]:
    try:
        return datetime(int(year), int(month), int(day))
    except ValueError:
        return None


def extract_event_date(product: dict, tz: ZoneInfo = None) -> Optional[datetime]:
    """Event date from the product name, falling back to the event_date meta field.

    Zoned meta values are converted to venue wall-clock time when tz is given.
    """
    name = _text(product.get('name'))

    match = NAME_DATE_DMY.search(name)
    if match:
        day, month, year = match.groups()
        found = _safe_date(year, month, day)
        if found:
            return found

    match = NAME_DATE_YMD.search(name)
    if match:
        year, month, day = match.groups()
        found = _safe_date(year, month, day)
        if found:
            return found

    raw = dict(_decode_meta(product.get('meta_data'))).get('event_date')
    value = _text(raw)
    if META_DATE_COMPACT.match(value):
        return _safe_date(value[:4], value[4:6], value[6:8])
    parsed = parse_dt(value)
    if parsed and tz is not None:
        return local_naive(parsed, tz)
    return parsed.replace(tzinfo=None) if parsed else None


def _mentions_event(terms: Any) -> bool:
    if not isinstance(terms, list):
        return False
    for term in terms:
        if isinstance(term, dict) and any(
            'event' in _text(term.get(k)).lower() for k in ('name', 'slug')
        ):
            return True
    return False


def is_event_product(product: dict) -> bool:
    if _mentions_event(product.get('categories')):
        return True
    if extract_event_date(product):
        return True
    return _mentions_event(product.get('tags'))


class EventDiscovery:
    """Creates and refreshes events from WooCommerce products, then merges duplicates."""

    def __init__(self, db: Database, client: WooCommerceClient, merge_engine: EventMergeEngine,
                 config: Config):
        self.db = db
        self.client = client
        self.merge_engine = merge_engine
        self.config = config

    def discover(self, merge: bool = True) -> dict:
        try:
            products = self.client.get_products()
        except WooCommerceError as e:
            log.error(f"[discover] Could not fetch products: {e}")
            return {'success': False, 'error': str(e)}

        event_products = [p for p in products if isinstance(p, dict) and is_event_product(p)]
        log.info(f"[discover] {len(event_products)} event products out of {len(products)}")

        absorbed = self.db.get_absorbed_product_ids()
        created = updated = skipped = 0

        for product in event_products:
            product_id = _text(product.get('id'))
            name = _text(product.get('name'))
            event_date = extract_event_date(product, self.config.tz)
            if not product_id or not name or not event_date:
                log.warning(f"[discover] Could not extract a date from product: {name or product_id}")
                skipped += 1
                continue

            if product_id in absorbed:
                skipped += 1
                continue

            members_only = self.config.patterns.is_members_only(name)
            existing = self.db.get_event_by_product(product_id)

            if existing is None:
                self.db.insert_event(name, event_date, product_id, is_members_only=members_only)
                log.info(f"[discover] Created event: {name} on {event_date.date()}"
                         f"{' (members-only)' if members_only else ''}")
                created += 1
            elif existing['merged_into_event_id']:
                skipped += 1
            elif existing['merged_product_ids']:
                # A merged primary keeps its combined name
                self.db.update_event(existing['id'], event_date=event_date)
                updated += 1
            else:
                self.db.update_event(existing['id'], name=name, event_date=event_date,
                                     is_members_only=members_only)
                updated += 1

        log.info(f"[discover] {created} created, {updated} updated, {skipped} skipped")
        result = {
            'success': True,
            'total_products': len(products),
            'event_products': len(event_products),
            'events': {'created': created, 'updated': updated, 'skipped': skipped},
        }
        if merge:
            result['merges'] = asdict(self.merge_engine.merge_all())
        return result


# =============================================================================
# FLASK API
# =============================================================================

def create_app(ledger: 'CheckinLedger') -> Flask:
    """Create Flask app with all endpoints."""
    app = Flask(__name__)
    CORS(app)

    db = ledger.db

    def _event(event_id: str) -> dict:
        event = db.get_event(event_id)
        if not event:
            raise EventNotFoundError(f"Event not found: {event_id}")
        return event

    def _flag(name: str, default: str = 'false') -> bool:
        return request.args.get(name, default).lower() == 'true'

    @app.errorhandler(CheckinError)
    def handle_checkin_error(e):
        status = 404 if isinstance(e, (EventNotFoundError, MemberNotFoundError)) else 500
        return jsonify({'error': str(e)}), status

    @app.route('/api/health')
    def health():
        return jsonify({'status': 'ok', 'time': now_iso()})

    # === Events ===

    @app.route('/api/events')
    def events():
        """List events; tombstones only on request."""
        include_merged = _flag('include_merged')
        return jsonify(db.get_events(live_only=not include_merged))

    @app.route('/api/events/<event_id>')
    def event_detail(event_id: str):
        event = _event(event_id)
        event['attendee_count'] = db.count_attendees(event_id)
        event['frozen'] = ledger.orchestrator.is_frozen(event)
        return jsonify(event)

    @app.route('/api/events/<event_id>/attendees')
    def event_attendees(event_id: str):
        event = _event(event_id)
        attendees = db.get_attendees_for_event(event_id)
        return jsonify({
            'event': event,
            'attendees': attendees,
            'total': len(attendees),
            'checked_in': sum(1 for a in attendees if a['checked_in']),
        })

    @app.route('/api/events/<event_id>/sync', methods=['POST'])
    def sync_event(event_id: str):
        result = ledger.sync(event_id, force_refresh=_flag('force'))
        status = 404 if result.reason == 'not_found' else 200
        return jsonify(asdict(result)), status

    @app.route('/api/sync/all', methods=['POST'])
    def sync_all():
        offset = request.args.get('offset', 0, type=int)
        return jsonify(asdict(ledger.resync_all(start_offset=offset)))

    @app.route('/api/discover', methods=['POST'])
    def discover():
        result = ledger.discover()
        return jsonify(result), (200 if result.get('success') else 502)

    # === Merging ===

    @app.route('/api/merge/candidates')
    def merge_candidates():
        groups = ledger.merge_engine.find_duplicate_events()
        return jsonify({'groups': [g.to_dict() for g in groups], 'count': len(groups)})

    @app.route('/api/merge', methods=['POST'])
    def merge():
        result = ledger.merge()
        return jsonify(asdict(result)), (200 if result.lock_acquired else 409)

    # === Members ===

    @app.route('/api/members')
    def members():
        active_only = _flag('active')
        limit = request.args.get('limit', 100, type=int)
        offset = request.args.get('offset', 0, type=int)
        return jsonify({
            'members': db.get_members(active_only, limit, offset),
            'total': db.get_member_count(active_only),
            'limit': limit,
            'offset': offset,
        })

    @app.route('/api/members/<email>')
    def member_detail(email: str):
        member = db.get_member_by_email(email)
        if not member:
            return jsonify({'error': 'Member not found'}), 404
        return jsonify({
            'member': member,
            'attendance': db.get_checked_in_attendance(email),
            'sync_log': db.get_member_sync_log(email),
        })

    @app.route('/api/members/<member_id_or_email>/recalculate', methods=['POST'])
    def recalculate_member(member_id_or_email: str):
        return jsonify(asdict(ledger.recalculate(member_id_or_email)))

    @app.route('/api/members', methods=['POST'])
    def add_member():
        body = request.get_json(silent=True) or {}
        if not body.get('email'):
            return jsonify({'error': 'email is required'}), 400
        member = db.add_manual_member(body['email'], body.get('first_name'), body.get('last_name'),
                                      body.get('manual_expires_at'), body.get('notes'))
        result = ledger.recalculate(member['email'])
        return jsonify({'member': db.get_member(member['id']), 'membership': asdict(result)}), 201

    # === Cron ===

    @app.route('/api/cron/recalculate-memberships', methods=['POST'])
    def cron_recalculate():
        return jsonify(ledger.membership.recalculate_recent_events())

    @app.route('/api/cron/cleanup-cache', methods=['POST'])
    def cron_cleanup_cache():
        return jsonify({'deleted': ledger.cache.sweep_expired()})

    # === Operator actions ===

    @app.route('/api/events/<event_id>/attendees', methods=['POST'])
    def add_attendee(event_id: str):
        _event(event_id)
        body = request.get_json(silent=True) or {}
        if not body.get('email'):
            return jsonify({'error': 'email is required'}), 400
        attendee_id = db.add_manual_attendee(event_id, body['email'], body.get('first_name'),
                                             body.get('last_name'),
                                             checked_in=bool(body.get('checked_in')))
        db.upsert_member_stub(body['email'], body.get('first_name'), body.get('last_name'))
        return jsonify(db.get_attendee(attendee_id)), 201

    @app.route('/api/attendees/<attendee_id>/check-in', methods=['POST'])
    def check_in(attendee_id: str):
        body = request.get_json(silent=True) or {}
        if not db.set_checked_in(attendee_id, bool(body.get('checked_in', True))):
            return jsonify({'error': 'Attendee not found'}), 404
        return jsonify(db.get_attendee(attendee_id))

    @app.route('/api/attendees/<attendee_id>', methods=['PATCH'])
    def edit_attendee(attendee_id: str):
        body = request.get_json(silent=True) or {}
        try:
            found = db.update_attendee_local(attendee_id, **body)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        if not found:
            return jsonify({'error': 'Attendee not found'}), 404
        return jsonify(db.get_attendee(attendee_id))

    @app.route('/api/attendees/<attendee_id>', methods=['DELETE'])
    def delete_attendee(attendee_id: str):
        if _flag('hard'):
            found = db.delete_attendee(attendee_id)
        else:
            found = db.soft_delete_attendee(attendee_id)
        if not found:
            return jsonify({'error': 'Attendee not found'}), 404
        return jsonify({'deleted': attendee_id, 'hard': _flag('hard')})

    return app


# =============================================================================
# MAIN
# =============================================================================

class CheckinLedger:
    """Main interface - wires every component to one config and one database."""

    def __init__(self, config: Config = None, client: WooCommerceClient = None,
                 hook: MemberListHook = None):
        self.config = config or Config.from_env()
        self.db = Database(self.config.db_path)
        self.cache = FreshnessCache(self.db)
        self.client = client or WooCommerceClient(self.config)
        self.membership = MembershipCalculator(self.db, self.config,
                                               hook or build_member_list_hook(self.config))
        self.orchestrator = SyncOrchestrator(self.db, self.cache, self.client, self.config,
                                             membership=self.membership)
        self.merge_engine = EventMergeEngine(self.db, self.cache, self.membership, self.config)
        self.discovery = EventDiscovery(self.db, self.client, self.merge_engine, self.config)

    def sync(self, event_id: str, force_refresh: bool = False) -> SyncResult:
        return self.orchestrator.sync(event_id, force_refresh)

    def resync_all(self, start_offset: int = 0, force_refresh: bool = True) -> BatchSyncResult:
        return self.orchestrator.resync_all(start_offset, force_refresh)

    def discover(self) -> dict:
        return self.discovery.discover()

    def merge(self) -> BatchMergeResult:
        return self.merge_engine.merge_all()

    def recalculate(self, member_id_or_email: str) -> MembershipResult:
        return self.membership.recalculate(member_id_or_email)

    def sweep(self) -> dict:
        return self.membership.recalculate_recent_events()

    def serve(self, host: str = '0.0.0.0', port: int = 5000):
        """Start API server."""
        app = create_app(self)
        print(f"\nCheck-in ledger API running on http://{host}:{port}")
        print(f"   Events:  http://{host}:{port}/api/events")
        print(f"   Members: http://{host}:{port}/api/members\n")
        app.run(host=host, port=port)

    def print_report(self):
        """Print ledger summary."""
        events = self.db.get_events(live_only=True)
        upcoming = [e for e in events if not self.orchestrator.is_frozen(e)]

        print("=" * 70)
        print("CHECK-IN LEDGER")
        print(f"{local_now(self.config.tz).strftime('%A, %B %d, %Y')}")
        print("=" * 70)

        print(f"\nEVENTS")
        print(f"   Live: {len(events)} ({len(upcoming)} still syncing)")
        print(f"   Members: {self.db.get_member_count():,} "
              f"({self.db.get_member_count(active_only=True):,} active)")

        print(f"\nUPCOMING")
        print("-" * 70)
        for e in upcoming[:20]:
            merged = f" +{len(e['merged_product_ids'])} merged" if e['merged_product_ids'] else ""
            print(f"   {e['event_date'][:16]}  {e['name']}  "
                  f"({self.db.count_attendees(e['id'])} attendees{merged})")

        print("\n" + "=" * 70)


def create_app_with_db():
    """Factory function for gunicorn deployment."""
    return create_app(CheckinLedger())


def _arg_value(flag: str, default: int) -> int:
    if flag in sys.argv:
        try:
            return int(sys.argv[sys.argv.index(flag) + 1])
        except (IndexError, ValueError):
            print(f"Ignoring invalid {flag} value")
    return default


def main():
    if len(sys.argv) < 2:
        print("""
CHECK-IN LEDGER - WooCommerce attendee reconciliation

Commands:
    sync <event_id> [--force]   Sync one event's attendees
    resync [--offset N]         Force-sync every live event, resumable from N
    discover                    Create events from WooCommerce products, then merge
    merge                       Merge same-day members-only duplicates
    member <id_or_email>        Recalculate one member
    recalc-all [--offset N]     Recalculate every member
    sweep                       Recalculate members for events that ended 2-3h ago
    cleanup-cache               Delete expired cache entries
    report                      Print ledger summary
    serve                       Start API server

First time:
    python checkin_unified.py discover
    python checkin_unified.py resync
        """)
        return

    cmd = sys.argv[1].lower()
    ledger = CheckinLedger()

    if cmd == 'sync':
        if len(sys.argv) < 3:
            print("Usage: sync <event_id> [--force]")
            return
        result = ledger.sync(sys.argv[2], force_refresh='--force' in sys.argv)
        print(f"\n{'✓' if result.synced else '✗'} {result.reason}: "
              f"{result.created} created, {result.updated} updated, {result.skipped} skipped")
        if result.failed_products:
            print(f"   Failed products: {', '.join(result.failed_products)}")

    elif cmd == 'resync':
        batch = ledger.resync_all(start_offset=_arg_value('--offset', 0))
        print(f"\n✓ {batch.synced} synced, {batch.not_synced} not synced, {batch.failed} failed "
              f"({batch.created} created, {batch.updated} updated)")

    elif cmd == 'discover':
        result = ledger.discover()
        if not result.get('success'):
            print(f"\n✗ Discovery failed: {result.get('error')}")
            return
        ev = result['events']
        print(f"\n✓ Events: {ev['created']} created, {ev['updated']} updated, {ev['skipped']} skipped")
        print(f"✓ Merges: {result['merges']['groups_merged']}/{result['merges']['groups_found']}")

    elif cmd == 'merge':
        batch = ledger.merge()
        if not batch.lock_acquired:
            print("\nAnother merge is running")
            return
        print(f"\n✓ {batch.groups_merged}/{batch.groups_found} groups merged, "
              f"{batch.total_attendees_affected} attendees moved")
        for d in batch.details:
            mark = '✓' if d['success'] else '✗'
            print(f"   {mark} {d['event_day']}: {' + '.join(d['original_names'])}")
            if d['error']:
                print(f"     {d['error']}")

    elif cmd == 'member':
        if len(sys.argv) < 3:
            print("Usage: member <id_or_email>")
            return
        try:
            r = ledger.recalculate(sys.argv[2])
        except MemberNotFoundError as e:
            print(str(e))
            return
        print(f"\n{r.email}")
        print(f"   Events: {r.total_events} ({r.recent_events} in the last "
              f"{ledger.config.membership_window_months} months)")
        print(f"   Active: {r.is_active} | Expires: {r.expires_at or '-'}")

    elif cmd == 'recalc-all':
        result = ledger.membership.recalculate_all(start_offset=_arg_value('--offset', 0))
        print(f"\n✓ {result['processed']} members, {result['active']} active, "
              f"{result['changed']} changed, {len(result['errors'])} errors")

    elif cmd == 'sweep':
        result = ledger.sweep()
        print(f"\n✓ {result['events_processed']} events processed")

    elif cmd == 'cleanup-cache':
        print(f"\n✓ {ledger.cache.sweep_expired()} expired cache entries deleted")

    elif cmd == 'report':
        ledger.print_report()

    elif cmd == 'serve':
        ledger.serve(port=int(os.environ.get('PORT', '5000')))

    else:
        print(f"Unknown command: {cmd}")


if __name__ == "__main__":
    main()
