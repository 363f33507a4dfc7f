"""
Persistence for the institution directory.

`DirectoryRepository` declares every read and write the sync pipeline issues;
the pipeline never talks to a database directly. `SQLiteDirectoryRepository`
is the bundled implementation backed by a single SQLite file.
"""

import json
import re
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Any, Iterable

from .logging_manager import get_logger
from .models import (
    ApiBudgetSettings, ApiOperation, ApiService, ApiUsageRecord, Contact, CreateContactInput,
    CreateDivisionInput, Division, Institution, InstitutionSyncSettings, LocationType,
    MonthlyUsage, SyncFrequency, SyncLogEntry, SyncStatus,
)

logger = get_logger(__name__)


def slugify(name: str) -> str:
    """Division slug: lower-cased, runs of non-alphanumerics become a single dash."""
    return re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _new_id() -> str:
    return uuid.uuid4().hex


class DirectoryRepository(ABC):
    """Storage port used by BudgetGuard, ReconciliationEngine, SyncLog and SyncOrchestrator."""

    # Institutions

    @abstractmethod
    def create_institution(self, name: str, institution_id: Optional[str] = None,
                           sync_settings: Optional[InstitutionSyncSettings] = None) -> Institution:
        ...

    @abstractmethod
    def get_institution(self, institution_id: str) -> Optional[Institution]:
        ...

    @abstractmethod
    def list_institutions(self) -> List[Institution]:
        ...

    @abstractmethod
    def update_sync_settings(self, institution_id: str, **fields) -> InstitutionSyncSettings:
        """Update any of source_url, content_hash, last_synced_at, auto_sync_enabled, sync_frequency."""

    # Divisions

    @abstractmethod
    def get_divisions(self, institution_id: str) -> List[Division]:
        ...

    @abstractmethod
    def get_division_by_name(self, institution_id: str, name: str) -> Optional[Division]:
        ...

    @abstractmethod
    def find_division(self, institution_id: str, name: str) -> Optional[Division]:
        """Active division matching `name` exactly, or else by slug."""

    @abstractmethod
    def create_division(self, data: CreateDivisionInput) -> Division:
        ...

    @abstractmethod
    def bulk_create_divisions(self, institution_id: str, names: Iterable[str]) -> List[Division]:
        """Return one division per name, creating only the ones that do not exist yet."""

    # Contacts

    @abstractmethod
    def get_contacts(self, institution_id: str, division_id: Optional[str] = None,
                     active_only: bool = True) -> List[Contact]:
        ...

    @abstractmethod
    def find_contact_by_email(self, institution_id: str, email: str) -> Optional[Contact]:
        ...

    @abstractmethod
    def create_contact(self, data: CreateContactInput) -> Contact:
        ...

    @abstractmethod
    def update_contact(self, contact_id: str, **fields) -> Contact:
        ...

    @abstractmethod
    def replace_contacts(self, institution_id: str, contacts: Iterable[CreateContactInput]) -> int:
        """Delete every contact of the institution and insert `contacts`, all or nothing."""

    @abstractmethod
    def recompute_contact_counts(self, institution_id: str) -> None:
        ...

    # API usage and budget

    @abstractmethod
    def add_api_usage(self, record: ApiUsageRecord) -> ApiUsageRecord:
        ...

    @abstractmethod
    def get_monthly_usage(self, month_key: str) -> MonthlyUsage:
        ...

    @abstractmethod
    def get_budget_settings(self) -> Optional[ApiBudgetSettings]:
        ...

    @abstractmethod
    def save_budget_settings(self, settings: ApiBudgetSettings) -> ApiBudgetSettings:
        ...

    # Sync logs

    @abstractmethod
    def add_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        ...

    @abstractmethod
    def get_sync_logs(self, institution_id: str, limit: int = 10) -> List[SyncLogEntry]:
        ...

    # Leases

    @abstractmethod
    def acquire_lease(self, institution_id: str, owner: str, ttl_seconds: int) -> bool:
        """Take or extend the sync lease; False when another owner holds a live lease."""

    @abstractmethod
    def release_lease(self, institution_id: str, owner: str) -> None:
        ...


class SQLiteDirectoryRepository(DirectoryRepository):
    """
    DirectoryRepository stored in one SQLite file.

    Every operation opens its own connection, so an instance can be shared by
    the CLI and by several orchestrators in the same process.
    """

    def __init__(self, database_path: str = "./cache/instintel.sqlite"):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self):
        """Initialize the directory database."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS institutions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    source_url TEXT,
                    content_hash TEXT,
                    last_synced_at TEXT,
                    auto_sync_enabled BOOLEAN DEFAULT FALSE,
                    sync_frequency TEXT NOT NULL DEFAULT 'weekly',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS divisions (
                    id TEXT PRIMARY KEY,
                    institution_id TEXT NOT NULL REFERENCES institutions(id),
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    display_order INTEGER DEFAULT 0,
                    contact_count INTEGER DEFAULT 0,
                    address TEXT,
                    phones TEXT NOT NULL DEFAULT '[]',  -- JSON array
                    fax TEXT,
                    email TEXT,
                    location_type TEXT,
                    district TEXT,
                    is_active BOOLEAN DEFAULT TRUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (institution_id, slug)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS contacts (
                    id TEXT PRIMARY KEY,
                    division_id TEXT NOT NULL REFERENCES divisions(id),
                    institution_id TEXT NOT NULL REFERENCES institutions(id),
                    position TEXT NOT NULL,
                    name TEXT,
                    phones TEXT NOT NULL DEFAULT '[]',  -- JSON array
                    email TEXT,
                    fax TEXT,
                    is_head BOOLEAN DEFAULT FALSE,
                    hierarchy_level INTEGER DEFAULT 5,
                    display_order INTEGER DEFAULT 0,
                    is_active BOOLEAN DEFAULT TRUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_usage (
                    id TEXT PRIMARY KEY,
                    service TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    institution_id TEXT,
                    tokens_used INTEGER NOT NULL,
                    cost_usd REAL NOT NULL,
                    month_key TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS budget_settings (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    monthly_limit_usd REAL NOT NULL,
                    alert_threshold_percent INTEGER NOT NULL,
                    pause_on_exhausted BOOLEAN NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_logs (
                    id TEXT PRIMARY KEY,
                    institution_id TEXT NOT NULL,
                    source_url TEXT NOT NULL,
                    content_hash TEXT,
                    status TEXT NOT NULL,
                    contacts_found INTEGER DEFAULT 0,
                    contacts_imported INTEGER DEFAULT 0,
                    divisions_created INTEGER DEFAULT 0,
                    changes_detected BOOLEAN DEFAULT FALSE,
                    tokens_used INTEGER DEFAULT 0,
                    cost_usd REAL DEFAULT 0,
                    error_message TEXT,
                    synced_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_leases (
                    institution_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_divisions_institution ON divisions(institution_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_divisions_name ON divisions(institution_id, name)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_institution ON contacts(institution_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(institution_id, email)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_division ON contacts(division_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_month ON api_usage(month_key)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_logs_institution ON sync_logs(institution_id, synced_at)")

    # ========================================
    # Row mapping
    # ========================================

    @staticmethod
    def _row_to_institution(row) -> Institution:
        return Institution(
            id=row['id'],
            name=row['name'],
            sync_settings=InstitutionSyncSettings(
                source_url=row['source_url'],
                content_hash=row['content_hash'],
                last_synced_at=_from_iso(row['last_synced_at']),
                auto_sync_enabled=bool(row['auto_sync_enabled']),
                sync_frequency=SyncFrequency(row['sync_frequency']),
            ),
            created_at=_from_iso(row['created_at']),
        )

    @staticmethod
    def _row_to_division(row) -> Division:
        return Division(
            id=row['id'],
            institution_id=row['institution_id'],
            name=row['name'],
            slug=row['slug'],
            display_order=row['display_order'],
            contact_count=row['contact_count'],
            address=row['address'],
            phones=json.loads(row['phones']),
            fax=row['fax'],
            email=row['email'],
            location_type=LocationType(row['location_type']) if row['location_type'] else None,
            district=row['district'],
            is_active=bool(row['is_active']),
            created_at=_from_iso(row['created_at']),
            updated_at=_from_iso(row['updated_at']),
        )

    @staticmethod
    def _row_to_contact(row) -> Contact:
        return Contact(
            id=row['id'],
            division_id=row['division_id'],
            institution_id=row['institution_id'],
            position=row['position'],
            name=row['name'],
            phones=json.loads(row['phones']),
            email=row['email'],
            fax=row['fax'],
            is_head=bool(row['is_head']),
            hierarchy_level=row['hierarchy_level'],
            display_order=row['display_order'],
            is_active=bool(row['is_active']),
            created_at=_from_iso(row['created_at']),
            updated_at=_from_iso(row['updated_at']),
        )

    @staticmethod
    def _row_to_sync_log(row) -> SyncLogEntry:
        return SyncLogEntry(
            id=row['id'],
            institution_id=row['institution_id'],
            source_url=row['source_url'],
            content_hash=row['content_hash'],
            status=SyncStatus(row['status']),
            contacts_found=row['contacts_found'],
            contacts_imported=row['contacts_imported'],
            divisions_created=row['divisions_created'],
            changes_detected=bool(row['changes_detected']),
            tokens_used=row['tokens_used'],
            cost_usd=row['cost_usd'],
            error_message=row['error_message'],
            synced_at=_from_iso(row['synced_at']),
        )

    # ========================================
    # Institutions
    # ========================================

    def create_institution(self, name: str, institution_id: Optional[str] = None,
                           sync_settings: Optional[InstitutionSyncSettings] = None) -> Institution:
        settings = sync_settings or InstitutionSyncSettings()
        institution_id = institution_id or _new_id()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO institutions (id, name, source_url, content_hash, last_synced_at,
                                             auto_sync_enabled, sync_frequency, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (institution_id, name, settings.source_url, settings.content_hash,
                 _to_iso(settings.last_synced_at), settings.auto_sync_enabled,
                 SyncFrequency(settings.sync_frequency).value, _now().isoformat())
            )
        logger.info(f"Created institution {institution_id}", extra={'details': {'institution_id': institution_id, 'name': name}})
        return self.get_institution(institution_id)

    def get_institution(self, institution_id: str) -> Optional[Institution]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM institutions WHERE id = ?", (institution_id,)).fetchone()
        return self._row_to_institution(row) if row else None

    def list_institutions(self) -> List[Institution]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM institutions ORDER BY name").fetchall()
        return [self._row_to_institution(row) for row in rows]

    def update_sync_settings(self, institution_id: str, **fields) -> InstitutionSyncSettings:
        allowed = {'source_url', 'content_hash', 'last_synced_at', 'auto_sync_enabled', 'sync_frequency'}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown sync settings fields: {sorted(unknown)}")

        values: Dict[str, Any] = {}
        for key, value in fields.items():
            if key == 'last_synced_at':
                value = _to_iso(value)
            elif key == 'sync_frequency':
                value = SyncFrequency(value).value
            values[key] = value

        if values:
            assignments = ", ".join(f"{key} = ?" for key in values)
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE institutions SET {assignments} WHERE id = ?",
                    (*values.values(), institution_id)
                )
                if cursor.rowcount == 0:
                    raise KeyError(f"Institution not found: {institution_id}")

        institution = self.get_institution(institution_id)
        if institution is None:
            raise KeyError(f"Institution not found: {institution_id}")
        return institution.sync_settings

    # ========================================
    # Divisions
    # ========================================

    def get_divisions(self, institution_id: str) -> List[Division]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM divisions WHERE institution_id = ? AND is_active ORDER BY display_order, name",
                (institution_id,)
            ).fetchall()
        return [self._row_to_division(row) for row in rows]

    def get_division_by_name(self, institution_id: str, name: str) -> Optional[Division]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM divisions WHERE institution_id = ? AND name = ? AND is_active",
                (institution_id, name)
            ).fetchone()
        return self._row_to_division(row) if row else None

    def find_division(self, institution_id: str, name: str) -> Optional[Division]:
        division = self.get_division_by_name(institution_id, name)
        if division is not None:
            return division
        with self._connect() as conn:
            row = self._get_division_by_slug(conn, institution_id, slugify(name))
        return self._row_to_division(row) if row and row['is_active'] else None

    def _get_division_by_slug(self, conn, institution_id: str, slug: str):
        return conn.execute(
            "SELECT * FROM divisions WHERE institution_id = ? AND slug = ?",
            (institution_id, slug)
        ).fetchone()

    def _next_division_order(self, conn, institution_id: str) -> int:
        row = conn.execute(
            "SELECT COALESCE(MAX(display_order), -1) + 1 FROM divisions WHERE institution_id = ?",
            (institution_id,)
        ).fetchone()
        return row[0]

    def _insert_division(self, conn, data: CreateDivisionInput, display_order: int) -> str:
        division_id = _new_id()
        now = _now().isoformat()
        slug = data.slug or slugify(data.name)
        if self._get_division_by_slug(conn, data.institution_id, slug) is not None:
            slug = f"{slug}-{division_id[:8]}"
        conn.execute(
            """INSERT INTO divisions (id, institution_id, name, slug, display_order, contact_count,
                                      address, phones, fax, email, location_type, district,
                                      is_active, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, TRUE, ?, ?)""",
            (division_id, data.institution_id, data.name, slug, display_order,
             data.address, json.dumps(data.phones, ensure_ascii=False), data.fax, data.email,
             LocationType(data.location_type).value if data.location_type else None,
             data.district, now, now)
        )
        return division_id

    def create_division(self, data: CreateDivisionInput) -> Division:
        with self._connect() as conn:
            order = data.display_order or self._next_division_order(conn, data.institution_id)
            division_id = self._insert_division(conn, data, order)
            row = conn.execute("SELECT * FROM divisions WHERE id = ?", (division_id,)).fetchone()
        logger.info(f"Created division '{data.name}'", extra={'details': {
            'institution_id': data.institution_id, 'division_id': division_id
        }})
        return self._row_to_division(row)

    def bulk_create_divisions(self, institution_id: str, names: Iterable[str]) -> List[Division]:
        divisions = []
        with self._connect() as conn:
            order = self._next_division_order(conn, institution_id)
            for name in names:
                row = self._get_division_by_slug(conn, institution_id, slugify(name))
                if row is None:
                    row = conn.execute(
                        "SELECT * FROM divisions WHERE institution_id = ? AND name = ?",
                        (institution_id, name)
                    ).fetchone()
                if row is None:
                    division_id = self._insert_division(
                        conn, CreateDivisionInput(institution_id=institution_id, name=name), order
                    )
                    order += 1
                    row = conn.execute("SELECT * FROM divisions WHERE id = ?", (division_id,)).fetchone()
                    logger.info(f"Created division '{name}'", extra={'details': {
                        'institution_id': institution_id, 'division_id': division_id
                    }})
                elif not row['is_active']:
                    conn.execute(
                        "UPDATE divisions SET is_active = TRUE, updated_at = ? WHERE id = ?",
                        (_now().isoformat(), row['id'])
                    )
                    row = conn.execute("SELECT * FROM divisions WHERE id = ?", (row['id'],)).fetchone()
                divisions.append(self._row_to_division(row))
        return divisions

    # ========================================
    # Contacts
    # ========================================

    def get_contacts(self, institution_id: str, division_id: Optional[str] = None,
                     active_only: bool = True) -> List[Contact]:
        query = "SELECT * FROM contacts WHERE institution_id = ?"
        params: List[Any] = [institution_id]
        if division_id:
            query += " AND division_id = ?"
            params.append(division_id)
        if active_only:
            query += " AND is_active"
        query += " ORDER BY display_order, created_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_contact(row) for row in rows]

    def find_contact_by_email(self, institution_id: str, email: str) -> Optional[Contact]:
        if not email:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM contacts WHERE institution_id = ? AND email = ?
                   ORDER BY is_active DESC, created_at LIMIT 1""",
                (institution_id, email.strip().lower())
            ).fetchone()
        return self._row_to_contact(row) if row else None

    def _insert_contact(self, conn, data: CreateContactInput) -> str:
        owner = conn.execute("SELECT institution_id FROM divisions WHERE id = ?", (data.division_id,)).fetchone()
        if owner is None or owner['institution_id'] != data.institution_id:
            raise ValueError(f"Division {data.division_id} does not belong to institution {data.institution_id}")
        contact_id = _new_id()
        now = _now().isoformat()
        conn.execute(
            """INSERT INTO contacts (id, division_id, institution_id, position, name, phones, email, fax,
                                     is_head, hierarchy_level, display_order, is_active, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?, ?)""",
            (contact_id, data.division_id, data.institution_id, data.position, data.name,
             json.dumps(data.phones, ensure_ascii=False), data.email.strip().lower() if data.email else None,
             data.fax, data.is_head, data.hierarchy_level, data.display_order, now, now)
        )
        return contact_id

    def create_contact(self, data: CreateContactInput) -> Contact:
        with self._connect() as conn:
            contact_id = self._insert_contact(conn, data)
            row = conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        return self._row_to_contact(row)

    def update_contact(self, contact_id: str, **fields) -> Contact:
        allowed = {'division_id', 'position', 'name', 'phones', 'email', 'fax',
                   'is_head', 'hierarchy_level', 'display_order', 'is_active'}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown contact fields: {sorted(unknown)}")

        values = dict(fields)
        if 'phones' in values:
            values['phones'] = json.dumps(values['phones'] or [], ensure_ascii=False)
        if values.get('email'):
            values['email'] = values['email'].strip().lower()
        values['updated_at'] = _now().isoformat()

        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE contacts SET {assignments} WHERE id = ?",
                (*values.values(), contact_id)
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Contact not found: {contact_id}")
            row = conn.execute("SELECT * FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        return self._row_to_contact(row)

    def replace_contacts(self, institution_id: str, contacts: Iterable[CreateContactInput]) -> int:
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM contacts WHERE institution_id = ?", (institution_id,)).rowcount
            inserted = 0
            for data in contacts:
                if data.institution_id != institution_id:
                    raise ValueError(f"Contact belongs to institution {data.institution_id}, not {institution_id}")
                self._insert_contact(conn, data)
                inserted += 1
        logger.info(f"Replaced {deleted} contacts with {inserted}", extra={'details': {
            'institution_id': institution_id
        }})
        return inserted

    def recompute_contact_counts(self, institution_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """UPDATE divisions SET contact_count = (
                       SELECT COUNT(*) FROM contacts
                       WHERE contacts.division_id = divisions.id AND contacts.is_active
                   )
                   WHERE institution_id = ?""",
                (institution_id,)
            )

    # ========================================
    # API usage and budget
    # ========================================

    def add_api_usage(self, record: ApiUsageRecord) -> ApiUsageRecord:
        record.id = record.id or _new_id()
        record.created_at = record.created_at or _now()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO api_usage (id, service, operation, institution_id, tokens_used, cost_usd,
                                          month_key, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (record.id, ApiService(record.service).value, ApiOperation(record.operation).value,
                 record.institution_id, record.tokens_used, record.cost_usd, record.month_key,
                 record.created_at.isoformat())
            )
        return record

    def get_monthly_usage(self, month_key: str) -> MonthlyUsage:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT COALESCE(SUM(tokens_used), 0), COALESCE(SUM(cost_usd), 0), COUNT(*)
                   FROM api_usage WHERE month_key = ?""",
                (month_key,)
            ).fetchone()
        return MonthlyUsage(tokens_used=row[0], cost_usd=row[1], sync_count=row[2])

    def get_budget_settings(self) -> Optional[ApiBudgetSettings]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM budget_settings WHERE id = 1").fetchone()
        if row is None:
            return None
        return ApiBudgetSettings(
            monthly_limit_usd=row['monthly_limit_usd'],
            alert_threshold_percent=row['alert_threshold_percent'],
            pause_on_exhausted=bool(row['pause_on_exhausted']),
        )

    def save_budget_settings(self, settings: ApiBudgetSettings) -> ApiBudgetSettings:
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO budget_settings
                   (id, monthly_limit_usd, alert_threshold_percent, pause_on_exhausted, updated_at)
                   VALUES (1, ?, ?, ?, ?)""",
                (settings.monthly_limit_usd, settings.alert_threshold_percent,
                 settings.pause_on_exhausted, _now().isoformat())
            )
        return settings

    # ========================================
    # Sync logs
    # ========================================

    def add_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        entry.id = entry.id or _new_id()
        entry.synced_at = entry.synced_at or _now()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sync_logs (id, institution_id, source_url, content_hash, status, contacts_found,
                                          contacts_imported, divisions_created, changes_detected, tokens_used,
                                          cost_usd, error_message, synced_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (entry.id, entry.institution_id, entry.source_url, entry.content_hash,
                 SyncStatus(entry.status).value, entry.contacts_found, entry.contacts_imported,
                 entry.divisions_created, entry.changes_detected, entry.tokens_used, entry.cost_usd,
                 entry.error_message, entry.synced_at.isoformat())
            )
        return entry

    def get_sync_logs(self, institution_id: str, limit: int = 10) -> List[SyncLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_logs WHERE institution_id = ? ORDER BY synced_at DESC, rowid DESC LIMIT ?",
                (institution_id, limit)
            ).fetchall()
        return [self._row_to_sync_log(row) for row in rows]

    # ========================================
    # Leases
    # ========================================

    def acquire_lease(self, institution_id: str, owner: str, ttl_seconds: int) -> bool:
        now = _now()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT owner, expires_at FROM sync_leases WHERE institution_id = ?",
                (institution_id,)
            ).fetchone()
            if row is not None and row['owner'] != owner and _from_iso(row['expires_at']) > now:
                conn.rollback()
                return False
            if row is not None and row['owner'] != owner:
                logger.warning("Taking over expired sync lease", extra={'details': {
                    'institution_id': institution_id, 'previous_owner': row['owner'],
                    'expired_at': row['expires_at']
                }})
            conn.execute(
                """INSERT OR REPLACE INTO sync_leases (institution_id, owner, acquired_at, expires_at)
                   VALUES (?, ?, ?, ?)""",
                (institution_id, owner, now.isoformat(), (now + timedelta(seconds=ttl_seconds)).isoformat())
            )
            conn.commit()
            return True
        finally:
            conn.close()

    def release_lease(self, institution_id: str, owner: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM sync_leases WHERE institution_id = ? AND owner = ?",
                (institution_id, owner)
            )
