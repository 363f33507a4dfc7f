"""
Data model for the institution contact directory and its sync pipeline.

Extraction output (ExtractedContact, ExtractedDistrictOffice, ExtractedData) is
validated with pydantic because it crosses a trust boundary: it comes from a
language model or a hand-written JSON file. Persisted entities are plain
dataclasses returned by the repository.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


HEAD_OFFICE = "Head Office"
BRANCHES = "Branches"
DISTRICT_OFFICE_PREFIX = "District Office - "


def district_division_name(district: str) -> str:
    """Synthetic division name used for a district office."""
    return f"{DISTRICT_OFFICE_PREFIX}{district}"


class SyncFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"


class LocationType(str, Enum):
    HEAD_OFFICE = "head_office"
    DISTRICT_OFFICE = "district_office"
    BRANCH = "branch"
    REGIONAL = "regional"


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ApiService(str, Enum):
    OPENAI = "openai"
    WEB_FETCH = "web-fetch"


class ApiOperation(str, Enum):
    INSTITUTION_SYNC = "institution-sync"
    HIERARCHY_DETECT = "hierarchy-detect"
    CONTENT_EXTRACT = "content-extract"


# ========================================
# Extraction output
# ========================================

def _blank_to_none(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _clean_phones(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(p).strip() for p in value if p is not None and str(p).strip()]


class ExtractedContact(BaseModel):
    """A single contact as produced by extraction. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    position: str = Field(..., min_length=1)
    division: Optional[str] = None
    phones: List[str] = Field(default_factory=list)
    email: Optional[str] = None
    fax: Optional[str] = None

    @field_validator('name', 'division', 'email', 'fax', mode='before')
    @classmethod
    def blank_strings_are_missing(cls, v):
        return _blank_to_none(v)

    @field_validator('phones', mode='before')
    @classmethod
    def normalize_phones(cls, v):
        return _clean_phones(v)


class ExtractedDistrictOffice(BaseModel):
    """A geographically distinct branch with its own contacts."""
    model_config = ConfigDict(frozen=True)

    district: str = Field(..., min_length=1)
    location: Optional[str] = None
    address: Optional[str] = None
    phones: List[str] = Field(default_factory=list)
    fax: Optional[str] = None
    email: Optional[str] = None
    contacts: List[ExtractedContact] = Field(default_factory=list)

    @field_validator('location', 'address', 'fax', 'email', mode='before')
    @classmethod
    def blank_strings_are_missing(cls, v):
        return _blank_to_none(v)

    @field_validator('phones', mode='before')
    @classmethod
    def normalize_phones(cls, v):
        return _clean_phones(v)

    @field_validator('contacts', mode='before')
    @classmethod
    def none_is_empty(cls, v):
        return v or []

    @property
    def division_name(self) -> str:
        return district_division_name(self.district)


class ExtractedData(BaseModel):
    """
    The unit of a single extraction, tagged by its source URL.

    `divisions` always ends up as the de-duplicated set of division names
    implied by the document: the names given explicitly, the divisions named
    on head-office and branch contacts, and one synthetic
    "District Office - {district}" per district office.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    source: str
    head_office: List[ExtractedContact] = Field(default_factory=list, alias='headOffice')
    branches: List[ExtractedContact] = Field(default_factory=list)
    district_offices: Optional[List[ExtractedDistrictOffice]] = Field(default=None, alias='districtOffices')
    divisions: List[str] = Field(default_factory=list)

    @model_validator(mode='before')
    @classmethod
    def derive_divisions(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        names: List[str] = []

        def add(name):
            name = _blank_to_none(name)
            if name and name not in names:
                names.append(name)

        for name in data.get('divisions') or []:
            add(name)
        for key in ('headOffice', 'head_office', 'branches'):
            for contact in data.get(key) or []:
                division = contact.get('division') if isinstance(contact, dict) else getattr(contact, 'division', None)
                add(division)
        offices = data.get('districtOffices', data.get('district_offices')) or []
        for office in offices:
            district = office.get('district') if isinstance(office, dict) else getattr(office, 'district', None)
            if _blank_to_none(district):
                add(district_division_name(district.strip()))
        data['divisions'] = names
        return data

    @property
    def all_district_offices(self) -> List[ExtractedDistrictOffice]:
        return list(self.district_offices or [])

    def contact_count(self) -> int:
        """Head office + branch + district office contacts."""
        return (len(self.head_office) + len(self.branches)
                + sum(len(office.contacts) for office in self.all_district_offices))

    def to_json_dict(self) -> Dict[str, Any]:
        """Camel-case form, the same shape the extraction model returns."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


# ========================================
# Settings
# ========================================

class ApiBudgetSettings(BaseModel):
    """Singleton monthly budget configuration."""
    monthly_limit_usd: float = Field(default=5.0, ge=0, description="Monthly spend ceiling in USD")
    alert_threshold_percent: int = Field(default=80, ge=0, le=100, description="Warn above this share of the limit")
    pause_on_exhausted: bool = Field(default=True, description="Deny syncs once the limit is reached")


class ImportOptions(BaseModel):
    """Reconciliation policy for one import."""
    create_divisions_automatically: bool = True
    update_existing_contacts: bool = True
    replace_all_contacts: bool = False


@dataclass
class InstitutionSyncSettings:
    """Per-institution sync bookkeeping."""
    source_url: Optional[str] = None
    content_hash: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    auto_sync_enabled: bool = False
    sync_frequency: SyncFrequency = SyncFrequency.WEEKLY


@dataclass
class Institution:
    id: str
    name: str
    sync_settings: InstitutionSyncSettings = field(default_factory=InstitutionSyncSettings)
    created_at: Optional[datetime] = None


# ========================================
# Directory entities
# ========================================

@dataclass
class Division:
    id: str
    institution_id: str
    name: str
    slug: str
    display_order: int = 0
    contact_count: int = 0
    address: Optional[str] = None
    phones: List[str] = field(default_factory=list)
    fax: Optional[str] = None
    email: Optional[str] = None
    location_type: Optional[LocationType] = None
    district: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CreateDivisionInput:
    institution_id: str
    name: str
    slug: Optional[str] = None
    display_order: int = 0
    address: Optional[str] = None
    phones: List[str] = field(default_factory=list)
    fax: Optional[str] = None
    email: Optional[str] = None
    location_type: Optional[LocationType] = None
    district: Optional[str] = None


@dataclass
class Contact:
    id: str
    division_id: str
    institution_id: str
    position: str
    name: Optional[str] = None
    phones: List[str] = field(default_factory=list)
    email: Optional[str] = None
    fax: Optional[str] = None
    is_head: bool = False
    hierarchy_level: int = 5
    display_order: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CreateContactInput:
    division_id: str
    institution_id: str
    position: str
    name: Optional[str] = None
    phones: List[str] = field(default_factory=list)
    email: Optional[str] = None
    fax: Optional[str] = None
    is_head: bool = False
    hierarchy_level: int = 5
    display_order: int = 0


# ========================================
# Ledger and audit records
# ========================================

@dataclass
class ApiUsageRecord:
    service: ApiService
    operation: ApiOperation
    tokens_used: int
    cost_usd: float
    month_key: str
    institution_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class MonthlyUsage:
    tokens_used: int = 0
    cost_usd: float = 0.0
    sync_count: int = 0


@dataclass
class SyncLogEntry:
    institution_id: str
    source_url: str
    status: SyncStatus
    content_hash: Optional[str] = None
    contacts_found: int = 0
    contacts_imported: int = 0
    divisions_created: int = 0
    changes_detected: bool = False
    tokens_used: int = 0
    cost_usd: float = 0.0
    error_message: Optional[str] = None
    synced_at: Optional[datetime] = None
    id: Optional[str] = None
