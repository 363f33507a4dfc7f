"""
Sync pipeline for institution contact directories.

Fetches an institution's public contact page, extracts structured contacts
with a language model, signals content changes, and reconciles the result
into the persisted division and contact directory under a monthly budget.
"""

from .config import (
    SyncConfig, FetchConfig, ExtractionConfig
)

from .models import (
    ExtractedContact, ExtractedDistrictOffice, ExtractedData,
    ApiBudgetSettings, ImportOptions, InstitutionSyncSettings, Institution,
    Division, Contact, CreateContactInput, CreateDivisionInput,
    ApiUsageRecord, SyncLogEntry, SyncFrequency, SyncStatus, LocationType
)

from .repository import (
    DirectoryRepository, SQLiteDirectoryRepository
)

from .budget import BudgetGuard, BudgetUsage
from .error_tracker import SyncException, BudgetExceeded, FetchError, ExtractionParseError, SyncInProgressError
from .html_fetcher import ContentFetcher, DirectTransport, ProxyTransport, LocalFileTransport
from .extraction import ExtractionEngine, ExtractionResult
from .change_detector import ChangeDetector
from .reconciliation import ReconciliationEngine, ImportResult
from .sync_log import SyncLog
from .phases import SyncPhase, SyncProgress
from .manual_import import parse_manual_import

from .orchestrator import (
    SyncOrchestrator, SyncResult, FetchExtractResult, ImportContactsResult, PreCheckResult,
    institution_needs_sync
)

__all__ = [
    # Configuration
    'SyncConfig',
    'FetchConfig',
    'ExtractionConfig',

    # Data model
    'ExtractedContact',
    'ExtractedDistrictOffice',
    'ExtractedData',
    'ApiBudgetSettings',
    'ImportOptions',
    'InstitutionSyncSettings',
    'Institution',
    'Division',
    'Contact',
    'CreateContactInput',
    'CreateDivisionInput',
    'ApiUsageRecord',
    'SyncLogEntry',
    'SyncFrequency',
    'SyncStatus',
    'LocationType',

    # Persistence
    'DirectoryRepository',
    'SQLiteDirectoryRepository',

    # Components
    'BudgetGuard',
    'BudgetUsage',
    'ContentFetcher',
    'DirectTransport',
    'ProxyTransport',
    'LocalFileTransport',
    'ExtractionEngine',
    'ExtractionResult',
    'ChangeDetector',
    'ReconciliationEngine',
    'ImportResult',
    'SyncLog',
    'SyncPhase',
    'SyncProgress',
    'parse_manual_import',

    # Errors
    'SyncException',
    'BudgetExceeded',
    'FetchError',
    'ExtractionParseError',
    'SyncInProgressError',

    # Orchestration
    'SyncOrchestrator',
    'SyncResult',
    'FetchExtractResult',
    'ImportContactsResult',
    'PreCheckResult',
    'institution_needs_sync',
]
