"""
Sync orchestration for institution contact directories.

The orchestrator sequences one run through its phases:

1. pre_check: budget gate and source URL resolution
2. fetch_and_extract: fetch, fingerprint and extract, stopping at `preview`
3. import_contacts: reconcile the reviewed data and write the sync log

`full_sync` chains the three for unattended runs. Expected failures never
raise out of these methods; they come back as a result with `success=False`,
`phase=error` and a message, after an `error` progress event.
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TextIO

from ..config import DEFAULT_ENVIRONMENT, get_openai_client
from .budget import BudgetGuard, BudgetUsage
from .change_detector import ChangeDetector
from .config import SyncConfig, validate_source_url
from .error_tracker import (
    BudgetExceeded, ConfigurationError, ExtractionParseError, ManualImportFormatError, SyncError,
    SyncException, SyncInProgressError,
)
from .extraction import ExtractionEngine
from .html_fetcher import ContentFetcher
from .logging_manager import LoggingManager
from .manual_import import parse_manual_import
from .models import ExtractedData, ImportOptions, InstitutionSyncSettings, SyncFrequency
from .phases import CheckpointLog, PhaseMachine, ProgressCallback, SyncPhase
from .reconciliation import ReconciliationEngine
from .repository import DirectoryRepository, SQLiteDirectoryRepository
from .sync_log import SyncLog

logger = LoggingManager.get_logger(__name__)

FREQUENCY_DAYS = {
    SyncFrequency.DAILY: 1,
    SyncFrequency.WEEKLY: 7,
    SyncFrequency.MONTHLY: 30,
}


def institution_needs_sync(settings: Optional[InstitutionSyncSettings], now: Optional[datetime] = None) -> bool:
    """Whether an auto-synced institution is due, comparing whole days since the last sync."""
    if settings is None or not settings.auto_sync_enabled or not settings.source_url:
        return False
    if settings.last_synced_at is None:
        return True
    days = FREQUENCY_DAYS.get(SyncFrequency(settings.sync_frequency))
    if days is None:
        return False
    now = now or datetime.now(timezone.utc)
    return (now - settings.last_synced_at).days >= days


@dataclass
class PreCheckResult:
    can_sync: bool
    reason: Optional[str] = None
    budget: Optional[BudgetUsage] = None
    settings: Optional[InstitutionSyncSettings] = None
    source_url: Optional[str] = None


@dataclass
class FetchExtractResult:
    success: bool
    phase: SyncPhase
    source_url: Optional[str] = None
    data: Optional[ExtractedData] = None
    content_hash: Optional[str] = None
    previous_hash: Optional[str] = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    changes_detected: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Preview document written for operator review."""
        return {
            'source_url': self.source_url,
            'content_hash': self.content_hash,
            'previous_hash': self.previous_hash,
            'changes_detected': self.changes_detected,
            'tokens_used': self.tokens_used,
            'cost_usd': self.cost_usd,
            'data': self.data.to_json_dict() if self.data else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'FetchExtractResult':
        data = payload.get('data')
        return cls(
            success=True,
            phase=SyncPhase.PREVIEW,
            source_url=payload.get('source_url'),
            data=ExtractedData.model_validate(data) if data is not None else None,
            content_hash=payload.get('content_hash'),
            previous_hash=payload.get('previous_hash'),
            tokens_used=payload.get('tokens_used', 0),
            cost_usd=payload.get('cost_usd', 0.0),
            changes_detected=payload.get('changes_detected', False),
        )


@dataclass
class ImportContactsResult:
    success: bool
    phase: SyncPhase
    contacts_imported: int = 0
    divisions_created: int = 0
    skipped: List[SyncError] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SyncResult:
    """Outcome of an unattended full sync."""
    success: bool
    phase: SyncPhase
    extracted_data: Optional[ExtractedData] = None
    contacts_imported: int = 0
    divisions_created: int = 0
    tokens_used: int = 0
    cost_usd: float = 0.0
    changes_detected: bool = False
    error: Optional[str] = None


class SyncOrchestrator:
    """
    Coordinates BudgetGuard, ContentFetcher, ExtractionEngine, ChangeDetector,
    ReconciliationEngine and SyncLog for one institution at a time.

    Each orchestrator instance is one lease owner; concurrent runs for the same
    institution from other instances are refused until the lease is released
    or expires.
    """

    def __init__(self, repository: DirectoryRepository, extraction_engine: Optional[ExtractionEngine] = None,
                 fetcher: Optional[ContentFetcher] = None, config: Optional[SyncConfig] = None,
                 checkpoints: Optional[CheckpointLog] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or SyncConfig()
        self.repository = repository
        self.extraction_engine = extraction_engine
        self.fetcher = fetcher or ContentFetcher(self.config.fetch)
        self.checkpoints = checkpoints
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.budget = BudgetGuard(repository, self.config.budget, clock=self._clock)
        self.detector = ChangeDetector()
        self.reconciliation = ReconciliationEngine(repository, clock=self._clock)
        self.sync_log = SyncLog(repository)

        self.run_id = uuid.uuid4().hex
        self._lease_depth: Dict[str, int] = {}

    @classmethod
    def from_config(cls, config: SyncConfig, environment: str = DEFAULT_ENVIRONMENT,
                    with_extraction: bool = True, log_stream: Optional[TextIO] = None) -> 'SyncOrchestrator':
        """
        Build the orchestrator with the SQLite repository and, unless
        `with_extraction` is False, an OpenAI client for `environment`. Console
        logs go to `log_stream`, stdout by default.
        """
        LoggingManager().reconfigure(log_level=config.log_level, log_file=config.log_file, stream=log_stream)
        engine = None
        if with_extraction:
            try:
                client = get_openai_client(environment)
            except ValueError as e:
                raise ConfigurationError(str(e), recovery_suggestion="Set OPENAI_API_KEY in the environment or .env")
            engine = ExtractionEngine(client, config.extraction)
        return cls(
            repository=SQLiteDirectoryRepository(config.database_path),
            extraction_engine=engine,
            config=config,
            checkpoints=CheckpointLog(config.checkpoint_directory),
        )

    def _machine(self, institution_id: str, on_progress: Optional[ProgressCallback],
                 start: SyncPhase = SyncPhase.IDLE) -> PhaseMachine:
        return PhaseMachine(institution_id, self.run_id, on_progress, self.checkpoints, start=start)

    @contextmanager
    def _lease(self, institution_id: str):
        if not self.repository.acquire_lease(institution_id, self.run_id, self.config.lease_ttl_seconds):
            raise SyncInProgressError(
                f"A sync is already in progress for institution {institution_id}",
                institution_id=institution_id,
                recovery_suggestion="Wait for the running sync to finish or for its lease to expire."
            )
        self._lease_depth[institution_id] = self._lease_depth.get(institution_id, 0) + 1
        try:
            yield
        finally:
            self._lease_depth[institution_id] -= 1
            if self._lease_depth[institution_id] == 0:
                del self._lease_depth[institution_id]
                self.repository.release_lease(institution_id, self.run_id)

    # ========================================
    # Phase 1: pre-sync checks
    # ========================================

    def pre_check(self, institution_id: str, source_url: Optional[str] = None) -> PreCheckResult:
        try:
            usage = self.budget.ensure_allowed(institution_id)
        except BudgetExceeded as e:
            return PreCheckResult(can_sync=False, reason=e.message, budget=e.usage)

        institution = self.repository.get_institution(institution_id)
        if institution is None:
            reason = (f"Institution not found: {institution_id}" if source_url
                      else "Institution not found or no source URL provided")
            return PreCheckResult(can_sync=False, reason=reason, budget=usage)

        settings = institution.sync_settings
        effective_url = source_url or settings.source_url
        if not effective_url:
            return PreCheckResult(can_sync=False, reason="No source URL configured for this institution",
                                  budget=usage, settings=settings)
        try:
            validate_source_url(effective_url, allow_local_files=self.config.fetch.allow_local_files)
        except ValueError as e:
            return PreCheckResult(can_sync=False, reason=f"Invalid source URL {effective_url}: {e}",
                                  budget=usage, settings=settings)

        return PreCheckResult(can_sync=True, budget=usage, settings=settings, source_url=effective_url)

    # ========================================
    # Phase 2: fetch and extract
    # ========================================

    def fetch_and_extract(self, institution_id: str, source_url: Optional[str] = None,
                          on_progress: Optional[ProgressCallback] = None) -> FetchExtractResult:
        """
        Fetch the source page and extract contacts, stopping at `preview`.

        Nothing is imported; the caller reviews `data` and calls
        `import_contacts` to continue.
        """
        machine = self._machine(institution_id, on_progress)
        try:
            with self._lease(institution_id):
                pre = self.pre_check(institution_id, source_url)
                if not pre.can_sync:
                    machine.fail(pre.reason)
                    return FetchExtractResult(success=False, phase=machine.phase, source_url=source_url,
                                              error=pre.reason)
                return self._fetch_and_extract(machine, institution_id, pre.source_url, pre.settings.content_hash)
        except SyncInProgressError as e:
            machine.fail(e.message)
            return FetchExtractResult(success=False, phase=machine.phase, source_url=source_url, error=e.message)

    def _fetch_and_extract(self, machine: PhaseMachine, institution_id: str, source_url: str,
                           previous_hash: Optional[str]) -> FetchExtractResult:
        content_hash = None
        try:
            machine.advance(SyncPhase.FETCHING, 10, "Fetching website content...")
            html = self.fetcher.fetch(source_url)
            content_hash = self.detector.fingerprint(html)

            machine.advance(SyncPhase.EXTRACTING, 30, "Analyzing content with AI...")
            if self.extraction_engine is None:
                raise ConfigurationError("No extraction engine configured", institution_id=institution_id)
            extraction = self.extraction_engine.extract(html, source_url)
            self.budget.record(extraction.tokens_used, extraction.cost_usd, institution_id)

            changes_detected = self.detector.changed(previous_hash, content_hash)
            machine.advance(
                SyncPhase.PREVIEW, 50,
                "Changes detected! Review extracted contacts." if changes_detected
                else "Content unchanged since last sync.",
                extracted_data=extraction.data
            )
            return FetchExtractResult(
                success=True,
                phase=machine.phase,
                source_url=source_url,
                data=extraction.data,
                content_hash=content_hash,
                previous_hash=previous_hash,
                tokens_used=extraction.tokens_used,
                cost_usd=extraction.cost_usd,
                changes_detected=changes_detected,
            )
        except ExtractionParseError as e:
            self.budget.record(e.tokens_used, e.cost_usd, institution_id)
            machine.fail(e.message)
            return FetchExtractResult(
                success=False, phase=machine.phase, source_url=source_url, content_hash=content_hash,
                previous_hash=previous_hash, tokens_used=e.tokens_used, cost_usd=e.cost_usd, error=e.message
            )
        except Exception as e:
            message = e.message if isinstance(e, SyncException) else (str(e) or "Unknown error during extraction")
            logger.error(f"Fetch and extract failed: {message}", exc_info=not isinstance(e, SyncException),
                         extra={'details': {'institution_id': institution_id, 'source_url': source_url}})
            machine.fail(message)
            return FetchExtractResult(success=False, phase=machine.phase, source_url=source_url,
                                      content_hash=content_hash, previous_hash=previous_hash, error=message)

    def load_manual_import(self, institution_id: str, text: str,
                           on_progress: Optional[ProgressCallback] = None) -> FetchExtractResult:
        """
        Parse an operator-supplied JSON document into a preview, bypassing
        fetch and extraction. The fingerprint is taken over the raw text.
        """
        machine = self._machine(institution_id, on_progress, start=SyncPhase.PREVIEW)
        institution = self.repository.get_institution(institution_id)
        previous_hash = institution.sync_settings.content_hash if institution else None
        try:
            data = parse_manual_import(text)
        except ManualImportFormatError as e:
            machine.fail(e.message)
            return FetchExtractResult(success=False, phase=machine.phase, error=e.message)

        content_hash = self.detector.fingerprint(text)
        changes_detected = self.detector.changed(previous_hash, content_hash)
        machine.announce(
            50,
            "Changes detected! Review extracted contacts." if changes_detected
            else "Content unchanged since last sync.",
            extracted_data=data
        )
        return FetchExtractResult(
            success=True,
            phase=machine.phase,
            source_url=data.source,
            data=data,
            content_hash=content_hash,
            previous_hash=previous_hash,
            changes_detected=changes_detected,
        )

    # ========================================
    # Phase 3: import
    # ========================================

    def import_contacts(self, institution_id: str, data: ExtractedData, content_hash: str,
                        options: Optional[ImportOptions] = None,
                        on_progress: Optional[ProgressCallback] = None,
                        extraction: Optional[FetchExtractResult] = None) -> ImportContactsResult:
        """
        Reconcile reviewed data into the directory and record the attempt.

        `extraction`, when given, supplies the source URL and the tokens and
        cost to carry into the sync log.
        """
        machine = self._machine(institution_id, on_progress, start=SyncPhase.PREVIEW)
        try:
            with self._lease(institution_id):
                return self._import_contacts(machine, institution_id, data, content_hash, options, extraction)
        except SyncInProgressError as e:
            machine.fail(e.message)
            return ImportContactsResult(success=False, phase=machine.phase, error=e.message)

    def _import_contacts(self, machine: PhaseMachine, institution_id: str, data: ExtractedData,
                         content_hash: str, options: Optional[ImportOptions],
                         extraction: Optional[FetchExtractResult]) -> ImportContactsResult:
        options = options or self.config.import_options
        institution = self.repository.get_institution(institution_id)
        previous_hash = institution.sync_settings.content_hash if institution else None
        source_url = (extraction.source_url if extraction and extraction.source_url else data.source)
        tokens_used = extraction.tokens_used if extraction else 0
        cost_usd = extraction.cost_usd if extraction else 0.0

        try:
            if institution is None:
                raise ConfigurationError(f"Institution not found: {institution_id}", institution_id=institution_id)
            machine.advance(SyncPhase.IMPORTING, 60, "Creating divisions...")
            result = self.reconciliation.import_extracted(
                data, institution_id, content_hash, options,
                on_divisions_resolved=lambda created: machine.announce(
                    75, f"Created {created} divisions. Importing contacts..."
                )
            )
        except Exception as e:
            message = e.message if isinstance(e, SyncException) else (str(e) or "Unknown error during import")
            logger.error(f"Import failed: {message}", extra={'details': {'institution_id': institution_id}})
            machine.fail(message)
            self.sync_log.record(
                institution_id, source_url, success=False, content_hash=content_hash,
                previous_hash=previous_hash, contacts_found=data.contact_count(),
                tokens_used=tokens_used, cost_usd=cost_usd, error_message=message
            )
            return ImportContactsResult(success=False, phase=machine.phase, error=message)

        self.sync_log.record(
            institution_id, source_url, success=True, content_hash=content_hash,
            previous_hash=previous_hash, contacts_found=data.contact_count(),
            contacts_imported=result.contacts_imported, divisions_created=result.divisions_created,
            tokens_used=tokens_used, cost_usd=cost_usd
        )
        machine.advance(
            SyncPhase.COMPLETE, 100,
            f"Import complete! {result.contacts_imported} contacts, {result.divisions_created} divisions."
        )
        return ImportContactsResult(
            success=True,
            phase=machine.phase,
            contacts_imported=result.contacts_imported,
            divisions_created=result.divisions_created,
            skipped=result.skipped,
        )

    # ========================================
    # Unattended run
    # ========================================

    def full_sync(self, institution_id: str, source_url: Optional[str] = None,
                  options: Optional[ImportOptions] = None,
                  on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        """Run every phase without operator review, for scheduled syncs."""
        logger.info(f"Starting full sync for institution {institution_id}",
                    extra={'details': {'institution_id': institution_id, 'run_id': self.run_id}})
        machine = self._machine(institution_id, on_progress)
        machine.announce(0, "Checking sync prerequisites...")

        try:
            with self._lease(institution_id):
                return self._full_sync(machine, institution_id, source_url, options)
        except SyncInProgressError as e:
            machine.fail(e.message)
            return SyncResult(success=False, phase=machine.phase, error=e.message)

    def _full_sync(self, machine: PhaseMachine, institution_id: str, source_url: Optional[str],
                   options: Optional[ImportOptions]) -> SyncResult:
        pre = self.pre_check(institution_id, source_url)
        if not pre.can_sync:
            machine.fail(pre.reason)
            return SyncResult(success=False, phase=machine.phase, error=pre.reason)

        if source_url and source_url != pre.settings.source_url:
            self.repository.update_sync_settings(institution_id, source_url=source_url)

        previous_hash = pre.settings.content_hash
        extraction = self._fetch_and_extract(machine, institution_id, pre.source_url, previous_hash)
        if not extraction.success:
            self.sync_log.record(
                institution_id, pre.source_url, success=False, content_hash=extraction.content_hash,
                previous_hash=previous_hash, tokens_used=extraction.tokens_used,
                cost_usd=extraction.cost_usd, error_message=extraction.error
            )
            return SyncResult(
                success=False, phase=machine.phase, tokens_used=extraction.tokens_used,
                cost_usd=extraction.cost_usd, changes_detected=extraction.changes_detected,
                error=extraction.error
            )

        imported = self._import_contacts(
            machine, institution_id, extraction.data, extraction.content_hash, options, extraction
        )
        logger.info(f"Sync finished for institution {institution_id}", extra={'details': {
            'institution_id': institution_id,
            'success': imported.success,
            'contacts': imported.contacts_imported,
            'divisions': imported.divisions_created,
            'tokens': extraction.tokens_used,
            'cost': extraction.cost_usd,
        }})
        return SyncResult(
            success=imported.success,
            phase=machine.phase,
            extracted_data=extraction.data,
            contacts_imported=imported.contacts_imported,
            divisions_created=imported.divisions_created,
            tokens_used=extraction.tokens_used,
            cost_usd=extraction.cost_usd,
            changes_detected=extraction.changes_detected,
            error=imported.error,
        )

    # ========================================
    # Status and scheduling
    # ========================================

    def sync_status(self, institution_id: str) -> Dict[str, Any]:
        institution = self.repository.get_institution(institution_id)
        settings = institution.sync_settings if institution else InstitutionSyncSettings()
        checkpoint = self.checkpoints.latest(institution_id) if self.checkpoints else None
        return {
            'has_source_url': bool(settings.source_url),
            'last_synced_at': settings.last_synced_at.isoformat() if settings.last_synced_at else None,
            'auto_sync_enabled': settings.auto_sync_enabled,
            'sync_frequency': SyncFrequency(settings.sync_frequency).value,
            'contact_count': len(self.repository.get_contacts(institution_id)),
            'division_count': len(self.repository.get_divisions(institution_id)),
            'last_phase': checkpoint['phase'] if checkpoint else None,
        }

    def institutions_needing_sync(self) -> List[str]:
        now = self._clock()
        return [
            institution.id for institution in self.repository.list_institutions()
            if institution_needs_sync(institution.sync_settings, now)
        ]
