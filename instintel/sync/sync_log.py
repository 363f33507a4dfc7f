"""
Append-only audit record of sync attempts.
"""

from typing import List, Optional

from .change_detector import ChangeDetector
from .logging_manager import get_logger
from .models import SyncLogEntry, SyncStatus
from .repository import DirectoryRepository

logger = get_logger(__name__)


class SyncLog:
    """One entry per orchestrator attempt, successful or not, with what it cost."""

    def __init__(self, repository: DirectoryRepository):
        self.repository = repository

    def record(self, institution_id: str, source_url: str, success: bool, content_hash: Optional[str] = None,
               previous_hash: Optional[str] = None, contacts_found: int = 0, contacts_imported: int = 0,
               divisions_created: int = 0, tokens_used: int = 0, cost_usd: float = 0.0,
               error_message: Optional[str] = None) -> SyncLogEntry:
        entry = SyncLogEntry(
            institution_id=institution_id,
            source_url=source_url,
            content_hash=content_hash,
            status=SyncStatus.SUCCESS if success else SyncStatus.FAILED,
            contacts_found=contacts_found,
            contacts_imported=contacts_imported,
            divisions_created=divisions_created,
            changes_detected=bool(content_hash) and ChangeDetector.changed(previous_hash, content_hash),
            tokens_used=tokens_used,
            cost_usd=cost_usd,
            error_message=error_message,
        )
        entry = self.repository.add_sync_log(entry)
        logger.info(f"Sync {entry.status.value}", extra={'details': {
            'institution_id': institution_id,
            'source_url': source_url,
            'contacts_imported': contacts_imported,
            'divisions_created': divisions_created,
            'tokens_used': tokens_used,
            'cost_usd': cost_usd,
            'error': error_message,
        }})
        return entry

    def history(self, institution_id: str, limit: int = 10) -> List[SyncLogEntry]:
        """Most recent entries first."""
        return self.repository.get_sync_logs(institution_id, limit)
