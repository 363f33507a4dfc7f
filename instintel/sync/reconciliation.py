"""
Reconciliation of extracted contacts into the persisted directory.

The engine resolves division names to division records (creating them when
allowed), converts every extracted contact into a CreateContactInput bound to
its division, and then inserts, updates or replaces contacts according to the
ImportOptions. A contact whose division cannot be resolved is skipped with a
warning; the rest of the batch still goes in.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .error_tracker import (
    ContactImportError, DivisionNotFound, ErrorSeverity, ErrorTracker, SyncError, SyncException
)
from .hierarchy import BRANCH_LEVEL, DISTRICT_OFFICE_LEVEL, detect_hierarchy_level, is_head_position
from .logging_manager import get_logger
from .models import (
    BRANCHES, DISTRICT_OFFICE_PREFIX, HEAD_OFFICE, CreateContactInput, CreateDivisionInput,
    ExtractedContact, ExtractedData, ImportOptions, LocationType,
)
from .repository import DirectoryRepository, slugify

logger = get_logger(__name__)


@dataclass
class ImportResult:
    contacts_imported: int = 0
    divisions_created: int = 0
    contacts_created: int = 0
    contacts_updated: int = 0
    skipped: List[SyncError] = field(default_factory=list)


def _contact_input(contact: ExtractedContact, division_id: str, institution_id: str, position: str,
                   is_head: bool, level: int, order: int) -> CreateContactInput:
    return CreateContactInput(
        division_id=division_id,
        institution_id=institution_id,
        name=contact.name,
        position=position,
        phones=list(contact.phones),
        email=contact.email,
        fax=contact.fax,
        is_head=is_head,
        hierarchy_level=level,
        display_order=order,
    )


def convert_extracted_contacts(data: ExtractedData, institution_id: str, division_map: Dict[str, str],
                               tracker: Optional[ErrorTracker] = None) -> List[CreateContactInput]:
    """
    Bind extracted contacts to division ids.

    Head office contacts are classified by title; branch contacts get the
    branch level and district office contacts the district level. Display
    order runs head office, then branches, then district offices. Division
    names match exactly, or else by slug.
    """
    tracker = tracker if tracker is not None else ErrorTracker()
    inputs: List[CreateContactInput] = []
    by_slug = {slugify(name): division_id for name, division_id in division_map.items()}

    def resolve(division_name: str, position: str) -> Optional[str]:
        division_id = division_map.get(division_name) or by_slug.get(slugify(division_name))
        if division_id is None:
            error = DivisionNotFound(division_name, institution_id=institution_id)
            tracker.report_exception(error, severity=ErrorSeverity.WARNING, details={'position': position})
            logger.warning(error.message, extra={'details': {
                'institution_id': institution_id, 'position': position
            }})
        return division_id

    for i, contact in enumerate(data.head_office):
        division_id = resolve(contact.division or HEAD_OFFICE, contact.position)
        if division_id:
            inputs.append(_contact_input(
                contact, division_id, institution_id, contact.position,
                is_head_position(contact.position), detect_hierarchy_level(contact.position), i
            ))

    offset = len(data.head_office)
    for i, contact in enumerate(data.branches):
        division_name = contact.division or BRANCHES
        division_id = resolve(division_name, contact.position)
        if division_id:
            inputs.append(_contact_input(
                contact, division_id, institution_id, contact.position or division_name,
                False, BRANCH_LEVEL, offset + i
            ))

    offset += len(data.branches)
    district_index = 0
    for office in data.all_district_offices:
        division_id = resolve(office.division_name, f"{len(office.contacts)} district office contacts")
        if not division_id:
            continue
        for contact in office.contacts:
            inputs.append(_contact_input(
                contact, division_id, institution_id, contact.position,
                False, DISTRICT_OFFICE_LEVEL, offset + district_index
            ))
            district_index += 1

    return inputs


class ReconciliationEngine:
    """Merges ExtractedData into divisions and contacts for one institution."""

    def __init__(self, repository: DirectoryRepository, clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _resolve_divisions(self, data: ExtractedData, institution_id: str, options: ImportOptions):
        division_map: Dict[str, str] = {}
        created = 0

        if options.create_divisions_automatically:
            names = list(data.divisions)
            if HEAD_OFFICE not in names:
                names.insert(0, HEAD_OFFICE)
            if data.branches and BRANCHES not in names:
                names.append(BRANCHES)
            regular = [name for name in names if not name.startswith(DISTRICT_OFFICE_PREFIX)]

            existing_ids = {d.id for d in self.repository.get_divisions(institution_id)}
            new_ids = set()
            resolved = self.repository.bulk_create_divisions(institution_id, regular)
            for name, division in zip(regular, resolved):
                division_map[name] = division.id
                if division.id not in existing_ids:
                    new_ids.add(division.id)
            created = len(new_ids)

            for office in data.all_district_offices:
                name = office.division_name
                existing = self.repository.find_division(institution_id, name)
                if existing:
                    division_map[name] = existing.id
                    continue
                division = self.repository.create_division(CreateDivisionInput(
                    institution_id=institution_id,
                    name=name,
                    address=office.address or office.location,
                    phones=list(office.phones),
                    fax=office.fax,
                    email=office.email,
                    location_type=LocationType.DISTRICT_OFFICE,
                    district=office.district,
                ))
                division_map[name] = division.id
                created += 1
        else:
            for division in self.repository.get_divisions(institution_id):
                division_map[division.name] = division.id
            if HEAD_OFFICE not in division_map:
                division = self.repository.bulk_create_divisions(institution_id, [HEAD_OFFICE])[0]
                division_map[HEAD_OFFICE] = division.id
                created += 1

        return division_map, created

    def import_extracted(self, data: ExtractedData, institution_id: str, content_hash: str,
                         options: Optional[ImportOptions] = None,
                         on_divisions_resolved: Optional[Callable[[int], None]] = None) -> ImportResult:
        """
        Reconcile `data` into the institution's directory.

        The institution's content hash and last-synced time are only written
        after every contact has been persisted.

        Raises:
            ContactImportError: a persistence operation failed.
        """
        options = options or ImportOptions()
        tracker = ErrorTracker()
        result = ImportResult()

        try:
            division_map, result.divisions_created = self._resolve_divisions(data, institution_id, options)
            logger.info(f"Resolved {len(division_map)} divisions ({result.divisions_created} new)",
                        extra={'details': {'institution_id': institution_id}})
            if on_divisions_resolved:
                on_divisions_resolved(result.divisions_created)

            inputs = convert_extracted_contacts(data, institution_id, division_map, tracker)
            merge = options.update_existing_contacts and not options.replace_all_contacts

            if options.replace_all_contacts:
                result.contacts_created = self.repository.replace_contacts(institution_id, inputs)
                inputs = []

            for contact_input in inputs:
                existing = None
                if merge and contact_input.email:
                    existing = self.repository.find_contact_by_email(institution_id, contact_input.email)
                if existing:
                    self.repository.update_contact(
                        existing.id,
                        name=contact_input.name,
                        position=contact_input.position,
                        phones=contact_input.phones,
                        fax=contact_input.fax,
                        is_head=contact_input.is_head,
                        hierarchy_level=contact_input.hierarchy_level,
                        division_id=contact_input.division_id,
                        is_active=True,
                    )
                    result.contacts_updated += 1
                else:
                    self.repository.create_contact(contact_input)
                    result.contacts_created += 1

            result.contacts_imported = result.contacts_created + result.contacts_updated
            self.repository.recompute_contact_counts(institution_id)
            self.repository.update_sync_settings(
                institution_id,
                content_hash=content_hash,
                last_synced_at=self._clock()
            )
        except SyncException:
            raise
        except Exception as e:
            logger.error(f"Import failed: {e}", exc_info=True, extra={'details': {'institution_id': institution_id}})
            raise ContactImportError(f"Import failed: {e}", institution_id=institution_id) from e

        result.skipped = tracker.get_errors()
        logger.info("Import complete", extra={'details': {
            'institution_id': institution_id,
            'contacts_created': result.contacts_created,
            'contacts_updated': result.contacts_updated,
            'divisions_created': result.divisions_created,
            'skipped': len(result.skipped),
        }})
        return result
