"""
Boundary adapter from loosely-typed contact documents to ExtractedData.

Two producers hand us JSON: the extraction model (camelCase `headOffice`,
`branches`, `divisions`) and operators importing a file by hand, who may use
`headoffice`, `head_office`, `districtOffices` or `district_offices`. Both are
normalized here, once, so nothing downstream looks at raw keys.
"""

import json
from typing import Any, Dict, List, Optional

from .error_tracker import ManualImportFormatError
from .models import ExtractedData

MANUAL_IMPORT_SOURCE = "JSON Import"

HEAD_OFFICE_KEYS = ('headOffice', 'headoffice', 'head_office')
DISTRICT_OFFICE_KEYS = ('districtOffices', 'district_offices')

UNKNOWN_POSITION = "Unknown Position"
BRANCH_POSITION = "Branch Contact"
DISTRICT_POSITION = "District Office Contact"


def _first_present(raw: Dict[str, Any], keys) -> Optional[List[Any]]:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _as_list(value: Any, section: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f'"{section}" must be an array')
    return value


def _contact(raw: Any, default_position: str, default_division: Optional[str] = None,
             division_as_position: bool = False) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValueError(f"Contact entries must be objects, got {type(raw).__name__}")
    division = raw.get('division') or default_division
    position = raw.get('position')
    if isinstance(position, str):
        position = position.strip()
    if not position and division_as_position and isinstance(division, str) and division.strip():
        position = division.strip()
    return {
        'name': raw.get('name'),
        'position': position or default_position,
        'division': division,
        'phones': raw.get('phones') or [],
        'email': raw.get('email'),
        'fax': raw.get('fax'),
    }


def has_known_sections(raw: Dict[str, Any]) -> bool:
    return any(key in raw for key in HEAD_OFFICE_KEYS + ('branches',) + DISTRICT_OFFICE_KEYS)


def normalize_document(raw: Any, source: str) -> ExtractedData:
    """
    Build the canonical ExtractedData from a raw decoded JSON document.

    Missing positions get a per-section placeholder; branch contacts fall back
    to their division name first. District-office contacts are tagged with
    their district.

    Raises:
        ValueError: the document is not an object or a section has the wrong
        shape (pydantic's ValidationError is a ValueError too).
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Expected a JSON object, got {type(raw).__name__}")

    head_office = [
        _contact(c, UNKNOWN_POSITION)
        for c in _as_list(_first_present(raw, HEAD_OFFICE_KEYS), 'headOffice')
    ]
    branches = [
        _contact(c, BRANCH_POSITION, division_as_position=True)
        for c in _as_list(raw.get('branches'), 'branches')
    ]

    district_offices = None
    offices_raw = _first_present(raw, DISTRICT_OFFICE_KEYS)
    if offices_raw is not None:
        district_offices = []
        for office in _as_list(offices_raw, 'districtOffices'):
            if not isinstance(office, dict):
                raise ValueError("District office entries must be objects")
            district = office.get('district')
            district_offices.append({
                'district': district,
                'location': office.get('location'),
                'address': office.get('address'),
                'phones': office.get('phones') or [],
                'fax': office.get('fax'),
                'email': office.get('email'),
                'contacts': [
                    _contact(c, DISTRICT_POSITION, default_division=district)
                    for c in _as_list(office.get('contacts'), 'contacts')
                ],
            })

    return ExtractedData(
        source=source,
        head_office=head_office,
        branches=branches,
        district_offices=district_offices,
        divisions=[d for d in _as_list(raw.get('divisions'), 'divisions') if isinstance(d, str)],
    )


def parse_manual_import(text: str, source: Optional[str] = None) -> ExtractedData:
    """
    Parse an operator-supplied JSON document.

    Raises:
        ManualImportFormatError: the text is not JSON, has none of the known
        sections, or a section is malformed.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ManualImportFormatError(f"Invalid JSON: {e}")

    if not isinstance(raw, dict) or not has_known_sections(raw):
        raise ManualImportFormatError(
            'Invalid JSON format. Expected "headoffice", "head_office", "branches", or "districtOffices" arrays.'
        )

    try:
        return normalize_document(raw, source or raw.get('source') or MANUAL_IMPORT_SOURCE)
    except ValueError as e:
        raise ManualImportFormatError(f"Invalid contact data: {e}")
