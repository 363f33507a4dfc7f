#!/usr/bin/env python3
"""
Unit tests for manual JSON import parsing and document normalization.
"""

import json

import pytest

from ..error_tracker import ManualImportFormatError
from ..manual_import import (
    BRANCH_POSITION, DISTRICT_POSITION, MANUAL_IMPORT_SOURCE, UNKNOWN_POSITION,
    normalize_document, parse_manual_import,
)


class TestParseManualImport:
    """Test the accepted key variants and rejection messages."""

    @pytest.mark.parametrize("key", ["headOffice", "headoffice", "head_office"])
    def test_head_office_key_variants(self, key):
        text = json.dumps({key: [{"name": "A", "position": "Director", "phones": ["011"]}]})

        data = parse_manual_import(text)

        assert len(data.head_office) == 1
        assert data.head_office[0].position == "Director"
        assert data.source == MANUAL_IMPORT_SOURCE

    @pytest.mark.parametrize("key", ["districtOffices", "district_offices"])
    def test_district_office_key_variants(self, key):
        text = json.dumps({key: [{"district": "Galle", "contacts": []}]})

        data = parse_manual_import(text)

        assert data.all_district_offices[0].district == "Galle"
        assert data.divisions == ["District Office - Galle"]

    def test_unrecognised_document_rejected(self):
        with pytest.raises(ManualImportFormatError) as exc_info:
            parse_manual_import(json.dumps({"staff": []}))

        assert exc_info.value.message == (
            'Invalid JSON format. Expected "headoffice", "head_office", "branches", or "districtOffices" arrays.'
        )

    def test_top_level_array_rejected(self):
        with pytest.raises(ManualImportFormatError):
            parse_manual_import("[]")

    def test_invalid_json_rejected(self):
        with pytest.raises(ManualImportFormatError) as exc_info:
            parse_manual_import("{not json")

        assert exc_info.value.message.startswith("Invalid JSON:")

    def test_malformed_section_rejected(self):
        with pytest.raises(ManualImportFormatError) as exc_info:
            parse_manual_import(json.dumps({"branches": "Registry"}))

        assert exc_info.value.message.startswith("Invalid contact data:")

    def test_source_from_argument_or_document(self):
        text = json.dumps({"source": "https://example.gov.lk/contacts", "branches": []})

        assert parse_manual_import(text).source == "https://example.gov.lk/contacts"
        assert parse_manual_import(text, source="upload.json").source == "upload.json"

    def test_district_office_scenario(self):
        """Head office and district contacts only imply the district division."""
        text = json.dumps({
            "headoffice": [{"name": "A", "position": "Director", "phones": ["011"]}],
            "districtOffices": [{
                "district": "Kandy",
                "contacts": [{"name": "B", "position": "Officer", "phones": ["081"]}],
            }],
        })

        data = parse_manual_import(text)

        assert data.divisions == ["District Office - Kandy"]
        assert data.contact_count() == 2
        assert data.all_district_offices[0].contacts[0].division == "Kandy"


class TestNormalizeDocument:
    """Test per-section position defaults and field cleanup."""

    def test_position_defaults(self):
        data = normalize_document({
            "headOffice": [{"name": "Nameless"}],
            "branches": [{"division": "Registry"}, {"phones": ["011"]}],
            "districtOffices": [{"district": "Matara", "contacts": [{"name": "C"}]}],
        }, "test")

        assert data.head_office[0].position == UNKNOWN_POSITION
        assert data.branches[0].position == "Registry"
        assert data.branches[1].position == BRANCH_POSITION
        assert data.all_district_offices[0].contacts[0].position == DISTRICT_POSITION

    def test_blank_fields_become_missing(self):
        data = normalize_document({
            "headOffice": [{"position": " Director ", "email": "", "fax": "  ",
                            "phones": ["011 234", "", None]}],
        }, "test")

        contact = data.head_office[0]
        assert contact.position == "Director"
        assert contact.email is None
        assert contact.fax is None
        assert contact.phones == ["011 234"]

    def test_divisions_union_excludes_district_contact_divisions(self):
        data = normalize_document({
            "headOffice": [{"position": "Director", "division": "Finance"}],
            "branches": [{"division": "Registry"}],
            "districtOffices": [{"district": "Kandy",
                                 "contacts": [{"position": "Officer", "division": "Land Unit"}]}],
            "divisions": ["Legal", "Finance"],
        }, "test")

        assert data.divisions == ["Legal", "Finance", "Registry", "District Office - Kandy"]

    def test_json_dict_uses_camel_case(self):
        data = normalize_document({"head_office": [{"position": "Director"}]}, "test")

        dumped = data.to_json_dict()

        assert "headOffice" in dumped
        assert "head_office" not in dumped
        assert dumped["headOffice"][0] == {"position": "Director", "phones": []}
