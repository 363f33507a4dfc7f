#!/usr/bin/env python3
"""
Unit tests for the SQLite directory repository.
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ..models import (
    ApiBudgetSettings, CreateContactInput, CreateDivisionInput, InstitutionSyncSettings,
    LocationType, SyncFrequency, SyncStatus,
)
from ..repository import SQLiteDirectoryRepository, slugify
from ..sync_log import SyncLog


class TestSlugify:

    @pytest.mark.parametrize("name,slug", [
        ("Head Office", "head-office"),
        ("District Office - Kandy", "district-office-kandy"),
        ("  Finance & Accounts ", "finance-accounts"),
    ])
    def test_slugify(self, name, slug):
        assert slugify(name) == slug


class TestSQLiteDirectoryRepository:
    """Test persistence semantics the pipeline relies on."""

    @pytest.fixture
    def repository(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield SQLiteDirectoryRepository(str(Path(temp_dir) / "directory.sqlite"))

    @pytest.fixture
    def institution(self, repository):
        return repository.create_institution("Department of Land", institution_id="land")

    @pytest.fixture
    def division(self, repository, institution):
        return repository.create_division(CreateDivisionInput(institution_id=institution.id, name="Head Office"))

    def test_institution_defaults(self, repository, institution):
        loaded = repository.get_institution("land")

        assert loaded.name == "Department of Land"
        assert loaded.sync_settings.source_url is None
        assert loaded.sync_settings.auto_sync_enabled is False
        assert loaded.sync_settings.sync_frequency == SyncFrequency.WEEKLY
        assert repository.get_institution("missing") is None

    def test_update_sync_settings(self, repository, institution):
        synced = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

        settings = repository.update_sync_settings(
            "land", source_url="https://land.gov.lk/contact", last_synced_at=synced,
            sync_frequency="daily", auto_sync_enabled=True
        )

        assert settings.source_url == "https://land.gov.lk/contact"
        assert settings.last_synced_at == synced
        assert settings.sync_frequency == SyncFrequency.DAILY
        assert settings.auto_sync_enabled is True

    def test_update_sync_settings_errors(self, repository, institution):
        with pytest.raises(KeyError):
            repository.update_sync_settings("missing", content_hash="abc")
        with pytest.raises(ValueError):
            repository.update_sync_settings("land", colour="blue")

    def test_create_institution_with_settings(self, repository, institution):
        institution = repository.create_institution(
            "Customs", sync_settings=InstitutionSyncSettings(source_url="https://customs.gov.lk")
        )

        assert len(institution.id) == 32
        assert institution.sync_settings.source_url == "https://customs.gov.lk"
        assert [i.name for i in repository.list_institutions()] == ["Customs", "Department of Land"]

    def test_bulk_create_divisions_is_idempotent(self, repository, institution):
        first = repository.bulk_create_divisions("land", ["Head Office", "Finance"])
        second = repository.bulk_create_divisions("land", ["Finance", "head office", "Registry"])

        assert [d.slug for d in first] == ["head-office", "finance"]
        assert second[0].id == first[1].id
        assert second[1].id == first[0].id
        assert [d.display_order for d in repository.get_divisions("land")] == [0, 1, 2]
        assert len(repository.get_divisions("land")) == 3

    def test_district_division_metadata(self, repository, institution):
        division = repository.create_division(CreateDivisionInput(
            institution_id="land", name="District Office - Kandy", phones=["081-1111111"],
            location_type=LocationType.DISTRICT_OFFICE, district="Kandy", address="Kandy Road"
        ))

        loaded = repository.get_division_by_name("land", "District Office - Kandy")
        assert loaded.id == division.id
        assert loaded.location_type == LocationType.DISTRICT_OFFICE
        assert loaded.district == "Kandy"
        assert loaded.phones == ["081-1111111"]

    def test_contact_email_is_lowercased(self, repository, division):
        repository.create_contact(CreateContactInput(
            division_id=division.id, institution_id="land", position="Director",
            email="Director@Land.GOV.lk", phones=["011"]
        ))

        found = repository.find_contact_by_email("land", "DIRECTOR@land.gov.lk")

        assert found is not None
        assert found.email == "director@land.gov.lk"
        assert found.phones == ["011"]

    def test_contact_division_must_belong_to_institution(self, repository, division):
        repository.create_institution("Other", institution_id="other")

        with pytest.raises(ValueError):
            repository.create_contact(CreateContactInput(
                division_id=division.id, institution_id="other", position="Clerk"
            ))

    def test_update_contact(self, repository, division):
        contact = repository.create_contact(CreateContactInput(
            division_id=division.id, institution_id="land", position="Officer"
        ))

        updated = repository.update_contact(contact.id, position="Senior Officer", is_active=False)

        assert updated.position == "Senior Officer"
        assert updated.is_active is False
        assert repository.get_contacts("land") == []
        assert len(repository.get_contacts("land", active_only=False)) == 1
        with pytest.raises(KeyError):
            repository.update_contact("missing", position="x")

    def test_replace_contacts_and_recompute_counts(self, repository, division):
        for position in ("Director", "Clerk"):
            repository.create_contact(CreateContactInput(
                division_id=division.id, institution_id="land", position=position
            ))
        repository.recompute_contact_counts("land")
        assert repository.get_divisions("land")[0].contact_count == 2

        inserted = repository.replace_contacts("land", [
            CreateContactInput(division_id=division.id, institution_id="land", position="Registrar")
        ])
        repository.recompute_contact_counts("land")

        assert inserted == 1
        assert [c.position for c in repository.get_contacts("land", active_only=False)] == ["Registrar"]
        assert repository.get_divisions("land")[0].contact_count == 1

    def test_replace_contacts_is_all_or_nothing(self, repository, division):
        repository.create_contact(CreateContactInput(
            division_id=division.id, institution_id="land", position="Director"
        ))
        other = repository.create_institution("Other", institution_id="other")
        foreign = repository.create_division(CreateDivisionInput(institution_id=other.id, name="Head Office"))

        with pytest.raises(ValueError):
            repository.replace_contacts("land", [
                CreateContactInput(division_id=division.id, institution_id="land", position="Clerk"),
                CreateContactInput(division_id=foreign.id, institution_id="land", position="Driver"),
            ])

        assert [c.position for c in repository.get_contacts("land")] == ["Director"]

    def test_find_division_falls_back_to_slug(self, repository, institution):
        finance = repository.create_division(CreateDivisionInput(institution_id="land", name="Finance Division"))

        assert repository.get_division_by_name("land", "Finance division") is None
        assert repository.find_division("land", "Finance Division").id == finance.id
        assert repository.find_division("land", "finance  division.").id == finance.id
        assert repository.find_division("land", "Registry") is None

    def test_create_division_suffixes_taken_slug(self, repository, institution):
        first = repository.create_division(CreateDivisionInput(institution_id="land", name="kandy"))
        second = repository.create_division(CreateDivisionInput(institution_id="land", name="Kandy"))

        assert first.slug == "kandy"
        assert second.slug == f"kandy-{second.id[:8]}"
        assert len(repository.get_divisions("land")) == 2

    def test_budget_settings_singleton(self, repository):
        assert repository.get_budget_settings() is None

        repository.save_budget_settings(ApiBudgetSettings(monthly_limit_usd=10.0))
        repository.save_budget_settings(ApiBudgetSettings(monthly_limit_usd=12.5, pause_on_exhausted=False))

        settings = repository.get_budget_settings()
        assert settings.monthly_limit_usd == 12.5
        assert settings.pause_on_exhausted is False

    def test_lease_conflict_and_release(self, repository, institution):
        assert repository.acquire_lease("land", "run-a", 60) is True
        assert repository.acquire_lease("land", "run-b", 60) is False

        repository.release_lease("land", "run-a")

        assert repository.acquire_lease("land", "run-b", 60) is True

    def test_lease_is_reentrant_for_owner(self, repository, institution):
        assert repository.acquire_lease("land", "run-a", 60) is True
        assert repository.acquire_lease("land", "run-a", 60) is True

    def test_expired_lease_is_taken_over(self, repository, institution):
        assert repository.acquire_lease("land", "run-a", -1) is True
        assert repository.acquire_lease("land", "run-b", 60) is True
        assert repository.acquire_lease("land", "run-a", 60) is False

    def test_release_by_non_owner_is_ignored(self, repository, institution):
        repository.acquire_lease("land", "run-a", 60)
        repository.release_lease("land", "run-b")

        assert repository.acquire_lease("land", "run-b", 60) is False


class TestSyncLog:
    """Test audit entries written through the repository."""

    @pytest.fixture
    def sync_log(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield SyncLog(SQLiteDirectoryRepository(str(Path(temp_dir) / "directory.sqlite")))

    def test_success_entry(self, sync_log):
        entry = sync_log.record("land", "https://land.gov.lk", True, content_hash="abc", previous_hash=None,
                                contacts_found=3, contacts_imported=3, divisions_created=2,
                                tokens_used=1500, cost_usd=0.005)

        assert entry.status == SyncStatus.SUCCESS
        assert entry.changes_detected is True
        loaded = sync_log.history("land")[0]
        assert loaded.id == entry.id
        assert loaded.contacts_imported == 3
        assert loaded.cost_usd == 0.005

    def test_unchanged_and_failed_entries(self, sync_log):
        unchanged = sync_log.record("land", "https://land.gov.lk", True, content_hash="abc", previous_hash="abc")
        failed = sync_log.record("land", "https://land.gov.lk", False, error_message="timeout")

        assert unchanged.changes_detected is False
        assert failed.status == SyncStatus.FAILED
        assert failed.changes_detected is False
        assert [e.id for e in sync_log.history("land")] == [failed.id, unchanged.id]
        assert len(sync_log.history("land", limit=1)) == 1
