"""
CRM — Client Row Validator Tests
Tests: permissive field checks, date formats, owner checks, duplicate collisions.
Run: cd backend && pytest tests/test_client_validator.py -v
"""

from datetime import datetime, timezone

import pytest

from services.client_normalizer import normalize_row
from services.client_validator import (
    batch_validate_clients,
    is_valid_email,
    is_valid_phone,
    is_valid_url,
    parse_date,
    validate_client_row,
)
from services.duplicate_detector import ExistingClients, check_duplicate, load_existing_clients

IMPORTER = "importer@test.local"


def _validate(raw, existing=None, allow_updates=True, row_number=1):
    return validate_client_row(normalize_row(raw, row_number, IMPORTER), existing, allow_updates)


# ═══════════════════════════════════════════════════════════════
# 1. FORMATS
# ═══════════════════════════════════════════════════════════════

class TestFormats:

    @pytest.mark.parametrize("value,ok", [
        ("jane@acme.com", True),
        ("jane.doe+crm@mail.acme.co.uk", True),
        ("jane@acme", False),
        ("not an email", False),
        ("", False),
    ])
    def test_email(self, value, ok):
        assert is_valid_email(value) is ok

    @pytest.mark.parametrize("value,ok", [
        ("555-123-4567", True),
        ("(555) 123-4567", True),
        ("+1234567890", True),
        ("12345", False),
    ])
    def test_phone(self, value, ok):
        assert is_valid_phone(value) is ok

    @pytest.mark.parametrize("value,ok", [
        ("https://acme.com", True),
        ("http://facebook.com/acme", True),
        ("acme.com", False),
        ("ftp://acme.com", False),
    ])
    def test_url(self, value, ok):
        assert is_valid_url(value) is ok


class TestParseDate:

    def test_iso(self):
        assert parse_date("2024-12-31") == datetime(2024, 12, 31, tzinfo=timezone.utc)

    def test_iso_zulu(self):
        assert parse_date("2024-12-31T10:30:00Z") == datetime(2024, 12, 31, 10, 30, tzinfo=timezone.utc)

    def test_us(self):
        assert parse_date("03/15/2021") == datetime(2021, 3, 15, tzinfo=timezone.utc)

    def test_eu(self):
        assert parse_date("25/12/2023") == datetime(2023, 12, 25, tzinfo=timezone.utc)

    def test_ambiguous_reads_us(self):
        assert parse_date("03/04/2024").month == 3

    def test_impossible_day(self):
        assert parse_date("02/31/2024") is None

    def test_garbage(self):
        assert parse_date("next tuesday") is None
        assert parse_date("") is None


# ═══════════════════════════════════════════════════════════════
# 2. PERMISSIVE FIELD VALIDATION
# ═══════════════════════════════════════════════════════════════

class TestValidateRow:
    """Warnings + safe defaults, never errors for field problems"""

    def test_unknown_status_defaults(self):
        result = _validate({"name": "Acme", "contactStatus": "Interested"}, row_number=7)
        assert result.is_valid
        assert result.row_number == 7
        assert result.data["contactStatus"] == "Uncategorized"
        assert len(result.warnings) == 1
        assert "Interested" in result.warnings[0]

    def test_status_case_insensitive(self):
        result = _validate({"name": "Acme", "status": "closed WON"})
        assert result.data["contactStatus"] == "Closed won"
        assert result.warnings == []

    def test_missing_status(self):
        assert _validate({"name": "Acme"}).data["contactStatus"] == "Uncategorized"

    def test_invalid_email_dropped(self):
        result = _validate({"name": "Acme", "email": "acme-at-example"})
        assert result.is_valid
        assert "email" not in result.data
        assert any("email" in w for w in result.warnings)

    def test_invalid_phone_and_urls_dropped(self):
        result = _validate({
            "name": "Acme",
            "phone": "12",
            "website": "acme",
            "facebookPage": "fb/acme",
        })
        assert result.is_valid
        for key in ("phone", "website", "facebookPage"):
            assert key not in result.data
        assert len(result.warnings) == 3

    def test_unparsable_amount_omitted(self):
        result = _validate({"name": "Acme", "amount": "call me"})
        assert "forecastedAmount" not in result.data
        assert any("Forecasted amount" in w for w in result.warnings)

    def test_negative_amount_kept(self):
        result = _validate({"name": "Acme", "amount": "-250"})
        assert result.data["forecastedAmount"] == -250
        assert any("negative" in w for w in result.warnings)

    def test_interaction_count(self):
        assert _validate({"name": "Acme", "interactionCount": "4"}).data["interactionCount"] == 4
        result = _validate({"name": "Acme", "interactionCount": "-1"})
        assert "interactionCount" not in result.data
        assert result.warnings

    def test_dates(self):
        result = _validate({"name": "Acme", "projectedCloseDate": "12/31/2024", "createdAt": "soon"})
        assert result.data["projectedCloseDate"] == datetime(2024, 12, 31, tzinfo=timezone.utc)
        assert "createdAt" not in result.data
        assert result.data["createdAtText"] == "soon"
        assert any("createdAt" in w for w in result.warnings)

    def test_long_name_truncated(self):
        result = _validate({"name": "A" * 250})
        assert len(result.data["name"]) == 200
        assert result.warnings

    def test_short_name_accepted(self):
        result = _validate({"name": "X"})
        assert result.is_valid
        assert result.data["name"] == "X"

    def test_owner_invalid_format_kept(self):
        result = _validate({"name": "Acme", "ownedBy": "Sales Team"})
        assert result.data["ownedBy"] == "sales team"
        assert any("owner email format" in w for w in result.warnings)

    def test_unknown_owner_warned(self):
        existing = ExistingClients(known_users={IMPORTER})
        result = _validate({"name": "Acme", "ownedBy": "ghost@test.local"}, existing)
        assert result.data["ownedBy"] == "ghost@test.local"
        assert any("not found" in w for w in result.warnings)

    def test_known_owner_silent(self):
        existing = ExistingClients(known_users={IMPORTER})
        assert _validate({"name": "Acme"}, existing).warnings == []

    def test_masked_payment_text_passes_through(self):
        result = _validate({"name": "Acme", "ccNumber": "4242424242424242", "ccExp": "0926"})
        assert result.data["ccNumberText"] == "**** 4242"
        assert result.data["expirationDateText"] == "09/26"


# ═══════════════════════════════════════════════════════════════
# 3. DUPLICATES
# ═══════════════════════════════════════════════════════════════

class TestDuplicates:

    def _existing(self):
        return ExistingClients(
            ids={"c-1"},
            emails={"jane@acme.com": "c-1"},
            name_email={("Acme", "jane@acme.com")},
            known_users={IMPORTER},
        )

    def test_name_email_is_advisory(self):
        result = _validate({"name": "Acme", "email": "jane@acme.com"}, self._existing())
        assert result.is_valid
        assert any("may already exist" in w for w in result.warnings)

    def test_id_collision_allowed_by_default(self):
        result = _validate({"Client_id": "c-1", "name": "Other"}, self._existing())
        assert result.is_valid

    def test_id_collision_blocked_without_updates(self):
        result = _validate({"Client_id": "c-1", "name": "Other"}, self._existing(), allow_updates=False)
        assert not result.is_valid
        assert "c-1" in result.errors[0]

    def test_email_collision_blocked_without_updates(self):
        result = _validate({"name": "Other", "email": "JANE@acme.com"}, self._existing(), allow_updates=False)
        assert not result.is_valid

    def test_check_duplicate_result(self):
        dup = check_duplicate({"name": "Acme", "email": "jane@acme.com"}, self._existing())
        assert dup.to_dict() == {
            "is_duplicate": True,
            "duplicate_type": "name_email",
            "blocking": False,
            "original_client_id": "c-1",
            "message": 'Client with name "Acme" and email "jane@acme.com" may already exist',
        }

    def test_batch_counts(self):
        rows = [
            normalize_row({"Client_id": "c-1", "name": "A"}, 1, IMPORTER),
            normalize_row({"name": "B", "status": "??"}, 2, IMPORTER),
            normalize_row({"name": "C"}, 3, IMPORTER),
        ]
        batch = batch_validate_clients(rows, self._existing(), allow_updates=False)
        assert batch.counts() == {"totalRows": 3, "validCount": 2, "invalidCount": 1, "warningCount": 1}
        assert [r.row_number for r in batch.invalid_rows] == [1]


class TestLoadExistingClients:
    """Single grouped lookup against clients and users"""

    @pytest.mark.asyncio
    async def test_lookup(self, fake_db):
        fake_db.clients.docs["c-1"] = {"_id": "c-1", "name": "Acme", "email": "jane@acme.com"}
        fake_db.clients.docs["c-2"] = {"_id": "c-2", "name": "Beta", "email": "b@beta.com"}
        fake_db.clients.docs["c-3"] = {"_id": "c-3", "name": "Gamma"}
        fake_db.users.docs["u1"] = {"_id": "u1", "id": "u1", "email": IMPORTER}

        existing = await load_existing_clients([
            {"_id": "c-3", "ownedBy": IMPORTER},
            {"email": "jane@acme.com", "ownedBy": "ghost@test.local"},
            {"name": "no identity"},
        ])

        assert existing.ids == {"c-1", "c-3"}
        assert existing.emails == {"jane@acme.com": "c-1"}
        assert ("Acme", "jane@acme.com") in existing.name_email
        assert existing.has_user(IMPORTER)
        assert not existing.has_user("ghost@test.local")

    @pytest.mark.asyncio
    async def test_nothing_to_look_up(self, fake_db):
        existing = await load_existing_clients([{"name": "no identity"}])
        assert existing.ids == set()
        assert existing.known_users == set()
