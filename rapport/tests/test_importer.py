"""Tests for JSON/XLSX import and JSON export."""
from __future__ import annotations

import json
from datetime import date, datetime

import openpyxl
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from rapport.importer import _key, export_records, import_records, import_xlsx, normalize_record
from rapport.models import Base, Contact


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


def _contacts(session) -> list[Contact]:
    return list(session.execute(select(Contact).order_by(Contact.full_name)).scalars().all())


class TestKeyNormalization:
    @pytest.mark.parametrize("raw,expected", [
        ("fullName", "full_name"),
        ("Full Name", "full_name"),
        ("desiredFrequencyDays", "desired_frequency_days"),
        ("role-tags", "role_tags"),
        ("systemRole", "system_role"),
        ("company", "company"),
    ])
    def test_keys(self, raw, expected):
        assert _key(raw) == expected


class TestNormalizeRecord:
    def test_defaults_fill_gaps(self):
        data = normalize_record({"full_name": "Ann"})
        assert data["desired_frequency_days"] == 30
        assert data["relationship_energy"] == 3
        assert data["tags"] == []
        assert data["last_contact_date"] is None
        assert data["contribution_details"] == {"financial": 0, "network": 0, "trust": 0}

    def test_zero_is_kept(self):
        assert normalize_record({"full_name": "Ann", "response_quality": 0})["response_quality"] == 0

    def test_flattened_detail_columns(self):
        data = normalize_record({"full_name": "Ann", "contribution_trust": "2", "potential_synergy": 3.0})
        assert data["contribution_details"]["trust"] == 2
        assert data["potential_details"]["synergy"] == 3

    def test_details_as_json_string(self):
        data = normalize_record({"full_name": "Ann", "potentialDetails": '{"systemRole": 2}'})
        assert data["potential_details"]["system_role"] == 2

    def test_datetime_becomes_date(self):
        data = normalize_record({"full_name": "Ann", "last_contact_date": datetime(2026, 4, 2, 10, 30)})
        assert data["last_contact_date"] == date(2026, 4, 2)


class TestImportRecords:
    def test_camel_case_export(self, session):
        result = import_records([{
            "fullName": "Ann Example", "desiredFrequencyDays": "14", "tags": "friends; chess",
            "contributionDetails": {"financial": 2, "network": 3, "trust": 3},
            "lastContactDate": "2026-01-15",
        }], session)
        assert result.success == 1
        assert result.failed == 0
        (c,) = _contacts(session)
        assert c.desired_frequency_days == 14
        assert json.loads(c.tags_json) == ["friends", "chess"]
        assert c.contribution_score == 8
        assert c.contribution_class == "A"
        assert c.last_contact_date == date(2026, 1, 15)

    def test_bad_rows_reported(self, session):
        result = import_records([
            {"full_name": "Good"},
            {"full_name": "Too Happy", "response_quality": 7},
            {"company": "Nameless Inc"},
            "not a record",
        ], session)
        assert result.success == 1
        assert result.failed == 3
        assert result.errors[0].startswith("Too Happy: response_quality")
        assert result.errors[1].startswith("Unknown: full_name")
        assert result.errors[2] == "Unknown: record is not an object"
        assert [c.full_name for c in _contacts(session)] == ["Good"]

    def test_bad_date_reported(self, session):
        result = import_records([{"full_name": "When", "last_contact_date": "someday"}], session)
        assert result.failed == 1
        assert "last_contact_date" in result.errors[0]


class TestImportXlsx:
    def test_reads_first_sheet(self, session, tmp_path):
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.append(["Full Name", "Company", "Tags", "Last Contact Date", "Potential Personal"])
        ws.append(["Linus", "Kernel", "oss;finland", datetime(2026, 2, 3), 3])
        ws.append([None, None, None, None, None])
        ws.append(["Margaret", "NASA", None, None, None])
        path = tmp_path / "contacts.xlsx"
        wb.save(path)

        result = import_xlsx(path, session)
        assert result.success == 2
        linus, margaret = _contacts(session)
        assert linus.company == "Kernel"
        assert json.loads(linus.tags_json) == ["oss", "finland"]
        assert linus.last_contact_date == date(2026, 2, 3)
        assert json.loads(linus.potential_details_json)["personal"] == 3
        assert margaret.last_contact_date is None

    def test_empty_workbook(self, session, tmp_path):
        path = tmp_path / "empty.xlsx"
        openpyxl.Workbook().save(path)
        result = import_xlsx(path, session)
        assert result.success == 0
        assert result.failed == 0


class TestExport:
    def test_export_shape(self, session):
        import_records([
            {"full_name": "Zed", "tags": ["b"], "last_contact_date": "2026-05-01"},
            {"full_name": "Amy", "role_tags": "mentor"},
        ], session)
        exported = export_records(session)
        assert [r["full_name"] for r in exported] == ["Amy", "Zed"]
        zed = exported[1]
        assert zed["last_contact_date"] == "2026-05-01"
        assert zed["tags"] == ["b"]
        assert zed["importance_level"] == "C"
        assert set(zed["potential_details"]) == {"personal", "resources", "network", "synergy", "system_role"}
        assert exported[0]["role_tags"] == ["mentor"]

    def test_export_reimports(self, session):
        import_records([{"full_name": "Loop", "contribution_details": {"trust": 3}, "attention_level": 4}], session)
        exported = export_records(session)
        result = import_records(exported, session)
        assert result.success == 1
        copies = [c for c in _contacts(session) if c.full_name == "Loop"]
        assert len(copies) == 2
        assert copies[0].contribution_score == copies[1].contribution_score == 3
