"""
Tests for the export serializers and sanitization.
"""

import csv
import io
import json
import xml.etree.ElementTree as ET

import pytest

from crm_compliance.exceptions import UnsupportedFormatError
from crm_compliance.privacy.models import ExportFormat
from crm_compliance.privacy.sanitize import SENSITIVE_FIELDS, sanitize_record
from crm_compliance.privacy.serializers import (
    CSV_COLUMNS,
    XML_ROOT,
    resolve_format,
    serialize,
    to_csv,
    to_json,
    to_xml,
)


@pytest.fixture
def bundle():
    return {
        "export_metadata": {"user_id": "u-1", "version": "1.0", "include_deleted": False},
        "personal_data": {
            "profile": {
                "id": "u-1",
                "email": "jane@example.com",
                "company": 'Acme, "Widgets" & <Co>',
                "last_name": None,
            },
            "consents": [{"consent_type": "marketing", "consent_given": True}],
        },
        "preferences": {},
        "activity_data": {"leads": []},
    }


class TestSanitize:
    """Test removal of sensitive fields."""

    def test_removes_deny_listed_fields(self):
        record = {
            "id": "u-1",
            "email": "a@example.com",
            "password_hash": "secret",
            "verification_token": "tok",
            "session_id": "sess",
        }

        clean = sanitize_record(record)

        assert clean == {"id": "u-1", "email": "a@example.com"}
        assert "password_hash" in record

    def test_nested_records(self):
        record = {"profile": {"password_hash": "x", "email": "a"}, "items": [{"session_id": "s"}]}
        assert sanitize_record(record) == {"profile": {"email": "a"}, "items": [{}]}

    def test_none(self):
        assert sanitize_record(None) is None

    def test_deny_list(self):
        assert SENSITIVE_FIELDS == {"password_hash", "verification_token", "session_id"}


class TestJsonSerializer:
    """Test JSON rendering."""

    def test_round_trips_structure(self, bundle):
        assert json.loads(to_json(bundle)) == bundle

    def test_sorted_and_indented(self, bundle):
        text = to_json(bundle)
        assert text.index('"activity_data"') < text.index('"export_metadata"')
        assert '\n  "activity_data"' in text


class TestCsvSerializer:
    """Test CSV flattening."""

    def _rows(self, text):
        return list(csv.reader(io.StringIO(text)))

    def test_header_and_sections(self, bundle):
        rows = self._rows(to_csv(bundle, exported_at="2024-01-01T00:00:00"))

        assert rows[0] == CSV_COLUMNS
        by_key = {(r[0], r[1]): r for r in rows[1:]}
        assert by_key[("personal_data.profile", "email")][2] == "jane@example.com"
        assert by_key[("export_metadata", "include_deleted")][2] == "false"
        assert all(r[3] == "2024-01-01T00:00:00" for r in rows[1:])

    def test_every_field_is_quoted(self, bundle):
        text = to_csv(bundle, exported_at="2024-01-01T00:00:00")
        assert text.splitlines()[0] == '"Section","Key","Value","Date"'
        assert '"Acme, ""Widgets"" & <Co>"' in text

    def test_none_and_lists(self, bundle):
        rows = self._rows(to_csv(bundle))
        by_key = {(r[0], r[1]): r[2] for r in rows[1:]}

        assert by_key[("personal_data.profile", "last_name")] == ""
        consents = json.loads(by_key[("personal_data", "consents")])
        assert consents == [{"consent_type": "marketing", "consent_given": True}]
        assert by_key[("activity_data", "leads")] == "[]"


class TestXmlSerializer:
    """Test XML rendering."""

    def test_structure(self, bundle):
        text = to_xml(bundle)
        assert text.startswith('<?xml version="1.0" encoding="UTF-8"?>')

        root = ET.fromstring(text.split("\n", 1)[1])
        assert root.tag == XML_ROOT
        assert root.findtext("personal_data/profile/email") == "jane@example.com"
        assert root.findtext("export_metadata/include_deleted") == "false"
        items = root.findall("personal_data/consents/item")
        assert len(items) == 1
        assert items[0].findtext("consent_type") == "marketing"

    def test_escaping(self, bundle):
        text = to_xml(bundle)

        assert "&amp;" in text and "&lt;Co&gt;" in text and "&quot;" in text
        root = ET.fromstring(text.split("\n", 1)[1])
        assert root.findtext("personal_data/profile/company") == 'Acme, "Widgets" & <Co>'

    def test_none_is_empty_element(self, bundle):
        assert "<last_name></last_name>" in to_xml(bundle)

    def test_keys_that_are_not_element_names(self):
        settings = {"theme color": "dark", "2fa": True, "xmlns": "x", "a&b": None}
        text = to_xml({"preferences": {"setting_value": settings}})

        root = ET.fromstring(text.split("\n", 1)[1])
        items = root.findall("preferences/setting_value/item")
        assert {i.get("key"): i.text for i in items} == {
            "theme color": "dark",
            "2fa": "true",
            "xmlns": "x",
            "a&b": None,
        }


class TestFormatDispatch:
    """Test format resolution."""

    @pytest.mark.parametrize(
        "name,expected",
        [("json", ExportFormat.JSON), ("CSV", ExportFormat.CSV), (ExportFormat.XML, ExportFormat.XML)],
    )
    def test_resolve_format(self, name, expected):
        assert resolve_format(name) is expected

    def test_unsupported_format(self, bundle):
        with pytest.raises(UnsupportedFormatError) as exc_info:
            serialize(bundle, "pdf")
        assert exc_info.value.export_format == "pdf"

    def test_serialize_dispatches(self, bundle):
        assert serialize(bundle, "json") == to_json(bundle)
        assert serialize(bundle, "xml") == to_xml(bundle)
        assert serialize(bundle, "csv").startswith('"Section"')
