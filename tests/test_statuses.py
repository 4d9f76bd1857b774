"""Status vocabulary and label table tests."""

import pytest

from app.services.statuses import (
    STATUS_LABELS,
    RequestStatus,
    check_label_tables,
    is_terminal,
    label_for,
    label_table,
    parse_status,
    status_from_label,
)


class TestLabelTables:
    @pytest.mark.parametrize("locale", sorted(STATUS_LABELS))
    def test_every_status_round_trips(self, locale):
        for status in RequestStatus:
            assert status_from_label(label_for(status, locale), locale) == status

    def test_missing_label_rejected(self):
        table = dict(STATUS_LABELS["en"])
        del table[RequestStatus.CLOSED]
        with pytest.raises(ValueError, match="closed"):
            check_label_tables({"en": table})

    def test_duplicate_label_rejected(self):
        table = dict(STATUS_LABELS["en"])
        table[RequestStatus.CLOSED] = "completed"  # collides case-insensitively
        with pytest.raises(ValueError, match="both"):
            check_label_tables({"en": table})

    def test_label_lookup_is_case_insensitive(self):
        assert status_from_label("  em análise ", "pt-BR") == RequestStatus.REVIEW

    def test_unknown_label(self):
        with pytest.raises(ValueError):
            status_from_label("Shipped", "en")

    def test_unknown_locale(self):
        with pytest.raises(ValueError, match="Unsupported locale"):
            label_for(RequestStatus.NEW, "fr")

    def test_label_table_order(self):
        rows = label_table("en")
        assert [r["code"] for r in rows] == [s.value for s in RequestStatus]
        assert rows[0] == {"code": "new", "label": "New"}


class TestStatusCodes:
    def test_parse(self):
        assert parse_status("awaiting_post") == RequestStatus.AWAITING_POST

    def test_parse_invalid(self):
        with pytest.raises(ValueError, match="Invalid status"):
            parse_status("shipped")

    @pytest.mark.parametrize("code", ["rejected", "closed", "completed"])
    def test_terminal(self, code):
        assert is_terminal(code)

    @pytest.mark.parametrize("code", ["new", "review", "pending", "approved", "processing"])
    def test_not_terminal(self, code):
        assert not is_terminal(code)
