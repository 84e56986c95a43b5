"""Tests for billing record aggregation and CSV output.

Tests cover:
1. Total computation and the nullable-total policy
2. Aggregation order and per-record failures
3. CSV layout, formatting and re-reading
4. The statement-to-row scenario end to end
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from unittest.mock import patch

import pytest

from pge_billing.exceptions import OutputWriteError
from pge_billing.extractor.fields import ExtractedFields, parse_charges
from pge_billing.statements import LocalDocument, StatementPeriod
from pge_billing.writer.billing_writer import (
    CSV_COLUMNS,
    aggregate,
    build_record,
    compute_total,
    read_billings_csv,
    records_to_dataframe,
    write_billings_csv,
)

HEADER = "Date,PG&E Electric Delivery,San Jose Clean Energy,Energy Charges,Gas Charges"


def fields(delivery: float | None, generation: float | None, gas: float | None) -> ExtractedFields:
    return ExtractedFields(values={"delivery": delivery, "generation": generation, "gas": gas})


def document(tmp_path: Path, name: str) -> LocalDocument:
    return LocalDocument(StatementPeriod.from_filename(name), tmp_path / name)


# =============================================================================
# Totals
# =============================================================================


class TestComputeTotal:
    """Tests for the derived energy total."""

    def test_sum(self) -> None:
        assert compute_total(45.12, 30.88) == 76.00

    def test_rounded_to_cents(self) -> None:
        assert compute_total(0.1, 0.2) == 0.3

    def test_missing_delivery(self) -> None:
        assert compute_total(None, 30.88) is None

    def test_missing_generation(self) -> None:
        assert compute_total(45.12, None) is None


class TestBuildRecord:
    """Tests for combining filename dates with extracted charges."""

    def test_date_from_filename(self) -> None:
        record = build_record("6491custbill01062025.pdf", fields(45.12, 30.88, 12.00))

        assert record.date == date(2025, 1, 6)
        assert record.period == StatementPeriod(2025, 1)
        assert record.total == 76.00

    def test_incomplete_record_kept_with_null_total(self) -> None:
        record = build_record("6491custbill01062025.pdf", fields(None, 30.88, 12.00))

        assert record.total is None
        assert record.gas == 12.00


# =============================================================================
# Aggregation
# =============================================================================


class TestAggregate:
    """Tests for folding extractions into records."""

    def test_follows_document_order(self, tmp_path: Path) -> None:
        documents = [
            document(tmp_path, "6491custbill03062025.pdf"),
            document(tmp_path, "6491custbill01062025.pdf"),
        ]
        extracted = {d.filename: fields(1.00, 2.00, 3.00) for d in documents}

        records = aggregate(documents, extracted)

        assert [r.date for r in records] == [date(2025, 3, 6), date(2025, 1, 6)]

    def test_documents_without_extraction_are_skipped(self, tmp_path: Path) -> None:
        documents = [
            document(tmp_path, "6491custbill01062025.pdf"),
            document(tmp_path, "6491custbill02052025.pdf"),
        ]

        records = aggregate(documents, {"6491custbill02052025.pdf": fields(1.00, 2.00, 3.00)})

        assert [r.filename for r in records] == ["6491custbill02052025.pdf"]

    def test_same_month_kept_as_separate_rows(self, tmp_path: Path) -> None:
        documents = [
            document(tmp_path, "6491custbill01062025.pdf"),
            document(tmp_path, "6491custbill01282025.pdf"),
        ]
        extracted = {d.filename: fields(1.00, 2.00, 3.00) for d in documents}

        assert len(aggregate(documents, extracted)) == 2

    def test_undatable_filename_dropped(self, tmp_path: Path) -> None:
        bad = LocalDocument(StatementPeriod(2025, 2), tmp_path / "6491custbill02312025.pdf")
        good = document(tmp_path, "6491custbill01062025.pdf")
        extracted = {bad.filename: fields(1.00, 2.00, 3.00), good.filename: fields(1.00, 2.00, 3.00)}

        records = aggregate([bad, good], extracted)

        assert [r.filename for r in records] == ["6491custbill01062025.pdf"]


# =============================================================================
# CSV output
# =============================================================================


class TestWriteBillingsCsv:
    """Tests for the tabular output."""

    def test_header_and_formatting(self, tmp_path: Path) -> None:
        record = build_record("6491custbill01062025.pdf", fields(45.1, 30.9, 12.0))
        output = write_billings_csv([record], tmp_path / "out" / "billings.csv")

        lines = output.read_text(encoding="utf-8").splitlines()
        assert lines == [HEADER, "2025-01-06,45.10,30.90,76.00,12.00"]

    def test_null_values_written_empty(self, tmp_path: Path) -> None:
        record = build_record("6491custbill01062025.pdf", fields(None, 30.88, None))
        output = write_billings_csv([record], tmp_path / "billings.csv")

        assert output.read_text(encoding="utf-8").splitlines()[1] == "2025-01-06,,30.88,,"

    def test_no_records_writes_header_only(self, tmp_path: Path) -> None:
        output = write_billings_csv([], tmp_path / "billings.csv")
        assert output.read_text(encoding="utf-8").splitlines() == [HEADER]

    def test_reread_preserves_rows_and_text(self, tmp_path: Path) -> None:
        records = [
            build_record("6491custbill01062025.pdf", fields(45.12, 30.88, 12.00)),
            build_record("6491custbill02052025.pdf", fields(50.00, None, 8.40)),
        ]
        output = write_billings_csv(records, tmp_path / "billings.csv")

        df = read_billings_csv(output)

        assert list(df.columns) == CSV_COLUMNS
        assert len(df) == 2
        assert df.iloc[0].tolist() == ["2025-01-06", "45.12", "30.88", "76.00", "12.00"]
        assert df.iloc[1].tolist() == ["2025-02-05", "50.00", "", "", "8.40"]

    def test_money_columns_are_float(self) -> None:
        record = build_record("6491custbill01062025.pdf", fields(None, None, None))
        df = records_to_dataframe([record])
        assert all(str(df[c].dtype) == "float64" for c in CSV_COLUMNS[1:])

    def test_write_failure(self, tmp_path: Path) -> None:
        record = build_record("6491custbill01062025.pdf", fields(1.00, 2.00, 3.00))

        with patch("pandas.DataFrame.to_csv", side_effect=PermissionError("read-only")):
            with pytest.raises(OutputWriteError, match="read-only"):
                write_billings_csv([record], tmp_path / "billings.csv")


def test_statement_to_row(tmp_path: Path) -> None:
    """Filename date plus OCR text become one dated CSV row."""
    text = (
        "Current PG&E Electric Delivery Charges $45.12 ... "
        "San Jose Clean Energy Electric Generation Charges $30.88 ... "
        "Current Gas Charges $12.00"
    )
    doc = document(tmp_path, "6491custbill01062025.pdf")

    records = aggregate([doc], {doc.filename: parse_charges(text)})
    output = write_billings_csv(records, tmp_path / "billings.csv")

    (record,) = records
    assert (record.date, record.delivery, record.generation, record.total, record.gas) == (
        date(2025, 1, 6),
        45.12,
        30.88,
        76.00,
        12.00,
    )
    assert output.read_text(encoding="utf-8").splitlines()[1] == "2025-01-06,45.12,30.88,76.00,12.00"
