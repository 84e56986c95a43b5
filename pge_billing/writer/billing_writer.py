"""Fold per-document extractions into billing records and write them as CSV.

Column order is fixed::

    Date, PG&E Electric Delivery, San Jose Clean Energy, Energy Charges, Gas Charges

``Energy Charges`` is the derived total of delivery and generation. Rows follow
aggregation order (the order documents were resolved), not date order, and
records sharing a calendar month are kept as separate rows.

Total policy: the total is ``None`` unless both delivery and generation were
extracted. Such records are still written, with an empty total cell, and a
warning names the incomplete statement.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import pandas as pd

from pge_billing.config import setup_logging
from pge_billing.exceptions import FilenameParseError, OutputWriteError
from pge_billing.statements import StatementPeriod, parse_statement_date

if TYPE_CHECKING:
    import datetime as dt
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from pge_billing.extractor.fields import ExtractedFields
    from pge_billing.statements import LocalDocument

logger = setup_logging(__name__)

DATE_COLUMN = "Date"
DELIVERY_COLUMN = "PG&E Electric Delivery"
GENERATION_COLUMN = "San Jose Clean Energy"
TOTAL_COLUMN = "Energy Charges"
GAS_COLUMN = "Gas Charges"
CSV_COLUMNS = [DATE_COLUMN, DELIVERY_COLUMN, GENERATION_COLUMN, TOTAL_COLUMN, GAS_COLUMN]
MONEY_COLUMNS = CSV_COLUMNS[1:]


@dataclass(frozen=True)
class BillingRecord:
    """One statement: its date (from the filename), three charges and their total."""

    filename: str
    period: StatementPeriod
    date: dt.date
    delivery: float | None
    generation: float | None
    gas: float | None
    total: float | None

    def to_csv_row(self) -> dict[str, object]:
        return {
            DATE_COLUMN: self.date.isoformat(),
            DELIVERY_COLUMN: self.delivery,
            GENERATION_COLUMN: self.generation,
            TOTAL_COLUMN: self.total,
            GAS_COLUMN: self.gas,
        }


def compute_total(delivery: float | None, generation: float | None) -> float | None:
    """Sum delivery and generation, or ``None`` if either is missing."""
    if delivery is None or generation is None:
        return None
    return round(delivery + generation, 2)


def build_record(filename: str, fields: ExtractedFields) -> BillingRecord:
    """Combine a statement's filename date with its extracted charges.

    Raises
    ------
    FilenameParseError
        If the filename does not encode a valid MMDDYYYY date.
    """
    bill_date = parse_statement_date(filename)
    total = compute_total(fields.delivery, fields.generation)
    if total is None:
        logger.warning("%s: total undefined (delivery=%s, generation=%s)", filename, fields.delivery, fields.generation)

    return BillingRecord(
        filename=filename,
        period=StatementPeriod.from_date(bill_date),
        date=bill_date,
        delivery=fields.delivery,
        generation=fields.generation,
        gas=fields.gas,
        total=total,
    )


def aggregate(
    documents: Sequence[LocalDocument],
    extracted_by_document: Mapping[str, ExtractedFields],
) -> list[BillingRecord]:
    """Build one record per successfully extracted document.

    Parameters
    ----------
    documents : Sequence[LocalDocument]
        Resolved statements, in the order records should appear.
    extracted_by_document : Mapping[str, ExtractedFields]
        Extraction results keyed by statement filename. Documents without an
        entry (failed conversion or OCR) produce no record.

    Returns
    -------
    list[BillingRecord]
        Records in document order. A document whose filename cannot be dated
        is dropped with an error log; the rest are unaffected.
    """
    records: list[BillingRecord] = []
    for document in documents:
        fields = extracted_by_document.get(document.filename)
        if fields is None:
            logger.debug("No extraction for %s, skipping", document.filename)
            continue
        try:
            records.append(build_record(document.filename, fields))
        except FilenameParseError as e:
            logger.error("Dropping record: %s", e)
    return records


def records_to_dataframe(records: Sequence[BillingRecord]) -> pd.DataFrame:
    """Tabulate records with the fixed column order and float money columns."""
    df = pd.DataFrame([r.to_csv_row() for r in records], columns=CSV_COLUMNS)
    for column in MONEY_COLUMNS:
        df[column] = pd.to_numeric(df[column]).astype("float64")
    return df


def write_billings_csv(records: Sequence[BillingRecord], output_path: Path) -> Path:
    """Write records to CSV, amounts with two decimals and undefined values empty.

    Raises
    ------
    OutputWriteError
        If the file cannot be written.
    """
    df = records_to_dataframe(records)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(output_path, index=False, float_format="%.2f", na_rep="", encoding="utf-8")
    except OSError as e:
        msg = f"Could not write billing CSV {output_path}: {e}"
        raise OutputWriteError(msg) from e

    logger.info("Saved %d billing records: %s", len(df), output_path)
    return output_path


def read_billings_csv(path: Path) -> pd.DataFrame:
    """Read a billing CSV back with every cell as its original text."""
    return pd.read_csv(path, dtype=str, keep_default_na=False, encoding="utf-8")
