"""Writer module: billing record aggregation and CSV output."""

from pge_billing.writer.billing_writer import (
    CSV_COLUMNS,
    BillingRecord,
    aggregate,
    build_record,
    compute_total,
    read_billings_csv,
    records_to_dataframe,
    write_billings_csv,
)

__all__ = [
    "CSV_COLUMNS",
    "BillingRecord",
    "aggregate",
    "build_record",
    "compute_total",
    "read_billings_csv",
    "records_to_dataframe",
    "write_billings_csv",
]
