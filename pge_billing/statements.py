"""Statement periods, the filename convention and the local document cache.

Downloaded statements are named ``<accountId>custbill<MM><DD><YYYY>.pdf``.
The cache is searched by pattern rather than exact name: the billing day varies
month to month, and the account prefix is not always known up front.

Examples
--------
>>> statement_filename("6491", date(2025, 1, 6))
'6491custbill01062025.pdf'
>>> parse_statement_date("6491custbill01062025.pdf")
datetime.date(2025, 1, 6)
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path

from pge_billing.config import setup_logging
from pge_billing.exceptions import FilenameParseError

logger = setup_logging(__name__)

STATEMENT_MARKER = "custbill"
STATEMENT_SUFFIX = ".pdf"

# Strict form: digits, marker, exactly eight date digits, suffix
_FILENAME_RE = re.compile(r"^(?P<account>\d+)custbill(?P<date>\d{8})\.pdf$")


@dataclass(frozen=True, order=True)
class StatementPeriod:
    """One monthly billing cycle, ordered chronologically."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            msg = f"Invalid month: {self.month}. Must be 1-12."
            raise ValueError(msg)

    @classmethod
    def from_date(cls, value: date) -> StatementPeriod:
        return cls(value.year, value.month)

    @classmethod
    def from_filename(cls, filename: str) -> StatementPeriod:
        return cls.from_date(parse_statement_date(filename))

    def shifted(self, months: int) -> StatementPeriod:
        """Return the period ``months`` cycles later (negative for earlier)."""
        index = self.year * 12 + (self.month - 1) + months
        return StatementPeriod(index // 12, index % 12 + 1)

    def __str__(self) -> str:
        return f"{self.month:02d}-{self.year}"


@dataclass(frozen=True)
class LocalDocument:
    """A statement period bound to a path in the document cache."""

    period: StatementPeriod
    path: Path
    exists: bool = True

    @property
    def filename(self) -> str:
        return self.path.name


def requested_periods(last_n_months: int, today: date | None = None) -> list[StatementPeriod]:
    """List the look-back window, most recent period first.

    Parameters
    ----------
    last_n_months : int
        Number of monthly cycles to include, counting the current month.
    today : date, optional
        Reference day; defaults to the current UTC date.

    Returns
    -------
    list[StatementPeriod]
        ``last_n_months`` consecutive periods ending at ``today``'s month.
    """
    reference = today or datetime.now(UTC).date()
    current = StatementPeriod.from_date(reference)
    return [current.shifted(-offset) for offset in range(last_n_months)]


def statement_filename(account_id: str, bill_date: date) -> str:
    """Render the canonical statement filename for a bill date."""
    return f"{account_id}{STATEMENT_MARKER}{bill_date:%m%d%Y}{STATEMENT_SUFFIX}"


def _account_fragment(account_id: str | None) -> str:
    return re.escape(account_id) if account_id else r"\d+"


def period_pattern(period: StatementPeriod, account_id: str | None = None) -> re.Pattern[str]:
    """Match any statement of ``period`` regardless of billing day.

    The account prefix is matched literally when known, otherwise as any run
    of digits. The day must be exactly two digits.
    """
    return re.compile(
        rf"^{_account_fragment(account_id)}{STATEMENT_MARKER}"
        rf"{period.month:02d}\d{{2}}{period.year:04d}\.pdf$",
    )


def date_pattern(bill_date: date, account_id: str | None = None) -> re.Pattern[str]:
    """Match the statement of one exact bill date under any account prefix."""
    return re.compile(
        rf"^{_account_fragment(account_id)}{STATEMENT_MARKER}{bill_date:%m%d%Y}\.pdf$",
    )


def parse_statement_date(filename: str) -> date:
    """Parse the MMDDYYYY date embedded in a statement filename.

    Parameters
    ----------
    filename : str
        Bare filename such as ``"6491custbill01062025.pdf"``.

    Returns
    -------
    date
        Calendar date encoded in the name.

    Raises
    ------
    FilenameParseError
        If the name does not follow the convention or the digits are not a
        real calendar date.
    """
    match = _FILENAME_RE.match(filename)
    if not match:
        msg = f"Invalid statement filename: {filename}. Expected <account>custbillMMDDYYYY.pdf"
        raise FilenameParseError(msg)

    digits = match.group("date")
    try:
        return date(int(digits[4:8]), int(digits[0:2]), int(digits[2:4]))
    except ValueError as err:
        msg = f"Invalid date in statement filename: {filename}"
        raise FilenameParseError(msg) from err


def account_id_from_filename(filename: str) -> str | None:
    """Return the account prefix of a conforming statement filename."""
    match = _FILENAME_RE.match(filename)
    return match.group("account") if match else None


@dataclass
class DocumentCache:
    """Filename-keyed view of the local statement directory.

    Attributes
    ----------
    directory : Path
        Directory scanned for statements (the browser download location).
    account_id : str | None
        Literal account prefix, or ``None`` to accept any digits.
    ambiguous : dict[StatementPeriod, list[str]]
        Periods for which more than one file matched, with every candidate.
    """

    directory: Path
    account_id: str | None = None
    ambiguous: dict[StatementPeriod, list[str]] = field(default_factory=dict)

    def listing(self) -> list[str]:
        """Return the sorted filenames present in the cache directory."""
        if not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.iterdir() if p.is_file())

    def find(self, period: StatementPeriod) -> LocalDocument | None:
        """Resolve a period to a cached statement, if any.

        When several files match, the ambiguity is recorded and the latest
        billing day wins.
        """
        pattern = period_pattern(period, self.account_id)
        matches = [name for name in self.listing() if pattern.match(name)]
        if not matches:
            return None

        if len(matches) > 1:
            self.ambiguous[period] = matches
            logger.warning("Multiple statements match %s: %s", period, ", ".join(matches))
            # Day digits sit just before the four-digit year and suffix
            matches.sort(key=lambda name: name[-10:-8])

        return LocalDocument(period, self.directory / matches[-1])

    def find_date(self, bill_date: date) -> LocalDocument | None:
        """Resolve an exact bill date to a cached statement, if any."""
        pattern = date_pattern(bill_date, self.account_id)
        name = next((n for n in self.listing() if pattern.match(n)), None)
        if name is None:
            return None
        return LocalDocument(StatementPeriod.from_date(bill_date), self.directory / name)

    def wait_for(
        self,
        bill_date: date,
        timeout: float,
        poll_interval: float = 0.5,
    ) -> LocalDocument | None:
        """Poll until the statement for ``bill_date`` lands or ``timeout`` expires."""
        deadline = time.monotonic() + timeout
        while True:
            document = self.find_date(bill_date)
            if document is not None or time.monotonic() >= deadline:
                return document
            time.sleep(poll_interval)

    def infer_account_id(self) -> str | None:
        """Return the account prefix of the first conforming cached statement."""
        for name in self.listing():
            account = account_id_from_filename(name)
            if account:
                return account
        return None
