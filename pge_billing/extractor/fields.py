"""Pull monetary fields out of OCR text with a label-anchored rules table.

Each rule names a field, the label phrase printed on the statement, and the
pattern of the amount that follows it. Rules are evaluated independently: a
rule that does not match yields ``None`` for its field and never affects the
others, because OCR noise on one line should not discard the rest of the bill.

The rules live in ``config.json`` under ``extraction.fields`` so new bill
layouts can be supported without touching this module.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pge_billing.config import setup_logging

if TYPE_CHECKING:
    from pge_billing.config import Settings
    from pge_billing.extractor.converter import RasterImage
    from pge_billing.extractor.ocr import OcrEngine

logger = setup_logging(__name__)

# Optional dollar sign, then digits "." two digits
DEFAULT_VALUE_PATTERN = r"\$?\s*(\d+\.\d{2})"

DELIVERY = "delivery"
GENERATION = "generation"
GAS = "gas"


@dataclass(frozen=True)
class FieldRule:
    """One extraction rule: field name, label phrase and amount pattern.

    The label is matched literally, except that any run of whitespace in it
    also matches any run of whitespace in the text. ``value_pattern`` must
    contain exactly one capturing group holding the amount.
    """

    name: str
    label: str
    value_pattern: str = DEFAULT_VALUE_PATTERN

    def compile(self) -> re.Pattern[str]:
        label = r"\s+".join(re.escape(word) for word in self.label.split())
        return re.compile(rf"{label}\s*{self.value_pattern}")


DEFAULT_RULES: tuple[FieldRule, ...] = (
    FieldRule(DELIVERY, "Current PG&E Electric Delivery Charges"),
    FieldRule(GENERATION, "San Jose Clean Energy Electric Generation Charges"),
    FieldRule(GAS, "Current Gas Charges"),
)


@dataclass(frozen=True)
class ExtractedFields:
    """Independently nullable amounts plus the OCR text they came from."""

    values: dict[str, float | None] = field(default_factory=dict)
    raw_text: str = ""

    @property
    def delivery(self) -> float | None:
        return self.values.get(DELIVERY)

    @property
    def generation(self) -> float | None:
        return self.values.get(GENERATION)

    @property
    def gas(self) -> float | None:
        return self.values.get(GAS)

    @property
    def missing(self) -> list[str]:
        return [name for name, value in self.values.items() if value is None]


def rules_from_config(entries: list[dict[str, Any]] | None) -> tuple[FieldRule, ...]:
    """Build rules from ``extraction.fields`` entries, or fall back to defaults.

    Raises
    ------
    ValueError
        If an entry lacks ``name`` or ``label``, or its pattern has no capture group.
    """
    if not entries:
        return DEFAULT_RULES

    rules = []
    for entry in entries:
        if not entry.get("name") or not entry.get("label"):
            msg = f"Extraction rule needs 'name' and 'label': {entry}"
            raise ValueError(msg)
        rule = FieldRule(entry["name"], entry["label"], entry.get("value_pattern", DEFAULT_VALUE_PATTERN))
        if rule.compile().groups < 1:
            msg = f"Extraction rule '{rule.name}' has no capture group in its value pattern"
            raise ValueError(msg)
        rules.append(rule)
    return tuple(rules)


def parse_charges(text: str, rules: tuple[FieldRule, ...] = DEFAULT_RULES) -> ExtractedFields:
    """Apply every rule to ``text`` independently.

    Parameters
    ----------
    text : str
        Recognized text of a statement page.
    rules : tuple[FieldRule, ...], optional
        Rules table; defaults to the PG&E delivery/generation/gas labels.

    Returns
    -------
    ExtractedFields
        One entry per rule; ``None`` where the rule did not match.

    Examples
    --------
    >>> parse_charges("Current Gas Charges $12.00").gas
    12.0
    """
    values: dict[str, float | None] = {}
    for rule in rules:
        match = rule.compile().search(text)
        values[rule.name] = float(match.group(1)) if match else None
    return ExtractedFields(values=values, raw_text=text)


class FieldExtractor:
    """Run OCR over a raster image and parse the configured fields."""

    def __init__(self, ocr_engine: OcrEngine, rules: tuple[FieldRule, ...] = DEFAULT_RULES) -> None:
        self.ocr_engine = ocr_engine
        self.rules = rules

    @classmethod
    def from_settings(cls, settings: Settings, ocr_engine: OcrEngine) -> FieldExtractor:
        return cls(ocr_engine, rules_from_config(settings.section("extraction").get("fields")))

    def extract(self, image: RasterImage) -> ExtractedFields:
        """OCR ``image`` and parse its charges.

        Raises
        ------
        OcrError
            If the OCR engine fails; a missing label is not an error.
        """
        text = self.ocr_engine.image_to_text(image.path)
        fields = parse_charges(text, self.rules)

        if fields.missing:
            logger.warning("%s: no match for %s", image.path.name, ", ".join(fields.missing))
        return fields
