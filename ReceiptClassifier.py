import re
import logging
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ClassificationError

logger = logging.getLogger(__name__)

# Confidence reported when structured fields could not be produced
FALLBACK_CONFIDENCE = 0.1

UNKNOWN_VENDOR = "Unknown Vendor"
UNKNOWN_VEHICLE = "UNKNOWN"
ZERO_AMOUNT = "$0.00"

KNOWN_VENDORS = [
    "shell", "exxon", "mobil", "chevron", "bp", "texaco", "valero", "citgo",
    "speedway", "marathon", "sunoco", "phillips 66", "conoco", "arco",
    "walmart", "costco", "sams club", "target", "home depot", "lowes",
    "autozone", "advance auto", "oreilly", "napa", "pepboys",
]

FUEL_KEYWORDS = ["gas", "fuel", "diesel", "gasoline", "gallon", "gal", "unleaded", "premium", "pump"]
MAINTENANCE_KEYWORDS = [
    "oil", "tire", "brake", "repair", "service", "maintenance", "parts", "labor", "inspection",
]

FIELD_WEIGHTS = {
    "date": 0.2,
    "amount": 0.3,
    "vendor_name": 0.2,
    "type": 0.1,
    "vehicle": 0.1,
    "location": 0.1,
}

_NUMERIC_DATE = re.compile(r"\b(\d{1,2})[/\-](\d{1,2})[/\-](\d{4}|\d{2})\b")
_ISO_DATE = re.compile(r"\b(\d{4})[/\-](\d{1,2})[/\-](\d{1,2})\b")

_AMOUNT_PATTERNS = [
    re.compile(r"\$\s*(\d+(?:,\d{3})*\.\d{2})"),
    re.compile(r"total[:\s]*\$?\s*(\d+(?:,\d{3})*\.?\d{0,2})", re.IGNORECASE),
    re.compile(r"amount[:\s]*\$?\s*(\d+(?:,\d{3})*\.?\d{0,2})", re.IGNORECASE),
    re.compile(r"(\d+\.\d{2})"),
]

_VEHICLE_PATTERNS = [
    re.compile(r"truck[:\s\-]*(\w+\d+|\d+)", re.IGNORECASE),
    re.compile(r"vehicle[:\s]*(\w+\d+|\d+)", re.IGNORECASE),
    re.compile(r"unit[:\s]*(\w+\d+|\d+)", re.IGNORECASE),
    re.compile(r"fleet[:\s]*(\w+\d+|\d+)", re.IGNORECASE),
    re.compile(r"\b([A-Z]{1,3}[-\s]?\d{1,4})\b"),
]

_STREET = re.compile(
    r"\d+.*\b(?:st|street|ave|avenue|rd|road|blvd|boulevard|dr|drive|way|ln|lane)\b",
    re.IGNORECASE,
)
_CITY_STATE = re.compile(r"\w+,\s*[A-Z]{2}(\s+\d{5})?")


@dataclass
class Classification:
    fields: Dict[str, Any] = field(default_factory=dict)
    confidence: float = FALLBACK_CONFIDENCE
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {**self.fields, "confidence": self.confidence}


def fallback_classification() -> Classification:
    """Neutral result used when classification fails; raw text is still returned."""
    return Classification(
        fields={
            "date": date.today().isoformat(),
            "type": "Other",
            "amount": ZERO_AMOUNT,
            "vehicle": UNKNOWN_VEHICLE,
            "vendor_name": UNKNOWN_VENDOR,
            "location": None,
        },
        confidence=FALLBACK_CONFIDENCE,
        degraded=True,
    )


class ReceiptClassifier:
    """
    Pattern-matching classifier for fleet receipts.

    Extracts date, amount, vendor, receipt type (Fuel / Maintenance / Other),
    vehicle id and location. Confidence is the weighted share of fields that
    were actually found, clamped to [0.1, 0.95].
    """

    def classify(self, text: str) -> Classification:
        if not text or not text.strip():
            raise ClassificationError("No text to classify")

        try:
            lines = [line.strip() for line in text.splitlines() if line.strip()]
            flat = re.sub(r"\s+", " ", text).strip()

            found = {
                "date": self.extract_date(flat),
                "amount": self.extract_amount(flat),
                "vendor_name": self.extract_vendor_name(lines),
                "type": self.determine_receipt_type(flat),
                "vehicle": self.extract_vehicle(flat),
                "location": self.extract_location(lines),
            }
        except re.error as e:
            raise ClassificationError(f"Pattern matching failed: {e}") from e

        confidence = self.calculate_confidence(found)
        fields = {
            "date": found["date"] or date.today().isoformat(),
            "type": found["type"] or "Other",
            "amount": found["amount"] or ZERO_AMOUNT,
            "vehicle": found["vehicle"] or UNKNOWN_VEHICLE,
            "vendor_name": found["vendor_name"] or UNKNOWN_VENDOR,
            "location": found["location"],
        }

        logger.info(
            f"[Classifier] {sum(1 for v in found.values() if v)} fields extracted, "
            f"confidence={confidence:.2f}"
        )
        return Classification(fields=fields, confidence=confidence)

    # --- Field extractors (return None when nothing was found) ---

    @staticmethod
    def extract_date(text: str) -> Optional[str]:
        candidates = []
        for m in _ISO_DATE.finditer(text):
            candidates.append((int(m.group(1)), int(m.group(2)), int(m.group(3))))
        for m in _NUMERIC_DATE.finditer(text):
            month, day, year = int(m.group(1)), int(m.group(2)), m.group(3)
            year = int(year) if len(year) == 4 else 2000 + int(year)
            candidates.append((year, month, day))

        for year, month, day in candidates:
            if 1 <= month <= 12 and 1 <= day <= 31 and 2000 <= year <= 2099:
                return f"{year}-{month:02d}-{day:02d}"
        return None

    @staticmethod
    def extract_amount(text: str) -> Optional[str]:
        for pattern in _AMOUNT_PATTERNS:
            m = pattern.search(text)
            if not m or not m.group(1):
                continue
            try:
                amount = float(m.group(1).replace(",", ""))
            except ValueError:
                continue
            if 0 < amount < 10000:
                return f"${amount:.2f}"
        return None

    @staticmethod
    def extract_vendor_name(lines: List[str]) -> Optional[str]:
        for line in lines[:3]:
            lowered = line.lower()
            for vendor in KNOWN_VENDORS:
                if vendor in lowered:
                    return vendor.title()

            if 2 < len(line) < 30 and re.search(r"[a-zA-Z]", line):
                cleaned = re.sub(r"[^\w\s]", "", line).strip()
                if len(cleaned) > 2:
                    return cleaned.title()
        return None

    @staticmethod
    def determine_receipt_type(text: str) -> Optional[str]:
        words = set(re.findall(r"[a-z]+", text.lower()))
        fuel_score = sum(1 for k in FUEL_KEYWORDS if k in words)
        maintenance_score = sum(1 for k in MAINTENANCE_KEYWORDS if k in words)

        if fuel_score > maintenance_score:
            return "Fuel"
        if maintenance_score > 0:
            return "Maintenance"
        return None

    @staticmethod
    def extract_vehicle(text: str) -> Optional[str]:
        for pattern in _VEHICLE_PATTERNS:
            m = pattern.search(text)
            if m:
                vehicle = re.sub(r"\s", "-", m.group(1)).upper()
                if 2 <= len(vehicle) <= 10:
                    return vehicle
        return None

    @staticmethod
    def extract_location(lines: List[str]) -> Optional[str]:
        for line in lines[1:5]:
            if _STREET.search(line) or _CITY_STATE.search(line):
                return line
        return None

    @staticmethod
    def calculate_confidence(found: Dict[str, Any]) -> float:
        score = sum(weight for name, weight in FIELD_WEIGHTS.items() if found.get(name))

        amount = found.get("amount")
        if amount:
            value = float(amount.lstrip("$"))
            if 5 < value < 1000:
                score += 0.1

        return round(min(0.95, max(0.1, score)), 2)
