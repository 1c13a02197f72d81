"""Extract structured fields from pasted payment confirmation messages.

Cashiers paste the SMS the customer shows them. Two gateway templates are
recognised, with a field-by-field fallback for anything else:

    QK7AB12CDE Confirmed. Ksh500.00 received from JOHN DOE 254712345678
    on 12/10/2024 at 2:30 PM

    You have received Ksh 500.00 from JOHN DOE 254712345678 on 12/10/2024
    Transaction ID: QK7AB12CDE

Parsing never raises. Fields that cannot be found fall back to defaults and
are listed in ``missing_fields`` so the supervisor can correct them.
"""

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Dict, Any, List

from pydantic import BaseModel, Field

from ..database import utcnow

logger = logging.getLogger(__name__)

FIELDS = ("transaction_code", "amount", "sender_phone", "sender_name", "transaction_date")

# Ten alphanumerics containing at least one digit and one letter
_CODE = r"(?=[A-Z0-9]{0,9}\d)(?=[A-Z0-9]{0,9}[A-Z])[A-Z0-9]{10}"
_CURRENCY = r"(?:Ksh|KES)\.?\s*"
_AMOUNT = r"[0-9][0-9,]*(?:\.\d+)?"
_PHONE = r"254\d{9}"
_NAME = r"[A-Z][A-Z .'-]*?"
_DATE = r"\d{1,2}/\d{1,2}/(?:\d{4}|\d{2})(?!\d)(?:\s+at\s+\d{1,2}:\d{2}(?:\s*[AP]M)?)?"

CODE_RE = re.compile(rf"\b{_CODE}\b", re.IGNORECASE)
AMOUNT_RE = re.compile(rf"{_CURRENCY}({_AMOUNT})", re.IGNORECASE)
PHONE_RE = re.compile(rf"(?<!\d)({_PHONE})(?!\d)")
NAME_RE = re.compile(rf"\bfrom\s+({_NAME})\s+\+?{_PHONE}(?!\d)", re.IGNORECASE)
DATE_RE = re.compile(rf"(?<!\d)({_DATE})", re.IGNORECASE)

_DATE_PARTS_RE = re.compile(
    r"(\d{1,2})/(\d{1,2})/(\d{4}|\d{2})(?:\s+at\s+(\d{1,2}):(\d{2})(?:\s*([AP]M))?)?",
    re.IGNORECASE,
)


def parse_amount(value: str) -> Optional[Decimal]:
    try:
        return Decimal(value.replace(",", "")).quantize(Decimal("0.01"))
    except InvalidOperation:
        # Unparseable, or too many digits to hold to the cent
        return None


def parse_date(value: str) -> Optional[datetime]:
    """Month-first ``M/D/YYYY`` with an optional ``at H:MM AM/PM``.

    When the first part cannot be a month it is read as the day.
    """
    match = _DATE_PARTS_RE.match(value.strip())
    if not match:
        return None
    first, second, year, hour, minute, meridiem = match.groups()
    month, day = int(first), int(second)
    if month > 12:
        month, day = day, month
    year_value = int(year)
    if len(year) == 2:
        year_value += 2000

    hour_value = int(hour) if hour else 0
    minute_value = int(minute) if minute else 0
    if meridiem:
        meridiem = meridiem.upper()
        if hour_value == 12:
            hour_value = 0
        if meridiem == "PM":
            hour_value += 12

    try:
        return datetime(year_value, month, day, hour_value, minute_value)
    except ValueError:
        return None


def clean_name(value: str) -> str:
    return " ".join(value.split()).strip(" .")


class ParseResult(BaseModel):
    """Fields extracted from one message, with defaults for what was missing."""
    transaction_code: str = ""
    amount: Decimal = Decimal("0")
    sender_phone: str = ""
    sender_name: str = ""
    transaction_date: datetime
    missing_fields: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    extractor: str = ""

    @property
    def ambiguous(self) -> bool:
        """True when any field fell back to its default."""
        return bool(self.missing_fields)

    def to_entry_fields(self) -> Dict[str, Any]:
        """Column values for a new ManualEntry row."""
        return {
            "transaction_code": self.transaction_code,
            "amount": self.amount,
            "sender_phone": self.sender_phone,
            "sender_name": self.sender_name,
            "transaction_date": self.transaction_date,
            "parse_confidence": self.confidence,
            "needs_correction": self.ambiguous,
            "missing_fields": list(self.missing_fields),
        }


class FieldExtractor:
    """Base class for one message format.

    ``extract`` returns only the fields it found, already converted.
    """
    name = "base"

    def extract(self, text: str) -> Dict[str, Any]:
        raise NotImplementedError

    @staticmethod
    def _convert(raw: Dict[str, Optional[str]]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if raw.get("code"):
            fields["transaction_code"] = raw["code"].upper()
        if raw.get("amount"):
            amount = parse_amount(raw["amount"])
            if amount is not None:
                fields["amount"] = amount
        if raw.get("phone"):
            fields["sender_phone"] = raw["phone"]
        if raw.get("name"):
            name = clean_name(raw["name"])
            if name:
                fields["sender_name"] = name
        if raw.get("date"):
            moment = parse_date(raw["date"])
            if moment is not None:
                fields["transaction_date"] = moment
        return fields


class TemplateExtractor(FieldExtractor):
    pattern: re.Pattern

    def extract(self, text: str) -> Dict[str, Any]:
        match = self.pattern.search(text)
        if not match:
            return {}
        return self._convert(match.groupdict())


class ConfirmedReceiptExtractor(TemplateExtractor):
    """``<CODE> Confirmed. Ksh500.00 received from NAME 2547... on D at T``"""
    name = "confirmed_receipt"
    pattern = re.compile(
        rf"\b(?P<code>{_CODE})\b\s+Confirmed\.?\s*"
        rf"{_CURRENCY}(?P<amount>{_AMOUNT})\s+received\s+from\s+"
        rf"(?P<name>{_NAME})\s+\+?(?P<phone>{_PHONE})(?!\d)"
        rf"(?:\s+on\s+(?P<date>{_DATE}))?",
        re.IGNORECASE,
    )


class ReceivedNoticeExtractor(TemplateExtractor):
    """``You have received Ksh 500.00 from NAME 2547... ... Transaction ID: <CODE>``"""
    name = "received_notice"
    pattern = re.compile(
        rf"You\s+have\s+received\s+{_CURRENCY}(?P<amount>{_AMOUNT})\s+from\s+"
        rf"(?P<name>{_NAME})\s+\+?(?P<phone>{_PHONE})(?!\d)"
        rf"(?:\s+on\s+(?P<date>{_DATE}))?"
        rf"(?:.*?Transaction\s+ID\s*:?\s*(?P<code>{_CODE})\b)?",
        re.IGNORECASE | re.DOTALL,
    )


class GenericExtractor(FieldExtractor):
    """Each field found independently anywhere in the text."""
    name = "generic"

    def extract(self, text: str) -> Dict[str, Any]:
        raw: Dict[str, Optional[str]] = {}
        for key, regex, group in (
            ("code", CODE_RE, 0),
            ("amount", AMOUNT_RE, 1),
            ("phone", PHONE_RE, 1),
            ("name", NAME_RE, 1),
            ("date", DATE_RE, 1),
        ):
            match = regex.search(text)
            raw[key] = match.group(group) if match else None
        return self._convert(raw)


DEFAULT_EXTRACTORS = (
    ConfirmedReceiptExtractor(),
    ReceivedNoticeExtractor(),
    GenericExtractor(),
)


class ManualEntryParser:
    """Runs the extractor chain and keeps the most complete result."""

    def __init__(
        self,
        extractors=DEFAULT_EXTRACTORS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.extractors = list(extractors)
        self._clock = clock

    def parse(self, raw_text: Optional[str]) -> ParseResult:
        text = (raw_text or "").strip()
        best: Dict[str, Any] = {}
        best_name = ""
        if text:
            for extractor in self.extractors:
                try:
                    fields = extractor.extract(text)
                except Exception:
                    logger.exception(f"Extractor {extractor.name} failed")
                    continue
                # Strictly greater, so earlier extractors win ties.
                if len(fields) > len(best):
                    best, best_name = fields, extractor.name

        missing = [name for name in FIELDS if name not in best]
        result = ParseResult(
            transaction_code=best.get("transaction_code", ""),
            amount=best.get("amount", Decimal("0")),
            sender_phone=best.get("sender_phone", ""),
            sender_name=best.get("sender_name", ""),
            transaction_date=best.get("transaction_date") or self._clock(),
            missing_fields=missing,
            confidence=round(len(best) / len(FIELDS), 2),
            extractor=best_name,
        )
        if result.ambiguous:
            logger.warning(
                f"Ambiguous payment message (extractor={best_name or 'none'}, "
                f"missing={','.join(missing)})"
            )
        return result


_default_parser = ManualEntryParser()


def parse_message(raw_text: Optional[str]) -> ParseResult:
    """Parse with the default extractor chain."""
    return _default_parser.parse(raw_text)
