"""Manual entry of payment confirmations pasted by cashiers."""

from .parser import (
    FieldExtractor,
    TemplateExtractor,
    ConfirmedReceiptExtractor,
    ReceivedNoticeExtractor,
    GenericExtractor,
    DEFAULT_EXTRACTORS,
    ManualEntryParser,
    ParseResult,
    parse_message,
)
from .service import ManualEntryService

__all__ = [
    "FieldExtractor",
    "TemplateExtractor",
    "ConfirmedReceiptExtractor",
    "ReceivedNoticeExtractor",
    "GenericExtractor",
    "DEFAULT_EXTRACTORS",
    "ManualEntryParser",
    "ParseResult",
    "parse_message",
    "ManualEntryService",
]
