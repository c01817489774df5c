"""
Layer 2 — MRZ Extraction
Component: Structured TD1 parser adapter
Responsibility: Run the ``mrz`` package checker and hand back typed fields
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from mrz.checker.td1 import TD1CodeChecker

from error_handlers import StructuredParseFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StructuredMRZFields:
    """Fields read by the structured parser; fillers already removed."""
    surname: Optional[str] = None
    given_names: Optional[str] = None
    personal_number: Optional[str] = None
    optional_data: Optional[str] = None
    document_number: Optional[str] = None


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).replace("<", " ").split())
    return text or None


def parse_td1(lines: Sequence[str]) -> StructuredMRZFields:
    """
    Parse normalized TD1 lines with ``mrz.checker.td1.TD1CodeChecker``.

    Check digits are not enforced here; OCR noise in a single digit must not
    throw away names that were read correctly.

    Raises:
        StructuredParseFailure: If the checker rejects the input
    """
    try:
        checker = TD1CodeChecker("\n".join(lines), check_expiry=False)
        fields = checker.fields()
    except Exception as e:
        raise StructuredParseFailure(e) from e

    if not checker:
        logger.debug("TD1 checksum validation failed, keeping parsed fields")

    # Personal number is line 2's optional field; optional_data is line 1's
    return StructuredMRZFields(
        surname=_clean(getattr(fields, "surname", None)),
        given_names=_clean(getattr(fields, "name", None)),
        personal_number=_clean(getattr(fields, "optional_data_2", None)),
        optional_data=_clean(getattr(fields, "optional_data", None)),
        document_number=_clean(getattr(fields, "document_number", None)),
    )
