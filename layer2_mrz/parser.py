"""
Layer 2 — MRZ Extraction
Component: MRZ text parser
Responsibility: Turn raw OCR text into identity fields (name, surname,
national ID) using the structured TD1 parser first and line-3 heuristics
plus digit scans for whatever it could not read.
"""
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence, Tuple

from error_handlers import StructuredParseFailure

from .structured import StructuredMRZFields, parse_td1

logger = logging.getLogger(__name__)

TD1_LINE_LENGTH = 30
MAX_MRZ_LINES = 3
MIN_CANDIDATE_LENGTH = 20   # Lines must be strictly longer than this
NATIONAL_ID_LENGTH = 11
FILLER = "<"

_MRZ_LINE_RE = re.compile(r"[A-Z0-9<]{20,}")
_NON_MRZ_RE = re.compile(r"[^A-Z0-9<]")
_FILLER_RUN_RE = re.compile(r"<{2,}")
_LETTER_RUN_RE = re.compile(r"[A-Z]+")
_NATIONAL_ID_RE = re.compile(r"[0-9]{11}")


@dataclass(frozen=True)
class HeuristicConfig:
    """Token length bounds for the line-3 name fallback (tuned on TR ID cards)."""
    min_token_length: int = 4
    max_token_length: int = 15


@dataclass(frozen=True)
class IdentityFields:
    """Identity fields read from an MRZ. Missing fields stay None."""
    name: Optional[str] = None
    surname: Optional[str] = None
    national_id: Optional[str] = None
    raw_text: str = ""
    mrz_lines: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_complete(self) -> bool:
        return bool(self.name and self.surname and self.national_id)

    @property
    def has_any_field(self) -> bool:
        return bool(self.name or self.surname or self.national_id)

    @property
    def missing_fields(self) -> List[str]:
        return [
            key for key in ("name", "surname", "national_id")
            if not getattr(self, key)
        ]

    def to_dict(self):
        return {
            "name": self.name,
            "surname": self.surname,
            "national_id": self.national_id,
            "raw_text": self.raw_text,
            "mrz_lines": list(self.mrz_lines),
        }


def normalize_mrz_line(line: str) -> str:
    """
    Force a line to exactly 30 MRZ characters.

    Characters outside A-Z, 0-9 and '<' are dropped, long lines are
    truncated and short lines are right-padded with '<'. Lossy by intent.
    """
    cleaned = _NON_MRZ_RE.sub("", line or "")
    return cleaned[:TD1_LINE_LENGTH].ljust(TD1_LINE_LENGTH, FILLER)


def select_mrz_lines(raw_text: str) -> List[str]:
    """Pick at most the first three MRZ-looking lines out of OCR output."""
    candidates = []
    for line in re.split(r"\r\n|\n|\r", raw_text or ""):
        line = line.strip()
        if len(line) > MIN_CANDIDATE_LENGTH and _MRZ_LINE_RE.fullmatch(line):
            candidates.append(line)
            if len(candidates) == MAX_MRZ_LINES:
                break
    return candidates


def _national_id_from(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    stripped = re.sub(r"[<\s]", "", value)
    if len(stripped) == NATIONAL_ID_LENGTH and stripped.isdigit():
        return stripped
    return None


class MRZParser:
    """
    Pure MRZ text parser.

    ``parse`` never raises and always returns IdentityFields with raw_text
    populated; identical input always gives identical output.
    """

    def __init__(
        self,
        structured_parser: Callable[[Sequence[str]], StructuredMRZFields] = parse_td1,
        heuristics: HeuristicConfig = None,
    ):
        self.structured_parser = structured_parser
        self.heuristics = heuristics or HeuristicConfig()
        lo, hi = self.heuristics.min_token_length, self.heuristics.max_token_length
        self._token_re = re.compile(rf"[A-Z]{{{lo},{hi}}}")

    def parse(self, raw_text: str) -> IdentityFields:
        """
        Extract name, surname and national ID from raw OCR text.

        Args:
            raw_text: Text returned by the OCR capability

        Returns:
            IdentityFields: fields that could be read, the rest None
        """
        raw_text = raw_text or ""
        lines = [normalize_mrz_line(line) for line in select_mrz_lines(raw_text)]
        result = IdentityFields(raw_text=raw_text, mrz_lines=tuple(lines))

        if len(lines) < 2:
            logger.warning(f"Insufficient MRZ lines: found {len(lines)}, need at least 2")
            return result

        logger.debug(f"Normalized MRZ lines: {lines}")

        result = self._apply_structured(result, lines)

        if (result.name is None or result.surname is None) and len(lines) >= 3:
            result = self._apply_name_heuristics(result, lines[2])

        if result.national_id is None:
            result = replace(result, national_id=self._scan_national_id(raw_text, lines))

        logger.info(
            f"MRZ parsed: name={'✓' if result.name else '✗'} "
            f"surname={'✓' if result.surname else '✗'} "
            f"national_id={'✓' if result.national_id else '✗'}"
        )
        return result

    # Step 3 - structured parse
    def _apply_structured(self, result: IdentityFields, lines: List[str]) -> IdentityFields:
        try:
            fields = self.structured_parser(lines)
        except StructuredParseFailure as e:
            logger.info(f"{e.message}; falling back to heuristics")
            return result
        except Exception as e:
            failure = StructuredParseFailure(e)
            logger.info(f"{failure.message}; falling back to heuristics")
            return result

        name = fields.given_names.split(" ")[0] if fields.given_names else None
        surname = fields.surname or None

        # Document number usually holds the card serial, so it comes last
        national_id = None
        for candidate in (fields.personal_number, fields.optional_data, fields.document_number):
            national_id = _national_id_from(candidate)
            if national_id:
                break

        return replace(result, name=name or None, surname=surname, national_id=national_id)

    # Step 4 - line 3 heuristics (SURNAME<<GIVENNAMES<<<<)
    def _apply_name_heuristics(self, result: IdentityFields, line3: str) -> IdentityFields:
        parts = self._split_name_line(line3)
        surname, name = result.surname, result.name

        if len(parts) >= 1 and surname is None:
            surname = self._surname_from(parts[0])

        if len(parts) >= 2 and name is None:
            match = self._token_re.match(parts[1].replace(FILLER, "").strip())
            if match:
                name = match.group(0)

        return replace(result, name=name, surname=surname)

    def _split_name_line(self, line3: str) -> List[str]:
        lo, hi = self.heuristics.min_token_length, self.heuristics.max_token_length
        stripped = line3.replace(FILLER, "").strip()

        parts = [p.strip() for p in _FILLER_RUN_RE.split(line3) if p.strip()]
        if len(parts) >= 2 or not stripped:
            return parts

        runs = _LETTER_RUN_RE.findall(stripped)
        if len(runs) >= 2 and all(lo <= len(run) <= hi for run in runs[:2]):
            return runs[:2]

        for surname_len in range(lo, hi + 1):
            if len(stripped) <= surname_len + lo:
                continue
            head = stripped[:surname_len]
            match = self._token_re.match(stripped[surname_len:])
            if match and head.isalpha() and head.isupper():
                return [head, match.group(0)]

        return parts

    def _surname_from(self, part: str) -> Optional[str]:
        lo, hi = self.heuristics.min_token_length, self.heuristics.max_token_length
        candidate = part.replace(FILLER, "").strip()
        match = self._token_re.match(candidate)
        if match:
            return match.group(0)
        letters = re.sub(r"[^A-Z]", "", candidate)
        if lo <= len(letters) <= hi:
            return letters
        return None

    # Step 5 - national ID digit scan
    @staticmethod
    def _scan_national_id(raw_text: str, lines: List[str]) -> Optional[str]:
        match = _NATIONAL_ID_RE.search(raw_text)
        if match:
            return match.group(0)
        match = _NATIONAL_ID_RE.search(lines[0])
        if match:
            return match.group(0)
        return None


def parse(raw_text: str) -> IdentityFields:
    """Parse raw OCR text with the default parser configuration."""
    return MRZParser().parse(raw_text)
