"""
Tests for MRZ parsing, OCR wiring and the scan pipeline.
"""
import asyncio

import numpy as np
import pytest

from error_handlers import (
    CapabilityNotReadyError,
    ImageTooDarkError,
    InsufficientMRZLinesError,
    StructuredParseFailure,
)
from layer1_preprocessing import MRZPreprocessor
from layer2_mrz import (
    HeuristicConfig,
    IdentityFields,
    MRZParser,
    MRZScanner,
    OCRConfig,
    StructuredMRZFields,
    TesseractOCR,
    normalize_mrz_line,
    parse,
    parse_td1,
    select_mrz_lines,
)

LINE1 = "I<TURA12B345678<<<<<<<<<<<<<<<"
LINE2 = "9001015M3001012TUR<<<<<<<<<<<0"


def failing_parser(lines):
    raise ValueError("checker exploded")


def structured_returning(**fields):
    def parser(lines):
        return StructuredMRZFields(**fields)
    return parser


def heuristic_only():
    """Parser whose structured step always fails, leaving only fallbacks."""
    return MRZParser(structured_parser=failing_parser)


def mrz_text(line3, line1=LINE1, line2=LINE2):
    return f"{line1}\n{line2}\n{line3}"


class TestNormalization:
    """Test MRZ line normalization."""

    def test_valid_line_unchanged(self):
        """Test an already-valid 30-char line is returned unchanged."""
        assert normalize_mrz_line(LINE1) == LINE1

    def test_idempotent(self):
        once = normalize_mrz_line("ab C<<12 x")
        assert normalize_mrz_line(once) == once

    @pytest.mark.parametrize("line", [
        "", "<", "a" * 100, "OZTURK AHMET", "İÇŞĞÜÖ<<123", "\t\n  ", "A" * 45,
        "0123456789" * 5, "!@#$%^&*()",
    ])
    def test_always_thirty_mrz_chars(self, line):
        """Test normalization is total: 30 chars from the MRZ alphabet."""
        result = normalize_mrz_line(line)
        assert len(result) == 30
        assert all(c.isdigit() or ("A" <= c <= "Z") or c == "<" for c in result)

    def test_truncates_long_lines(self):
        assert normalize_mrz_line("A" * 40) == "A" * 30

    def test_pads_short_lines(self):
        assert normalize_mrz_line("ABC") == "ABC" + "<" * 27


class TestLineSelection:
    """Test MRZ candidate line filtering."""

    def test_drops_short_and_noisy_lines(self):
        text = "REPUBLIC OF TURKEY\nSHORT<<\n" + LINE1 + "\nnoise line here\n" + LINE2
        assert select_mrz_lines(text) == [LINE1, LINE2]

    def test_keeps_at_most_three(self):
        text = "\n".join([LINE1, LINE2, LINE1, LINE2])
        assert len(select_mrz_lines(text)) == 3

    def test_requires_more_than_twenty_chars(self):
        assert select_mrz_lines("A" * 20) == []
        assert select_mrz_lines("A" * 21) == ["A" * 21]

    def test_trims_whitespace(self):
        assert select_mrz_lines("   " + LINE1 + "  \r\n") == [LINE1]


class TestParseWithoutMRZ:
    """Test parsing when no MRZ lines are present."""

    def test_no_long_lines_returns_raw_text_only(self):
        """Test text without long lines yields no fields but keeps raw text."""
        text = "HELLO\nWORLD 12345678901\nSHORT"
        result = parse(text)
        assert result.name is None
        assert result.surname is None
        assert result.national_id is None
        assert result.raw_text == text

    def test_single_line_is_insufficient(self):
        result = heuristic_only().parse(LINE1 + "\nfoo")
        assert result.mrz_lines == (LINE1,)
        assert not result.has_any_field

    def test_empty_text(self):
        result = parse("")
        assert result == IdentityFields(raw_text="")


class TestStructuredPath:
    """Test field extraction from the structured parser."""

    def test_fields_from_structured_parser(self):
        parser = MRZParser(structured_parser=structured_returning(
            surname="OZTURK",
            given_names="AHMET MEHMET",
            personal_number="12345678901",
        ))
        result = parser.parse(mrz_text("OZTURK<<AHMET<MEHMET<<<<<<<<<<"))
        assert result.surname == "OZTURK"
        assert result.name == "AHMET"
        assert result.national_id == "12345678901"

    def test_national_id_priority(self):
        """Test personal number beats optional data beats document number."""
        parser = MRZParser(structured_parser=structured_returning(
            surname="DOE", given_names="JANE",
            personal_number="123",
            optional_data="22222222222",
            document_number="33333333333",
        ))
        assert parser.parse(mrz_text("DOE<<JANE")).national_id == "22222222222"

    def test_document_number_is_last_resort(self):
        parser = MRZParser(structured_parser=structured_returning(
            surname="DOE", given_names="JANE", document_number="33333333333",
        ))
        assert parser.parse(mrz_text("DOE<<JANE")).national_id == "33333333333"

    def test_filler_stripped_from_national_id(self):
        parser = MRZParser(structured_parser=structured_returning(
            surname="DOE", given_names="JANE", personal_number="123456<78901",
        ))
        assert parser.parse(mrz_text("DOE<<JANE")).national_id == "12345678901"

    def test_heuristics_never_overwrite_structured_fields(self):
        """Test the fallback only fills fields the structured parser missed."""
        parser = MRZParser(structured_parser=structured_returning(surname="SMITH"))
        result = parser.parse(mrz_text("OZTURK<<AHMET<<<<<<<<<<<<<<<<<"))
        assert result.surname == "SMITH"
        assert result.name == "AHMET"

    def test_real_td1_parser(self):
        """Test a well-formed TD1 MRZ through the mrz package."""
        text = mrz_text(
            "OZTURK<<AHMET<<<<<<<<<<<<<<<<<",
            line2="9001015M3001012TUR12345678901<",
        )
        result = parse(text)
        assert result.surname == "OZTURK"
        assert result.name == "AHMET"
        assert result.national_id == "12345678901"

    def test_real_td1_personal_number(self):
        """Test the line-2 optional field is read as the personal number."""
        fields = parse_td1([LINE1, "7408122F1204159UTO98765432109<", "OZTURK<<AHMET<<<<<<<<<<<<<<<<<"])
        assert fields.personal_number == "98765432109"

    def test_personal_number_beats_digits_in_raw_text(self):
        """Test an unrelated 11-digit run before the MRZ does not win."""
        text = "SERIAL 11122233344\n" + mrz_text(
            "OZTURK<<AHMET<<<<<<<<<<<<<<<<<",
            line2="7408122F1204159UTO98765432109<",
        )
        assert parse(text).national_id == "98765432109"


class TestHeuristicFallback:
    """Test line-3 heuristics when the structured parser fails."""

    def test_structured_failure_is_not_fatal(self):
        """Test a throwing structured parser falls through to heuristics."""
        result = heuristic_only().parse(mrz_text("OZTURK<<AHMET<<<<<<<<<<<<<<<<<"))
        assert result.surname == "OZTURK"
        assert result.name == "AHMET"

    def test_structured_parse_failure_also_caught(self):
        def raising(lines):
            raise StructuredParseFailure("bad check digit")
        result = MRZParser(structured_parser=raising).parse(
            mrz_text("OZTURK<<AHMET<<<<<<<<<<<<<<<<<")
        )
        assert result.surname == "OZTURK"

    def test_long_tokens_are_cut_to_pattern(self):
        """Test tokens longer than the name pattern keep their leading letters."""
        result = heuristic_only().parse(mrz_text("OZTURKXXXXXX<<AHMETXXXX<<<<<<<"))
        assert result.surname.startswith("OZTURK")
        assert result.name.startswith("AHMET")

    def test_letter_runs_when_single_filler(self):
        """Test letter runs split on non-letters when only one filler separates them."""
        result = heuristic_only().parse(mrz_text("OZTURK0AHMET<<<<<<<<<<<<<<<<<<"))
        assert result.surname == "OZTURK"
        assert result.name == "AHMET"

    def test_sliding_window_when_names_run_together(self):
        """Test the length window splits a fused surname and name."""
        result = heuristic_only().parse(mrz_text("OZTURKAHMET<<<<<<<<<<<<<<<<<<<"))
        assert result.surname == "OZTU"
        assert result.name == "RKAHMET"

    def test_short_tokens_rejected(self):
        result = heuristic_only().parse(mrz_text("AB<<CD<<<<<<<<<<<<<<<<<<<<<<<"))
        assert result.surname is None
        assert result.name is None

    def test_configurable_token_lengths(self):
        parser = MRZParser(
            structured_parser=failing_parser,
            heuristics=HeuristicConfig(min_token_length=2, max_token_length=15),
        )
        result = parser.parse(mrz_text("LI<<WU<<<<<<<<<<<<<<<<<<<<<<<<"))
        assert result.surname == "LI"
        assert result.name == "WU"

    def test_no_heuristics_with_two_lines(self):
        result = heuristic_only().parse(f"{LINE1}\n{LINE2}")
        assert result.name is None
        assert result.surname is None


class TestNationalIdFallback:
    """Test the digit-scan national ID fallback."""

    def test_found_in_raw_text(self):
        text = "TCKN 98765432109\n" + mrz_text("OZTURK<<AHMET")
        assert heuristic_only().parse(text).national_id == "98765432109"

    def test_found_in_document_line(self):
        line1 = "I<TUR12345678901<<<<<<<<<<<<<<"
        result = heuristic_only().parse(mrz_text("OZTURK<<AHMET", line1=line1))
        assert result.national_id == "12345678901"

    def test_missing_everywhere(self):
        assert heuristic_only().parse(mrz_text("OZTURK<<AHMET")).national_id is None

    def test_national_id_shape(self):
        """Test any national ID returned is exactly 11 digits."""
        texts = [
            mrz_text("OZTURK<<AHMET", line2="9001015M3001012TUR1234567890123"),
            mrz_text("OZTURK<<AHMET", line1="I<TUR123456789<<<<<<<<<<<<<<<"),
            "noise 123456789012345\n" + mrz_text("A<<B"),
        ]
        for text in texts:
            national_id = heuristic_only().parse(text).national_id
            if national_id is not None:
                assert len(national_id) == 11
                assert national_id.isdigit()


class TestPurity:
    """Test parse is deterministic."""

    def test_same_input_same_output(self):
        text = mrz_text("OZTURKAHMET<<<<<<<<<<<<<<<<<<<")
        parser = heuristic_only()
        assert parser.parse(text) == parser.parse(text)


class TestTesseractOCR:
    """Test OCR capability lifecycle without running Tesseract."""

    def test_recognize_before_initialize(self):
        ocr = TesseractOCR()
        with pytest.raises(CapabilityNotReadyError):
            asyncio.run(ocr.recognize(np.zeros((10, 10), dtype=np.uint8)))

    def test_config_strings(self):
        config = OCRConfig()
        assert config.lang == "eng+tur"
        assert "--psm 6" in config.tesseract_config
        assert "tessedit_char_whitelist=ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789<" in config.tesseract_config


class TestMRZScanner:
    """Test the brightness -> preprocess -> OCR -> parse pipeline."""

    def test_scan_returns_fields(self, fake_ocr, card_image):
        scanner = MRZScanner(MRZPreprocessor(), fake_ocr)
        result = asyncio.run(scanner.scan(card_image))
        assert result.surname == "OZTURK"
        assert result.name == "AHMET"
        assert result.national_id == "12345678901"
        assert fake_ocr.calls == 1

    def test_dark_image_skips_ocr(self, fake_ocr, dark_image):
        scanner = MRZScanner(MRZPreprocessor(), fake_ocr)
        with pytest.raises(ImageTooDarkError):
            asyncio.run(scanner.scan(dark_image))
        assert fake_ocr.calls == 0

    def test_no_mrz_lines(self, fake_ocr, card_image):
        fake_ocr.text = "nothing useful here"
        scanner = MRZScanner(MRZPreprocessor(), fake_ocr)
        with pytest.raises(InsufficientMRZLinesError) as exc:
            asyncio.run(scanner.scan(card_image))
        assert exc.value.details["lines_found"] == 0

    def test_lines_without_fields_returns_none(self, fake_ocr, card_image):
        fake_ocr.text = "<" * 30 + "\n" + "<" * 30
        scanner = MRZScanner(MRZPreprocessor(), fake_ocr, parser=heuristic_only())
        assert asyncio.run(scanner.scan(card_image)) is None
