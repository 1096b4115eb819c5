"""
GSM-7 / UCS-2 segment counting.
"""
from textgate.utils.segments import count_segments, is_gsm7, segment_info


class TestEncoding:
    def test_plain_ascii_is_gsm7(self):
        assert is_gsm7("Your code is 123456") is True

    def test_emoji_forces_ucs2(self):
        assert is_gsm7("Thanks 😀") is False

    def test_extended_chars_are_gsm7(self):
        assert is_gsm7("Price: 10€ [promo]") is True


class TestSegmentInfo:
    def test_empty_body_is_one_segment(self):
        assert segment_info("") == (1, "gsm7")

    def test_160_gsm_chars_single(self):
        assert segment_info("a" * 160) == (1, "gsm7")

    def test_161_gsm_chars_two_segments(self):
        assert segment_info("a" * 161) == (2, "gsm7")

    def test_306_gsm_chars_two_segments(self):
        assert segment_info("a" * 306) == (2, "gsm7")

    def test_extended_chars_count_double(self):
        assert segment_info("€" * 80) == (1, "gsm7")
        assert segment_info("€" * 81) == (2, "gsm7")

    def test_ucs2_single(self):
        assert segment_info("ж" * 70) == (1, "ucs2")

    def test_ucs2_multi(self):
        assert segment_info("ж" * 71) == (2, "ucs2")

    def test_emoji_counts_two_code_units(self):
        # 35 emoji = 70 UTF-16 code units
        assert segment_info("😀" * 35) == (1, "ucs2")
        assert segment_info("😀" * 36) == (2, "ucs2")

    def test_count_segments(self):
        assert count_segments("a" * 400) == 3
