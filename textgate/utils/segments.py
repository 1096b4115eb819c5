"""
SMS segmentation - GSM-7 vs UCS-2 encoding detection and segment counting.

A GSM-7 message fits 160 characters in one segment, 153 per segment when
concatenated; extended characters count double. Anything outside the GSM-7
alphabet forces UCS-2 (70 single, 67 per concatenated segment).
"""
import math

GSM_SINGLE_SEGMENT = 160
GSM_MULTI_SEGMENT = 153
UCS2_SINGLE_SEGMENT = 70
UCS2_MULTI_SEGMENT = 67

_GSM7_BASIC = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞ ÆæßÉ"
    " !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "ÄÖÑÜabcdefghijklmnopqrstuvwxyz"
    "äöñüà§"
)

_GSM7_EXTENDED = set("^{}\\[~]|€\f")


def is_gsm7(text: str) -> bool:
    return all(c in _GSM7_BASIC or c in _GSM7_EXTENDED for c in text)


def segment_info(text: str) -> tuple[int, str]:
    """
    Returns: (segment_count, encoding) where encoding is "gsm7" or "ucs2".
    An empty body (MMS with media only) still counts as one segment.
    """
    if is_gsm7(text):
        length = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        if length <= GSM_SINGLE_SEGMENT:
            return 1, "gsm7"
        return math.ceil(length / GSM_MULTI_SEGMENT), "gsm7"

    # UCS-2 counts UTF-16 code units, so astral characters (emoji) take two
    length = len(text.encode("utf-16-le")) // 2
    if length <= UCS2_SINGLE_SEGMENT:
        return 1, "ucs2"
    return math.ceil(length / UCS2_MULTI_SEGMENT), "ucs2"


def count_segments(text: str) -> int:
    return segment_info(text)[0]
