"""
Encoding Service - Text encoding detection for uploaded CSV bytes.

Detection runs in priority order:
1. Byte-order mark
2. Strict UTF-8: a sample that decodes cleanly and holds non-ASCII text is
   UTF-8 before any scoring, so valid UTF-8 CJK text cannot lose to a
   double-byte mis-decoding that happens to score higher
3. Scored trial decoding over common Chinese and Western code pages
4. UTF-8 structural validation
5. Platform default

It never raises.
"""

import codecs
import locale
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 8192

# Minimum CJK share (percent) for a scored candidate to win outright
CJK_RATIO_THRESHOLD = 5.0

CANDIDATE_ENCODINGS = ('utf-8', 'gb2312', 'gbk', 'gb18030', 'big5', 'cp1252')

# Checked in order; UTF-32 LE shares its first two bytes with UTF-16 LE
BOMS: Tuple[Tuple[bytes, str], ...] = (
    (codecs.BOM_UTF8, 'utf-8'),
    (codecs.BOM_UTF32_LE, 'utf-32-le'),
    (codecs.BOM_UTF32_BE, 'utf-32-be'),
    (codecs.BOM_UTF16_LE, 'utf-16-le'),
    (codecs.BOM_UTF16_BE, 'utf-16-be'),
)

CJK_RANGES = (
    (0x4E00, 0x9FFF),
    (0x3400, 0x4DBF),
    (0x3000, 0x303F),
    (0x3300, 0x33FF),
    (0xFF00, 0xFFEF),
)

REPLACEMENT_CHAR = '�'


@dataclass
class EncodingDetectionResult:
    encoding: str
    confidence: float
    method: str
    has_bom: bool = False
    bom_length: int = 0
    tried_encodings: List[str] = field(default_factory=list)

    def __str__(self):
        return f"Encoding: {self.encoding}, Confidence: {self.confidence:.1f}%, Method: {self.method}"


def platform_encoding() -> str:
    return codecs.lookup(locale.getpreferredencoding(False)).name


def is_chinese_char(ch: str) -> bool:
    code = ord(ch)
    return any(low <= code <= high for low, high in CJK_RANGES)


def contains_chinese(text: str) -> bool:
    return any(is_chinese_char(ch) for ch in text)


def chinese_ratio(text: str) -> float:
    """Percentage of CJK characters among non-whitespace, non-control characters."""
    total = 0
    cjk = 0
    for ch in text:
        if ch.isspace() or not ch.isprintable():
            continue
        total += 1
        if is_chinese_char(ch):
            cjk += 1
    return cjk / total * 100 if total else 0.0


def score_text(text: str) -> int:
    replacements = text.count(REPLACEMENT_CHAR)
    cjk = sum(1 for ch in text if is_chinese_char(ch))
    ascii_printable = sum(1 for ch in text if 0x20 <= ord(ch) <= 0x7E)
    return -100 * replacements + 10 * cjk + ascii_printable


class EncodingDetector:
    """Stateless encoding detector."""

    def __init__(self, sample_size: int = DEFAULT_SAMPLE_SIZE):
        self.sample_size = sample_size

    def detect(self, data: bytes) -> EncodingDetectionResult:
        """
        Infer the text encoding of a byte buffer.

        Args:
            data: Raw file content

        Returns:
            EncodingDetectionResult (always usable, possibly low confidence)
        """
        if not data:
            return EncodingDetectionResult('utf-8', 0, 'Empty file - default to UTF-8')

        bom = self.detect_bom(data)
        if bom:
            encoding, length = bom
            return EncodingDetectionResult(
                encoding, 100, f'BOM detected: {encoding}',
                has_bom=True, bom_length=length, tried_encodings=[f'BOM-{encoding}']
            )

        sample = data[:self.sample_size]
        tried: List[str] = []

        if self._is_strict_utf8(sample):
            tried.append('utf-8 (strict)')
            return EncodingDetectionResult('utf-8', 100, 'Strict UTF-8 decode', tried_encodings=tried)

        best_encoding: Optional[str] = None
        best_score: Optional[int] = None
        best_text = ''

        for candidate in self._candidates():
            text = sample.decode(candidate, errors='replace')
            score = score_text(text)
            tried.append(f'{candidate} (score: {score})')
            if best_score is None or score > best_score:
                best_encoding, best_score, best_text = candidate, score, text

        ratio = chinese_ratio(best_text)
        if best_encoding and ratio >= CJK_RATIO_THRESHOLD:
            logger.debug(f"Encoding detected by CJK analysis: {best_encoding} ({ratio:.1f}%)")
            return EncodingDetectionResult(
                best_encoding, round(min(ratio, 100.0), 1),
                f'Chinese character analysis: {best_encoding}', tried_encodings=tried
            )

        validity, invalid_sequences = self.validate_utf8(sample)
        tried.append(f'utf-8-structural (score: {validity:.1f}%)')

        if validity >= 80 and invalid_sequences < len(sample) * 0.1:
            return EncodingDetectionResult('utf-8', round(validity, 1),
                                           'UTF-8 byte sequence validation', tried_encodings=tried)

        if validity >= 50:
            return EncodingDetectionResult('utf-8', round(validity, 1),
                                           'UTF-8 fallback (partial validation)', tried_encodings=tried)

        fallback = platform_encoding()
        tried.append('system-default-fallback')
        return EncodingDetectionResult(fallback, 30, 'System default encoding fallback',
                                       tried_encodings=tried)

    @staticmethod
    def detect_bom(data: bytes) -> Optional[Tuple[str, int]]:
        for bom, encoding in BOMS:
            if data.startswith(bom):
                return encoding, len(bom)
        return None

    @staticmethod
    def _candidates() -> List[str]:
        candidates = list(CANDIDATE_ENCODINGS)
        default = platform_encoding()
        if default not in {codecs.lookup(c).name for c in candidates}:
            candidates.append(default)
        return candidates

    @staticmethod
    def _is_strict_utf8(sample: bytes) -> bool:
        if sample.isascii():
            return False
        decoder = codecs.getincrementaldecoder('utf-8')(errors='strict')
        try:
            decoder.decode(sample, final=False)
        except UnicodeDecodeError:
            return False
        return True

    @staticmethod
    def validate_utf8(data: bytes) -> Tuple[float, int]:
        """
        Walk the bytes checking multi-byte lead/continuation patterns.

        Returns:
            (valid byte percentage, invalid sequence count)
        """
        valid = 0
        invalid = 0
        i = 0
        length = len(data)

        while i < length:
            b = data[i]
            if b <= 0x7F:
                valid += 1
                i += 1
                continue

            if b & 0xE0 == 0xC0:
                expected = 2
            elif b & 0xF0 == 0xE0:
                expected = 3
            elif b & 0xF8 == 0xF0:
                expected = 4
            else:
                invalid += 1
                i += 1
                continue

            sequence = data[i + 1:i + expected]
            if len(sequence) == expected - 1 and all(c & 0xC0 == 0x80 for c in sequence):
                valid += expected
                i += expected
            else:
                invalid += 1
                i += 1

        score = valid / length * 100 if length else 0.0
        return score, invalid

    def decode(self, data: bytes, result: Optional[EncodingDetectionResult] = None) -> Tuple[str, EncodingDetectionResult]:
        """
        Decode a buffer, skipping any BOM.

        When the detected decoding contains replacement characters and no
        CJK text, the Chinese code pages are retried and the decoding with
        the highest CJK share is kept.
        """
        result = result or self.detect(data)
        payload = data[result.bom_length:]
        text = payload.decode(result.encoding, errors='replace')

        if REPLACEMENT_CHAR in text and not contains_chinese(text):
            best_text, best_ratio, best_encoding = None, 0.0, None
            for candidate in ('gb2312', 'gbk', 'gb18030', 'big5', 'cp936', 'cp950', platform_encoding()):
                attempt = payload.decode(candidate, errors='replace')
                ratio = chinese_ratio(attempt)
                if ratio > best_ratio:
                    best_text, best_ratio, best_encoding = attempt, ratio, candidate

            if best_text is not None:
                logger.info(f"Re-decoded content as {best_encoding} (CJK ratio {best_ratio:.1f}%)")
                text = best_text
                result.encoding = best_encoding
                result.method += f'; re-decoded as {best_encoding}'
            else:
                text = payload.decode('utf-8', errors='replace')
                result.encoding = 'utf-8'

        return text, result
