"""
Conversion Service - Bidirectional text <-> typed value conversion.

This module converts raw cell text into typed attribute values on import and
renders typed values back into display text on export. Date/time input is
corrected tolerantly (overflowing seconds, minutes, hours and days carry
forward) before parsing, and enum/boolean values honour "key=label" display
maps configured on the field.
"""

import calendar
import importlib
import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from services.configuration_service import FieldConfiguration
from services.exchange_models import CollectionExportFormat, ConversionResult

logger = logging.getLogger(__name__)

DEFAULT_DATETIME_FORMAT = 'yyyy-MM-dd HH:mm:ss'
DEFAULT_DATE_FORMAT = 'yyyy-MM-dd'
DEFAULT_NUMBER_FORMAT = '0.##'
DEFAULT_MIN_YEAR = 1753

# Tried in order after the field's own format
DATETIME_PATTERNS = [
    'yyyy-MM-dd HH:mm:ss',
    'yyyy/MM/dd HH:mm:ss',
    'yyyy/M/d HH:mm:ss',
    'yyyy-M-d HH:mm:ss',
    'yyyy/M/d',
    'yyyy-M-d',
    'yyyy/MM/dd',
    'yyyy-MM-dd',
    'M/d/yyyy',
    'MM/dd/yyyy',
    'd/M/yyyy',
    'dd/MM/yyyy',
]

ZERO_DATE_MARKERS = ('0001-01-01', '1/1/0001', '0001/1/1')

TRUE_TOKENS = {'true', '1', '是', 'yes', 'y', '对', '真'}
FALSE_TOKENS = {'false', '0', '否', 'no', 'n', '错', '假'}

DATETIME_WITH_TIME = re.compile(
    r'^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})[\sT](\d{1,2}):(\d{1,2}):(\d{1,2})(.*)$'
)
DATE_ONLY = re.compile(r'^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})$')

DATE_TOKENS = re.compile(r'yyyy|yy|MM|M|dd|d|HH|H|hh|h|mm|m|ss|s|fff|tt')

STRPTIME_TOKENS = {
    'yyyy': '%Y', 'yy': '%y', 'MM': '%m', 'M': '%m', 'dd': '%d', 'd': '%d',
    'HH': '%H', 'H': '%H', 'hh': '%I', 'h': '%I', 'mm': '%M', 'm': '%M',
    'ss': '%S', 's': '%S', 'fff': '%f', 'tt': '%p',
}

STANDARD_NUMBER_FORMAT = re.compile(r'^([FfNn])(\d*)$')


def to_strptime(pattern: str) -> str:
    """Translate a yyyy/MM/dd style pattern into a strptime pattern."""
    pieces = []
    position = 0
    for match in DATE_TOKENS.finditer(pattern):
        pieces.append(pattern[position:match.start()].replace('%', '%%'))
        pieces.append(STRPTIME_TOKENS[match.group()])
        position = match.end()
    pieces.append(pattern[position:].replace('%', '%%'))
    return ''.join(pieces)


def format_datetime(value: Any, pattern: str) -> str:
    """Render a date/datetime with a yyyy/MM/dd style pattern."""
    if isinstance(value, datetime):
        hour, minute, second, micro = value.hour, value.minute, value.second, value.microsecond
    else:
        hour = minute = second = micro = 0

    def replace(match):
        token = match.group()
        return {
            'yyyy': f'{value.year:04d}',
            'yy': f'{value.year % 100:02d}',
            'MM': f'{value.month:02d}',
            'M': str(value.month),
            'dd': f'{value.day:02d}',
            'd': str(value.day),
            'HH': f'{hour:02d}',
            'H': str(hour),
            'hh': f'{(hour % 12) or 12:02d}',
            'h': str((hour % 12) or 12),
            'mm': f'{minute:02d}',
            'm': str(minute),
            'ss': f'{second:02d}',
            's': str(second),
            'fff': f'{micro // 1000:03d}',
            'tt': 'AM' if hour < 12 else 'PM',
        }[token]

    return DATE_TOKENS.sub(replace, pattern)


def format_number(value: Any, pattern: str = DEFAULT_NUMBER_FORMAT) -> str:
    """
    Render a number with a "0.##" / "#,##0.00" / "N2" style pattern.

    Zeros after the decimal point are required digits, hashes are optional
    digits. Rounding is half-up.
    """
    number = value if isinstance(value, Decimal) else Decimal(str(value))

    standard = STANDARD_NUMBER_FORMAT.match(pattern)
    if standard:
        places = int(standard.group(2) or 2)
        grouping = standard.group(1) in 'Nn'
        required, optional = places, 0
        suffix = ''
    else:
        suffix = ''
        if pattern.endswith('%'):
            number *= 100
            pattern = pattern[:-1]
            suffix = '%'
        grouping = ',' in pattern
        _, _, fraction = pattern.replace(',', '').partition('.')
        required = fraction.count('0')
        optional = fraction.count('#')
        places = required + optional

    quantum = Decimal(1).scaleb(-places)
    rounded = number.quantize(quantum, rounding=ROUND_HALF_UP)
    text = f"{rounded:{',' if grouping else ''}.{places}f}"

    if optional and '.' in text:
        integer, fraction_digits = text.split('.')
        trimmed = fraction_digits.rstrip('0')
        if len(trimmed) < required:
            trimmed = fraction_digits[:required]
        text = f'{integer}.{trimmed}' if trimmed else integer

    return text + suffix


def parse_display_map(format_string: Optional[str]) -> Dict[str, str]:
    """Parse "A=labelA;B=labelB" into {key: label}."""
    mapping: Dict[str, str] = {}
    if not format_string or '=' not in format_string:
        return mapping
    for pair in format_string.split(';'):
        key, sep, label = pair.partition('=')
        if sep and key.strip():
            mapping[key.strip()] = label.strip()
    return mapping


def correct_datetime(text: str) -> str:
    """
    Repair out-of-range date/time components instead of rejecting them.

    Seconds carry into minutes, minutes into hours, hours into days; a day
    past the end of the month is clamped to the month's last day. Input that
    does not look like a date is returned unchanged.
    """
    if not text:
        return text
    candidate = text.strip()

    match = DATETIME_WITH_TIME.match(candidate)
    if match:
        *parts, rest = match.groups()
        year, month, day, hour, minute, second = (int(g) for g in parts)
        if not 1 <= month <= 12 or day < 1:
            return text

        minute += second // 60
        second %= 60
        hour += minute // 60
        minute %= 60
        day += hour // 24
        hour %= 24
        day = min(day, calendar.monthrange(year, month)[1])

        # Fractional seconds and UTC offsets are carried through untouched
        return f'{year:04d}-{month:02d}-{day:02d} {hour:02d}:{minute:02d}:{second:02d}{rest}'

    match = DATE_ONLY.match(candidate)
    if match:
        year, month, day = (int(g) for g in match.groups())
        if not 1 <= month <= 12 or day < 1:
            return text
        day = min(day, calendar.monthrange(year, month)[1])
        return f'{year:04d}-{month:02d}-{day:02d}'

    return text


class ConverterRegistry:
    """
    Name -> function registry for custom import/export converters.

    Names are either registered explicitly or given as "module:function"
    import paths; each name is resolved once and cached.
    """

    def __init__(self):
        self._functions: Dict[str, Callable] = {}

    def register(self, name: str, func: Callable):
        self._functions[name] = func

    def resolve(self, name: str) -> Optional[Callable]:
        if name in self._functions:
            return self._functions[name]

        module_name, sep, attribute = name.partition(':')
        if not sep:
            return None
        try:
            func = getattr(importlib.import_module(module_name), attribute)
        except (ImportError, AttributeError) as e:
            logger.warning(f"Could not resolve converter '{name}': {e}")
            return None

        self._functions[name] = func
        return func


class ValueConverter:
    """Typed conversion driven by FieldConfiguration."""

    def __init__(self, converters: Optional[ConverterRegistry] = None, registry=None,
                 min_year: int = DEFAULT_MIN_YEAR):
        self.converters = converters or ConverterRegistry()
        self.registry = registry
        self.min_year = min_year

    # ------------------------------------------------------------------
    # Import direction
    # ------------------------------------------------------------------

    def convert_from_text(self, raw: Optional[str], field: FieldConfiguration) -> ConversionResult:
        """
        Convert one raw cell value for a field.

        Args:
            raw: Cell text (None or blank means empty)
            field: Field configuration describing the target type

        Returns:
            ConversionResult
        """
        text = '' if raw is None else str(raw).strip()

        if not text:
            return self._convert_blank(field)

        if field.import_converter:
            return self._call_converter(field.import_converter, text, field)

        return self._convert_typed(text, field)

    def _convert_blank(self, field: FieldConfiguration) -> ConversionResult:
        if field.null_value is not None:
            replaced = self._convert_typed(field.null_value, field)
            if replaced.success:
                return ConversionResult.ok(replaced.value, '使用了默认值替换')
            return ConversionResult.fail(f'默认值替换失败: {replaced.error_message}')

        value_type = field.value_type
        if field.is_reference or field.is_collection or value_type in (datetime, date):
            return ConversionResult.ok(None)
        if value_type is str:
            return ConversionResult.ok('')
        if field.nullable:
            return ConversionResult.ok(None)

        if field.is_enum:
            return ConversionResult.ok(next(iter(value_type)), '空值已转换为默认值')
        zero = {int: 0, float: 0.0, Decimal: Decimal('0'), bool: False}.get(value_type)
        return ConversionResult.ok(zero, '空值已转换为默认值')

    def _call_converter(self, name: str, value: Any, field: FieldConfiguration) -> ConversionResult:
        func = self.converters.resolve(name)
        if func is None:
            return ConversionResult.fail(f'未找到转换方法: {name}')
        try:
            return ConversionResult.ok(func(value, field))
        except Exception as e:
            logger.warning(f"Custom converter '{name}' failed for {field.property_name}: {e}")
            return ConversionResult.fail(f'自定义转换方法调用失败: {e}')

    def _convert_typed(self, text: str, field: FieldConfiguration) -> ConversionResult:
        value_type = field.value_type

        if field.is_reference or field.is_collection or value_type is str:
            return ConversionResult.ok(text)
        if field.is_enum:
            return self._convert_enum(text, field)
        if value_type is bool:
            return self._convert_bool(text, field)
        if value_type in (datetime, date):
            return self._convert_datetime(text, field)
        if value_type in (int, float, Decimal):
            return self._convert_number(text, value_type)

        return ConversionResult.fail(f'不支持的字段类型: {getattr(value_type, "__name__", value_type)}')

    @staticmethod
    def _convert_number(text: str, value_type: type) -> ConversionResult:
        cleaned = text.replace(',', '').replace('，', '')
        try:
            number = Decimal(cleaned)
        except InvalidOperation:
            return ConversionResult.fail(f"无法将 '{text}' 转换为{value_type.__name__}类型")

        if not number.is_finite():
            return ConversionResult.fail(f"无法将 '{text}' 转换为{value_type.__name__}类型")
        if value_type is int:
            if number != number.to_integral_value():
                return ConversionResult.fail(f"无法将 '{text}' 转换为整数")
            return ConversionResult.ok(int(number))
        if value_type is float:
            return ConversionResult.ok(float(number))
        return ConversionResult.ok(number)

    @staticmethod
    def _convert_bool(text: str, field: FieldConfiguration) -> ConversionResult:
        token = text.lower()
        for key, label in parse_display_map(field.format).items():
            if label.lower() == token:
                if key.lower() in ('true', '1'):
                    return ConversionResult.ok(True)
                if key.lower() in ('false', '0'):
                    return ConversionResult.ok(False)

        if token in TRUE_TOKENS:
            return ConversionResult.ok(True)
        if token in FALSE_TOKENS:
            return ConversionResult.ok(False)
        return ConversionResult.fail(f"无法将 '{text}' 转换为布尔值")

    @staticmethod
    def enum_member(enum_type: type, token: str) -> Optional[Enum]:
        """Case-insensitive match on member name, then on member value."""
        lowered = token.strip().lower()
        for member in enum_type:
            if member.name.lower() == lowered:
                return member
        for member in enum_type:
            if str(member.value).lower() == lowered:
                return member
        return None

    def _convert_enum(self, text: str, field: FieldConfiguration) -> ConversionResult:
        enum_type = field.value_type
        label_map = {label.lower(): key for key, label in parse_display_map(field.format).items()}

        key = label_map.get(text.lower())
        if key is not None:
            member = self.enum_member(enum_type, key)
            if member is not None:
                return ConversionResult.ok(member)

        member = self.enum_member(enum_type, text)
        if member is not None:
            return ConversionResult.ok(member)

        available = ', '.join(m.name for m in enum_type)
        return ConversionResult.fail(
            f"无法将 '{text}' 转换为枚举类型 {enum_type.__name__}，可用值: {available}"
        )

    def parse_datetime(self, text: str, pattern: Optional[str] = None) -> datetime:
        """
        Parse date/time text after tolerant correction.

        The given pattern is tried first, then the common patterns, then
        ISO-8601.

        Raises:
            ValueError: If the text cannot be parsed with any pattern
        """
        corrected = correct_datetime(text.strip())

        patterns = []
        if pattern and '=' not in pattern:
            patterns.append(pattern)
        patterns.extend(p for p in DATETIME_PATTERNS if p not in patterns)

        for candidate in patterns:
            try:
                return datetime.strptime(corrected, to_strptime(candidate))
            except ValueError:
                continue

        return datetime.fromisoformat(corrected)

    def _convert_datetime(self, text: str, field: FieldConfiguration) -> ConversionResult:
        if any(marker in text for marker in ZERO_DATE_MARKERS):
            return ConversionResult.ok(None)

        try:
            parsed = self.parse_datetime(text, field.format)
        except ValueError:
            expected = field.format if field.format and '=' not in field.format else 'yyyy/M/d'
            return ConversionResult.fail(f"无法将 '{text}' 转换为日期时间格式，期望格式: {expected}")

        if parsed.year < self.min_year:
            return ConversionResult.ok(None)
        if parsed.tzinfo is not None:
            parsed = parsed.replace(tzinfo=None)
        if field.value_type is date:
            return ConversionResult.ok(parsed.date())
        return ConversionResult.ok(parsed)

    def is_convertible(self, text: str, field: FieldConfiguration) -> bool:
        """Whether text converts cleanly for the field's type (ignores custom converters)."""
        return self._convert_typed(text.strip(), field).success

    # ------------------------------------------------------------------
    # Export direction
    # ------------------------------------------------------------------

    def convert_to_text(self, value: Any, field: FieldConfiguration) -> str:
        """Render a typed value as cell text for export."""
        if field.export_converter:
            func = self.converters.resolve(field.export_converter)
            if func is None:
                raise ValueError(f'未找到转换方法: {field.export_converter}')
            result = func(value, field)
            return '' if result is None else str(result)

        if field.is_collection:
            return self._collection_to_text(value, field)

        if value is None:
            return field.export_null_display or ''

        if isinstance(value, Enum):
            labels = parse_display_map(field.format)
            for key, label in labels.items():
                if self.enum_member(type(value), key) is value:
                    return label
            return value.name

        if isinstance(value, bool):
            return self._bool_to_text(value, field.format)

        if isinstance(value, (datetime, date)):
            pattern = field.format if field.format and '=' not in field.format else None
            if pattern is None:
                pattern = DEFAULT_DATETIME_FORMAT if isinstance(value, datetime) else DEFAULT_DATE_FORMAT
            return format_datetime(value, pattern)

        if isinstance(value, (Decimal, float)):
            return format_number(value, field.format or DEFAULT_NUMBER_FORMAT)

        if isinstance(value, int):
            return format_number(value, field.format) if field.format else str(value)

        if field.is_reference:
            return self._reference_to_text(value, field)

        return str(value)

    @staticmethod
    def _bool_to_text(value: bool, format_string: Optional[str]) -> str:
        true_label, false_label = '是', '否'
        for key, label in parse_display_map(format_string).items():
            if key.lower() in ('true', '1'):
                true_label = label
            elif key.lower() in ('false', '0'):
                false_label = label
        return true_label if value else false_label

    @staticmethod
    def _reference_to_text(value: Any, field: FieldConfiguration) -> str:
        if field.is_dictionary_lookup:
            return str(getattr(value, 'name', '') or '')
        match_field = field.reference_match_field
        if match_field and hasattr(value, match_field):
            matched = getattr(value, match_field)
            return '' if matched is None else str(matched)
        return str(value)

    def _collection_to_text(self, items: Optional[List[Any]], field: FieldConfiguration) -> str:
        items = [item for item in (items or []) if item is not None]
        if not items:
            return '无明细'

        if field.collection_export_format == CollectionExportFormat.COUNT:
            return f'{len(items)}条明细'

        return field.collection_delimiter.join(self._summarise_item(item, field) for item in items)

    def _summarise_item(self, item: Any, field: FieldConfiguration) -> str:
        properties = field.display_properties
        if properties:
            parts = []
            for name in properties:
                value = getattr(item, name, None)
                if value is not None:
                    parts.append(self._plain_text(value))
            return ' '.join(parts)

        if self.registry is not None and self.registry.is_registered(type(item)):
            for item_field in self.registry.get_configuration(type(item)).fields:
                if item_field.value_type is str and not item_field.is_collection:
                    value = getattr(item, item_field.property_name, None)
                    if value:
                        return str(value)
        return str(item)

    @staticmethod
    def _plain_text(value: Any) -> str:
        if isinstance(value, Enum):
            return value.name
        if isinstance(value, datetime):
            return format_datetime(value, DEFAULT_DATETIME_FORMAT)
        if isinstance(value, date):
            return format_datetime(value, DEFAULT_DATE_FORMAT)
        if isinstance(value, (Decimal, float)):
            return format_number(value)
        return str(value)
