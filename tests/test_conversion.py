"""
Tests for text <-> typed value conversion.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from backend.models.schema import Gender
from services.configuration_service import FieldConfiguration
from services.conversion_service import (
    ConverterRegistry, ValueConverter, correct_datetime, format_datetime,
    format_number, parse_display_map, to_strptime
)
from services.exchange_models import CollectionExportFormat


def make_field(**kwargs) -> FieldConfiguration:
    kwargs.setdefault('property_name', 'value')
    return FieldConfiguration(**kwargs)


class TestDateCorrection:
    """Test tolerant correction of out-of-range date parts."""

    def test_seconds_carry_into_minutes(self):
        assert correct_datetime('2024-01-01 10:59:60') == '2024-01-01 11:00:00'

    def test_hours_carry_into_days(self):
        assert correct_datetime('2024-01-01 24:00:00') == '2024-01-02 00:00:00'

    def test_day_clamped_to_month_end(self):
        """February 30th becomes the last day of February."""
        assert correct_datetime('2023-02-30') == '2023-02-28'
        assert correct_datetime('2024/2/31') == '2024-02-29'

    def test_fraction_and_offset_kept(self):
        assert correct_datetime('2024-01-01 10:00:00.250') == '2024-01-01 10:00:00.250'
        assert correct_datetime('2024-01-01T10:59:60+08:00') == '2024-01-01 11:00:00+08:00'

    def test_invalid_month_left_alone(self):
        assert correct_datetime('2024-13-01') == '2024-13-01'

    def test_non_date_text_unchanged(self):
        assert correct_datetime('hello') == 'hello'


class TestFormatting:
    """Test date and number pattern rendering."""

    def test_to_strptime(self):
        assert to_strptime('yyyy-MM-dd HH:mm:ss') == '%Y-%m-%d %H:%M:%S'
        assert to_strptime('yyyy/M/d') == '%Y/%m/%d'

    def test_format_datetime(self):
        value = datetime(2024, 3, 5, 14, 7, 9)
        assert format_datetime(value, 'yyyy-MM-dd HH:mm:ss') == '2024-03-05 14:07:09'
        assert format_datetime(value, 'yyyy/M/d') == '2024/3/5'
        assert format_datetime(date(2024, 3, 5), 'yyyy-MM-dd') == '2024-03-05'

    def test_format_number_optional_digits(self):
        """Hash digits are dropped when zero."""
        assert format_number(Decimal('12.50'), '0.##') == '12.5'
        assert format_number(Decimal('12'), '0.##') == '12'

    def test_format_number_required_digits(self):
        assert format_number(Decimal('1234.5'), '#,##0.00') == '1,234.50'
        assert format_number(Decimal('2.345'), '0.00') == '2.35'

    def test_format_number_standard_patterns(self):
        assert format_number(Decimal('1234.5'), 'N2') == '1,234.50'
        assert format_number(3, 'F1') == '3.0'

    def test_format_number_percent(self):
        assert format_number(Decimal('0.125'), '0.#%') == '12.5%'

    def test_parse_display_map(self):
        assert parse_display_map('Male=男;Female=女') == {'Male': '男', 'Female': '女'}
        assert parse_display_map('yyyy-MM-dd') == {}
        assert parse_display_map(None) == {}


class TestImportConversion:
    """Test conversion of raw cell text into typed values."""

    def setup_method(self):
        self.converter = ValueConverter()

    def test_integer(self):
        result = self.converter.convert_from_text('1,234', make_field(value_type=int))
        assert result.success
        assert result.value == 1234

    def test_integer_rejects_fraction(self):
        result = self.converter.convert_from_text('1.5', make_field(value_type=int))
        assert not result.success
        assert '整数' in result.error_message

    def test_decimal(self):
        result = self.converter.convert_from_text('19.99', make_field(value_type=Decimal))
        assert result.value == Decimal('19.99')

    def test_invalid_number(self):
        result = self.converter.convert_from_text('abc', make_field(value_type=float))
        assert not result.success

    def test_datetime_with_common_patterns(self):
        field = make_field(value_type=datetime)
        assert self.converter.convert_from_text('2024/3/5', field).value == datetime(2024, 3, 5)
        assert self.converter.convert_from_text('2024-03-05 08:30:00', field).value == \
            datetime(2024, 3, 5, 8, 30)

    def test_datetime_is_corrected_before_parsing(self):
        field = make_field(value_type=datetime)
        assert self.converter.convert_from_text('2023-02-30', field).value == datetime(2023, 2, 28)

    def test_datetime_with_fraction_and_offset(self):
        field = make_field(value_type=datetime)
        assert self.converter.convert_from_text('2024-03-05 08:30:00.250', field).value == \
            datetime(2024, 3, 5, 8, 30, 0, 250000)
        assert self.converter.convert_from_text('2024-03-05 08:30:00+08:00', field).value == \
            datetime(2024, 3, 5, 8, 30)

    def test_date_field_returns_date(self):
        result = self.converter.convert_from_text('2024-03-05', make_field(value_type=date))
        assert result.value == date(2024, 3, 5)

    def test_zero_date_becomes_none(self):
        """The 0001-01-01 placeholder and dates before the minimum year map to None."""
        field = make_field(value_type=datetime)
        assert self.converter.convert_from_text('0001-01-01', field).value is None
        assert self.converter.convert_from_text('1700-01-01', field).value is None

    def test_invalid_datetime(self):
        result = self.converter.convert_from_text('not a date', make_field(value_type=datetime))
        assert not result.success
        assert '期望格式' in result.error_message

    def test_bool_tokens(self):
        field = make_field(value_type=bool)
        assert self.converter.convert_from_text('是', field).value is True
        assert self.converter.convert_from_text('No', field).value is False
        assert not self.converter.convert_from_text('maybe', field).success

    def test_bool_display_labels(self):
        field = make_field(value_type=bool, format='true=在职;false=离职')
        assert self.converter.convert_from_text('离职', field).value is False
        assert self.converter.convert_from_text('在职', field).value is True

    def test_enum_by_label_name_and_value(self):
        field = make_field(value_type=Gender, format='Male=男;Female=女')
        assert self.converter.convert_from_text('女', field).value is Gender.Female
        assert self.converter.convert_from_text('male', field).value is Gender.Male

    def test_enum_unknown_lists_members(self):
        result = self.converter.convert_from_text('X', make_field(value_type=Gender))
        assert not result.success
        assert 'Male, Female' in result.error_message

    def test_blank_values(self):
        """Blank cells: empty text for strings, None for nullable, zero otherwise."""
        assert self.converter.convert_from_text('  ', make_field()).value == ''
        assert self.converter.convert_from_text('', make_field(value_type=int)).value is None

        result = self.converter.convert_from_text('', make_field(value_type=int, nullable=False))
        assert result.value == 0
        assert result.has_warning

    def test_null_value_replacement(self):
        field = make_field(value_type=int, null_value='7')
        result = self.converter.convert_from_text('', field)
        assert result.value == 7
        assert result.warning_message == '使用了默认值替换'

    def test_custom_converter(self):
        converters = ConverterRegistry()
        converters.register('upper', lambda raw, field: raw.upper())
        converter = ValueConverter(converters=converters)

        result = converter.convert_from_text('abc', make_field(import_converter='upper'))
        assert result.value == 'ABC'

    def test_missing_custom_converter(self):
        result = self.converter.convert_from_text('abc', make_field(import_converter='nope'))
        assert not result.success
        assert '未找到转换方法' in result.error_message

    def test_converter_by_import_path(self):
        converters = ConverterRegistry()
        func = converters.resolve('backend.models.exchange_registry:normalize_phone')
        assert func('138-0000 0000', None) == '13800000000'


class TestExportConversion:
    """Test rendering typed values as cell text."""

    def setup_method(self):
        self.converter = ValueConverter()

    def test_none_uses_null_display(self):
        assert self.converter.convert_to_text(None, make_field()) == ''
        assert self.converter.convert_to_text(None, make_field(export_null_display='-')) == '-'

    def test_enum_label(self):
        field = make_field(value_type=Gender, format='Male=男;Female=女')
        assert self.converter.convert_to_text(Gender.Female, field) == '女'
        assert self.converter.convert_to_text(Gender.Male, make_field(value_type=Gender)) == 'Male'

    def test_bool_labels(self):
        assert self.converter.convert_to_text(True, make_field(value_type=bool)) == '是'
        field = make_field(value_type=bool, format='true=在职;false=离职')
        assert self.converter.convert_to_text(False, field) == '离职'

    def test_datetime_default_pattern(self):
        value = datetime(2024, 1, 2, 3, 4, 5)
        assert self.converter.convert_to_text(value, make_field(value_type=datetime)) == '2024-01-02 03:04:05'
        assert self.converter.convert_to_text(date(2024, 1, 2), make_field(value_type=date)) == '2024-01-02'

    def test_decimal_default_pattern(self):
        assert self.converter.convert_to_text(Decimal('3.10'), make_field(value_type=Decimal)) == '3.1'

    def test_collection_summary_and_count(self):
        class Line:
            def __init__(self, sku, qty):
                self.sku = sku
                self.qty = qty

        items = [Line('A', 1), Line('B', 2)]
        summary = make_field(value_type=object, is_collection=True,
                             collection_display_properties='sku,qty')
        assert self.converter.convert_to_text(items, summary) == 'A 1; B 2'

        count = make_field(value_type=object, is_collection=True,
                           collection_export_format=CollectionExportFormat.COUNT)
        assert self.converter.convert_to_text(items, count) == '2条明细'
        assert self.converter.convert_to_text([], count) == '无明细'

    def test_missing_export_converter_raises(self):
        with pytest.raises(ValueError):
            self.converter.convert_to_text('x', make_field(export_converter='nope'))
