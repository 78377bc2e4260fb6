"""
Validation Service - Per-field validation of imported cell values.

This module checks raw cell text against the field configuration before any
conversion happens: required-ness, configured format, regular expression and
basic type compatibility. Each check reports a structured ValidationResult
instead of raising.
"""

import logging
import re
from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional, Pattern

from services.configuration_service import FieldConfiguration
from services.conversion_service import ValueConverter, parse_display_map
from services.exchange_models import ErrorKind, ValidationResult

logger = logging.getLogger(__name__)

DEFAULT_PATTERN_MESSAGE = '【{ColumnName}】格式错误'


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> Pattern:
    return re.compile(pattern)


class FieldValidator:
    """
    Framework-agnostic field validator.

    Checks run in order (required, format, pattern, type) and the first
    failing check decides the result for the field.
    """

    def __init__(self, converter: Optional[ValueConverter] = None):
        self.converter = converter or ValueConverter()

    def validate_field(self, raw: Optional[str], field: FieldConfiguration,
                       row_number: int) -> ValidationResult:
        """
        Validate one raw value.

        Args:
            raw: Cell text
            field: Field configuration
            row_number: 1-based source row number

        Returns:
            ValidationResult (is_valid False carries kind and message)
        """
        column = field.effective_column_name
        text = '' if raw is None else str(raw).strip()

        try:
            if not text:
                if field.is_required and field.null_value is None:
                    return self._fail(field, row_number, ErrorKind.REQUIRED_FIELD_EMPTY,
                                      f'【{column}】为必填项', raw)
                return ValidationResult(True, column, row_number)

            # Custom converters own their input format
            if field.import_converter:
                return self._check_pattern(text, field, row_number)

            format_error = self._check_format(text, field)
            if format_error:
                return self._fail(field, row_number, ErrorKind.VALIDATION_FAILED, format_error, raw)

            pattern_result = self._check_pattern(text, field, row_number)
            if not pattern_result.is_valid:
                return pattern_result

            if not field.is_enum and not self._is_type_compatible(text, field):
                return self._fail(field, row_number, ErrorKind.DATA_TYPE_CONVERSION,
                                  f'【{column}】的值 "{text}" 与字段类型不匹配', raw)

            return ValidationResult(True, column, row_number)

        except Exception as e:
            logger.error(f"Validation of {field.property_name} at row {row_number} failed: {e}",
                         exc_info=True)
            return self._fail(field, row_number, ErrorKind.SYSTEM_ERROR, f'验证过程出错: {e}', raw)

    def validate_row(self, values: Dict[str, str], fields: List[FieldConfiguration],
                     row_number: int) -> List[ValidationResult]:
        """Validate every import field of a row and return the failures."""
        failures = []
        for field in fields:
            result = self.validate_field(values.get(field.effective_column_name), field, row_number)
            if not result.is_valid:
                failures.append(result)
        return failures

    def _check_format(self, text: str, field: FieldConfiguration) -> Optional[str]:
        """Return an error message when text does not satisfy the configured format."""
        if not field.format:
            return None

        column = field.effective_column_name
        value_type = field.value_type

        if field.is_enum:
            if '=' not in field.format or ';' not in field.format:
                return None
            labels = parse_display_map(field.format)
            accepted = {label.lower() for label in labels.values()} | {key.lower() for key in labels}
            if text.lower() in accepted or self.converter.enum_member(value_type, text) is not None:
                return None
            return f'【{column}】的值 "{text}" 不在允许范围内: {", ".join(labels.values())}'

        if value_type is bool:
            labels = parse_display_map(field.format)
            if labels and not self.converter.is_convertible(text, field):
                return f'【{column}】的值 "{text}" 不是有效的布尔值'
            return None

        if value_type in (datetime, date) and '=' not in field.format:
            if not self.converter.is_convertible(text, field):
                return f'【{column}】的值 "{text}" 不符合日期格式 {field.format}'
            return None

        if value_type in (int, float, Decimal):
            if not self.converter.is_convertible(text, field):
                return f'【{column}】的值 "{text}" 不符合数字格式 {field.format}'
        return None

    def _check_pattern(self, text: str, field: FieldConfiguration, row_number: int) -> ValidationResult:
        column = field.effective_column_name
        if field.validation_pattern and not compile_pattern(field.validation_pattern).search(text):
            message = (field.validation_message or DEFAULT_PATTERN_MESSAGE).replace('{ColumnName}', column)
            return self._fail(field, row_number, ErrorKind.VALIDATION_FAILED, message, text)
        return ValidationResult(True, column, row_number)

    def _is_type_compatible(self, text: str, field: FieldConfiguration) -> bool:
        if field.is_reference or field.is_collection or field.value_type is str:
            return True
        return self.converter.is_convertible(text, field)

    @staticmethod
    def _fail(field: FieldConfiguration, row_number: int, kind: ErrorKind, message: str,
              raw: Optional[str]) -> ValidationResult:
        return ValidationResult(False, field.effective_column_name, row_number,
                                error_kind=kind, message=message, original_value=raw)
