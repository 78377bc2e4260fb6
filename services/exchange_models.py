"""
Exchange Models - Shared option, result and issue types.

This module defines the enums, option models and result containers passed
between the parser, converter, validator, import and export services.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class ImportMode(str, Enum):
    """How an imported row is reconciled with existing records."""
    CREATE_ONLY = 'CreateOnly'
    UPDATE_ONLY = 'UpdateOnly'
    CREATE_OR_UPDATE = 'CreateOrUpdate'
    REPLACE_ALL = 'ReplaceAll'


class ImportDuplicateStrategy(str, Enum):
    """Class-level default for handling rows that match existing records."""
    INSERT = 'Insert'
    UPDATE = 'Update'
    INSERT_OR_UPDATE = 'InsertOrUpdate'
    IGNORE = 'Ignore'


class ValidationMode(str, Enum):
    LENIENT = 'Lenient'
    STRICT = 'Strict'


class CollectionExportFormat(str, Enum):
    """How a child collection is rendered on export."""
    SUMMARY = 'Summary'
    COUNT = 'Count'
    MULTI_SHEET = 'MultiSheet'


class ExportFormat(str, Enum):
    CSV = 'csv'
    XLSX = 'xlsx'


class FileFormat(str, Enum):
    CSV = 'csv'
    XLSX = 'xlsx'
    XLS = 'xls'


class ErrorKind(str, Enum):
    """Category of an import error or warning."""
    DATA_TYPE_CONVERSION = 'DataTypeConversion'
    REQUIRED_FIELD_EMPTY = 'RequiredFieldEmpty'
    FIELD_NOT_FOUND = 'FieldNotFound'
    VALIDATION_FAILED = 'ValidationFailed'
    DUPLICATE_DATA = 'DuplicateData'
    PARSE_ERROR = 'ParseError'
    LOOKUP_ERROR = 'LookupError'
    SYSTEM_ERROR = 'SystemError'


MIME_TYPES = {
    ExportFormat.CSV: 'text/csv',
    ExportFormat.XLSX: 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
}


class ImportOptions(BaseModel):
    """Caller-supplied options for one import call."""

    mode: ImportMode = Field(ImportMode.CREATE_OR_UPDATE, description="Reconciliation mode")
    has_header_row: bool = Field(True, description="Whether the first row holds column names")
    max_errors: int = Field(100, ge=1, description="Stop importing once this many errors accumulate")
    skip_duplicates: bool = Field(True, description="Skip (warn) instead of failing on duplicates in CreateOnly mode")
    batch_size: int = Field(1000, ge=1, description="Rows between progress reports")
    auto_commit: bool = Field(True, description="Commit the store at the end of the call")
    atomic_replace: bool = Field(
        True,
        description="Keep the ReplaceAll deletion in the same unit of work as the inserts"
    )
    is_user_specified_mode: bool = Field(False, description="Mode was chosen explicitly by the caller")

    @model_validator(mode='after')
    def _mark_user_mode(self):
        if 'mode' in self.model_fields_set:
            self.is_user_specified_mode = True
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "mode": "CreateOrUpdate",
                "has_header_row": True,
                "max_errors": 100,
                "skip_duplicates": True,
                "batch_size": 1000
            }
        }


class ExportOptions(BaseModel):
    """Caller-supplied options for one export call."""

    format: ExportFormat = Field(ExportFormat.XLSX, description="Output format")
    include_headers: bool = Field(True, description="Write a header row")
    sheet_name: Optional[str] = Field(None, description="Main sheet name (xlsx)")
    file_name: Optional[str] = Field(None, description="Base name for the suggested file name")
    encoding: str = Field('utf-8', description="Text encoding (csv)")
    add_bom: bool = Field(True, description="Prefix a byte-order mark (csv)")


@dataclass
class RowRecord:
    """One parsed data row: column name -> raw text, plus its 1-based row number."""
    values: Dict[str, str]
    row_number: int

    def get(self, column: str, default: str = '') -> str:
        value = self.values.get(column)
        return default if value is None else value


@dataclass
class ParsedSheet:
    name: str
    columns: List[str]
    rows: List[RowRecord]


@dataclass
class ParsedTable:
    """Result of parsing a single-table file."""
    columns: List[str] = field(default_factory=list)
    rows: List[RowRecord] = field(default_factory=list)
    file_format: Optional[FileFormat] = None
    encoding: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.error_message is None


@dataclass
class FileValidationResult:
    is_valid: bool
    file_format: Optional[FileFormat] = None
    file_size: int = 0
    error_message: Optional[str] = None


@dataclass
class ConversionResult:
    success: bool
    value: Any = None
    error_message: Optional[str] = None
    has_warning: bool = False
    warning_message: Optional[str] = None

    @classmethod
    def ok(cls, value: Any, warning: Optional[str] = None) -> 'ConversionResult':
        return cls(success=True, value=value, has_warning=warning is not None, warning_message=warning)

    @classmethod
    def fail(cls, message: str) -> 'ConversionResult':
        return cls(success=False, error_message=message)


@dataclass
class ValidationResult:
    is_valid: bool
    field_name: str
    row_number: int
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    original_value: Optional[str] = None


@dataclass
class ImportIssue:
    """An error or warning attached to a row (row 0 means file level)."""
    row_number: int
    field_name: str
    message: str
    error_kind: ErrorKind = ErrorKind.SYSTEM_ERROR
    original_value: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'row_number': self.row_number,
            'field_name': self.field_name,
            'message': self.message,
            'error_kind': self.error_kind.value,
            'original_value': self.original_value,
        }


@dataclass
class ImportOutcome:
    """
    Aggregated result of one import call.

    Built incrementally and always returned to the caller, including when
    the batch stopped early.
    """
    total_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    detail_success_count: int = 0
    detail_failure_count: int = 0
    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)
    error_message: Optional[str] = None
    aborted: bool = False
    rolled_back: bool = False

    @property
    def is_success(self) -> bool:
        if self.error_message is not None or self.rolled_back:
            return False
        return not self.errors or self.success_count > 0

    def discard_applied(self):
        """Everything this call applied was rolled back; successes no longer count."""
        self.rolled_back = True
        self.success_count = 0
        self.detail_success_count = 0

    def add_error(self, row_number: int, field_name: str, message: str,
                  error_kind: ErrorKind = ErrorKind.SYSTEM_ERROR,
                  original_value: Optional[str] = None):
        self.errors.append(ImportIssue(row_number, field_name, message, error_kind, original_value))

    def add_warning(self, row_number: int, field_name: str, message: str,
                    error_kind: ErrorKind = ErrorKind.VALIDATION_FAILED,
                    original_value: Optional[str] = None):
        self.warnings.append(ImportIssue(row_number, field_name, message, error_kind, original_value))

    def to_dict(self) -> dict:
        return {
            'is_success': self.is_success,
            'total_count': self.total_count,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'detail_success_count': self.detail_success_count,
            'detail_failure_count': self.detail_failure_count,
            'error_message': self.error_message,
            'aborted': self.aborted,
            'rolled_back': self.rolled_back,
            'errors': [issue.to_dict() for issue in self.errors],
            'warnings': [issue.to_dict() for issue in self.warnings],
        }


@dataclass
class ExportResult:
    is_success: bool
    content: bytes = b''
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    record_count: int = 0
    error_message: Optional[str] = None
