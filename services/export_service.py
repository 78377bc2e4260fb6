"""
Export Service - Render persistent records as CSV or XLSX.

Records are rendered through their exchange configuration: one row per
record, one column per export field, values formatted by the ValueConverter.
XLSX exports write multi-sheet collections to their own detail sheets, one
row per child linked to its parent by the parent's identity value.
"""

import codecs
import csv
import io
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter

from services.configuration_service import (
    ConfigurationError, ConfigurationRegistry, FieldConfiguration, TypeConfiguration
)
from services.conversion_service import ValueConverter
from services.exchange_models import MIME_TYPES, ExportFormat, ExportOptions, ExportResult
from services import import_service

logger = logging.getLogger(__name__)

DEFAULT_MAIN_SHEET = '主表'
DEFAULT_COLUMN_WIDTH = 12
MAX_COLUMN_WIDTH = 60
MAX_SHEET_NAME_LENGTH = 31
INVALID_SHEET_CHARS = re.compile(r'[\[\]:*?/\\]')


def sanitize_sheet_name(name: str) -> str:
    """Excel sheet names: no []:*?/\\ and at most 31 characters."""
    cleaned = INVALID_SHEET_CHARS.sub('_', name).strip() or DEFAULT_MAIN_SHEET
    return cleaned[:MAX_SHEET_NAME_LENGTH]


def append_row(sheet, values: List[Any]):
    """Append a row; text starting with "=" is stored as text, never as a formula."""
    sheet.append(values)
    for cell in sheet[sheet.max_row]:
        if isinstance(cell.value, str) and cell.value.startswith('='):
            cell.data_type = 's'


class ExportService:
    """Service for exporting records of a registered type."""

    def __init__(self, registry: ConfigurationRegistry,
                 converter: Optional[ValueConverter] = None,
                 progress_callback: Optional[Callable[[str, float, str], None]] = None):
        self.registry = registry
        self.converter = converter or ValueConverter(registry=registry)
        self.progress_callback = progress_callback or (lambda *args: None)

    def _emit_progress(self, stage: str, percent: float, message: str = ""):
        """Emit progress update."""
        self.progress_callback(stage, percent, message)
        logger.info(f"[{stage}] {percent:.1f}% - {message}")

    def export_data(self, records: Iterable[Any], record_type: type,
                    options: Optional[ExportOptions] = None) -> ExportResult:
        """
        Export records to CSV or XLSX bytes.

        Args:
            records: Records of record_type
            record_type: Registered record class
            options: Export options (defaults to XLSX with headers)

        Returns:
            ExportResult with the file content, suggested file name and MIME type
        """
        options = options or ExportOptions()
        try:
            type_config = self.registry.get_configuration(record_type)
        except ConfigurationError as e:
            return ExportResult(is_success=False, error_message=str(e))

        if not type_config.class_config.export_enabled:
            return ExportResult(is_success=False,
                                error_message=f"类型 {type_config.type_name} 未启用Excel导出功能")

        if not type_config.export_fields:
            return ExportResult(is_success=False, error_message='未找到可导出的字段')

        records = list(records)
        self._emit_progress('starting', 0, f"Exporting {len(records)} {type_config.type_name} records")

        try:
            include_headers = options.include_headers and type_config.class_config.export_include_header

            if options.format == ExportFormat.CSV:
                content = self._write_csv(records, type_config, options, include_headers)
            else:
                content = self._write_xlsx(records, type_config, options, include_headers)

            result = ExportResult(
                is_success=True,
                content=content,
                file_name=self._file_name(type_config, options),
                mime_type=MIME_TYPES[options.format],
                record_count=len(records)
            )
            self._emit_progress('complete', 100, f"Exported {len(records)} records to {result.file_name}")
            return result

        except Exception as e:
            logger.error(f"Export of {type_config.type_name} failed: {e}", exc_info=True)
            return ExportResult(is_success=False, error_message=f'导出失败: {e}')

    # ------------------------------------------------------------------
    # Cell rendering
    # ------------------------------------------------------------------

    def _cell_text(self, record: Any, field: FieldConfiguration) -> str:
        value = getattr(record, field.property_name, None)
        try:
            return self.converter.convert_to_text(value, field)
        except Exception as e:
            logger.warning(f"Formatting {field.property_name} failed, using plain text: {e}")
            return '' if value is None else str(value)

    def _row_values(self, record: Any, fields: List[FieldConfiguration]) -> List[str]:
        return [self._cell_text(record, field) for field in fields]

    def get_parent_key_value(self, record: Any, type_config: TypeConfiguration) -> str:
        """Identity value of a parent record as written into detail sheets."""
        identity = type_config.identity_field
        if identity:
            field = type_config.get_field(identity)
            if field is not None:
                return self._cell_text(record, field)
            value = getattr(record, identity, None)
            if value is not None:
                return str(value)

        record_id = getattr(record, 'id', None)
        return str(record_id) if record_id is not None else str(record)

    @staticmethod
    def _file_name(type_config: TypeConfiguration, options: ExportOptions) -> str:
        base = options.file_name or type_config.class_config.default_file_name or type_config.type_name
        timestamp = datetime.now().strftime('%Y%m%d%H%M%S')
        return f"{base}_{timestamp}.{options.format.value}"

    # ------------------------------------------------------------------
    # CSV
    # ------------------------------------------------------------------

    def _write_csv(self, records: List[Any], type_config: TypeConfiguration,
                   options: ExportOptions, include_headers: bool) -> bytes:
        fields = type_config.export_fields
        buffer = io.StringIO(newline='')

        if include_headers:
            header_writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\r\n')
            header_writer.writerow([f.effective_column_name for f in fields])

        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator='\r\n')
        for record in records:
            writer.writerow(self._row_values(record, fields))

        encoding = codecs.lookup(options.encoding).name
        data = buffer.getvalue().encode(encoding)
        if options.add_bom and encoding == 'utf-8':
            data = codecs.BOM_UTF8 + data
        return data

    # ------------------------------------------------------------------
    # XLSX
    # ------------------------------------------------------------------

    def _write_xlsx(self, records: List[Any], type_config: TypeConfiguration,
                    options: ExportOptions, include_headers: bool) -> bytes:
        workbook = Workbook()
        main_sheet = workbook.active
        main_sheet.title = sanitize_sheet_name(
            options.sheet_name or type_config.class_config.sheet_name or DEFAULT_MAIN_SHEET
        )

        main_fields = [f for f in type_config.export_fields if not f.is_multi_sheet]
        self._write_sheet(
            main_sheet, main_fields,
            (self._row_values(record, main_fields) for record in records),
            include_headers
        )

        # Step 2: One detail sheet per multi-sheet collection
        for field in type_config.multi_sheet_fields:
            self._write_detail_sheet(workbook, records, type_config, field, include_headers)

        output = io.BytesIO()
        workbook.save(output)
        return output.getvalue()

    def _write_detail_sheet(self, workbook: Workbook, records: List[Any],
                            type_config: TypeConfiguration, field: FieldConfiguration,
                            include_headers: bool):
        detail_config = self.registry.get_configuration(field.value_type)
        detail_fields = [f for f in detail_config.export_fields if not f.is_collection]
        relation_field = FieldConfiguration(
            property_name='__relation__',
            column_name=field.relation_field_name or import_service.DEFAULT_RELATION_FIELD,
            column_width=16
        )

        sheet_name = field.detail_sheet_name or f"{field.effective_column_name}明细"
        sheet = workbook.create_sheet(sanitize_sheet_name(sheet_name))

        def detail_rows():
            for record in records:
                parent_key = self.get_parent_key_value(record, type_config)
                for child in getattr(record, field.property_name, None) or []:
                    yield [parent_key] + self._row_values(child, detail_fields)

        count = self._write_sheet(sheet, [relation_field] + detail_fields, detail_rows(), include_headers)
        logger.info(f"Wrote {count} detail rows to sheet '{sheet.title}'")

    @staticmethod
    def _write_sheet(sheet, fields: List[FieldConfiguration], rows: Iterable[List[str]],
                     include_headers: bool) -> int:
        """Write header and rows, then apply widths and alignment. Returns the data row count."""
        if include_headers:
            sheet.append([f.effective_column_name for f in fields])
            for cell in sheet[1]:
                cell.font = Font(bold=True)
                cell.alignment = Alignment(horizontal='center', vertical='center')

        count = 0
        widths = [len(f.effective_column_name) * 2 for f in fields]
        for values in rows:
            append_row(sheet, values)
            count += 1
            for index, value in enumerate(values):
                widths[index] = max(widths[index], len(value) + 2)

        first_data_row = 2 if include_headers else 1
        for index, field in enumerate(fields, start=1):
            letter = get_column_letter(index)
            width = field.column_width or min(max(widths[index - 1], DEFAULT_COLUMN_WIDTH), MAX_COLUMN_WIDTH)
            sheet.column_dimensions[letter].width = width

            if field.alignment:
                for (cell,) in sheet.iter_rows(min_row=first_data_row, min_col=index, max_col=index):
                    cell.alignment = Alignment(horizontal=field.alignment)

        return count

    def export_multiple_sheets(self, sheets: Dict[str, List[Any]], headers: Dict[str, List[str]],
                               extractor: Callable[[Any, str], List[Any]]) -> bytes:
        """
        Write an ad-hoc workbook with one sheet per entry.

        Args:
            sheets: Sheet name -> items
            headers: Sheet name -> header cells
            extractor: Callable(item, sheet_name) returning the row cells

        Returns:
            XLSX bytes
        """
        workbook = Workbook()
        workbook.remove(workbook.active)

        for name, items in sheets.items():
            sheet = workbook.create_sheet(sanitize_sheet_name(name))
            header = headers.get(name)
            if header:
                sheet.append(list(header))
                for cell in sheet[1]:
                    cell.font = Font(bold=True)
            for item in items:
                append_row(sheet, list(extractor(item, name)))

        if not workbook.worksheets:
            workbook.create_sheet(DEFAULT_MAIN_SHEET)

        output = io.BytesIO()
        workbook.save(output)
        return output.getvalue()
