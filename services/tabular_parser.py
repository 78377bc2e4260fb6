"""
Tabular Parser - Turn CSV and XLSX bytes into row records.

This module validates uploaded files, detects their format and parses them
into RowRecord lists. Columns are aligned by position so blank header cells
stay as placeholders and never shift the values of later columns.
"""

import csv
import io
import logging
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional

from openpyxl import load_workbook

from services.encoding_service import EncodingDetector
from services.exchange_models import (
    FileFormat, FileValidationResult, ParsedSheet, ParsedTable, RowRecord
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024

XLSX_MAGIC = b'PK\x03\x04'
XLS_MAGIC = b'\xd0\xcf\x11\xe0'

NO_DATA_MESSAGE = '文件中没有找到有效数据'


def cell_to_text(value: Any) -> str:
    """Normalise a worksheet cell value to the text a CSV export would hold."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d %H:%M:%S')
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


class TabularParser:
    """
    Framework-agnostic parser for CSV and XLSX content.

    Parsing failures never raise to the caller: spreadsheet failures fall
    back to CSV, and the remaining problems are reported on the result.
    """

    def __init__(self, detector: Optional[EncodingDetector] = None,
                 max_file_size: int = DEFAULT_MAX_FILE_SIZE):
        self.detector = detector or EncodingDetector()
        self.max_file_size = max_file_size

    # ------------------------------------------------------------------
    # Format detection
    # ------------------------------------------------------------------

    def validate_file(self, content: bytes, file_name: Optional[str] = None) -> FileValidationResult:
        """
        Check size and format of an uploaded file.

        Args:
            content: Raw file bytes
            file_name: Original file name (extension directs the check)

        Returns:
            FileValidationResult
        """
        if not content:
            return FileValidationResult(False, error_message='文件内容为空')

        size = len(content)
        if size > self.max_file_size:
            limit_mb = self.max_file_size // (1024 * 1024)
            return FileValidationResult(False, file_size=size,
                                        error_message=f'文件大小超过限制 ({limit_mb}MB)')

        extension = Path(file_name).suffix.lower() if file_name else ''
        file_format = None

        if extension == '.csv':
            file_format = FileFormat.CSV if self._looks_like_text(content) else None
        elif extension == '.xlsx':
            file_format = FileFormat.XLSX if self.is_xlsx(content) else None
        elif extension == '.xls':
            file_format = FileFormat.XLS if content.startswith(XLS_MAGIC) else None
        else:
            file_format = self.detect_format(content)
            if file_format is None:
                return FileValidationResult(False, file_size=size, error_message='不支持的文件格式')

        if file_format is None:
            return FileValidationResult(False, file_size=size, error_message='文件格式验证失败')

        return FileValidationResult(True, file_format=file_format, file_size=size)

    def detect_format(self, content: bytes, file_name: Optional[str] = None) -> Optional[FileFormat]:
        if file_name:
            extension = Path(file_name).suffix.lower().lstrip('.')
            if extension in {f.value for f in FileFormat}:
                return FileFormat(extension)
        if self.is_xlsx(content):
            return FileFormat.XLSX
        if content.startswith(XLS_MAGIC):
            return FileFormat.XLS
        if self._looks_like_text(content):
            return FileFormat.CSV
        return None

    @staticmethod
    def is_xlsx(content: bytes) -> bool:
        return content[:4] == XLSX_MAGIC

    def _looks_like_text(self, content: bytes) -> bool:
        text, _ = self.detector.decode(content[:self.detector.sample_size])
        return bool(text.strip()) and '\x00' not in text

    def sheet_count(self, content: bytes) -> int:
        if not self.is_xlsx(content):
            return 0
        try:
            workbook = load_workbook(io.BytesIO(content), read_only=True)
            try:
                return len(workbook.sheetnames)
            finally:
                workbook.close()
        except Exception as e:
            logger.warning(f"Could not open workbook to count sheets: {e}")
            return 0

    def has_multiple_sheets(self, content: bytes) -> bool:
        return self.sheet_count(content) > 1

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, content: bytes, file_name: Optional[str] = None, has_header: bool = True,
              header_row_index: int = 1, data_start_row_index: int = 2) -> ParsedTable:
        """
        Parse a single-table file into row records.

        Args:
            content: Raw file bytes
            file_name: Original file name, used for format detection
            has_header: Whether the header row holds column names
            header_row_index: 1-based header row
            data_start_row_index: 1-based first data row

        Returns:
            ParsedTable with rows or an error message
        """
        try:
            file_format = self.detect_format(content, file_name)

            if file_format == FileFormat.XLS:
                return ParsedTable(file_format=file_format,
                                   error_message='不支持旧版 .xls 格式，请另存为 .xlsx')

            if file_format == FileFormat.XLSX:
                table = self.parse_xlsx(content, has_header, header_row_index, data_start_row_index)
            else:
                table = self.parse_csv(content, has_header, header_row_index, data_start_row_index)

            if table.is_success and not table.rows:
                table.error_message = NO_DATA_MESSAGE
            return table

        except Exception as e:
            logger.error(f"File parsing failed: {e}", exc_info=True)
            return ParsedTable(error_message=f'文件解析失败: {e}')

    def parse_csv(self, content: bytes, has_header: bool = True, header_row_index: int = 1,
                  data_start_row_index: int = 2) -> ParsedTable:
        text, detection = self.detector.decode(content)
        logger.debug(f"CSV decoded: {detection}")

        # Blank lines stay in place so row numbers match the source
        records = list(csv.reader(io.StringIO(text, newline='')))
        columns, rows = self._build_rows(records, has_header, header_row_index, data_start_row_index,
                                         skip_blank=True)

        return ParsedTable(columns=columns, rows=rows, file_format=FileFormat.CSV,
                           encoding=detection.encoding)

    def parse_xlsx(self, content: bytes, has_header: bool = True, header_row_index: int = 1,
                   data_start_row_index: int = 2) -> ParsedTable:
        """Parse the first worksheet; falls back to CSV when the package cannot be read."""
        try:
            sheets = self._read_sheets(content, has_header, header_row_index,
                                       data_start_row_index, first_only=True)
        except Exception as e:
            logger.warning(f"Spreadsheet parsing failed, falling back to CSV: {e}")
            return self.parse_csv(content, has_header, header_row_index, data_start_row_index)

        if not sheets:
            return ParsedTable(file_format=FileFormat.XLSX)
        sheet = sheets[0]
        return ParsedTable(columns=sheet.columns, rows=sheet.rows, file_format=FileFormat.XLSX)

    def parse_all_sheets(self, content: bytes, has_header: bool = True, header_row_index: int = 1,
                         data_start_row_index: int = 2) -> List[ParsedSheet]:
        """Parse every worksheet in workbook order (first sheet is the main table)."""
        return self._read_sheets(content, has_header, header_row_index, data_start_row_index)

    def _read_sheets(self, content: bytes, has_header: bool, header_row_index: int,
                     data_start_row_index: int, first_only: bool = False) -> List[ParsedSheet]:
        workbook = load_workbook(io.BytesIO(content), data_only=True)
        sheets = []
        try:
            worksheets = workbook.worksheets[:1] if first_only else workbook.worksheets
            for worksheet in worksheets:
                records = []
                for values in worksheet.iter_rows(values_only=True):
                    records.append([cell_to_text(v) for v in values])

                columns, rows = self._build_rows(records, has_header, header_row_index,
                                                 data_start_row_index, skip_blank=True)
                sheets.append(ParsedSheet(name=worksheet.title, columns=columns, rows=rows))
                logger.debug(f"Parsed sheet '{worksheet.title}': {len(rows)} rows")
        finally:
            workbook.close()
        return sheets

    @staticmethod
    def _build_rows(records: List[List[str]], has_header: bool, header_row_index: int,
                    data_start_row_index: int, skip_blank: bool = False):
        """
        Pair each data record with the header by position.

        Row numbers are 1-based positions in the source table.
        """
        if not records:
            return [], []

        if has_header:
            if len(records) < header_row_index:
                return [], []
            columns = [c.strip() for c in records[header_row_index - 1]]
            first_data = data_start_row_index - 1
        else:
            width = max(len(r) for r in records)
            columns = [f'Column{i + 1}' for i in range(width)]
            first_data = 0

        rows = []
        for position in range(first_data, len(records)):
            record = records[position]
            if skip_blank and not any(v.strip() for v in record):
                continue

            values = {}
            for index, column in enumerate(columns):
                if not column:
                    continue
                values[column] = record[index] if index < len(record) else ''
            rows.append(RowRecord(values=values, row_number=position + 1))

        return columns, rows

    def read_workbook(self, file_path: str) -> Dict[str, List[Dict[str, Any]]]:
        """
        Read every sheet of a workbook file as typed dictionaries.

        Args:
            file_path: Path to an .xlsx file

        Returns:
            {sheet name: [{column: cell value}, ...]}
        """
        workbook = load_workbook(file_path, data_only=True)
        result: Dict[str, List[Dict[str, Any]]] = {}
        try:
            for worksheet in workbook.worksheets:
                rows = list(worksheet.iter_rows(values_only=True))
                if not rows:
                    result[worksheet.title] = []
                    continue

                headers = [cell_to_text(v) for v in rows[0]]
                data = []
                for values in rows[1:]:
                    if all(v is None for v in values):
                        continue
                    data.append({h: v for h, v in zip(headers, values) if h})
                result[worksheet.title] = data
        finally:
            workbook.close()
        return result
