"""
Tests for CSV/XLSX validation and parsing.
"""

from datetime import datetime

import pytest

from services.exchange_models import FileFormat
from services.tabular_parser import NO_DATA_MESSAGE, TabularParser, XLS_MAGIC, cell_to_text


@pytest.fixture
def parser():
    return TabularParser()


class TestFileValidation:
    """Test size and format checks."""

    def test_empty_file(self, parser):
        result = parser.validate_file(b'', 'data.csv')
        assert not result.is_valid
        assert result.error_message == '文件内容为空'

    def test_size_limit(self):
        result = TabularParser(max_file_size=1024 * 1024).validate_file(b'a' * (1024 * 1024 + 1), 'big.csv')
        assert not result.is_valid
        assert '1MB' in result.error_message

    def test_extension_must_match_content(self, parser, make_csv):
        """A .xlsx name on CSV text fails the format check."""
        result = parser.validate_file(make_csv([['a', 'b']]), 'data.xlsx')
        assert not result.is_valid
        assert result.error_message == '文件格式验证失败'

    def test_sniffs_format_without_name(self, parser, make_xlsx, make_csv):
        assert parser.validate_file(make_xlsx({'Sheet': [['a']]})).file_format == FileFormat.XLSX
        assert parser.validate_file(make_csv([['a', 'b']])).file_format == FileFormat.CSV

    def test_binary_content_rejected(self, parser):
        result = parser.validate_file(b'\x00\x01\x02\x03', 'data.bin')
        assert not result.is_valid
        assert result.error_message == '不支持的文件格式'


class TestCsvParsing:
    """Test CSV parsing into row records."""

    def test_header_and_rows(self, parser, make_csv):
        content = make_csv([['编码', '名称'], ['P1', '螺丝'], ['P2', '螺母']])
        table = parser.parse(content, 'products.csv')

        assert table.is_success
        assert table.columns == ['编码', '名称']
        assert [r.values for r in table.rows] == [
            {'编码': 'P1', '名称': '螺丝'},
            {'编码': 'P2', '名称': '螺母'},
        ]
        assert [r.row_number for r in table.rows] == [2, 3]

    def test_quoted_fields(self, parser):
        content = 'name,remarks\r\n"Smith, J","said ""hi"""\r\n'.encode('utf-8')
        row = parser.parse(content, 'people.csv').rows[0]
        assert row.values == {'name': 'Smith, J', 'remarks': 'said "hi"'}

    def test_gbk_content(self, parser):
        content = '编码,名称\r\nP1,螺丝钉\r\n'.encode('gbk')
        table = parser.parse(content, 'products.csv')
        assert table.rows[0].values == {'编码': 'P1', '名称': '螺丝钉'}

    def test_short_rows_padded(self, parser, make_csv):
        table = parser.parse(make_csv([['a', 'b', 'c'], ['1']]), 'x.csv')
        assert table.rows[0].values == {'a': '1', 'b': '', 'c': ''}

    def test_blank_header_keeps_positions(self, parser, make_csv):
        """A blank header cell is skipped without shifting later columns."""
        table = parser.parse(make_csv([['a', '', 'c'], ['1', '2', '3']]), 'x.csv')
        assert table.rows[0].values == {'a': '1', 'c': '3'}

    def test_without_header(self, parser, make_csv):
        table = parser.parse(make_csv([['1', '2'], ['3', '4']]), 'x.csv', has_header=False)
        assert table.columns == ['Column1', 'Column2']
        assert table.rows[0].row_number == 1
        assert table.rows[1].values == {'Column1': '3', 'Column2': '4'}

    def test_header_only_has_no_data(self, parser, make_csv):
        table = parser.parse(make_csv([['a', 'b']]), 'x.csv')
        assert table.error_message == NO_DATA_MESSAGE

    def test_blank_lines_keep_row_numbers(self, parser):
        content = '编码,名称\r\nP1,螺丝\r\n\r\nP2,螺母\r\n\r\n'.encode('utf-8')
        table = parser.parse(content, 'products.csv')

        assert [r.values['编码'] for r in table.rows] == ['P1', 'P2']
        assert [r.row_number for r in table.rows] == [2, 4]

    def test_custom_header_row(self, parser, make_csv):
        content = make_csv([['员工信息表'], ['编号', '姓名'], ['E1', '张三']])
        table = parser.parse(content, 'x.csv', header_row_index=2, data_start_row_index=3)
        assert table.rows[0].values == {'编号': 'E1', '姓名': '张三'}
        assert table.rows[0].row_number == 3


class TestXlsxParsing:
    """Test workbook parsing."""

    def test_first_sheet_parsed(self, parser, make_xlsx):
        content = make_xlsx({
            '订单': [['订单编号', '金额'], ['SO1', 12.5], ['SO2', 3.0]],
            '商品明细': [['订单编号', '行号'], ['SO1', 1]],
        })
        table = parser.parse(content, 'orders.xlsx')

        assert table.file_format == FileFormat.XLSX
        assert [r.values for r in table.rows] == [
            {'订单编号': 'SO1', '金额': '12.5'},
            {'订单编号': 'SO2', '金额': '3'},
        ]

    def test_blank_rows_skipped(self, parser, make_xlsx):
        content = make_xlsx({'S': [['a'], ['x'], [None], ['y']]})
        table = parser.parse(content, 'x.xlsx')
        assert [r.values['a'] for r in table.rows] == ['x', 'y']
        assert [r.row_number for r in table.rows] == [2, 4]

    def test_all_sheets(self, parser, make_xlsx):
        content = make_xlsx({'主表': [['k'], ['1']], '明细': [['k', 'v'], ['1', 'a']]})
        assert parser.sheet_count(content) == 2
        assert parser.has_multiple_sheets(content)
        assert not parser.has_multiple_sheets(make_xlsx({'主表': [['k']]}))
        sheets = parser.parse_all_sheets(content)
        assert [s.name for s in sheets] == ['主表', '明细']
        assert sheets[1].rows[0].values == {'k': '1', 'v': 'a'}

    def test_legacy_xls_rejected(self, parser):
        table = parser.parse(XLS_MAGIC + b'\x00' * 64, 'old.xls')
        assert table.error_message == '不支持旧版 .xls 格式，请另存为 .xlsx'

    def test_read_workbook(self, parser, make_xlsx, tmp_path):
        path = tmp_path / 'book.xlsx'
        path.write_bytes(make_xlsx({'S': [['a', 'b'], [1, 'x'], [None, None]]}))
        assert parser.read_workbook(str(path)) == {'S': [{'a': 1, 'b': 'x'}]}


class TestCellToText:
    """Test worksheet value normalisation."""

    def test_values(self):
        assert cell_to_text(None) == ''
        assert cell_to_text(True) == 'true'
        assert cell_to_text(5.0) == '5'
        assert cell_to_text(datetime(2024, 1, 2, 3, 4, 5)) == '2024-01-02 03:04:05'
        assert cell_to_text('  x ') == 'x'
