"""
Tests for CSV/XLSX export.
"""

import io
from datetime import date, datetime
from decimal import Decimal

from openpyxl import load_workbook

from backend.models.schema import (
    DataDictionaryItem, Employee, Gender, Order, OrderDetail, OrderStatus, Product
)
from backend.models.exchange_registry import get_registry
from services.configuration_service import ClassConfiguration, ConfigurationRegistry
from services.exchange_models import ExportFormat, ExportOptions, ImportMode, ImportOptions
from services.export_service import ExportService, sanitize_sheet_name
from services.import_service import ImportService
from services.store_service import SqlAlchemyObjectStore

LONG_DETAIL_SHEET = '订单/商品明细:2024年度全部客户的全部订单商品明细汇总表格数据'


def sample_employees():
    department = DataDictionaryItem(name='研发部', code='RD')
    return [
        Employee(employee_no='E1', name='张三', gender=Gender.Male, birth_date=date(1990, 5, 1),
                 hire_date=datetime(2020, 1, 1, 9, 0), email='zs@example.com', phone='13800000000',
                 salary=Decimal('12000.5'), is_active=True, department=department, remarks='a, b'),
        Employee(employee_no='E2', name='李四', gender=Gender.Female, is_active=False),
    ]


def sample_orders():
    p1, p2 = Product(code='P1'), Product(code='P2')
    first = Order(order_no='SO1', customer_name='甲公司', status=OrderStatus.Shipped,
                  total_amount=Decimal('1200'))
    first.details = [
        OrderDetail(line_no=1, product=p1, quantity=2, unit_price=Decimal('100')),
        OrderDetail(line_no=2, product=p2, quantity=1, unit_price=Decimal('1000')),
    ]
    second = Order(order_no='SO2', customer_name='乙公司', status=OrderStatus.Pending)
    second.details = [OrderDetail(line_no=1, product=p1, quantity=5, unit_price=Decimal('10'))]
    return [first, second]


def sheet_rows(sheet):
    return [list(row) for row in sheet.iter_rows(values_only=True)]


class TestCsvExport:
    """Test CSV rendering."""

    def test_header_and_rows(self, export_service):
        result = export_service.export_data(sample_employees(), Employee, ExportOptions(format=ExportFormat.CSV))

        assert result.is_success
        assert result.record_count == 2
        assert result.mime_type == 'text/csv'
        assert result.content.startswith(b'\xef\xbb\xbf')

        lines = result.content.decode('utf-8-sig').split('\r\n')
        assert lines[0] == ('"员工编号","姓名","性别","出生日期","入职日期","邮箱","电话",'
                            '"薪资","是否在职","部门","备注"')
        assert lines[1] == ('E1,张三,男,1990-05-01,2020-01-01 09:00:00,zs@example.com,13800000000,'
                            '12000.50,在职,研发部,"a, b"')
        assert lines[2] == 'E2,李四,女,,,,,,离职,,'
        assert lines[3] == ''

    def test_without_headers(self, export_service):
        options = ExportOptions(format=ExportFormat.CSV, include_headers=False)
        result = export_service.export_data(sample_employees(), Employee, options)
        assert result.content.decode('utf-8-sig').startswith('E1,')

    def test_gbk_without_bom(self, export_service):
        options = ExportOptions(format=ExportFormat.CSV, encoding='gbk')
        result = export_service.export_data(sample_employees(), Employee, options)

        assert not result.content.startswith(b'\xef\xbb\xbf')
        assert result.content.decode('gbk').startswith('"员工编号"')

    def test_file_name(self, export_service):
        result = export_service.export_data([], Employee, ExportOptions(format=ExportFormat.CSV))
        assert result.file_name.startswith('员工信息_')
        assert result.file_name.endswith('.csv')

        named = export_service.export_data([], Employee, ExportOptions(file_name='staff'))
        assert named.file_name.startswith('staff_')
        assert named.file_name.endswith('.xlsx')


class TestXlsxExport:
    """Test workbook rendering."""

    def test_main_sheet(self, export_service):
        result = export_service.export_data(sample_employees(), Employee)
        workbook = load_workbook(io.BytesIO(result.content))

        assert workbook.sheetnames == ['员工']
        rows = sheet_rows(workbook['员工'])
        assert rows[0][:3] == ['员工编号', '姓名', '性别']
        assert rows[1][:3] == ['E1', '张三', '男']
        assert workbook['员工']['A1'].font.bold

    def test_sheet_name_option(self, export_service):
        options = ExportOptions(sheet_name='名单/2024')
        result = export_service.export_data(sample_employees(), Employee, options)
        assert load_workbook(io.BytesIO(result.content)).sheetnames == ['名单_2024']

    def test_detail_sheet(self, export_service):
        """Each child becomes one detail row carrying its parent's identity."""
        result = export_service.export_data(sample_orders(), Order)
        workbook = load_workbook(io.BytesIO(result.content))

        assert workbook.sheetnames == ['订单', '商品明细']

        main = sheet_rows(workbook['订单'])
        assert main[0] == ['订单编号', '客户名称', '下单日期', '状态', '订单金额', '备注']
        assert main[1][:2] == ['SO1', '甲公司']
        assert main[1][3:5] == ['已发货', '1,200.00']

        details = sheet_rows(workbook['商品明细'])
        assert details[0] == ['关联主表记录', '行号', '产品编码', '数量', '单价', '备注']
        assert [row[:5] for row in details[1:]] == [
            ['SO1', '1', 'P1', '2', '100.00'],
            ['SO1', '2', 'P2', '1', '1000.00'],
            ['SO2', '1', 'P1', '5', '10.00'],
        ]

    def test_export_then_import(self, session, export_service, import_service):
        """A master/detail export imports back into the same records."""
        exported = export_service.export_data(sample_orders(), Order)

        outcome = import_service.import_data(exported.content, Order,
                                             ImportOptions(mode=ImportMode.CREATE_ONLY), 'orders.xlsx')

        assert outcome.is_success
        assert outcome.success_count == 2
        assert outcome.detail_success_count == 3
        first = session.query(Order).filter_by(order_no='SO1').one()
        assert first.status == OrderStatus.Shipped
        assert [(d.line_no, d.product.code, d.unit_price) for d in first.details] == [
            (1, 'P1', Decimal('100.00')), (2, 'P2', Decimal('1000.00'))
        ]

    def test_export_multiple_sheets(self, export_service):
        content = export_service.export_multiple_sheets(
            {'A': [1, 2], 'B/C': [3]},
            {'A': ['值', '表']},
            lambda item, name: [item, name]
        )
        workbook = load_workbook(io.BytesIO(content))

        assert workbook.sheetnames == ['A', 'B_C']
        assert sheet_rows(workbook['A']) == [['值', '表'], [1, 'A'], [2, 'A']]
        assert sheet_rows(workbook['B_C']) == [[3, 'B/C']]


class TestExportErrors:
    """Test rejected exports."""

    def test_unregistered_type(self, export_service):
        result = export_service.export_data([], DataDictionaryItem)
        assert not result.is_success
        assert '未注册' in result.error_message

    def test_export_disabled(self):
        registry = ConfigurationRegistry()
        registry.register(Product, [{'property_name': 'code'}], ClassConfiguration(export_enabled=False))

        result = ExportService(registry).export_data([], Product)
        assert result.error_message == '类型 Product 未启用Excel导出功能'

    def test_no_export_fields(self):
        registry = ConfigurationRegistry()
        registry.register(Product, [{'property_name': 'code', 'export_enabled': False}])

        result = ExportService(registry).export_data([], Product)
        assert result.error_message == '未找到可导出的字段'


class TestSheetNames:
    """Test sheet name sanitising."""

    def test_invalid_characters_replaced(self):
        assert sanitize_sheet_name('a[b]:c*?/d\\e') == 'a_b__c___d_e'

    def test_truncated(self):
        assert len(sanitize_sheet_name('x' * 40)) == 31

    def test_blank_falls_back(self):
        assert sanitize_sheet_name('  ') == '主表'


def record_counts(session):
    return {
        record_type.__name__: session.query(record_type).count()
        for record_type in (Employee, Order, OrderDetail, Product, DataDictionaryItem)
    }


def registry_with_detail_sheet(sheet_name):
    """The registered types, with the order details written to a custom sheet."""
    base = get_registry()
    registry = ConfigurationRegistry()
    for record_type in (Product, OrderDetail):
        config = base.get_configuration(record_type)
        registry.register(record_type, config.fields, config.class_config)

    order = base.get_configuration(Order)
    fields = [
        f.model_copy(update={'detail_sheet_name': sheet_name}) if f.property_name == 'details' else f
        for f in order.fields
    ]
    registry.register(Order, fields, order.class_config)
    return registry


class TestRoundTrip:
    """Exported records import back onto themselves."""

    def test_csv_reimport_creates_nothing(self, session, departments, export_service, import_service):
        session.add_all([
            Employee(employee_no='E1', name='张三', gender=Gender.Male, birth_date=date(1990, 5, 1),
                     hire_date=datetime(2020, 1, 1, 9, 0), salary=Decimal('12000.50'), is_active=True,
                     department=departments.items[0], remarks='a, b'),
            Employee(employee_no='E2', name='李四', gender=Gender.Female, is_active=False),
        ])
        session.commit()
        before = record_counts(session)

        employees = session.query(Employee).order_by(Employee.employee_no).all()
        exported = export_service.export_data(employees, Employee, ExportOptions(format=ExportFormat.CSV))
        outcome = import_service.import_data(exported.content, Employee,
                                             ImportOptions(mode=ImportMode.CREATE_OR_UPDATE), exported.file_name)

        assert outcome.is_success
        assert outcome.success_count == 2
        assert outcome.errors == []
        assert record_counts(session) == before
        first = session.query(Employee).filter_by(employee_no='E1').one()
        assert first.department.code == 'RD'
        assert first.salary == Decimal('12000.50')
        assert first.remarks == 'a, b'

    def test_xlsx_reimport_with_details_creates_nothing(self, session, export_service, import_service):
        session.add_all(sample_orders())
        session.commit()
        before = record_counts(session)

        orders = session.query(Order).order_by(Order.order_no).all()
        exported = export_service.export_data(orders, Order)
        outcome = import_service.import_data(exported.content, Order,
                                             ImportOptions(mode=ImportMode.CREATE_OR_UPDATE), exported.file_name)

        assert outcome.is_success
        assert outcome.success_count == 2
        assert outcome.detail_success_count == 3
        assert record_counts(session) == before

    def test_formula_like_text_stays_text(self, session, export_service, import_service):
        """Text starting with '=' is written as a string cell, not a formula."""
        exported = export_service.export_data(
            [Employee(employee_no='E1', name='张三', remarks='=1+1')], Employee
        )

        sheet = load_workbook(io.BytesIO(exported.content))['员工']
        remarks = sheet.cell(row=2, column=11)
        assert remarks.data_type == 's'
        assert remarks.value == '=1+1'

        outcome = import_service.import_data(exported.content, Employee, file_name=exported.file_name)
        assert outcome.is_success
        assert session.query(Employee).one().remarks == '=1+1'

    def test_sanitized_detail_sheet_found_on_import(self, session):
        """A detail sheet name that export had to clean up is matched on import too."""
        registry = registry_with_detail_sheet(LONG_DETAIL_SHEET)
        sheet_name = sanitize_sheet_name(LONG_DETAIL_SHEET)
        assert len(sheet_name) == 31

        exported = ExportService(registry).export_data(sample_orders(), Order)
        assert load_workbook(io.BytesIO(exported.content)).sheetnames == ['订单', sheet_name]

        service = ImportService(SqlAlchemyObjectStore(session), registry)
        outcome = service.import_data(exported.content, Order, file_name=exported.file_name)

        assert outcome.is_success
        assert outcome.detail_success_count == 3
        assert session.query(OrderDetail).count() == 3
