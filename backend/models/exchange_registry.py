"""
Exchange configuration for the record types in backend.models.schema.

Every exchangeable type is registered here once, at import time of the
registry, together with the custom value converters the configuration
refers to by name.
"""

import re
from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Callable, Optional

from sqlalchemy.orm import Session

from backend.models.schema import (
    DataDictionaryItem, Employee, Gender, Order, OrderDetail, OrderStatus, Product
)
from services.configuration_service import (
    ClassConfiguration, ConfigurationRegistry, FieldConfiguration
)
from services.conversion_service import ConverterRegistry, ValueConverter
from services.exchange_models import CollectionExportFormat, ImportDuplicateStrategy
from services.export_service import ExportService
from services.import_service import ImportService
from services.store_service import SqlAlchemyObjectStore

PHONE_SEPARATORS = re.compile(r'[\s\-()（）]')


def normalize_phone(raw: str, field: FieldConfiguration) -> str:
    """Strip separators from phone numbers ("138-0000 0000" -> "13800000000")."""
    return PHONE_SEPARATORS.sub('', raw)


@lru_cache()
def get_converters() -> ConverterRegistry:
    converters = ConverterRegistry()
    converters.register('normalize_phone', normalize_phone)
    return converters


def register_types(registry: ConfigurationRegistry) -> ConfigurationRegistry:
    """Register the exchange configuration of all record types."""
    registry.register(
        Employee,
        [
            FieldConfiguration(property_name='employee_no', column_name='员工编号', is_required=True,
                               validation_pattern=r'^[A-Za-z]{1,3}\d+$',
                               validation_message='【{ColumnName}】应为字母前缀加数字，例如 E100',
                               column_width=14, description='Unique employee number'),
            FieldConfiguration(property_name='name', column_name='姓名', is_required=True, column_width=12),
            FieldConfiguration(property_name='gender', value_type=Gender, column_name='性别',
                               format='Male=男;Female=女', alignment='center'),
            FieldConfiguration(property_name='birth_date', value_type=date, column_name='出生日期',
                               format='yyyy-MM-dd'),
            FieldConfiguration(property_name='hire_date', value_type=datetime, column_name='入职日期',
                               column_width=20),
            FieldConfiguration(property_name='email', column_name='邮箱',
                               validation_pattern=r'^[^@\s]+@[^@\s]+\.[^@\s]+$', column_width=24),
            FieldConfiguration(property_name='phone', column_name='电话', import_converter='normalize_phone'),
            FieldConfiguration(property_name='salary', value_type=Decimal, column_name='薪资',
                               format='0.00', alignment='right'),
            FieldConfiguration(property_name='is_active', value_type=bool, nullable=False,
                               column_name='是否在职', format='true=在职;false=离职'),
            FieldConfiguration(property_name='department', value_type=DataDictionaryItem,
                               column_name='部门', dictionary_name='部门',
                               reference_create_if_missing=True),
            FieldConfiguration(property_name='remarks', column_name='备注', column_width=30),
        ],
        ClassConfiguration(sheet_name='员工', default_file_name='员工信息', identity_field='employee_no')
    )

    registry.register(
        Product,
        [
            FieldConfiguration(property_name='code', column_name='产品编码', is_required=True),
            FieldConfiguration(property_name='name', column_name='产品名称'),
            FieldConfiguration(property_name='unit_price', value_type=Decimal, column_name='单价',
                               format='0.00'),
        ],
        ClassConfiguration(sheet_name='产品', default_file_name='产品', identity_field='code')
    )

    registry.register(
        OrderDetail,
        [
            FieldConfiguration(property_name='order', value_type=Order,
                               import_enabled=False, export_enabled=False),
            FieldConfiguration(property_name='line_no', value_type=int, column_name='行号', is_required=True),
            FieldConfiguration(property_name='product', value_type=Product, column_name='产品编码',
                               reference_match_field='code', reference_create_if_missing=True),
            FieldConfiguration(property_name='quantity', value_type=int, column_name='数量'),
            FieldConfiguration(property_name='unit_price', value_type=Decimal, column_name='单价',
                               format='0.00'),
            FieldConfiguration(property_name='remarks', column_name='备注'),
        ],
        ClassConfiguration(sheet_name='订单明细', default_property='line_no')
    )

    registry.register(
        Order,
        [
            FieldConfiguration(property_name='order_no', column_name='订单编号', is_required=True,
                               column_width=16),
            FieldConfiguration(property_name='customer_name', column_name='客户名称', column_width=20),
            FieldConfiguration(property_name='order_date', value_type=datetime, column_name='下单日期',
                               column_width=20),
            FieldConfiguration(property_name='status', value_type=OrderStatus, column_name='状态',
                               format='Pending=待处理;Shipped=已发货;Completed=已完成;Cancelled=已取消'),
            FieldConfiguration(property_name='total_amount', value_type=Decimal, column_name='订单金额',
                               format='#,##0.00', alignment='right'),
            FieldConfiguration(property_name='details', value_type=OrderDetail, is_collection=True,
                               column_name='商品', import_enabled=False,
                               collection_export_format=CollectionExportFormat.MULTI_SHEET,
                               collection_display_properties='product,quantity'),
            FieldConfiguration(property_name='remarks', column_name='备注'),
        ],
        ClassConfiguration(sheet_name='订单', default_file_name='订单',
                           duplicate_strategy=ImportDuplicateStrategy.INSERT_OR_UPDATE,
                           identity_field='order_no')
    )

    return registry


@lru_cache()
def get_registry() -> ConfigurationRegistry:
    """
    Get the process-wide configuration registry.

    Uses lru_cache so types are registered only once.
    """
    return register_types(ConfigurationRegistry())


def get_converter() -> ValueConverter:
    return ValueConverter(converters=get_converters(), registry=get_registry())


def create_import_service(db_session: Session,
                          progress_callback: Optional[Callable[[str, float, str], None]] = None):
    """Build an ImportService over a SQLAlchemy session with the registered configuration."""
    return ImportService(
        store=SqlAlchemyObjectStore(db_session),
        registry=get_registry(),
        converter=get_converter(),
        progress_callback=progress_callback
    )


def create_export_service(progress_callback: Optional[Callable[[str, float, str], None]] = None):
    """Build an ExportService with the registered configuration."""
    return ExportService(
        registry=get_registry(),
        converter=get_converter(),
        progress_callback=progress_callback
    )
