"""
Pytest configuration and fixtures for tabular exchange tests.
"""

import csv
import io
import os
from typing import Dict, List

import pytest
from dotenv import load_dotenv
from openpyxl import Workbook
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.models.exchange_registry import (
    create_export_service, create_import_service, get_converter, get_registry
)
from backend.models.schema import Base, DataDictionary, DataDictionaryItem
from services.store_service import SqlAlchemyObjectStore, enable_sqlite_savepoints

# Load environment
load_dotenv()

# In-memory SQLite unless a dedicated test database is configured
TEST_DATABASE_URL = os.getenv('TEST_DATABASE_URL', 'sqlite://')


@pytest.fixture(scope='function')
def engine():
    """
    Create a fresh test database per test.

    The import service commits and rolls back on its own, so each test gets
    its own schema instead of an outer transaction.
    """
    if TEST_DATABASE_URL.startswith('sqlite'):
        eng = create_engine(
            TEST_DATABASE_URL,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool
        )
    else:
        eng = create_engine(TEST_DATABASE_URL)
    enable_sqlite_savepoints(eng)
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture(scope='function')
def session(engine):
    """Create a new database session for a test."""
    Session = sessionmaker(bind=engine)
    sess = Session()

    yield sess

    sess.close()


@pytest.fixture
def registry():
    return get_registry()


@pytest.fixture
def converter():
    return get_converter()


@pytest.fixture
def store(session):
    return SqlAlchemyObjectStore(session)


@pytest.fixture
def import_service(session):
    return create_import_service(session)


@pytest.fixture
def export_service():
    return create_export_service()


@pytest.fixture
def departments(session):
    """A 部门 dictionary with two items."""
    dictionary = DataDictionary(name='部门')
    dictionary.items = [
        DataDictionaryItem(name='研发部', code='RD', sort_order=1),
        DataDictionaryItem(name='销售部', code='SALES', sort_order=2),
    ]
    session.add(dictionary)
    session.commit()
    return dictionary


@pytest.fixture
def make_csv():
    """Build CSV bytes from rows of cells (UTF-8, no BOM unless asked)."""
    def _make(rows: List[List[str]], encoding: str = 'utf-8', bom: bool = False) -> bytes:
        buffer = io.StringIO(newline='')
        csv.writer(buffer, lineterminator='\r\n').writerows(rows)
        data = buffer.getvalue().encode(encoding)
        return (b'\xef\xbb\xbf' + data) if bom else data
    return _make


@pytest.fixture
def make_xlsx():
    """Build XLSX bytes from {sheet name: rows}, sheets in insertion order."""
    def _make(sheets: Dict[str, List[List]]) -> bytes:
        workbook = Workbook()
        workbook.remove(workbook.active)
        for name, rows in sheets.items():
            sheet = workbook.create_sheet(name)
            for row in rows:
                sheet.append(row)
        output = io.BytesIO()
        workbook.save(output)
        return output.getvalue()
    return _make


@pytest.fixture
def employee_header():
    return ['员工编号', '姓名', '性别', '出生日期', '入职日期', '邮箱', '电话', '薪资', '是否在职', '部门', '备注']
