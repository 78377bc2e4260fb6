"""
SQLAlchemy models for the tabular data exchange system.

This module defines the exchangeable record types (employees, products,
orders and their detail lines) and the data dictionary lookup tables that
imports resolve by value.
"""

import enum

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, Enum, ForeignKey, Index, Integer,
    Numeric, String, Text, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), 'postgresql')


class Gender(enum.Enum):
    Male = 'male'
    Female = 'female'


class OrderStatus(enum.Enum):
    Pending = 'pending'
    Shipped = 'shipped'
    Completed = 'completed'
    Cancelled = 'cancelled'


class DataDictionary(Base):
    """A named category of lookup values (e.g. departments)."""

    __tablename__ = 'data_dictionaries'
    __table_args__ = (
        {'comment': 'Lookup value categories'},
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    name = Column(
        String(100),
        nullable=False,
        unique=True,
        comment='Dictionary name, e.g. 部门'
    )
    description = Column(Text, nullable=True)

    items = relationship(
        'DataDictionaryItem',
        back_populates='dictionary',
        cascade='all, delete-orphan',
        order_by='DataDictionaryItem.sort_order'
    )

    def __repr__(self):
        return f"<DataDictionary(id={self.id}, name='{self.name}')>"


class DataDictionaryItem(Base):
    """One lookup value inside a data dictionary."""

    __tablename__ = 'data_dictionary_items'
    __table_args__ = (
        Index('idx_dictionary_items_dictionary', 'dictionary_id'),
        {'comment': 'Lookup values resolved by name or code during imports'}
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    dictionary_id = Column(
        Integer,
        ForeignKey('data_dictionaries.id', ondelete='CASCADE'),
        nullable=False
    )
    name = Column(String(100), nullable=False, comment='Display name')
    code = Column(String(100), nullable=True, comment='Short code')
    sort_order = Column(Integer, nullable=False, server_default='0', default=0)

    dictionary = relationship('DataDictionary', back_populates='items')

    def __repr__(self):
        return f"<DataDictionaryItem(id={self.id}, name='{self.name}')>"

    def __str__(self):
        return self.name or ''


class Employee(Base):
    """Employee master record."""

    __tablename__ = 'employees'
    __table_args__ = (
        Index('idx_employees_department', 'department_id'),
        {'comment': 'Employees imported from and exported to spreadsheets'}
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    employee_no = Column(
        String(50),
        nullable=False,
        unique=True,
        comment='Employee number (unique identity)'
    )
    name = Column(String(100), nullable=False, comment='Full name')
    gender = Column(Enum(Gender), nullable=True)
    birth_date = Column(Date, nullable=True)
    hire_date = Column(DateTime, nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    salary = Column(Numeric(precision=12, scale=2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    department_id = Column(
        Integer,
        ForeignKey('data_dictionary_items.id', ondelete='SET NULL'),
        nullable=True,
        comment='Department (data dictionary item)'
    )
    remarks = Column(Text, nullable=True)

    department = relationship('DataDictionaryItem')

    def __repr__(self):
        return f"<Employee(id={self.id}, employee_no='{self.employee_no}', name='{self.name}')>"


class Product(Base):
    """Product catalogue entry referenced by order lines."""

    __tablename__ = 'products'
    __table_args__ = (
        {'comment': 'Products referenced by order detail lines'},
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    code = Column(String(50), nullable=False, unique=True, comment='Product code')
    name = Column(String(255), nullable=True)
    unit_price = Column(Numeric(precision=12, scale=2), nullable=True)

    def __repr__(self):
        return f"<Product(id={self.id}, code='{self.code}')>"

    def __str__(self):
        return self.code or ''


class Order(Base):
    """Sales order header (master record of a master/detail workbook)."""

    __tablename__ = 'orders'
    __table_args__ = (
        Index('idx_orders_order_date', 'order_date'),
        {'comment': 'Order headers'}
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    order_no = Column(String(50), nullable=False, unique=True, comment='Order number (unique identity)')
    customer_name = Column(String(255), nullable=True)
    order_date = Column(DateTime, nullable=True)
    status = Column(Enum(OrderStatus), nullable=True)
    total_amount = Column(Numeric(precision=14, scale=2), nullable=True)
    remarks = Column(Text, nullable=True)

    details = relationship(
        'OrderDetail',
        back_populates='order',
        cascade='all, delete-orphan',
        order_by='OrderDetail.line_no'
    )

    def __repr__(self):
        return f"<Order(id={self.id}, order_no='{self.order_no}')>"


class OrderDetail(Base):
    """One line of an order (detail sheet row)."""

    __tablename__ = 'order_details'
    __table_args__ = (
        UniqueConstraint('order_id', 'line_no', name='uq_order_details_line'),
        Index('idx_order_details_order', 'order_id'),
        {'comment': 'Order lines'}
    )

    id = Column(Integer, primary_key=True, autoincrement=True, nullable=False)
    order_id = Column(
        Integer,
        ForeignKey('orders.id', ondelete='CASCADE'),
        nullable=True
    )
    line_no = Column(Integer, nullable=True, comment='Line number within the order')
    product_id = Column(
        Integer,
        ForeignKey('products.id', ondelete='SET NULL'),
        nullable=True
    )
    quantity = Column(Integer, nullable=True)
    unit_price = Column(Numeric(precision=12, scale=2), nullable=True)
    remarks = Column(Text, nullable=True)

    order = relationship('Order', back_populates='details')
    product = relationship('Product')

    def __repr__(self):
        return f"<OrderDetail(id={self.id}, order_id={self.order_id}, line_no={self.line_no})>"
