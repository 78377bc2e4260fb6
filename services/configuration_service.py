"""
Configuration Service - Field-to-column mapping for exchangeable record types.

This module holds the statically registered exchange configuration for each
record type: the ordered field configurations, the class-level settings and
the resolved identity field. Configurations are validated eagerly when they
are registered and cached for the lifetime of the process.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import cached_property
from typing import Any, Dict, Iterable, List, Optional

import networkx as nx
from pydantic import BaseModel, Field, ValidationError, model_validator

from services.exchange_models import (
    CollectionExportFormat, ImportDuplicateStrategy, ValidationMode
)

logger = logging.getLogger(__name__)

# Column index is scaled so that it always dominates sort order
COLUMN_INDEX_WEIGHT = 1000

# Fallback identity property names, checked in order
IDENTITY_HEURISTIC_NAMES = ('name', 'title', 'code', 'order_no', 'oid', 'employee_no')

SCALAR_TYPES = (str, int, float, Decimal, bool, datetime, date)


class ConfigurationError(Exception):
    """Raised when an exchange configuration is invalid or missing."""
    pass


class FieldConfiguration(BaseModel):
    """Exchange settings for one property of a record type."""

    property_name: str = Field(..., description="Attribute name on the record type")
    value_type: Any = Field(str, description="Python type of the attribute (item type for collections)")
    is_collection: bool = False
    nullable: bool = True

    column_name: Optional[str] = Field(None, description="External column header")
    sort_order: Optional[int] = None
    column_index: Optional[int] = Field(None, ge=0)
    declaration_order: int = 0

    is_required: bool = False
    format: Optional[str] = Field(None, description="Date/number pattern or 'key=label;...' map")
    validation_pattern: Optional[str] = None
    validation_message: Optional[str] = None

    import_enabled: bool = True
    export_enabled: bool = True
    hidden: bool = False

    null_value: Optional[str] = Field(None, description="Replacement text for blank cells")
    export_null_display: Optional[str] = None

    import_converter: Optional[str] = None
    export_converter: Optional[str] = None

    reference_match_field: Optional[str] = None
    reference_create_if_missing: bool = False
    dictionary_name: Optional[str] = Field(None, description="Data dictionary category for lookup fields")

    collection_export_format: CollectionExportFormat = CollectionExportFormat.SUMMARY
    collection_delimiter: str = '; '
    collection_display_properties: Optional[str] = Field(
        None, description="Comma-separated item properties shown in summaries"
    )
    detail_sheet_name: Optional[str] = None
    relation_field_name: Optional[str] = None

    column_width: Optional[float] = None
    alignment: Optional[str] = Field(None, description="left, center or right")
    description: Optional[str] = None

    @property
    def effective_column_name(self) -> str:
        return self.column_name or self.property_name

    @property
    def effective_sort_order(self) -> int:
        if self.column_index is not None:
            return self.column_index * COLUMN_INDEX_WEIGHT
        if self.sort_order is not None:
            return self.sort_order
        return self.declaration_order

    @property
    def is_enum(self) -> bool:
        return isinstance(self.value_type, type) and issubclass(self.value_type, Enum)

    @property
    def is_dictionary_lookup(self) -> bool:
        return self.dictionary_name is not None

    @property
    def is_reference(self) -> bool:
        """True for single-valued links to other persistent entities."""
        if self.is_collection or self.is_enum:
            return False
        if self.is_dictionary_lookup:
            return True
        return isinstance(self.value_type, type) and not issubclass(self.value_type, SCALAR_TYPES)

    @property
    def is_multi_sheet(self) -> bool:
        return self.is_collection and self.collection_export_format == CollectionExportFormat.MULTI_SHEET

    @property
    def display_properties(self) -> List[str]:
        if not self.collection_display_properties:
            return []
        return [p.strip() for p in self.collection_display_properties.split(',') if p.strip()]

    @model_validator(mode='after')
    def _check_consistency(self):
        if self.collection_export_format == CollectionExportFormat.MULTI_SHEET and not self.is_collection:
            raise ValueError(f"{self.property_name}: MultiSheet export requires a collection field")
        if self.reference_create_if_missing and not self.is_reference:
            raise ValueError(f"{self.property_name}: auto-create is only valid for reference fields")
        return self


class ClassConfiguration(BaseModel):
    """Type-level exchange settings."""

    sheet_name: Optional[str] = None
    default_file_name: Optional[str] = None
    import_enabled: bool = True
    export_enabled: bool = True
    duplicate_strategy: ImportDuplicateStrategy = ImportDuplicateStrategy.INSERT_OR_UPDATE
    validation_mode: ValidationMode = ValidationMode.LENIENT
    header_row_index: int = Field(1, ge=1)
    data_start_row_index: int = Field(2, ge=1)
    export_include_header: bool = True
    identity_field: Optional[str] = Field(None, description="Property carrying a uniqueness rule")
    default_property: Optional[str] = Field(None, description="Display/default identity property")

    @model_validator(mode='after')
    def _check_rows(self):
        if not (self.import_enabled or self.export_enabled):
            raise ValueError("at least one of import_enabled / export_enabled must be set")
        if self.data_start_row_index <= self.header_row_index:
            raise ValueError("data_start_row_index must be greater than header_row_index")
        return self


class TypeConfiguration:
    """
    Resolved exchange configuration for one record type.

    Derived lists and the identity field are computed once and cached.
    """

    def __init__(self, record_type: type, class_config: ClassConfiguration,
                 fields: List[FieldConfiguration]):
        self.record_type = record_type
        self.class_config = class_config
        self.fields = sorted(fields, key=lambda f: (f.effective_sort_order, f.declaration_order))

    def __repr__(self):
        return f"<TypeConfiguration(type='{self.type_name}', fields={len(self.fields)})>"

    @property
    def type_name(self) -> str:
        return self.record_type.__name__

    @cached_property
    def field_by_property(self) -> Dict[str, FieldConfiguration]:
        return {f.property_name: f for f in self.fields}

    @cached_property
    def import_fields(self) -> List[FieldConfiguration]:
        return [f for f in self.fields if f.import_enabled and not f.is_collection]

    @cached_property
    def export_fields(self) -> List[FieldConfiguration]:
        return [f for f in self.fields if f.export_enabled and not f.hidden]

    @cached_property
    def multi_sheet_fields(self) -> List[FieldConfiguration]:
        return [f for f in self.export_fields if f.is_multi_sheet]

    @cached_property
    def identity_field(self) -> Optional[str]:
        """
        Resolve the property used to match imported rows to existing records.

        Order: uniqueness-rule property, then the declared default property,
        then the first configured property matching a common name.
        """
        for candidate in (self.class_config.identity_field, self.class_config.default_property):
            if candidate and (candidate in self.field_by_property or hasattr(self.record_type, candidate)):
                return candidate

        lowered = {name.lower(): name for name in self.field_by_property}
        for name in IDENTITY_HEURISTIC_NAMES:
            if name in lowered:
                return lowered[name]

        logger.warning(f"No identity field resolved for {self.type_name}; rows will always be created")
        return None

    @property
    def identity_column(self) -> Optional[str]:
        identity = self.identity_field
        if identity is None:
            return None
        field = self.field_by_property.get(identity)
        return field.effective_column_name if field else identity

    def get_field(self, property_name: str) -> Optional[FieldConfiguration]:
        return self.field_by_property.get(property_name)

    def find_back_reference(self, parent_type: type) -> Optional[str]:
        """Return the property on this type whose declared type is parent_type."""
        for field in self.fields:
            if not field.is_collection and field.value_type is parent_type:
                return field.property_name
        return None


class ConfigurationRegistry:
    """
    Process-wide registry of exchange configurations.

    Types are registered once at startup; lookups never reflect on the
    record class at call time.
    """

    def __init__(self):
        self._configurations: Dict[type, TypeConfiguration] = {}
        self._detail_graph = nx.DiGraph()

    def register(self, record_type: type, fields: Iterable[Any],
                 class_config: Optional[ClassConfiguration] = None) -> TypeConfiguration:
        """
        Validate and register the configuration for a record type.

        Args:
            record_type: Mapped class the configuration describes
            fields: FieldConfiguration instances or keyword dicts, in declaration order
            class_config: Type-level settings (defaults when omitted)

        Returns:
            The registered TypeConfiguration

        Raises:
            ConfigurationError: If the configuration is inconsistent
        """
        try:
            resolved = []
            for order, item in enumerate(fields):
                if isinstance(item, dict):
                    item = FieldConfiguration(**item)
                resolved.append(item.model_copy(update={'declaration_order': order}))
            class_config = class_config or ClassConfiguration()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration for {record_type.__name__}: {e}") from e

        self._check_unique_columns(record_type, resolved)

        type_config = TypeConfiguration(record_type, class_config, resolved)
        self._check_detail_graph(type_config)

        self._configurations[record_type] = type_config
        logger.debug(f"Registered exchange configuration for {record_type.__name__} "
                     f"({len(resolved)} fields)")
        return type_config

    def _check_unique_columns(self, record_type: type, fields: List[FieldConfiguration]):
        seen_names: Dict[str, str] = {}
        seen_indices: Dict[int, str] = {}
        problems = []

        for field in fields:
            if not (field.import_enabled or field.export_enabled):
                continue

            column = field.effective_column_name
            if column in seen_names:
                problems.append(f"column '{column}' used by {seen_names[column]} and {field.property_name}")
            else:
                seen_names[column] = field.property_name

            if field.column_index is not None:
                if field.column_index in seen_indices:
                    problems.append(f"column index {field.column_index} used by "
                                    f"{seen_indices[field.column_index]} and {field.property_name}")
                else:
                    seen_indices[field.column_index] = field.property_name

        if problems:
            raise ConfigurationError(
                f"Duplicate columns in {record_type.__name__}: " + "; ".join(problems)
            )

    def _check_detail_graph(self, type_config: TypeConfiguration):
        """Master/detail sheets must not form a cycle."""
        added = []
        for field in type_config.multi_sheet_fields:
            edge = (type_config.record_type, field.value_type)
            if not self._detail_graph.has_edge(*edge):
                self._detail_graph.add_edge(*edge)
                added.append(edge)

        if not nx.is_directed_acyclic_graph(self._detail_graph):
            cycle = nx.find_cycle(self._detail_graph)
            self._detail_graph.remove_edges_from(added)
            path = ' -> '.join(src.__name__ for src, _ in cycle)
            raise ConfigurationError(f"Cyclic master/detail configuration: {path}")

    def is_registered(self, record_type: type) -> bool:
        return record_type in self._configurations

    def get_configuration(self, record_type: type) -> TypeConfiguration:
        try:
            return self._configurations[record_type]
        except KeyError:
            raise ConfigurationError(f"类型 {getattr(record_type, '__name__', record_type)} 未注册导入导出配置")

    def registered_types(self) -> List[type]:
        return list(self._configurations)

    def find_type(self, type_name: str) -> type:
        """Look up a registered record type by class name (case-insensitive)."""
        for record_type in self._configurations:
            if record_type.__name__.lower() == type_name.lower():
                return record_type
        raise ConfigurationError(f"Unknown record type: {type_name}")

    def get_field_info(self, record_type: type) -> List[Dict[str, Any]]:
        """Describe the exchangeable fields of a type, ordered for display."""
        type_config = self.get_configuration(record_type)
        info = []
        for field in type_config.fields:
            type_name = getattr(field.value_type, '__name__', str(field.value_type))
            info.append({
                'property_name': field.property_name,
                'display_name': field.effective_column_name,
                'data_type': f"List[{type_name}]" if field.is_collection else type_name,
                'can_export': field.export_enabled and not field.hidden,
                'can_import': field.import_enabled and not field.is_collection,
                'is_required': field.is_required,
                'order': field.effective_sort_order,
                'description': field.description,
            })
        return sorted(info, key=lambda item: item['order'])

    def get_import_template(self, record_type: type) -> str:
        """Header line of quoted import column names."""
        type_config = self.get_configuration(record_type)
        return ','.join(f'"{f.effective_column_name}"' for f in type_config.import_fields)
