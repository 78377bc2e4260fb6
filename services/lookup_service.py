"""
Lookup Service - Resolve reference cells to persistent entities.

Reference columns hold a display value (a department name, a product code)
rather than a key. This module finds the matching entity through the object
store and, when the field allows it, creates missing entities. Resolutions
are cached in a LookupCache owned by a single import call, so a value that
repeats within one file always resolves to the same instance.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from backend.models.schema import DataDictionary, DataDictionaryItem
from services.configuration_service import ConfigurationRegistry, FieldConfiguration
from services.conversion_service import ValueConverter
from services.exchange_models import ErrorKind
from services.store_service import PersistentObjectStore

logger = logging.getLogger(__name__)

DEFAULT_MATCH_FIELD = 'id'


@dataclass
class LookupCache:
    """(category, value) -> entity map scoped to one import call."""
    entries: Dict[Tuple[str, str], Any] = field(default_factory=dict)
    dictionaries: Dict[str, Any] = field(default_factory=dict)

    def get(self, category: str, value: str) -> Optional[Any]:
        return self.entries.get((category, value))

    def put(self, category: str, value: str, entity: Any):
        self.entries[(category, value)] = entity

    def clear(self):
        self.entries.clear()
        self.dictionaries.clear()

    def __len__(self):
        return len(self.entries)


@dataclass
class LookupResult:
    value: Any = None
    created: bool = False
    error: Optional[str] = None
    warning: Optional[str] = None
    error_kind: ErrorKind = ErrorKind.LOOKUP_ERROR

    @property
    def resolved(self) -> bool:
        return self.value is not None


class ReferenceResolver:
    """Resolves dictionary items and generic entity references by value."""

    def __init__(self, store: PersistentObjectStore, registry: ConfigurationRegistry,
                 converter: ValueConverter):
        self.store = store
        self.registry = registry
        self.converter = converter

    def resolve(self, field: FieldConfiguration, raw: str, cache: LookupCache) -> LookupResult:
        """
        Resolve a reference cell.

        Args:
            field: Reference field configuration
            raw: Cell text (non-blank)
            cache: Per-call lookup cache

        Returns:
            LookupResult with the entity, or a warning/error describing the miss
        """
        if field.is_dictionary_lookup:
            return self._resolve_dictionary_item(field, raw, cache)
        return self._resolve_entity(field, raw, cache)

    def _resolve_dictionary_item(self, field: FieldConfiguration, raw: str,
                                 cache: LookupCache) -> LookupResult:
        dictionary_name = field.dictionary_name
        category = f'dict:{dictionary_name}'

        cached = cache.get(category, raw)
        if cached is not None:
            return LookupResult(value=cached)

        try:
            dictionary = self._find_dictionary(dictionary_name, cache)
            item = None
            if dictionary is not None:
                for attribute in ('name', 'code'):
                    matches = self.store.get_objects(
                        DataDictionaryItem, {'dictionary': dictionary, attribute: raw}
                    )
                    if matches:
                        item = matches[0]
                        break
        except Exception as e:
            logger.error(f"Dictionary lookup failed for {dictionary_name}/{raw}: {e}", exc_info=True)
            return LookupResult(error=f'查找字典项失败: {e}', error_kind=ErrorKind.SYSTEM_ERROR)

        if item is not None:
            cache.put(category, raw, item)
            return LookupResult(value=item)

        if not field.reference_create_if_missing:
            return LookupResult(warning=f'未找到字典项: {dictionary_name} - {raw}')

        try:
            if dictionary is None:
                dictionary = self.store.create_object(DataDictionary)
                dictionary.name = dictionary_name
                cache.dictionaries[dictionary_name] = dictionary

            item = self.store.create_object(DataDictionaryItem)
            item.name = raw
            item.code = raw
            item.dictionary = dictionary
        except Exception as e:
            logger.error(f"Could not create dictionary item {dictionary_name}/{raw}: {e}", exc_info=True)
            return LookupResult(error=f'字典项不存在且创建失败: {dictionary_name} - {raw}')

        cache.put(category, raw, item)
        logger.info(f"Auto-created dictionary item {dictionary_name} - {raw}")
        return LookupResult(value=item, created=True, warning=f'自动创建字典项: {dictionary_name} - {raw}')

    def _find_dictionary(self, name: str, cache: LookupCache) -> Optional[Any]:
        if name in cache.dictionaries:
            return cache.dictionaries[name]
        dictionary = self.store.find_object(DataDictionary, 'name', name)
        if dictionary is not None:
            cache.dictionaries[name] = dictionary
        return dictionary

    def _resolve_entity(self, field: FieldConfiguration, raw: str, cache: LookupCache) -> LookupResult:
        ref_type = field.value_type
        type_name = ref_type.__name__
        match_field = field.reference_match_field or DEFAULT_MATCH_FIELD
        category = f'{type_name}:{match_field}'

        cached = cache.get(category, raw)
        if cached is not None:
            return LookupResult(value=cached)

        match_value = self._match_value(ref_type, match_field, raw)
        if match_value is None:
            return LookupResult(warning=f'未找到关联的{type_name}对象: {raw}')

        try:
            entity = self.store.find_object(ref_type, match_field, match_value)
        except Exception as e:
            logger.error(f"Reference lookup failed for {type_name}.{match_field}={raw}: {e}", exc_info=True)
            return LookupResult(error=f'查找关联对象失败: {e}', error_kind=ErrorKind.SYSTEM_ERROR)

        if entity is not None:
            cache.put(category, raw, entity)
            return LookupResult(value=entity)

        if not field.reference_create_if_missing:
            return LookupResult(warning=f'未找到关联的{type_name}对象: {raw}')

        try:
            entity = self.store.create_object(ref_type)
            setattr(entity, match_field, match_value)
        except Exception as e:
            logger.error(f"Could not create {type_name} for {raw}: {e}", exc_info=True)
            return LookupResult(error=f'关联对象不存在且创建失败: {type_name} - {raw}')

        cache.put(category, raw, entity)
        logger.info(f"Auto-created {type_name} with {match_field}={raw}")
        return LookupResult(value=entity, created=True, warning=f'自动创建关联的{type_name}对象: {raw}')

    def _match_value(self, ref_type: type, match_field: str, raw: str) -> Any:
        """Convert the cell text to the match field's type when it is known."""
        if self.registry.is_registered(ref_type):
            match_config = self.registry.get_configuration(ref_type).get_field(match_field)
            if match_config is not None:
                converted = self.converter.convert_from_text(raw, match_config)
                return converted.value if converted.success else None
        if match_field == DEFAULT_MATCH_FIELD:
            try:
                return int(raw)
            except ValueError:
                return None
        return raw
