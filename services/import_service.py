"""
Import Service - Import tabular files into persistent records.

This service orchestrates one import call:
1. Resolve the exchange configuration of the record type
2. Validate and parse the file (CSV or XLSX, single or master/detail sheets)
3. Validate, convert and reconcile every row with existing records
4. Import detail sheets and link them to their master records
5. Commit or roll back the unit of work

Row-level problems never abort the call; they are collected in the
ImportOutcome, which is always returned.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from services.configuration_service import (
    ConfigurationError, ConfigurationRegistry, FieldConfiguration, TypeConfiguration
)
from services.conversion_service import ValueConverter
from services.exchange_models import (
    ErrorKind, ImportDuplicateStrategy, ImportIssue, ImportMode, ImportOptions,
    ImportOutcome, ParsedSheet, RowRecord, ValidationMode
)
from services import export_service
from services.lookup_service import LookupCache, ReferenceResolver
from services.store_service import PersistentObjectStore
from services.tabular_parser import NO_DATA_MESSAGE, TabularParser
from services.validation_service import FieldValidator

logger = logging.getLogger(__name__)

DEFAULT_RELATION_FIELD = '关联主表记录'
RELATION_COLUMN_CANDIDATES = ('订单编号', 'OrderNo', 'ParentId', 'ParentKey', DEFAULT_RELATION_FIELD)
MAX_KEY_DISPLAY_FIELDS = 2
MIN_COLUMN_MATCH_RATIO = 0.5

STRATEGY_MODES = {
    ImportDuplicateStrategy.INSERT: ImportMode.CREATE_ONLY,
    ImportDuplicateStrategy.UPDATE: ImportMode.UPDATE_ONLY,
    ImportDuplicateStrategy.INSERT_OR_UPDATE: ImportMode.CREATE_OR_UPDATE,
}


def describe_error(error: Exception) -> str:
    """Driver message of a database error, else the exception text."""
    return str(getattr(error, 'orig', None) or error)


@dataclass
class RowResult:
    """Outcome of one source row before it is folded into the ImportOutcome."""
    target: Any = None
    created: bool = False
    updated: bool = False
    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.created or self.updated


@dataclass
class ImportContext:
    type_config: TypeConfiguration
    options: ImportOptions
    outcome: ImportOutcome
    cache: LookupCache
    strict: bool = False
    replace_pending: bool = False


class ImportService:
    """Service for importing CSV/XLSX content into a persistent object store."""

    def __init__(self, store: PersistentObjectStore, registry: ConfigurationRegistry,
                 converter: Optional[ValueConverter] = None,
                 validator: Optional[FieldValidator] = None,
                 parser: Optional[TabularParser] = None,
                 progress_callback: Optional[Callable[[str, float, str], None]] = None):
        """
        Initialize import service.

        Args:
            store: Object store the records are written to
            registry: Registered exchange configurations
            converter: Value converter (a default one is built when omitted)
            validator: Field validator (built over the converter when omitted)
            parser: File parser
            progress_callback: Optional callback(stage, percent, message)
        """
        self.store = store
        self.registry = registry
        self.converter = converter or ValueConverter(registry=registry)
        self.validator = validator or FieldValidator(self.converter)
        self.parser = parser or TabularParser()
        self.resolver = ReferenceResolver(store, registry, self.converter)
        self.progress_callback = progress_callback or (lambda *args: None)

    def _emit_progress(self, stage: str, percent: float, message: str = ""):
        """Emit progress update."""
        self.progress_callback(stage, percent, message)
        logger.info(f"[{stage}] {percent:.1f}% - {message}")

    def import_file(self, file_path: str, record_type: type,
                    options: Optional[ImportOptions] = None) -> ImportOutcome:
        """Import a file from disk; the file name drives format detection."""
        path = Path(file_path)
        return self.import_data(path.read_bytes(), record_type, options, file_name=path.name)

    def import_data(self, content: bytes, record_type: type,
                    options: Optional[ImportOptions] = None,
                    file_name: Optional[str] = None) -> ImportOutcome:
        """
        Import file content as records of record_type.

        Args:
            content: Raw file bytes
            record_type: Registered record class
            options: Import options (defaults when omitted)
            file_name: Original file name, used for format detection

        Returns:
            ImportOutcome with counts, errors and warnings
        """
        outcome = ImportOutcome()
        options = options or ImportOptions()
        type_name = getattr(record_type, '__name__', str(record_type))
        logger.info(f"Starting import of {type_name} from {file_name or 'uploaded content'}")
        self._emit_progress('starting', 0, f"Starting import of {type_name}")

        try:
            # Step 1: Resolve configuration (5%)
            try:
                type_config = self.registry.get_configuration(record_type)
            except ConfigurationError as e:
                outcome.error_message = str(e)
                return outcome

            if not type_config.class_config.import_enabled:
                outcome.error_message = f"类型 {type_config.type_name} 未启用Excel导入功能"
                return outcome

            options = self.effective_options(options, type_config)
            ctx = ImportContext(
                type_config=type_config,
                options=options,
                outcome=outcome,
                cache=LookupCache(),
                strict=type_config.class_config.validation_mode == ValidationMode.STRICT
            )
            self._emit_progress('configuring', 5, f"Mode {options.mode.value}")

            # Step 2: Validate file (10%)
            validation = self.parser.validate_file(content, file_name)
            if not validation.is_valid:
                outcome.error_message = validation.error_message or '文件格式验证失败'
                return outcome
            self._emit_progress('validating', 10, f"File format {validation.file_format.value}")

            # Step 3: Parse (20%)
            parsed = self._parse_content(content, file_name, ctx)
            if parsed is None:
                return outcome
            rows, detail_sheets = parsed
            self._emit_progress('parsing', 20, f"Parsed {len(rows)} rows")

            # Step 4: ReplaceAll deletes before any row is applied
            if options.mode == ImportMode.REPLACE_ALL:
                if not self._delete_existing(ctx):
                    return outcome

            if not rows:
                if options.mode != ImportMode.REPLACE_ALL:
                    outcome.error_message = NO_DATA_MESSAGE
                    return outcome
                outcome.add_warning(0, '文件', NO_DATA_MESSAGE)

            # Step 5: Import rows (20-85%)
            parents = self._import_rows(ctx, rows)

            # Step 6: Import detail sheets (85-92%)
            if detail_sheets and not outcome.aborted:
                self._emit_progress('details', 85, f"Importing {len(detail_sheets)} detail sheet(s)")
                self._import_detail_sheets(ctx, detail_sheets, parents)

            # Step 7: Commit (95%)
            self._emit_progress('committing', 95, "Committing changes")
            self._finalize(ctx)

            self._emit_progress(
                'complete', 100,
                f"Imported {outcome.success_count}/{outcome.total_count} rows "
                f"({len(outcome.errors)} errors, {len(outcome.warnings)} warnings)"
            )
            return outcome

        except Exception as e:
            logger.error(f"Import of {type_name} failed: {e}", exc_info=True)
            self.store.rollback()
            outcome.error_message = f"导入失败: {e}"
            outcome.discard_applied()
            return outcome

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    @staticmethod
    def effective_options(options: ImportOptions, type_config: TypeConfiguration) -> ImportOptions:
        """The class duplicate strategy overrides the mode unless the caller chose one."""
        if options.is_user_specified_mode:
            return options

        strategy = type_config.class_config.duplicate_strategy
        if strategy == ImportDuplicateStrategy.IGNORE:
            return options.model_copy(update={'skip_duplicates': True})
        if strategy in STRATEGY_MODES:
            return options.model_copy(update={'mode': STRATEGY_MODES[strategy]})
        return options

    def _parse_content(self, content: bytes, file_name: Optional[str],
                       ctx: ImportContext) -> Optional[Tuple[List[RowRecord], List[ParsedSheet]]]:
        """
        Parse the file into main rows and detail sheets.

        Returns None (with outcome.error_message set) when the file cannot be used.
        """
        class_config = ctx.type_config.class_config
        options = ctx.options
        outcome = ctx.outcome

        if self.parser.is_xlsx(content) and self.parser.sheet_count(content) > 1:
            try:
                sheets = self.parser.parse_all_sheets(
                    content, options.has_header_row,
                    class_config.header_row_index, class_config.data_start_row_index
                )
            except Exception as e:
                logger.error(f"Workbook parsing failed: {e}", exc_info=True)
                outcome.error_message = f"文件解析失败: {e}"
                return None

            main_sheet = sheets[0]
            if options.has_header_row:
                mismatch = self._check_main_sheet_columns(main_sheet, ctx.type_config)
                if mismatch:
                    outcome.error_message = mismatch
                    return None

            rows = self._align_headerless_rows(main_sheet.rows, ctx)
            logger.info(f"Workbook has {len(sheets)} sheets; main sheet '{main_sheet.name}'")
            return rows, sheets[1:]

        table = self.parser.parse(
            content, file_name, has_header=options.has_header_row,
            header_row_index=class_config.header_row_index,
            data_start_row_index=class_config.data_start_row_index
        )
        if table.error_message and table.error_message != NO_DATA_MESSAGE:
            outcome.error_message = table.error_message
            return None

        logger.info(f"Parsed {len(table.rows)} rows ({table.file_format}, encoding {table.encoding})")
        return self._align_headerless_rows(table.rows, ctx), []

    @staticmethod
    def _check_main_sheet_columns(sheet: ParsedSheet, type_config: TypeConfiguration) -> Optional[str]:
        """A workbook whose first sheet does not look like this type is rejected before any change."""
        expected = [f.effective_column_name for f in type_config.import_fields]
        if not expected:
            return None

        present = set(sheet.columns)
        matched = sum(1 for column in expected if column in present)
        if matched < len(expected) * MIN_COLUMN_MATCH_RATIO:
            return (f"工作表 '{sheet.name}' 的列与类型 {type_config.type_name} 的配置不匹配"
                    f"（匹配 {matched}/{len(expected)} 列），请确认从主表类型导入多工作表文件")
        return None

    @staticmethod
    def _align_headerless_rows(rows: List[RowRecord], ctx: ImportContext) -> List[RowRecord]:
        """Map positional ColumnN names onto the import fields when the file has no header."""
        if ctx.options.has_header_row:
            return rows

        mapping = {}
        for position, field in enumerate(ctx.type_config.import_fields):
            index = field.column_index if field.column_index is not None else position
            mapping[f'Column{index + 1}'] = field.effective_column_name

        return [
            RowRecord(
                values={mapping.get(column, column): value for column, value in row.values.items()},
                row_number=row.row_number
            )
            for row in rows
        ]

    def _delete_existing(self, ctx: ImportContext) -> bool:
        """Delete every record of the type; returns False when the deletion failed."""
        record_type = ctx.type_config.record_type
        try:
            existing = self.store.get_objects(record_type)
            for obj in existing:
                self.store.delete(obj)

            if existing:
                if ctx.options.atomic_replace:
                    self.store.flush()
                    ctx.replace_pending = True
                else:
                    self.store.commit()

            logger.info(f"Deleted {len(existing)} existing {ctx.type_config.type_name} records")
            self._emit_progress('deleting', 20, f"Deleted {len(existing)} existing records")
            return True

        except Exception as e:
            logger.error(f"Deleting existing {ctx.type_config.type_name} records failed: {e}", exc_info=True)
            self.store.rollback()
            ctx.outcome.error_message = f"删除现有记录失败: {e}"
            return False

    # ------------------------------------------------------------------
    # Main rows
    # ------------------------------------------------------------------

    def _import_rows(self, ctx: ImportContext, rows: List[RowRecord]) -> Dict[str, Any]:
        """Process every main row; returns parent key -> record for detail linking."""
        outcome = ctx.outcome
        options = ctx.options
        parents: Dict[str, Any] = {}
        total = len(rows)
        outcome.total_count = total

        for index, row in enumerate(rows):
            if index % options.batch_size == 0:
                percent = 20 + (index / total) * 65
                self._emit_progress('importing', percent, f"Processing row {index + 1}/{total}")

            try:
                with self.store.savepoint():
                    result = self._process_row(ctx, row)
            except Exception as e:
                # Lookups made by the undone row may have been rolled back with it
                ctx.cache.clear()
                logger.error(f"Row {row.row_number} failed: {e}", exc_info=True)
                outcome.add_error(row.row_number, '行处理', f'处理行数据时发生错误: {describe_error(e)}')
                outcome.failure_count += 1
                failed = True
            else:
                outcome.errors.extend(result.errors)
                outcome.warnings.extend(result.warnings)
                failed = bool(result.errors)
                if failed:
                    outcome.failure_count += 1
                elif result.applied:
                    outcome.success_count += 1
                    key = self._row_key(ctx.type_config, row)
                    if key:
                        parents[key] = result.target

            if failed and ctx.strict:
                outcome.add_error(row.row_number, '系统', '严格验证模式下遇到错误，停止导入')
                outcome.aborted = True
                break

            if len(outcome.errors) >= options.max_errors:
                outcome.add_error(row.row_number, '系统',
                                  f'错误数量已达到最大限制 ({options.max_errors})，停止导入')
                outcome.aborted = True
                break

        if outcome.aborted:
            logger.warning(f"Import aborted after {outcome.success_count} rows "
                           f"with {len(outcome.errors)} errors")
        return parents

    def _process_row(self, ctx: ImportContext, row: RowRecord) -> RowResult:
        type_config = ctx.type_config
        options = ctx.options
        result = RowResult()

        failures = self.validator.validate_row(row.values, type_config.import_fields, row.row_number)
        if failures:
            result.errors = [
                ImportIssue(f.row_number, f.field_name, f.message, f.error_kind, f.original_value)
                for f in failures
            ]
            return result

        assignments, references = self._convert_row(type_config, row, result)
        if result.errors:
            return result

        existing = None
        if options.mode != ImportMode.REPLACE_ALL:
            existing = self._find_existing(type_config, row)

        if options.mode == ImportMode.CREATE_ONLY and existing is not None:
            message = f"记录已存在(唯一标识: {self._key_display(type_config, row)}),已跳过"
            issue = ImportIssue(row.row_number, '数据跳过', message, ErrorKind.DUPLICATE_DATA)
            if options.skip_duplicates:
                result.warnings.append(issue)
            else:
                result.errors.append(issue)
            return result

        if options.mode == ImportMode.UPDATE_ONLY and existing is None:
            message = f"数据库中不存在该记录(唯一标识: {self._key_display(type_config, row)}),已跳过"
            result.warnings.append(ImportIssue(row.row_number, '数据跳过', message, ErrorKind.DUPLICATE_DATA))
            return result

        self._resolve_references(ctx, row, references, assignments, result)
        if result.errors:
            return result

        if existing is None:
            result.target = self.store.create_object(type_config.record_type)
            result.created = True
        else:
            result.target = existing
            result.updated = True

        for property_name, value in assignments.items():
            setattr(result.target, property_name, value)
        return result

    def _convert_row(self, type_config: TypeConfiguration, row: RowRecord,
                     result: RowResult) -> Tuple[Dict[str, Any], List[Tuple[FieldConfiguration, str]]]:
        """
        Convert the scalar cells of a row.

        Returns (property -> value, [(reference field, raw text)]). Conversion
        failures and warnings are appended to result.
        """
        assignments: Dict[str, Any] = {}
        references: List[Tuple[FieldConfiguration, str]] = []

        for field in type_config.import_fields:
            column = field.effective_column_name
            if column not in row.values:
                continue
            raw = row.values[column]
            text = raw.strip()

            if field.is_reference:
                if text:
                    references.append((field, text))
                continue

            # Blank optional cells leave the attribute alone, except text which is cleared
            if not text and not field.is_required and field.null_value is None:
                if field.value_type is str:
                    assignments[field.property_name] = None
                continue

            conversion = self.converter.convert_from_text(raw, field)
            if not conversion.success:
                result.errors.append(ImportIssue(
                    row.row_number, column, conversion.error_message,
                    ErrorKind.DATA_TYPE_CONVERSION, raw
                ))
                continue
            if conversion.has_warning:
                result.warnings.append(ImportIssue(
                    row.row_number, column, conversion.warning_message,
                    ErrorKind.DATA_TYPE_CONVERSION, raw
                ))
            assignments[field.property_name] = conversion.value

        return assignments, references

    def _resolve_references(self, ctx: ImportContext, row: RowRecord,
                            references: List[Tuple[FieldConfiguration, str]],
                            assignments: Dict[str, Any], result: RowResult):
        for field, raw in references:
            column = field.effective_column_name
            lookup = self.resolver.resolve(field, raw, ctx.cache)
            if lookup.error:
                result.errors.append(ImportIssue(row.row_number, column, lookup.error, lookup.error_kind, raw))
                continue
            if lookup.warning:
                result.warnings.append(ImportIssue(row.row_number, column, lookup.warning,
                                                   ErrorKind.LOOKUP_ERROR, raw))
            if lookup.resolved:
                assignments[field.property_name] = lookup.value

    def _identity_value(self, type_config: TypeConfiguration, row: RowRecord) -> Any:
        """Converted identity value of a row, or None when it has none."""
        identity = type_config.identity_field
        if identity is None:
            return None

        raw = row.get(type_config.identity_column).strip()
        if not raw:
            return None

        field = type_config.get_field(identity)
        if field is None:
            return raw
        conversion = self.converter.convert_from_text(raw, field)
        return conversion.value if conversion.success else None

    def _find_existing(self, type_config: TypeConfiguration, row: RowRecord) -> Optional[Any]:
        value = self._identity_value(type_config, row)
        if value is None:
            return None
        return self.store.find_object(type_config.record_type, type_config.identity_field, value)

    @staticmethod
    def _key_display(type_config: TypeConfiguration, row: RowRecord) -> str:
        """Human-readable row key used in skip messages."""
        candidates = []
        for prop in (type_config.identity_field, type_config.class_config.default_property):
            if prop and prop not in candidates:
                candidates.append(prop)

        parts = []
        for prop in candidates[:MAX_KEY_DISPLAY_FIELDS]:
            field = type_config.get_field(prop)
            column = field.effective_column_name if field else prop
            value = row.get(column).strip()
            if value:
                parts.append(f"{column}={value}")
        if parts:
            return ', '.join(parts)

        for field in type_config.import_fields:
            value = row.get(field.effective_column_name).strip()
            if value:
                return f"{field.effective_column_name}={value}"
        return '未知'

    @staticmethod
    def _row_key(type_config: TypeConfiguration, row: RowRecord) -> Optional[str]:
        """Key detail rows use to find this row's record: identity cell, else first non-empty cell."""
        identity_column = type_config.identity_column
        if identity_column:
            for column, value in row.values.items():
                if column.lower() == identity_column.lower() and value.strip():
                    return value.strip()

        for value in row.values.values():
            if value.strip():
                return value.strip()
        return None

    # ------------------------------------------------------------------
    # Detail sheets
    # ------------------------------------------------------------------

    def _import_detail_sheets(self, ctx: ImportContext, sheets: List[ParsedSheet],
                              parents: Dict[str, Any]):
        outcome = ctx.outcome
        by_name = {sheet.name: sheet for sheet in sheets}

        for field in ctx.type_config.multi_sheet_fields:
            # Export writes detail sheets under sanitized names
            sheet_name = export_service.sanitize_sheet_name(field.detail_sheet_name or f"{field.effective_column_name}明细")
            sheet = by_name.get(sheet_name)
            if sheet is None:
                logger.info(f"No detail sheet '{sheet_name}' for {field.property_name}")
                continue

            try:
                detail_config = self.registry.get_configuration(field.value_type)
            except ConfigurationError as e:
                outcome.add_error(0, field.effective_column_name, str(e))
                continue
            if not detail_config.class_config.import_enabled:
                outcome.add_error(0, field.effective_column_name,
                                  f"类型 {detail_config.type_name} 未启用Excel导入功能")
                continue

            relation_column = self._find_relation_column(field, ctx.type_config, sheet.columns)
            if relation_column is None:
                configured = field.relation_field_name or DEFAULT_RELATION_FIELD
                outcome.add_warning(0, '关联字段',
                                    f"未找到关联字段列（配置: {configured}），明细数据无法关联到主表",
                                    ErrorKind.FIELD_NOT_FOUND)
                continue

            back_reference = detail_config.find_back_reference(ctx.type_config.record_type)
            logger.info(f"Importing {len(sheet.rows)} rows from detail sheet '{sheet_name}' "
                        f"(relation column '{relation_column}')")

            for row in sheet.rows:
                self._process_detail_row(ctx, field, detail_config, sheet_name, row,
                                         relation_column, back_reference, parents)
                if len(outcome.errors) >= ctx.options.max_errors:
                    outcome.add_error(row.row_number, '系统',
                                      f'错误数量已达到最大限制 ({ctx.options.max_errors})，停止导入')
                    outcome.aborted = True
                    return

    @staticmethod
    def _find_relation_column(field: FieldConfiguration, parent_config: TypeConfiguration,
                              columns: List[str]) -> Optional[str]:
        columns = [c for c in columns if c]
        configured = field.relation_field_name or DEFAULT_RELATION_FIELD
        if configured in columns:
            return configured

        names = [n for n in (parent_config.identity_field, parent_config.identity_column) if n]
        for column in columns:
            if any(column.lower() == name.lower() for name in names):
                return column
        for column in columns:
            if any(name.lower() in column.lower() for name in names):
                return column

        for candidate in RELATION_COLUMN_CANDIDATES:
            if candidate in columns:
                return candidate
        return None

    def _process_detail_row(self, ctx: ImportContext, field: FieldConfiguration,
                            detail_config: TypeConfiguration, sheet_name: str, row: RowRecord,
                            relation_column: str, back_reference: Optional[str],
                            parents: Dict[str, Any]):
        outcome = ctx.outcome

        relation_value = row.get(relation_column).strip()
        if not relation_value:
            outcome.add_warning(row.row_number, '关联字段', '明细数据缺少关联字段值，跳过此行',
                                ErrorKind.LOOKUP_ERROR)
            return

        parent = parents.get(relation_value)
        if parent is None:
            outcome.add_warning(row.row_number, '关联字段', f'未找到关联的主表记录: {relation_value}',
                                ErrorKind.LOOKUP_ERROR, relation_value)
            return

        try:
            with self.store.savepoint():
                result = self._apply_detail_row(ctx, field, detail_config, sheet_name, row,
                                                back_reference, parent)
        except Exception as e:
            ctx.cache.clear()
            logger.error(f"Detail row {row.row_number} of '{sheet_name}' failed: {e}", exc_info=True)
            outcome.add_error(row.row_number, '明细数据处理', f'处理明细数据时发生错误: {describe_error(e)}')
            outcome.detail_failure_count += 1
            return

        outcome.warnings.extend(result.warnings)
        if result.errors:
            outcome.errors.extend(result.errors)
            outcome.detail_failure_count += 1
        elif result.applied:
            outcome.detail_success_count += 1

    def _apply_detail_row(self, ctx: ImportContext, field: FieldConfiguration,
                          detail_config: TypeConfiguration, sheet_name: str, row: RowRecord,
                          back_reference: Optional[str], parent: Any) -> RowResult:
        options = ctx.options
        result = RowResult()

        failures = self.validator.validate_row(row.values, detail_config.import_fields, row.row_number)
        for failure in failures:
            result.errors.append(ImportIssue(
                failure.row_number, f"{sheet_name}:{failure.field_name}", failure.message,
                failure.error_kind, failure.original_value
            ))
        if result.errors:
            return result

        assignments, references = self._convert_row(detail_config, row, result)
        if result.errors:
            return result

        existing = None
        if options.mode != ImportMode.REPLACE_ALL and back_reference:
            existing = self._find_existing_detail(detail_config, row, back_reference, parent)

        if options.mode == ImportMode.CREATE_ONLY and existing is not None:
            result.warnings.append(ImportIssue(row.row_number, '数据跳过', '明细记录已存在,已跳过',
                                               ErrorKind.DUPLICATE_DATA))
            return result
        if options.mode == ImportMode.UPDATE_ONLY and existing is None:
            result.warnings.append(ImportIssue(row.row_number, '数据跳过', '未找到要更新的明细记录,已跳过',
                                               ErrorKind.DUPLICATE_DATA))
            return result

        self._resolve_references(ctx, row, references, assignments, result)
        if result.errors:
            return result

        if existing is None:
            result.target = self.store.create_object(detail_config.record_type)
            result.created = True
        else:
            result.target = existing
            result.updated = True

        for property_name, value in assignments.items():
            setattr(result.target, property_name, value)

        if result.created:
            if back_reference:
                setattr(result.target, back_reference, parent)
            else:
                getattr(parent, field.property_name).append(result.target)
        return result

    def _find_existing_detail(self, detail_config: TypeConfiguration, row: RowRecord,
                              back_reference: str, parent: Any) -> Optional[Any]:
        """Detail identity is scoped to its parent record."""
        value = self._identity_value(detail_config, row)
        if value is None:
            return None
        matches = self.store.get_objects(
            detail_config.record_type,
            {detail_config.identity_field: value, back_reference: parent}
        )
        return matches[0] if matches else None

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _finalize(self, ctx: ImportContext):
        outcome = ctx.outcome
        if not ctx.options.auto_commit:
            return

        if outcome.aborted and ctx.replace_pending:
            self.store.rollback()
            outcome.discard_applied()
            outcome.add_warning(0, '数据提交', '导入已中止，删除与新增的记录均已回滚', ErrorKind.SYSTEM_ERROR)
            logger.warning("ReplaceAll import aborted; deletion rolled back")
            return

        has_changes = (outcome.success_count > 0 or outcome.detail_success_count > 0
                       or ctx.replace_pending)
        if not has_changes:
            self.store.rollback()
            return

        try:
            self.store.commit()
            logger.info(f"Committed {outcome.success_count} records "
                        f"and {outcome.detail_success_count} detail records")
        except Exception as e:
            logger.error(f"Commit failed: {e}", exc_info=True)
            self.store.rollback()
            outcome.add_error(0, '数据提交', f'数据提交失败: {describe_error(e)}')
            outcome.discard_applied()
