"""
Write orchestration: turns a record's change set into per-table manipulations.

A logical record lives in one row per ancestor table, all sharing the ID
allocated in the base table. An insert first allocates that ID, then writes
every ancestor table; an update only touches tables holding changed fields
(plus LastEdited on the base table). Everything runs in one storage transaction.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, TYPE_CHECKING

from hierorm.components import ComponentSet
from hierorm.errors import DestroyedRecordError, HierOrmError, ValidationException
from hierorm.storage import TableManipulation
from hierorm.validation import ValidationResult

if TYPE_CHECKING:
    from hierorm.engine import Engine
    from hierorm.record import Record


class RecordWriter:
    """Persists and deletes records of one engine."""

    def __init__(self, engine: "Engine") -> None:
        self._logger = logging.getLogger("RecordWriter")
        self.engine = engine
        self.registry = engine.registry

    def validate(self, record: "Record") -> ValidationResult:
        result = record.validate() or ValidationResult()
        result.combine(self.validate_fields(record))
        validator = self.engine.validator
        if validator is not None:
            ok, message = validator.validate(record)
            if not ok:
                result.error(message or f"{record!r} failed validation")
        return result

    def validate_fields(self, record: "Record") -> ValidationResult:
        """Check the values about to be written against the codec of their field type."""
        result = ValidationResult()
        fields = record.changed if record.exists() else record.record
        for field in fields:
            tag = self.registry.field_type(record.class_name, field)
            if tag is None:
                continue
            codec = self.registry.codec(tag)
            if codec.composite:
                continue
            reason = codec.validate(record.record.get(field))
            if reason:
                result.error(f"{field}: {reason}", field, code="type")
        return result

    def write(self, record: "Record", force_insert: bool = False, force_write: bool = False,
              write_components: bool = False) -> int:
        """
        Persist ``record`` and return its ID.

        Args:
            force_insert: insert rows even if the record already has an ID
            force_write: write the base table even when nothing changed
            write_components: also write cached has_one components and component sets
        """
        if record.destroyed:
            raise DestroyedRecordError(type(record).__name__, record.old_id)

        result = self.validate(record)
        if not result.valid:
            self._logger.warning(f"Validation failed for {record!r}: {result.message()}")
            raise ValidationException(result)

        record.on_before_write()
        if write_components:
            self._write_one_to_one_components(record)

        is_new = force_insert or not record.exists()
        record.changed_fields()
        if is_new:
            record.force_all_changed()
        record.changed.pop("ID", None)
        changed = [field for field, level in record.changed.items() if level]

        if not changed and not force_write and not is_new:
            self._logger.debug(f"{record!r} has no changes, nothing to write")
            if write_components:
                self._write_component_sets(record, record.components.values())
            return record.id

        class_name = record.class_name
        now = datetime.now().replace(microsecond=0)
        allocate = not record.exists()
        try:
            with self.engine.storage.transaction():
                if allocate:
                    base = self.registry.base_class(class_name)
                    record.record["ID"] = self.engine.storage.next_identity(
                        base, {"Created": now, "ClassName": record.record.get("ClassName") or class_name},
                    )
                    self._logger.info(f"Allocated {base}.ID={record.record['ID']} for new {class_name}")
                manipulations = self.build_manipulations(record, changed, is_new, allocate, now)
                self.engine.storage.manipulate(manipulations)
        except Exception:
            if allocate:
                record.record["ID"] = 0
            raise

        record.record["LastEdited"] = now
        if is_new:
            record.record["Created"] = now
        record.mark_clean()
        record.on_after_write()
        self.engine.flush_cache(class_name)

        cached = record.components.values()
        record.components.clear()
        pending = [c for c in cached if isinstance(c, ComponentSet) and c.pending]
        for component_set in pending:
            component_set.write()
        if write_components:
            self._write_component_sets(record, [c for c in cached if c not in pending])

        self._logger.info(f"Wrote {record!r} ({'insert' if is_new else 'update'}, {len(changed)} fields)")
        return record.id

    def build_manipulations(self, record: "Record", changed: List[str], is_new: bool, allocated: bool,
                            now: datetime) -> List[TableManipulation]:
        """One manipulation per ancestor table, holding only the changed fields stored there."""
        class_name = record.class_name
        ancestry = self.registry.ancestry(class_name)
        base = ancestry[0]
        manipulations: List[TableManipulation] = []

        for table_class in ancestry:
            if not self.registry.has_table(table_class):
                continue
            fields = self._table_fields(record, table_class, changed)
            if table_class == base:
                fields["LastEdited"] = now
                if is_new:
                    fields["Created"] = now
                    fields["ClassName"] = record.record.get("ClassName") or class_name
            elif not is_new and not fields:
                continue

            command = "insert" if is_new else "update"
            if allocated and table_class == base:
                # the base row already exists once the ID has been allocated
                command = "update"
            manipulations.append(TableManipulation(table=table_class, command=command, id=record.id, fields=fields))
        return manipulations

    def _table_fields(self, record: "Record", table_class: str, changed: List[str]) -> Dict[str, Any]:
        own_fields = self.registry.database_fields(table_class)
        own_columns = self.registry.table_columns(table_class)
        fields: Dict[str, Any] = {}
        for field in changed:
            if field in own_fields:
                codec = self.registry.codec(own_fields[field])
                if codec.composite:
                    codec.write_to_manipulation(fields, field, record.get(field))
                else:
                    fields[field] = codec.encode(record.record.get(field))
            elif field in own_columns:
                fields.setdefault(field, own_columns[field].encode(record.record.get(field)))
        return fields

    ##############################
    # Components
    ##############################

    def _write_one_to_one_components(self, record: "Record") -> None:
        for name, component in record.components.items():
            if isinstance(component, ComponentSet) or component.destroyed:
                continue
            if component.is_changed():
                component.write()
            foreign_key = f"{name}ID"
            if component.exists() and record.record.get(foreign_key) != component.id:
                record.set(foreign_key, component.id)

    def _write_component_sets(self, record: "Record", components: List[Any]) -> None:
        for component in components:
            if isinstance(component, ComponentSet):
                component.write()

    def write_components(self, record: "Record") -> None:
        """Write cached components; the owner is rewritten if a foreign key moved."""
        self._write_one_to_one_components(record)
        if record.exists() and record.is_changed():
            self.write(record)
        self._write_component_sets(record, record.components.values())

    ##############################
    # Delete
    ##############################

    def delete(self, record: "Record") -> None:
        if record.destroyed:
            raise DestroyedRecordError(type(record).__name__, record.old_id)
        if not record.exists():
            raise HierOrmError(f"delete() called on {record!r} without an ID")

        record.on_before_delete()
        record_id = record.id
        class_name = record.class_name
        manipulations = [
            TableManipulation(table=table_class, command="delete", id=record_id)
            for table_class in self.registry.data_classes_for(class_name)
        ]
        with self.engine.storage.transaction():
            self.engine.storage.manipulate(manipulations)
        self.engine.flush_cache(class_name)
        record.on_after_delete()

        record.record["OldID"] = record_id
        record.record["ID"] = 0
        record.old_id = record_id
        record.destroy()
        self._logger.info(f"Deleted {class_name}({record_id}) from {len(manipulations)} tables")
