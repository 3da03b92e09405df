"""
Entity Store

Per-collection CRUD over JSON records kept in a key-value medium. Each
collection lives under one key as a JSON array, in insertion order; every
operation reads the whole array, changes it and writes it back.

Mutations never raise: they return a StoreResult whose status tells the
caller whether the write happened (created/updated/deleted) or why it did
not (not_found, invalid, conflict, storage_error). Reads degrade to empty
results when the stored value is missing or corrupt.

Writes to one collection are serialised with an asyncio.Lock, so tasks on
the same event loop cannot lose each other's updates. Separate processes
sharing a medium are not coordinated; run one writer process per medium.
"""
import asyncio
import json
import logging
import random
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from database import KeyValueMedium, MediumError
from schemas import (
    Assignment,
    Behavior,
    Invoice,
    Mark,
    Record,
    Student,
    Subject,
    Teacher,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Record)


class StoreStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    CONFLICT = "conflict"
    STORAGE_ERROR = "storage_error"


class StoreResult(BaseModel):
    status: StoreStatus
    record: Optional[Any] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (StoreStatus.CREATED, StoreStatus.UPDATED, StoreStatus.DELETED)


class UnknownCollection(KeyError):
    pass


def _as_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True, exclude_none=True)
    return dict(data)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Collection(Generic[T]):
    unique_fields: Tuple[str, ...] = ()

    def __init__(self, store: "EntityStore", name: str, model: Type[T], unique_fields: Tuple[str, ...] = ()):
        self.store = store
        self.name = name
        self.model = model
        if unique_fields:
            self.unique_fields = unique_fields

    @property
    def key(self) -> str:
        return f"{self.store.key_prefix}{self.name}"

    # Raw rows

    def _load(self) -> List[Dict[str, Any]]:
        try:
            raw = self.store.medium.get(self.key)
        except MediumError as e:
            logger.error("Error retrieving %s: %s", self.name, e)
            raise
        if raw is None:
            return []
        try:
            rows = json.loads(raw)
        except ValueError as e:
            logger.warning("Stored %s is not valid JSON, treating as empty: %s", self.name, e)
            return []
        if not isinstance(rows, list):
            logger.warning("Stored %s is not a JSON array, treating as empty", self.name)
            return []
        return [row for row in rows if isinstance(row, dict)]

    def _save(self, rows: List[Dict[str, Any]]) -> None:
        self.store.medium.set(self.key, json.dumps(rows))

    def _parse(self, row: Dict[str, Any]) -> Optional[T]:
        try:
            return self.model.model_validate(row)
        except ValidationError as e:
            logger.warning("Skipping nonconforming %s record %s: %s", self.name, row.get("id"), e.error_count())
            return None

    def _dump(self, record: T) -> Dict[str, Any]:
        return record.model_dump(mode="json", by_alias=True, exclude_none=True)

    def _conflict(self, row: Dict[str, Any], rows: List[Dict[str, Any]]) -> Optional[str]:
        for field in self.unique_fields:
            value = row.get(field)
            if value is None:
                continue
            for other in rows:
                if other.get(field) == value and other.get("id") != row.get("id"):
                    return f"{field} {value!r} already exists in {self.name}"
        return None

    # Hooks for collections with generated fields

    def _on_create(self, record: T, rows: List[Dict[str, Any]]) -> T:
        return record

    def _on_update(self, record: T, existing: Dict[str, Any]) -> T:
        return record

    # Public API

    async def list(self) -> List[T]:
        try:
            rows = self._load()
        except MediumError:
            return []
        records = (self._parse(row) for row in rows)
        return [r for r in records if r is not None]

    async def get(self, record_id: str) -> Optional[T]:
        for record in await self.list():
            if record.id == record_id:
                return record
        return None

    async def filter_by(self, field: str, value: Any) -> List[T]:
        return [r for r in await self.list() if getattr(r, field, None) == value]

    async def count(self) -> int:
        return len(await self.list())

    async def is_empty(self) -> bool:
        """True when nothing is stored, counting rows that fail validation.

        Raises MediumError when the collection cannot be read.
        """
        async with self.store.lock_for(self.name):
            return not self._load()

    async def create(self, data: Union[BaseModel, Dict[str, Any]]) -> StoreResult:
        payload = _as_dict(data)
        payload.pop("id", None)
        try:
            record = self.model.model_validate(payload)
        except ValidationError as e:
            return StoreResult(status=StoreStatus.INVALID, detail=str(e))

        async with self.store.lock_for(self.name):
            try:
                rows = self._load()
                record = record.model_copy(update={"id": str(uuid.uuid4())})
                record = self._on_create(record, rows)
                row = self._dump(record)
                conflict = self._conflict(row, rows)
                if conflict:
                    return StoreResult(status=StoreStatus.CONFLICT, detail=conflict)
                self._save(rows + [row])
            except MediumError as e:
                logger.error("Error saving %s: %s", self.name, e)
                return StoreResult(status=StoreStatus.STORAGE_ERROR, detail=str(e))
        logger.debug("Created %s %s", self.name, row["id"])
        return StoreResult(status=StoreStatus.CREATED, record=self._parse(row))

    async def update(self, data: Union[BaseModel, Dict[str, Any]]) -> StoreResult:
        payload = _as_dict(data)
        if not payload.get("id"):
            return StoreResult(status=StoreStatus.INVALID, detail="id is required to update a record")
        try:
            record = self.model.model_validate(payload)
        except ValidationError as e:
            return StoreResult(status=StoreStatus.INVALID, detail=str(e))

        async with self.store.lock_for(self.name):
            return self._apply_update(record)

    def _apply_update(self, record: T) -> StoreResult:
        # caller holds the collection lock
        try:
            rows = self._load()
            index = next((i for i, r in enumerate(rows) if r.get("id") == record.id), None)
            if index is None:
                return StoreResult(status=StoreStatus.NOT_FOUND, detail=f"{self.name} {record.id} not found")
            record = self._on_update(record, rows[index])
            row = self._dump(record)
            conflict = self._conflict(row, rows)
            if conflict:
                return StoreResult(status=StoreStatus.CONFLICT, detail=conflict)
            rows[index] = row
            self._save(rows)
        except MediumError as e:
            logger.error("Error saving %s: %s", self.name, e)
            return StoreResult(status=StoreStatus.STORAGE_ERROR, detail=str(e))
        return StoreResult(status=StoreStatus.UPDATED, record=self._parse(row))

    async def delete(self, record_id: str) -> StoreResult:
        async with self.store.lock_for(self.name):
            try:
                rows = self._load()
                remaining = [r for r in rows if r.get("id") != record_id]
                if len(remaining) == len(rows):
                    return StoreResult(status=StoreStatus.NOT_FOUND, detail=f"{self.name} {record_id} not found")
                self._save(remaining)
            except MediumError as e:
                logger.error("Error saving %s: %s", self.name, e)
                return StoreResult(status=StoreStatus.STORAGE_ERROR, detail=str(e))
        return StoreResult(status=StoreStatus.DELETED)

    async def add_missing(self, records: List[T]) -> int:
        """Append records whose ids are not stored yet, keeping their ids.

        Used by the seed step, which needs fixed ids so the sample data can
        reference itself.
        """
        async with self.store.lock_for(self.name):
            rows = self._load()
            known = {r.get("id") for r in rows}
            fresh = [self._dump(r) for r in records if r.id not in known]
            if fresh:
                self._save(rows + fresh)
        return len(fresh)


class InvoiceCollection(Collection[Invoice]):
    unique_fields = ("invoiceNumber",)

    def _new_invoice_number(self, rows: List[Dict[str, Any]]) -> str:
        taken = {r.get("invoiceNumber") for r in rows}
        for _ in range(20):
            number = f"INV-{random.randint(0, 9999):04d}"
            if number not in taken:
                return number
        return f"INV-{uuid.uuid4().hex[:8].upper()}"

    def _on_create(self, record, rows):
        return record.model_copy(update={
            "invoiceNumber": self._new_invoice_number(rows),
            "createdAt": _utcnow(),
        })

    def _on_update(self, record, existing):
        # generated fields survive a caller that did not send them back
        kept = {f: existing[f] for f in ("invoiceNumber", "createdAt", "paymentReference")
                if getattr(record, f) is None and existing.get(f) is not None}
        merged = {**self._dump(record), **kept}
        merged.pop("updatedAt", None)
        previous = {k: v for k, v in existing.items() if k != "updatedAt"}
        if merged == previous:
            # unchanged content keeps its timestamp so repeated updates are idempotent
            stamp = existing.get("updatedAt")
        else:
            stamp = _utcnow().isoformat()
        if stamp:
            merged["updatedAt"] = stamp
        return self.model.model_validate(merged)

    async def generate_payment_reference(self, invoice_id: str) -> StoreResult:
        async with self.store.lock_for(self.name):
            try:
                rows = self._load()
            except MediumError as e:
                return StoreResult(status=StoreStatus.STORAGE_ERROR, detail=str(e))
            row = next((r for r in rows if r.get("id") == invoice_id), None)
            invoice = self._parse(row) if row is not None else None
            if invoice is None:
                return StoreResult(status=StoreStatus.NOT_FOUND, detail=f"invoices {invoice_id} not found")
            reference = f"REF-{random.randint(0, 999999):06d}"
            return self._apply_update(invoice.model_copy(update={"paymentReference": reference}))


class EntityStore:
    """Typed collections of portal entities over one key-value medium.

    Build one per session and pass it to whatever needs it; open() at start,
    flush() when the session navigates away, close() at teardown.
    """

    def __init__(self, medium: KeyValueMedium, key_prefix: str = "schub_"):
        self.medium = medium
        self.key_prefix = key_prefix
        self.is_open = False
        self._locks: Dict[str, asyncio.Lock] = {}
        self.students: Collection[Student] = Collection(self, "students", Student)
        self.teachers: Collection[Teacher] = Collection(self, "teachers", Teacher)
        self.subjects: Collection[Subject] = Collection(self, "subjects", Subject, unique_fields=("code",))
        self.marks: Collection[Mark] = Collection(self, "marks", Mark)
        self.behaviors: Collection[Behavior] = Collection(self, "behaviors", Behavior)
        self.assignments: Collection[Assignment] = Collection(self, "assignments", Assignment)
        self.invoices = InvoiceCollection(self, "invoices", Invoice)
        self.collections: Dict[str, Collection] = {
            c.name: c
            for c in (self.students, self.teachers, self.subjects, self.marks,
                      self.behaviors, self.assignments, self.invoices)
        }

    def lock_for(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def collection(self, name: str) -> Collection:
        try:
            return self.collections[name]
        except KeyError:
            raise UnknownCollection(name) from None

    def open(self) -> "EntityStore":
        self.is_open = True
        logger.info("Entity store opened on %s medium", self.medium.name)
        return self

    def flush(self) -> bool:
        try:
            self.medium.flush()
        except MediumError as e:
            logger.error("Error flushing entity store: %s", e)
            return False
        return True

    def close(self) -> None:
        if not self.is_open:
            return
        try:
            self.medium.close()
        except MediumError as e:
            logger.error("Error closing entity store: %s", e)
        self.is_open = False

    async def list(self, name: str) -> List[Record]:
        return await self.collection(name).list()

    async def get(self, name: str, record_id: str) -> Optional[Record]:
        return await self.collection(name).get(record_id)

    async def create(self, name: str, data) -> StoreResult:
        return await self.collection(name).create(data)

    async def update(self, name: str, data) -> StoreResult:
        return await self.collection(name).update(data)

    async def delete(self, name: str, record_id: str) -> StoreResult:
        return await self.collection(name).delete(record_id)

    async def student_marks(self, student_id: str) -> List[Mark]:
        return await self.marks.filter_by("studentId", student_id)

    async def student_behaviors(self, student_id: str) -> List[Behavior]:
        return await self.behaviors.filter_by("studentId", student_id)

    async def student_invoices(self, student_id: str) -> List[Invoice]:
        return await self.invoices.filter_by("studentId", student_id)
