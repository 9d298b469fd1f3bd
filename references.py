"""
Reference maintenance for many-to-many (and many-to-one) links stored on both
sides of a relation, e.g. ``product.categories`` <-> ``category.products``.

The store has no multi-document transactions, so each side is updated with a
separate idempotent write. Removals are applied before additions. When a write
fails nothing is rolled back: the remaining changes are logged and carried on
the raised ``ReconciliationError`` so the caller can retry them.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Set, Tuple

from bson import ObjectId

from database import Store, oid
from errors import ConflictOrInconsistency

logger = logging.getLogger(__name__)

ADD = "add"
REMOVE = "remove"

RefOp = Callable[[ObjectId], Any]
Delta = Tuple[str, ObjectId]


@dataclass
class ReconcileResult:
    added: List[ObjectId] = field(default_factory=list)
    removed: List[ObjectId] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class ReconciliationError(ConflictOrInconsistency):
    """A reference write failed part way through a reconcile call."""

    def __init__(self, cause: Exception, pending: List[Delta], add_ref: RefOp, remove_ref: RefOp):
        super().__init__(f"Reference update incomplete: {len(pending)} change(s) not applied")
        self.cause = cause
        self.pending = pending
        self._add_ref = add_ref
        self._remove_ref = remove_ref

    def retry(self) -> ReconcileResult:
        return _apply(self.pending, self._add_ref, self._remove_ref)


def _ids(members: Iterable[Any]) -> Set[ObjectId]:
    return {oid(m) for m in members if m is not None}


def _apply(deltas: List[Delta], add_ref: RefOp, remove_ref: RefOp) -> ReconcileResult:
    result = ReconcileResult()
    for i, (op, member) in enumerate(deltas):
        try:
            if op == REMOVE:
                remove_ref(member)
            else:
                add_ref(member)
        except Exception as exc:
            pending = deltas[i:]
            logger.error(
                "Reference %s of %s failed, %d change(s) left unapplied: %s",
                op, member, len(pending), [(o, str(m)) for o, m in pending],
                exc_info=True,
            )
            raise ReconciliationError(exc, pending, add_ref, remove_ref) from exc
        (result.removed if op == REMOVE else result.added).append(member)
    return result


def reconcile(old_members: Iterable[Any], new_members: Iterable[Any], add_ref: RefOp, remove_ref: RefOp) -> ReconcileResult:
    """Apply ``remove_ref`` for every id only in ``old_members``, then
    ``add_ref`` for every id only in ``new_members``."""
    old, new = _ids(old_members), _ids(new_members)
    deltas = [(REMOVE, m) for m in sorted(old - new, key=str)]
    deltas += [(ADD, m) for m in sorted(new - old, key=str)]
    return _apply(deltas, add_ref, remove_ref)


@dataclass(frozen=True)
class Link:
    """``collection.field`` holds ids of documents on the other side of a
    relation. ``many=False`` means the field holds a single id or None."""

    collection: str
    field: str
    many: bool = True

    def members(self, doc: dict) -> Set[ObjectId]:
        value = doc.get(self.field)
        if self.many:
            return _ids(value or [])
        return _ids([value])

    def holders(self, store: Store, member_id: ObjectId) -> Set[ObjectId]:
        return {d["_id"] for d in store.find(self.collection, {self.field: member_id})}

    def add(self, store: Store, doc_id: ObjectId, member_id: ObjectId) -> None:
        if self.many:
            store.update_by_id(self.collection, doc_id, {"$addToSet": {self.field: member_id}})
        else:
            store.update_by_id(self.collection, doc_id, {"$set": {self.field: member_id}})

    def remove(self, store: Store, doc_id: ObjectId, member_id: ObjectId) -> None:
        if self.many:
            store.update_by_id(self.collection, doc_id, {"$pull": {self.field: member_id}})
        else:
            store.update_one(
                self.collection,
                {"_id": oid(doc_id), self.field: member_id},
                {"$set": {self.field: None}},
            )


class Relation:
    """Both sides of a relation. The owner side is the one whose writes drive
    the mirror (``product.categories`` drives ``category.products``)."""

    def __init__(self, store: Store, owner: Link, mirror: Link):
        self.store = store
        self.owner = owner
        self.mirror = mirror

    def sync_owner(self, owner_id: Any, old: Iterable[Any], new: Iterable[Any]) -> ReconcileResult:
        """The owner's set changed from ``old`` to ``new``; update the mirrors."""
        owner_id = oid(owner_id)
        return reconcile(
            old,
            new,
            add_ref=lambda m: self.mirror.add(self.store, m, owner_id),
            remove_ref=lambda m: self.mirror.remove(self.store, m, owner_id),
        )

    def sync_mirror(self, mirror_id: Any, old: Iterable[Any], new: Iterable[Any]) -> ReconcileResult:
        """The mirror's set changed from ``old`` to ``new``; update the owners."""
        mirror_id = oid(mirror_id)

        def add_ref(owner_doc_id: ObjectId) -> None:
            if not self.owner.many:
                # a single-valued owner moves: drop it from its previous mirror first
                current = self.store.find_by_id(self.owner.collection, owner_doc_id)
                previous = current.get(self.owner.field) if current else None
                if previous is not None and previous != mirror_id:
                    self.mirror.remove(self.store, previous, owner_doc_id)
            self.owner.add(self.store, owner_doc_id, mirror_id)

        return reconcile(
            old,
            new,
            add_ref=add_ref,
            remove_ref=lambda o: self.owner.remove(self.store, o, mirror_id),
        )

    def detach_owner(self, owner_doc: dict) -> ReconcileResult:
        return self.sync_owner(owner_doc["_id"], self.owner.members(owner_doc), [])

    def detach_mirror(self, mirror_doc: dict) -> ReconcileResult:
        return self.sync_mirror(mirror_doc["_id"], self.mirror.members(mirror_doc), [])

    def repair_owner(self, owner_doc: dict) -> ReconcileResult:
        """Rebuild the mirror side from the owner's own set, whatever state a
        previous partial failure left it in."""
        current = self.mirror.holders(self.store, owner_doc["_id"])
        result = self.sync_owner(owner_doc["_id"], current, self.owner.members(owner_doc))
        if result.changed:
            logger.info(
                "Repaired %s references for %s %s: +%d -%d",
                self.mirror.collection, self.owner.collection, owner_doc["_id"],
                len(result.added), len(result.removed),
            )
        return result
