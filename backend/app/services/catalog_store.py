"""
Catalog Store — read side of the persistence adapter.

Turns SQLAlchemy rows into the plain, immutable data the engine consumes:
  - load_registry        → CanonicalRegistry (from TestMapping rows)
  - load_lab_test_rows   → [LabTestRow] for the search ranker
  - load_test_mapping_ids → canonical_id → TestMapping id
  - load_price_snapshot  → PriceSnapshot for the comparison aggregator
  - load_bundle_deals    → [BundleDealInfo]

Only rows from active price lists of active, non-deleted laboratories are
returned.
"""
import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

import app.models.models as model
from app.services.bundle_pricing import BundleDealInfo
from app.services.comparison import LabInfo, PriceEntry, PriceSnapshot, TestInfo
from catalog.ranker import LabTestRow
from catalog.registry import CanonicalRegistry, CanonicalTestDefinition, TestCategory

log = logging.getLogger(__name__)


def _live_labs(db: Session):
    return db.query(model.Laboratory).filter(
        model.Laboratory.is_active.is_(True),
        model.Laboratory.deleted_at.is_(None),
    )


def load_registry(db: Session) -> CanonicalRegistry:
    rows = db.query(model.TestMapping).order_by(model.TestMapping.canonical_id).all()
    definitions = []
    for m in rows:
        try:
            category = TestCategory(m.category)
        except ValueError:
            category = TestCategory.INDIVIDUAL
        definitions.append(CanonicalTestDefinition(
            canonical_id=m.canonical_id,
            canonical_name=m.canonical_name,
            code=m.code,
            category=category,
            aliases=frozenset(m.aliases or ()),
            medical_category=m.medical_category or "General",
            specimen=m.specimen or "DEFAULT",
        ))
    log.info("Loaded registry with %d definitions", len(definitions))
    return CanonicalRegistry.from_definitions(definitions)


def load_test_mapping_ids(db: Session) -> Dict[int, str]:
    """canonical_id → TestMapping id (the id comparison and bundles accept)."""
    return {cid: mid for cid, mid in db.query(model.TestMapping.canonical_id, model.TestMapping.id).all()}


def load_lab_test_rows(db: Session, laboratory_id: Optional[str] = None) -> List[LabTestRow]:
    q = (
        db.query(model.LabTest, model.PriceList, model.Laboratory)
        .join(model.PriceList, model.LabTest.price_list_id == model.PriceList.id)
        .join(model.Laboratory, model.PriceList.laboratory_id == model.Laboratory.id)
        .filter(
            model.PriceList.is_active.is_(True),
            model.Laboratory.is_active.is_(True),
            model.Laboratory.deleted_at.is_(None),
        )
    )
    if laboratory_id is not None:
        q = q.filter(model.Laboratory.id == laboratory_id)
    results = q.all()

    # Persisted mappings keyed by lab test
    test_ids = [t.id for t, _, _ in results]
    mapped = {}
    if test_ids:
        for entry, mapping in (
            db.query(model.TestMappingEntry, model.TestMapping)
            .join(model.TestMapping, model.TestMappingEntry.test_mapping_id == model.TestMapping.id)
            .filter(model.TestMappingEntry.lab_test_id.in_(test_ids))
            .all()
        ):
            mapped[entry.lab_test_id] = (entry, mapping)

    rows: List[LabTestRow] = []
    for t, _, lab in results:
        entry, mapping = mapped.get(t.id, (None, None))
        rows.append(LabTestRow(
            id=t.id,
            laboratory_id=lab.id,
            laboratory_name=lab.name,
            name=t.name,
            code=t.code or "",
            price=t.price,
            category=t.category,
            turnaround=t.turnaround,
            canonical_id=mapping.canonical_id if mapping is not None else None,
            test_mapping_id=mapping.id if mapping is not None else None,
            canonical_name=mapping.canonical_name if mapping is not None else None,
            match_type=entry.match_type if entry is not None else None,
            similarity=entry.similarity if entry is not None else None,
        ))
    return rows


def load_price_snapshot(db: Session, test_mapping_ids: Optional[Sequence[str]] = None) -> PriceSnapshot:
    labs = _live_labs(db).all()
    lab_ids = [lab.id for lab in labs]

    mq = db.query(model.TestMapping)
    if test_mapping_ids is not None:
        mq = mq.filter(model.TestMapping.id.in_(list(test_mapping_ids)))
    tests = {m.id: TestInfo(id=m.id, canonical_name=m.canonical_name, code=m.code) for m in mq.all()}

    entries: List[PriceEntry] = []
    if tests and lab_ids:
        for e in (
            db.query(model.TestMappingEntry)
            .filter(
                model.TestMappingEntry.test_mapping_id.in_(list(tests)),
                model.TestMappingEntry.laboratory_id.in_(lab_ids),
            )
            .order_by(model.TestMappingEntry.id)
            .all()
        ):
            entries.append(PriceEntry(
                test_id=e.test_mapping_id,
                laboratory_id=e.laboratory_id,
                price=e.price,
                local_test_name=e.local_test_name,
                turnaround=e.turnaround,
                match_type=e.match_type,
                similarity=e.similarity,
            ))

    return PriceSnapshot(
        laboratories=tuple(
            LabInfo(id=lab.id, name=lab.name, code=lab.code, is_active=lab.is_active, deleted_at=lab.deleted_at)
            for lab in labs
        ),
        tests=tests,
        entries=tuple(entries),
    )


def load_bundle_deals(db: Session, active_only: bool = True) -> List[BundleDealInfo]:
    q = db.query(model.BundleDeal)
    if active_only:
        q = q.filter(model.BundleDeal.is_active.is_(True))
    deals = q.order_by(model.BundleDeal.sort_order, model.BundleDeal.deal_name).all()
    return [
        BundleDealInfo(
            id=d.id,
            deal_name=d.deal_name,
            custom_rate=d.custom_rate,
            test_ids=list(d.test_mapping_ids or ()),
            description=d.description,
            category=d.category,
            popular=bool(d.popular),
        )
        for d in deals
    ]
