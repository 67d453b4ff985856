"""
Ingestion — write side of the persistence adapter.

  - sync_registry       mirrors registry definitions into TestMapping rows
  - upsert_laboratory   find-or-create a laboratory by code
  - ingest_price_list   stores a parsed catalog and maps each row to a canonical test
  - upsert_bundle_deal  stores a bundle deal, resolving its test names

Rules:
  - One TestMappingEntry per (laboratory, canonical test)
  - MANUAL entries keep their match type; the row data refreshes
  - A MANUAL entry is re-linked by local code or name before resolving,
    and is never retired implicitly
  - A staged (inactive) price list never touches live entries
  - Unresolved rows are kept as LabTest rows and listed in the report
  - Commit per call; a database error rolls back and propagates
"""
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import app.models.models as model
from catalog.normalize import normalize_for_lookup
from catalog.registry import CanonicalRegistry, RawCatalogRow, code_key
from catalog.report import UnresolvedRow
from catalog.resolver import MatchType, Resolver

log = logging.getLogger(__name__)


class IngestionReport(BaseModel):
    laboratory_id: str
    price_list_id: str
    total_rows: int = 0
    exact: int = 0
    fuzzy: int = 0
    manual: int = 0
    unresolved: List[UnresolvedRow] = Field(default_factory=list)
    duplicates: int = 0
    retired: int = 0

    @property
    def coverage(self) -> float:
        if not self.total_rows:
            return 1.0
        return (self.total_rows - len(self.unresolved)) / self.total_rows


def _commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def sync_registry(db: Session, registry: CanonicalRegistry) -> Dict[int, str]:
    """Upsert one TestMapping per definition; returns canonical_id → mapping id."""
    existing = {m.canonical_id: m for m in db.query(model.TestMapping).all()}
    created = updated = 0
    for d in registry:
        m = existing.get(d.canonical_id)
        if m is None:
            m = model.TestMapping(canonical_id=d.canonical_id)
            db.add(m)
            existing[d.canonical_id] = m
            created += 1
        else:
            updated += 1
        m.canonical_name = d.canonical_name
        m.code = d.code
        m.category = d.category.value
        m.medical_category = d.medical_category
        m.specimen = d.specimen
        m.aliases = sorted(d.aliases)
    db.flush()
    _commit(db)
    log.info("Registry sync: %d created, %d updated", created, updated)
    return {cid: m.id for cid, m in existing.items()}


def upsert_laboratory(db: Session, code: str, name: Optional[str] = None, is_active: bool = True) -> model.Laboratory:
    lab = db.query(model.Laboratory).filter(model.Laboratory.code == code).first()
    if lab is None:
        lab = model.Laboratory(code=code, name=name or code, is_active=is_active)
        db.add(lab)
    else:
        if name:
            lab.name = name
        lab.is_active = is_active
    _commit(db)
    db.refresh(lab)
    return lab


def ingest_price_list(
    db: Session,
    laboratory: model.Laboratory,
    rows: Sequence[RawCatalogRow],
    resolver: Resolver,
    file_name: Optional[str] = None,
    activate: bool = True,
) -> IngestionReport:
    """
    Store *rows* as a new price list of *laboratory* and map each row.

    When *activate* is set, earlier price lists of the laboratory are retired
    and its mapping entries are refreshed from the new rows. A staged
    (inactive) list only stores its LabTest rows; live entries keep serving
    the active list.
    """
    mapping_ids = {
        m.canonical_id: m.id
        for m in db.query(model.TestMapping.canonical_id, model.TestMapping.id).all()
    }
    entries = {
        e.test_mapping_id: e
        for e in db.query(model.TestMappingEntry)
        .filter(model.TestMappingEntry.laboratory_id == laboratory.id)
        .all()
    }
    pinned = _manual_index(db, entries.values())

    try:
        if activate:
            db.query(model.PriceList).filter(
                model.PriceList.laboratory_id == laboratory.id,
                model.PriceList.is_active.is_(True),
            ).update({model.PriceList.is_active: False}, synchronize_session=False)

        price_list = model.PriceList(laboratory_id=laboratory.id, file_name=file_name, is_active=activate)
        db.add(price_list)
        db.flush()

        report = IngestionReport(laboratory_id=laboratory.id, price_list_id=price_list.id, total_rows=len(rows))
        seen: set = set()

        for r in rows:
            lab_test = model.LabTest(
                price_list_id=price_list.id,
                name=r.raw_name,
                code=r.code or None,
                price=r.price,
                category=r.category,
                turnaround=r.turnaround,
                tube_type=r.tube_type,
                test_type=r.test_type,
            )
            db.add(lab_test)
            db.flush()

            res = None
            manual = _pinned_entry(pinned, r)
            if manual is not None:
                mapping_id = manual.test_mapping_id
            else:
                res = resolver.match(r.code, r.raw_name)
                mapping_id = mapping_ids.get(res.canonical_id) if res.canonical_id is not None else None
                if res.match_type is MatchType.NONE or mapping_id is None:
                    report.unresolved.append(UnresolvedRow(
                        laboratory=laboratory.code, code=r.code or "", raw_name=r.raw_name or "", price=r.price,
                    ))
                    log.warning("Unresolved %s row %s %r", laboratory.code, r.code, r.raw_name)
                    continue

            if mapping_id in seen:
                report.duplicates += 1
                log.debug("Duplicate mapping for %s %r, keeping first", laboratory.code, r.raw_name)
                continue
            seen.add(mapping_id)

            entry = entries.get(mapping_id)
            is_manual = entry is not None and entry.match_type == MatchType.MANUAL.value
            if is_manual:
                report.manual += 1
            elif res.match_type is MatchType.EXACT:
                report.exact += 1
            else:
                report.fuzzy += 1

            if not activate:
                continue

            if entry is None:
                entry = model.TestMappingEntry(test_mapping_id=mapping_id, laboratory_id=laboratory.id)
                db.add(entry)
                entries[mapping_id] = entry
            if not is_manual:
                entry.match_type = res.match_type.value
                entry.similarity = res.similarity
            entry.lab_test_id = lab_test.id
            entry.local_test_name = r.raw_name
            entry.price = r.price
            entry.turnaround = r.turnaround
            entry.tube_type = r.tube_type

        if activate:
            # Offerings absent from the new list are no longer sold; curated ones stay
            for mid, e in entries.items():
                if mid not in seen and e.id is not None and e.match_type != MatchType.MANUAL.value:
                    db.delete(e)
                    report.retired += 1

        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    log.info(
        "Ingested %d rows for %s: %d exact, %d fuzzy, %d manual, %d unresolved (%.1f%%)",
        report.total_rows, laboratory.code, report.exact, report.fuzzy, report.manual,
        len(report.unresolved), report.coverage * 100,
    )
    return report


def set_manual_mapping(
    db: Session,
    laboratory_id: str,
    test_mapping_id: str,
    lab_test: model.LabTest,
) -> model.TestMappingEntry:
    """Operator override: pin *lab_test* as the laboratory's offering of a canonical test."""
    entry = db.query(model.TestMappingEntry).filter(
        model.TestMappingEntry.laboratory_id == laboratory_id,
        model.TestMappingEntry.test_mapping_id == test_mapping_id,
    ).first()
    if entry is None:
        entry = model.TestMappingEntry(test_mapping_id=test_mapping_id, laboratory_id=laboratory_id)
        db.add(entry)
    entry.lab_test_id = lab_test.id
    entry.local_test_name = lab_test.name
    entry.price = lab_test.price
    entry.turnaround = lab_test.turnaround
    entry.tube_type = lab_test.tube_type
    entry.match_type = MatchType.MANUAL.value
    entry.similarity = 1.0
    _commit(db)
    return entry


def upsert_bundle_deal(
    db: Session,
    resolver: Resolver,
    deal_name: str,
    custom_rate: float,
    test_names: Sequence[str],
    description: Optional[str] = None,
    category: Optional[str] = None,
    popular: bool = False,
    sort_order: int = 0,
) -> Optional[model.BundleDeal]:
    """Store a deal whose tests are given by canonical name; skipped (None) if any name fails to resolve."""
    mapping_ids = {m.canonical_id: m.id for m in db.query(model.TestMapping.canonical_id, model.TestMapping.id).all()}
    ids: List[str] = []
    for name in test_names:
        d = resolver.resolve(None, name)
        mid = mapping_ids.get(d.canonical_id) if d is not None else None
        if mid is None:
            log.warning("Skipping bundle %r: test %r does not resolve", deal_name, name)
            return None
        ids.append(mid)

    deal = db.query(model.BundleDeal).filter(model.BundleDeal.deal_name == deal_name).first()
    if deal is None:
        deal = model.BundleDeal(deal_name=deal_name)
        db.add(deal)
    deal.custom_rate = custom_rate
    deal.test_mapping_ids = ids
    deal.description = description
    deal.category = category
    deal.popular = popular
    deal.sort_order = sort_order
    deal.is_active = True
    _commit(db)
    return deal


# ── Curated entries ──────────────────────────────────────────────

def _manual_index(db: Session, entries: Iterable[model.TestMappingEntry]) -> Dict[Tuple[str, str], model.TestMappingEntry]:
    """MANUAL entries keyed by the local code and name they were pinned to."""
    manual = [e for e in entries if e.match_type == MatchType.MANUAL.value]
    lab_test_ids = [e.lab_test_id for e in manual if e.lab_test_id]
    codes: Dict[str, Optional[str]] = {}
    if lab_test_ids:
        codes = dict(
            db.query(model.LabTest.id, model.LabTest.code)
            .filter(model.LabTest.id.in_(lab_test_ids))
            .all()
        )
    index: Dict[Tuple[str, str], model.TestMappingEntry] = {}
    for e in manual:
        code = code_key(codes.get(e.lab_test_id))
        if code:
            index.setdefault(("code", code), e)
        name = normalize_for_lookup(e.local_test_name)
        if name:
            index.setdefault(("name", name), e)
    return index


def _pinned_entry(index: Dict[Tuple[str, str], model.TestMappingEntry], row: RawCatalogRow) -> Optional[model.TestMappingEntry]:
    code = code_key(row.code)
    if code and ("code", code) in index:
        return index[("code", code)]
    return index.get(("name", normalize_for_lookup(row.raw_name)))
