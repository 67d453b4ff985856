"""Persistence adapter against an in-memory SQLite database."""
import pytest

import app.models.models as model
from app.services.catalog_store import (
    load_bundle_deals,
    load_lab_test_rows,
    load_price_snapshot,
    load_registry,
)
from app.services.comparison import ComparisonAggregator
from app.services.ingestion import (
    ingest_price_list,
    set_manual_mapping,
    sync_registry,
    upsert_bundle_deal,
    upsert_laboratory,
)
from catalog.registry import RawCatalogRow


def _entries(db, lab):
    return db.query(model.TestMappingEntry).filter(model.TestMappingEntry.laboratory_id == lab.id).all()


class TestSyncRegistry:
    def test_one_mapping_per_definition(self, db, registry):
        mappings = sync_registry(db, registry)
        assert len(mappings) == len(registry)
        assert db.query(model.TestMapping).count() == len(registry)

    def test_idempotent(self, db, registry):
        first = sync_registry(db, registry)
        second = sync_registry(db, registry)
        assert first == second
        assert db.query(model.TestMapping).count() == len(registry)

    def test_loads_back(self, db, registry):
        sync_registry(db, registry)
        loaded = load_registry(db)
        assert len(loaded) == len(registry)
        assert loaded.lookup("GLUC", None).canonical_name == "Glycemie A Jeun"


class TestLaboratories:
    def test_upsert_by_code(self, db):
        a = upsert_laboratory(db, "CDL", name="Cdl")
        b = upsert_laboratory(db, "CDL", name="Centre CDL")
        assert a.id == b.id
        assert b.name == "Centre CDL"
        assert db.query(model.Laboratory).count() == 1


class TestIngest:
    def test_one_entry_per_lab_and_test(self, db, seeded):
        cdl, dyn = seeded["labs"]["CDL"], seeded["labs"]["DYNACARE"]
        assert len(_entries(db, cdl)) == 7
        assert len(_entries(db, dyn)) == 6

    def test_entry_carries_offering(self, db, seeded):
        glu_id = seeded["mappings"][1]
        dyn = seeded["labs"]["DYNACARE"]
        e = db.query(model.TestMappingEntry).filter_by(laboratory_id=dyn.id, test_mapping_id=glu_id).one()
        assert e.local_test_name == "GLYCÉMIE À JEUN"
        assert e.price == 35.0
        assert e.match_type == "EXACT"

    def test_unresolved_rows_reported(self, db, registry, resolver):
        sync_registry(db, registry)
        lab = upsert_laboratory(db, "NEW")
        report = ingest_price_list(db, lab, [RawCatalogRow(code="ZN", raw_name="ZINC", price=20.0)], resolver)
        assert [u.raw_name for u in report.unresolved] == ["ZINC"]
        assert report.coverage == 0.0
        assert _entries(db, lab) == []
        # The row itself is still stored
        assert db.query(model.LabTest).filter_by(price_list_id=report.price_list_id).count() == 1

    def test_duplicate_rows_keep_first(self, db, registry, resolver):
        sync_registry(db, registry)
        lab = upsert_laboratory(db, "DUP")
        report = ingest_price_list(db, lab, [
            RawCatalogRow(code="GLU", raw_name="GLYCEMIE A JEUN", price=30.0),
            RawCatalogRow(code="GLUC", raw_name="GLYCEMIE", price=99.0),
        ], resolver)
        assert report.duplicates == 1
        assert [e.price for e in _entries(db, lab)] == [30.0]

    def test_reingest_refreshes_and_retires(self, db, seeded, resolver):
        cdl = seeded["labs"]["CDL"]
        report = ingest_price_list(db, cdl, [RawCatalogRow(code="GLU", raw_name="GLYCEMIE A JEUN", price=32.0)], resolver)
        assert report.retired == 6
        entries = _entries(db, cdl)
        assert len(entries) == 1 and entries[0].price == 32.0
        assert len(load_lab_test_rows(db, laboratory_id=cdl.id)) == 1

    def test_manual_mapping_survives_reingest(self, db, seeded, resolver, raw_catalogs):
        cdl = seeded["labs"]["CDL"]
        tsh_id = seeded["mappings"][2]
        lab_test = db.query(model.LabTest).filter_by(code="TSH").first()
        set_manual_mapping(db, cdl.id, tsh_id, lab_test)

        report = ingest_price_list(db, cdl, raw_catalogs["CDL"], resolver)
        assert report.manual == 1
        e = db.query(model.TestMappingEntry).filter_by(laboratory_id=cdl.id, test_mapping_id=tsh_id).one()
        assert e.match_type == "MANUAL"


    def test_manual_pin_for_unresolved_row_survives_reingest(self, db, registry, resolver):
        mappings = sync_registry(db, registry)
        tsh_id = mappings[registry.by_code["TSH"].canonical_id]
        lab = upsert_laboratory(db, "NEW")
        rows = [RawCatalogRow(code="ZZ9", raw_name="HORMONE THYREOTROPE ULTRA", price=95.0)]

        first = ingest_price_list(db, lab, rows, resolver)
        assert [u.code for u in first.unresolved] == ["ZZ9"]
        lab_test = db.query(model.LabTest).filter_by(price_list_id=first.price_list_id).one()
        set_manual_mapping(db, lab.id, tsh_id, lab_test)

        second = ingest_price_list(db, lab, [RawCatalogRow(code="ZZ9", raw_name="HORMONE THYREOTROPE ULTRA", price=99.0)], resolver)
        assert second.unresolved == []
        assert second.manual == 1
        assert second.retired == 0
        e = db.query(model.TestMappingEntry).filter_by(laboratory_id=lab.id, test_mapping_id=tsh_id).one()
        assert e.match_type == "MANUAL"
        assert e.price == 99.0
        assert e.lab_test_id != lab_test.id

    def test_manual_entry_not_retired_when_row_missing(self, db, seeded, resolver):
        cdl = seeded["labs"]["CDL"]
        tsh_id = seeded["mappings"][2]
        lab_test = db.query(model.LabTest).filter_by(code="TSH").first()
        set_manual_mapping(db, cdl.id, tsh_id, lab_test)

        report = ingest_price_list(db, cdl, [RawCatalogRow(code="GLU", raw_name="GLYCEMIE A JEUN", price=30.0)], resolver)
        assert report.retired == 5
        ids = {e.test_mapping_id for e in _entries(db, cdl)}
        assert tsh_id in ids

    def test_staged_list_leaves_live_entries(self, db, seeded, resolver):
        cdl = seeded["labs"]["CDL"]
        glu_id = seeded["mappings"][1]
        report = ingest_price_list(
            db, cdl, [RawCatalogRow(code="GLU", raw_name="GLYCEMIE A JEUN", price=999.0)], resolver, activate=False,
        )
        assert report.exact == 1
        assert report.retired == 0
        e = db.query(model.TestMappingEntry).filter_by(laboratory_id=cdl.id, test_mapping_id=glu_id).one()
        assert e.price == 30.0
        assert len(_entries(db, cdl)) == 7
        assert len(load_lab_test_rows(db, laboratory_id=cdl.id)) == 7
        assert sorted(p.price for p in load_price_snapshot(db, [glu_id]).entries) == [30.0, 35.0]


class TestReadSide:
    def test_lab_test_rows_annotated(self, db, seeded):
        rows = load_lab_test_rows(db)
        assert len(rows) == 13
        vb12 = next(r for r in rows if r.code == "VB12")
        assert vb12.canonical_name == "Vitamine B12"
        assert vb12.laboratory_name == "Dynacare"

    def test_inactive_lab_hidden(self, db, seeded):
        upsert_laboratory(db, "DYNACARE", is_active=False)
        rows = load_lab_test_rows(db)
        assert {r.laboratory_name for r in rows} == {"Cdl"}

    def test_price_snapshot(self, db, seeded):
        glu_id = seeded["mappings"][1]
        snap = load_price_snapshot(db, [glu_id])
        assert list(snap.tests) == [glu_id]
        assert sorted(e.price for e in snap.entries) == [30.0, 35.0]
        result = ComparisonAggregator(snap).compare([glu_id])
        assert result.cheapest_laboratory.name == "Cdl"


class TestBundleDeals:
    def test_upsert_resolves_names(self, db, seeded, resolver):
        deal = upsert_bundle_deal(db, resolver, "Bilan thyroide", 100.0, ["TSH", "Glycémie à jeun"], popular=True)
        assert deal.test_mapping_ids == [seeded["mappings"][2], seeded["mappings"][1]]
        deals = load_bundle_deals(db)
        assert [d.deal_name for d in deals] == ["Bilan thyroide"]
        assert deals[0].popular

    def test_unresolvable_name_skips_deal(self, db, seeded, resolver):
        assert upsert_bundle_deal(db, resolver, "Bilan", 50.0, ["TSH", "Zinc"]) is None
        assert load_bundle_deals(db) == []

    def test_upsert_by_name(self, db, seeded, resolver):
        upsert_bundle_deal(db, resolver, "Bilan", 50.0, ["TSH"])
        upsert_bundle_deal(db, resolver, "Bilan", 60.0, ["TSH"])
        deals = load_bundle_deals(db)
        assert len(deals) == 1 and deals[0].custom_rate == 60.0
