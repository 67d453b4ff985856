"""
Health + Metrics — system observability endpoints.
"""
from fastapi import APIRouter
from sqlalchemy import func
from app.api.deps import db_dependency
import app.models.models as model

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.get("/metrics")
def get_metrics(db: db_dependency = None):
    """
    Catalog counts and mapping coverage across active laboratories.
    """
    labs = db.query(func.count(model.Laboratory.id)).filter(
        model.Laboratory.is_active.is_(True),
        model.Laboratory.deleted_at.is_(None),
    ).scalar() or 0
    canonical_tests = db.query(func.count(model.TestMapping.id)).scalar() or 0
    lab_tests = db.query(func.count(model.LabTest.id)).join(
        model.PriceList, model.LabTest.price_list_id == model.PriceList.id
    ).filter(model.PriceList.is_active.is_(True)).scalar() or 0

    by_type = dict(
        db.query(model.TestMappingEntry.match_type, func.count(model.TestMappingEntry.id))
        .group_by(model.TestMappingEntry.match_type)
        .all()
    )
    mapped = sum(by_type.values())

    return {
        "status": "operational",
        "counts": {
            "laboratories": labs,
            "canonical_tests": canonical_tests,
            "lab_tests": lab_tests,
            "mapping_entries": mapped,
        },
        "mappings": {
            "by_match_type": by_type,
            "coverage": round(mapped / max(lab_tests, 1), 3),
        },
        "bundles": db.query(func.count(model.BundleDeal.id)).filter(model.BundleDeal.is_active.is_(True)).scalar() or 0,
    }
