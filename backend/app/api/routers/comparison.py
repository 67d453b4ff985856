from fastapi import APIRouter

from app.api.deps import db_dependency
from app.core.config import settings
from app.schemas.comparison import ComparisonRequest
from app.services.catalog_store import load_price_snapshot
from app.services.comparison import ComparisonAggregator, ComparisonOptions, Objective, parse_custom_prices

router = APIRouter(prefix="/comparison", tags=["comparison"])


@router.post("")
def compare_laboratories(req: ComparisonRequest, db: db_dependency):
    ids = [t for t in req.test_mapping_ids if t]
    snapshot = load_price_snapshot(db, ids)
    options = ComparisonOptions(
        selections={t: lab for t, lab in req.selections.items() if t in snapshot.tests and lab},
        custom_prices=parse_custom_prices(req.custom_prices, snapshot.tests.keys(), snapshot.laboratory_ids),
        objective=Objective(req.objective),
    )
    result = ComparisonAggregator(snapshot, settings.comparison_config()).compare(ids, options)
    return result.model_dump()
