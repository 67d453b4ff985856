from fastapi import APIRouter

import app.models.models as model
from app.api.deps import db_dependency
from app.core.config import settings
from app.schemas.bundles import DistributeRequest, DistributeResponse
from app.services.bundle_pricing import distribute, quote_bundle
from app.services.catalog_store import load_bundle_deals, load_price_snapshot
from app.services.comparison import ComparisonAggregator, format_price_key, parse_price_key

router = APIRouter(prefix="/bundles", tags=["bundles"])


@router.post("/distribute")
def distribute_bundle(req: DistributeRequest, db: db_dependency):
    test_ids = set(req.test_mapping_ids)
    lab_ids = {lab_id for (lab_id,) in db.query(model.Laboratory.id).all()}
    prices = {}
    for raw_key, price in req.prices.items():
        key = parse_price_key(raw_key, test_ids, lab_ids)
        if key is not None:
            prices[key] = price
    adjusted = distribute(req.custom_rate, req.test_mapping_ids, prices)
    return DistributeResponse(prices={format_price_key(k): v for k, v in adjusted.items()}).model_dump()


@router.get("/quotes")
def bundle_quotes(db: db_dependency):
    config = settings.comparison_config()
    quotes = []
    for deal in load_bundle_deals(db):
        snapshot = load_price_snapshot(db, deal.test_ids)
        comparison = ComparisonAggregator(snapshot, config).compare(deal.test_ids)
        quotes.append(quote_bundle(deal, comparison, config.currency).model_dump())
    return {"quotes": quotes}
