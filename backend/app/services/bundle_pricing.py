"""
Bundle Price Distributor — spreads a bundle's fixed rate across its tests
proportionally to each laboratory's own prices.

Rules:
  - ratio = custom_rate / Σ lab prices; adjusted = round_half_up(price × ratio, 2)
  - Labs missing any bundle test (or summing to 0) are skipped
  - Invalid input returns an empty map, never raises
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from app.schemas.comparison import ComparisonResult
from app.services.comparison import PriceKey, valid_price
from app.utils.formatting import format_currency, round_half_up

log = logging.getLogger(__name__)


def distribute(
    custom_rate: float,
    test_ids: Sequence[str],
    prices: Mapping[PriceKey, Optional[float]],
) -> Dict[PriceKey, float]:
    rate = valid_price(custom_rate)
    tests = list(dict.fromkeys(t for t in test_ids or () if t))
    if rate is None or not tests:
        log.warning("Invalid bundle input: rate=%r tests=%d", custom_rate, len(tests))
        return {}

    lab_ids = list(dict.fromkeys(k.laboratory_id for k in prices))
    out: Dict[PriceKey, float] = {}
    for lab_id in lab_ids:
        originals = [valid_price(prices.get(PriceKey(t, lab_id))) for t in tests]
        if any(p is None for p in originals):
            continue
        lab_total = sum(originals)
        if lab_total <= 0:
            continue
        ratio = rate / lab_total
        for t, original in zip(tests, originals):
            out[PriceKey(t, lab_id)] = round_half_up(original * ratio, 2)
    return out


# ── Quotes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class BundleDealInfo:
    id: str
    deal_name: str
    custom_rate: float
    test_ids: List[str] = field(default_factory=list)
    description: Optional[str] = None
    category: Optional[str] = None
    popular: bool = False


class BundleQuote(BaseModel):
    deal_id: str
    deal_name: str
    description: Optional[str] = None
    category: Optional[str] = None
    popular: bool = False
    test_ids: List[str] = Field(default_factory=list)
    custom_rate: float
    formatted_custom_rate: str
    laboratory_id: Optional[str] = None       # best complete lab
    original_total: Optional[float] = None
    formatted_original_total: Optional[str] = None
    savings: Optional[float] = None
    savings_percent: Optional[int] = None
    adjusted_prices: Dict[str, Dict[str, float]] = Field(default_factory=dict)  # lab id → test id → price
    is_available: bool = False


def quote_bundle(deal: BundleDealInfo, comparison: ComparisonResult, currency: str = "MAD") -> BundleQuote:
    """
    Price *deal* against a comparison over the deal's tests: savings are
    measured against the cheapest laboratory offering every test.
    """
    prices: Dict[PriceKey, Optional[float]] = {}
    for test_id, by_lab in comparison.price_matrix.items():
        for lab_id, price in by_lab.items():
            prices[PriceKey(test_id, lab_id)] = price

    adjusted = distribute(deal.custom_rate, deal.test_ids, prices)
    by_lab: Dict[str, Dict[str, float]] = {}
    for key, price in adjusted.items():
        by_lab.setdefault(key.laboratory_id, {})[key.test_id] = price

    quote = BundleQuote(
        deal_id=deal.id,
        deal_name=deal.deal_name,
        description=deal.description,
        category=deal.category,
        popular=deal.popular,
        test_ids=list(deal.test_ids),
        custom_rate=deal.custom_rate,
        formatted_custom_rate=format_currency(deal.custom_rate, currency),
        adjusted_prices=by_lab,
    )

    best = comparison.cheapest_laboratory
    if best is None or not best.is_complete:
        return quote

    original = best.total_price
    quote.laboratory_id = best.id
    quote.original_total = original
    quote.formatted_original_total = format_currency(original, currency)
    quote.is_available = True
    if original > 0:
        quote.savings = round_half_up(original - deal.custom_rate, 2)
        quote.savings_percent = int(round_half_up((original - deal.custom_rate) / original * 100, 0))
    return quote
