"""
Comparison Aggregator — deterministic, read-only over a PriceSnapshot.

For a set of canonical test ids, prices every participating laboratory and
derives three selections:
  - cheapest single laboratory (complete labs first)
  - fastest single laboratory (slowest known TAT across its priced tests)
  - optimized multi-lab mix (per-test argmin), with user overrides

Rules:
  - Only active, non-deleted laboratories participate
  - A custom price applies only where the laboratory lists the test
  - Totals cover priced tests only; is_complete iff every test is priced
  - Laboratory order: complete first, then total asc, then name
"""
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Collection, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from app.schemas.comparison import (
    ComparisonResult,
    LabComparison,
    LabSummary,
    LabTestLine,
    MultiLabAssignment,
    MultiLabSelection,
)
from app.services.turnaround import parse_turnaround_hours, slowest, sort_hours
from app.utils.formatting import format_currency, round_half_up

log = logging.getLogger(__name__)


class ComparisonConfig(BaseModel):
    currency: str = "MAD"
    max_workers: int = Field(default=1, ge=1)


class Objective(str, Enum):
    PRICE = "price"
    TURNAROUND = "turnaround"


class SelectionMode(str, Enum):
    CHEAPEST = "CHEAPEST"
    FASTEST = "FASTEST"
    CUSTOM = "CUSTOM"


# ── Price keys ───────────────────────────────────────────────────

class PriceKey(NamedTuple):
    test_id: str
    laboratory_id: str

    def __str__(self) -> str:
        return format_price_key(self)


def format_price_key(key: PriceKey) -> str:
    return f"{key.test_id}-{key.laboratory_id}"


def parse_price_key(raw: str, test_ids: Collection[str], laboratory_ids: Collection[str]) -> Optional[PriceKey]:
    """
    'testId-labId' → PriceKey. Ids may themselves contain '-', so every split
    position is tried against the known ids; the first (leftmost) hit wins.
    """
    if not isinstance(raw, str):
        return None
    for i, ch in enumerate(raw):
        if ch != "-":
            continue
        test_id, lab_id = raw[:i], raw[i + 1:]
        if test_id in test_ids and lab_id in laboratory_ids:
            return PriceKey(test_id, lab_id)
    return None


def valid_price(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(v) or v < 0:
        return None
    return v


def parse_custom_prices(
    raw: Mapping[str, Any],
    test_ids: Collection[str],
    laboratory_ids: Collection[str],
) -> Dict[PriceKey, float]:
    """JSON boundary: drop malformed keys and non-finite or negative prices."""
    out: Dict[PriceKey, float] = {}
    for raw_key, raw_price in (raw or {}).items():
        key = parse_price_key(raw_key, test_ids, laboratory_ids)
        if key is None:
            log.warning("Dropping custom price with unknown key %r", raw_key)
            continue
        price = valid_price(raw_price)
        if price is None:
            log.warning("Dropping invalid custom price %r for %s", raw_price, raw_key)
            continue
        out[key] = price
    return out


# ── Snapshot ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class LabInfo:
    id: str
    name: str
    code: Optional[str] = None
    is_active: bool = True
    deleted_at: Optional[datetime] = None

    @property
    def participates(self) -> bool:
        return self.is_active and self.deleted_at is None


@dataclass(frozen=True)
class TestInfo:
    id: str
    canonical_name: str
    code: Optional[str] = None


@dataclass(frozen=True)
class PriceEntry:
    test_id: str
    laboratory_id: str
    price: Optional[float]
    local_test_name: Optional[str] = None
    turnaround: Optional[str] = None
    match_type: str = "EXACT"
    similarity: float = 1.0


@dataclass(frozen=True)
class PriceSnapshot:
    laboratories: Tuple[LabInfo, ...] = ()
    tests: Mapping[str, TestInfo] = field(default_factory=dict)
    entries: Tuple[PriceEntry, ...] = ()

    @property
    def laboratory_ids(self) -> set:
        return {lab.id for lab in self.laboratories}


@dataclass
class ComparisonOptions:
    selections: Mapping[str, str] = field(default_factory=dict)
    custom_prices: Mapping[PriceKey, float] = field(default_factory=dict)
    objective: Objective = Objective.PRICE


@dataclass(frozen=True)
class _Priced:
    price: float
    hours: Optional[float]
    is_custom: bool
    entry: PriceEntry


# ── Aggregator ───────────────────────────────────────────────────

class ComparisonAggregator:
    def __init__(self, snapshot: PriceSnapshot, config: Optional[ComparisonConfig] = None):
        self.snapshot = snapshot
        self.config = config or ComparisonConfig()
        self._labs = {lab.id: lab for lab in snapshot.laboratories}

    def fmt(self, amount: float) -> str:
        return format_currency(amount, self.config.currency)

    def compare(self, canonical_test_ids: Sequence[str], options: Optional[ComparisonOptions] = None) -> ComparisonResult:
        options = options or ComparisonOptions()
        requested = list(dict.fromkeys(t for t in canonical_test_ids or () if t))
        known = [t for t in requested if t in self.snapshot.tests]
        unknown = [t for t in requested if t not in self.snapshot.tests]
        if unknown:
            log.warning("Dropping %d unknown test id(s): %s", len(unknown), ", ".join(unknown))
        if not known:
            return ComparisonResult(requested_test_ids=requested, unknown_test_ids=unknown, currency=self.config.currency)

        priced = self._effective_prices(known, options.custom_prices)
        labs = [lab for lab in self.snapshot.laboratories if lab.participates and priced.get(lab.id)]

        if self.config.max_workers > 1 and len(labs) > 1:
            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                per_lab = list(pool.map(lambda lab: self._lab_comparison(lab, known, priced[lab.id]), labs))
        else:
            per_lab = [self._lab_comparison(lab, known, priced[lab.id]) for lab in labs]

        per_lab.sort(key=lambda c: (not c.is_complete, c.total_price, c.name.casefold(), c.id))

        cheapest = self._cheapest(per_lab)
        fastest = self._fastest(per_lab)
        for c in per_lab:
            c.is_cheapest = cheapest is not None and c.id == cheapest.id
            c.is_fastest = fastest is not None and c.id == fastest.id

        multi = self._multi_lab(known, labs, priced, options)

        price_matrix: Dict[str, Dict[str, Optional[float]]] = {}
        tat_matrix: Dict[str, Dict[str, Optional[float]]] = {}
        for t in known:
            price_matrix[t] = {}
            tat_matrix[t] = {}
            for lab in labs:
                p = priced[lab.id].get(t)
                price_matrix[t][lab.id] = p.price if p else None
                tat_matrix[t][lab.id] = p.hours if p else None

        result = ComparisonResult(
            laboratories=per_lab,
            cheapest_laboratory=self._summary(cheapest),
            fastest_laboratory=self._summary(fastest),
            multi_lab_selection=multi,
            price_matrix=price_matrix,
            turnaround_matrix=tat_matrix,
            requested_test_ids=requested,
            unknown_test_ids=unknown,
            currency=self.config.currency,
        )
        log.info(
            "Compared %d test(s) across %d lab(s): cheapest=%s fastest=%s multi=%.2f",
            len(known), len(per_lab),
            cheapest.name if cheapest else None,
            fastest.name if fastest else None,
            multi.total_price if multi else 0.0,
        )
        return result

    # ── Steps ──

    def _effective_prices(self, test_ids: Sequence[str], custom_prices: Mapping[PriceKey, float]) -> Dict[str, Dict[str, _Priced]]:
        wanted = set(test_ids)
        out: Dict[str, Dict[str, _Priced]] = {}
        for e in self.snapshot.entries:
            if e.test_id not in wanted:
                continue
            lab_prices = out.setdefault(e.laboratory_id, {})
            if e.test_id in lab_prices:
                continue  # one entry per (lab, test); first wins
            key = PriceKey(e.test_id, e.laboratory_id)
            custom = valid_price(custom_prices.get(key)) if key in custom_prices else None
            if custom is not None:
                price, is_custom = custom, True
            elif valid_price(e.price) is not None:
                price, is_custom = float(e.price), False
            else:
                continue
            lab_prices[e.test_id] = _Priced(
                price=price,
                hours=parse_turnaround_hours(e.turnaround),
                is_custom=is_custom,
                entry=e,
            )
        return out

    def _lab_comparison(self, lab: LabInfo, test_ids: Sequence[str], priced: Mapping[str, _Priced]) -> LabComparison:
        lines: List[LabTestLine] = []
        missing: List[str] = []
        for t in test_ids:
            p = priced.get(t)
            if p is None:
                missing.append(t)
                continue
            lines.append(LabTestLine(
                test_id=t,
                canonical_name=self.snapshot.tests[t].canonical_name,
                local_test_name=p.entry.local_test_name,
                price=p.price,
                formatted_price=self.fmt(p.price),
                turnaround=p.entry.turnaround,
                turnaround_hours=p.hours,
                similarity=p.entry.similarity,
                match_type=p.entry.match_type,
                is_custom_price=p.is_custom,
            ))
        total = round_half_up(sum(line.price for line in lines), 2)
        return LabComparison(
            id=lab.id,
            name=lab.name,
            code=lab.code,
            tests=lines,
            total_price=total,
            formatted_total_price=self.fmt(total),
            test_count=len(lines),
            missing_test_ids=missing,
            is_complete=len(lines) == len(test_ids),
            max_turnaround_hours=slowest(line.turnaround_hours for line in lines),
        )

    @staticmethod
    def _cheapest(per_lab: List[LabComparison]) -> Optional[LabComparison]:
        if not per_lab:
            return None
        complete = [c for c in per_lab if c.is_complete]
        pool = complete or per_lab
        return min(pool, key=lambda c: (c.total_price, c.name.casefold(), c.id))

    @staticmethod
    def _fastest(per_lab: List[LabComparison]) -> Optional[LabComparison]:
        candidates = [c for c in per_lab if c.max_turnaround_hours is not None]
        if not candidates:
            return None
        return min(candidates, key=lambda c: (
            not c.is_complete, c.max_turnaround_hours, c.total_price, c.name.casefold(), c.id,
        ))

    def _multi_lab(
        self,
        test_ids: Sequence[str],
        labs: Sequence[LabInfo],
        priced: Mapping[str, Mapping[str, _Priced]],
        options: ComparisonOptions,
    ) -> Optional[MultiLabSelection]:
        if not labs:
            return None
        objective = Objective(options.objective)

        def rank(lab: LabInfo, p: _Priced):
            if objective is Objective.TURNAROUND:
                return (sort_hours(p.hours), p.price, lab.name.casefold(), lab.id)
            return (p.price, sort_hours(p.hours), lab.name.casefold(), lab.id)

        assignments: List[MultiLabAssignment] = []
        missing: List[str] = []
        overridden = False
        for t in test_ids:
            offers = [(lab, priced[lab.id][t]) for lab in labs if t in priced[lab.id]]
            if not offers:
                missing.append(t)
                continue
            lab, p = min(offers, key=lambda o: rank(*o))

            selected_id = options.selections.get(t)
            is_override = False
            if selected_id and selected_id != lab.id:
                chosen = next(((l, q) for l, q in offers if l.id == selected_id), None)
                if chosen is not None:
                    lab, p = chosen
                    is_override = overridden = True
                else:
                    log.warning("Ignoring selection of lab %s for test %s: not priced there", selected_id, t)

            assignments.append(MultiLabAssignment(
                test_id=t,
                canonical_name=self.snapshot.tests[t].canonical_name,
                laboratory_id=lab.id,
                laboratory_name=lab.name,
                price=p.price,
                formatted_price=self.fmt(p.price),
                turnaround_hours=p.hours,
                is_override=is_override,
            ))

        if overridden:
            mode = SelectionMode.CUSTOM
        elif objective is Objective.TURNAROUND:
            mode = SelectionMode.FASTEST
        else:
            mode = SelectionMode.CHEAPEST

        total = round_half_up(sum(a.price for a in assignments), 2)
        return MultiLabSelection(
            selection_mode=mode.value,
            assignments=assignments,
            total_price=total,
            formatted_total_price=self.fmt(total),
            laboratories=list(dict.fromkeys(a.laboratory_id for a in assignments)),
            missing_test_ids=missing,
            max_turnaround_hours=slowest(a.turnaround_hours for a in assignments),
        )

    @staticmethod
    def _summary(c: Optional[LabComparison]) -> Optional[LabSummary]:
        if c is None:
            return None
        return LabSummary(
            id=c.id,
            name=c.name,
            code=c.code,
            total_price=c.total_price,
            formatted_total_price=c.formatted_total_price,
            is_complete=c.is_complete,
            max_turnaround_hours=c.max_turnaround_hours,
        )


def compare(
    snapshot: PriceSnapshot,
    canonical_test_ids: Sequence[str],
    options: Optional[ComparisonOptions] = None,
    config: Optional[ComparisonConfig] = None,
) -> ComparisonResult:
    return ComparisonAggregator(snapshot, config).compare(canonical_test_ids, options)
