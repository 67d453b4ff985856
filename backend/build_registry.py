"""
Registry build — one-time provisioning step.

Reads each laboratory's parsed catalog (JSON list of rows), builds the
canonical registry, writes it to disk and optionally mirrors it into the
database and ingests the catalogs as price lists.

    python build_registry.py CDL=data/cdl.json DYNACARE=data/dyn.json \
        --out registry.json --sync --ingest
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Tuple

from app.core.config import settings
from catalog.registry import RawCatalogRow, RegistryBuilder, RegistryError

log = logging.getLogger("build_registry")


def _row(item: dict) -> RawCatalogRow:
    price = item.get("price")
    return RawCatalogRow(
        code=str(item.get("code") or "").strip(),
        raw_name=str(item.get("raw_name") or item.get("name") or "").strip(),
        price=float(price) if price not in (None, "") else None,
        category=item.get("category"),
        turnaround=item.get("turnaround") or item.get("turnaroundTime"),
        tube_type=item.get("tube_type") or item.get("tube"),
        test_type=item.get("test_type") or item.get("type"),
    )


def load_catalog(path: Path) -> List[RawCatalogRow]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise RegistryError(f"cannot read catalog {path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("tests") or data.get("rows") or []
    if not isinstance(data, list):
        raise RegistryError(f"catalog {path} must be a JSON list of rows")
    try:
        return [_row(item) for item in data if isinstance(item, dict)]
    except (TypeError, ValueError) as e:
        raise RegistryError(f"invalid row in {path}: {e}") from e


def parse_sources(values: List[str]) -> List[Tuple[str, Path]]:
    out = []
    for v in values:
        lab, sep, path = v.partition("=")
        if not sep or not lab or not path:
            raise RegistryError(f"expected LAB=path, got {v!r}")
        out.append((lab.strip(), Path(path)))
    return out


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Build the canonical test registry from laboratory catalogs")
    parser.add_argument("catalogs", nargs="+", help="LAB=path.json, the first catalog seeds the registry")
    parser.add_argument("--out", default="registry.json", help="Where to write the registry JSON")
    parser.add_argument("--sync", action="store_true", help="Mirror the registry into the database")
    parser.add_argument("--ingest", action="store_true", help="Also ingest each catalog as an active price list")
    parser.add_argument("--report", help="Write the coverage report JSON here")
    parser.add_argument("--strict", action="store_true", help="Exit non-zero when coverage is below target")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        sources = parse_sources(args.catalogs)
        catalogs: Dict[str, List[RawCatalogRow]] = {lab: load_catalog(path) for lab, path in sources}
    except RegistryError as e:
        log.error("%s", e)
        return 2

    build = RegistryBuilder(settings.registry_config()).build(catalogs)
    build.registry.dump(args.out)
    log.info("Wrote %d definitions to %s", len(build.registry), args.out)

    if args.report:
        payload = {"coverage": build.coverage.model_dump(), "stats": build.stats.model_dump()}
        Path(args.report).write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    if args.sync or args.ingest:
        from app.db.database import SessionLocal, engine
        from app.services.ingestion import ingest_price_list, sync_registry, upsert_laboratory
        from catalog.resolver import Resolver
        import app.models.models as model

        model.Base.metadata.create_all(bind=engine)
        db = SessionLocal()
        try:
            sync_registry(db, build.registry)
            if args.ingest:
                resolver = Resolver(build.registry, settings.registry_config())
                for lab_code, path in sources:
                    lab = upsert_laboratory(db, lab_code)
                    ingest_price_list(db, lab, catalogs[lab_code], resolver, file_name=path.name)
        finally:
            db.close()

    if args.strict and not build.coverage.meets_target:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
