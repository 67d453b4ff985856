"""HTTP surface over a seeded in-memory database."""
import pytest

from app.services.ingestion import upsert_bundle_deal


@pytest.fixture
def ids(seeded):
    return {
        "cdl": seeded["labs"]["CDL"].id,
        "dyn": seeded["labs"]["DYNACARE"].id,
        "glu": seeded["mappings"][1],
        "tsh": seeded["mappings"][2],
    }


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_metrics(self, client, seeded):
        body = client.get("/metrics").json()
        assert body["counts"] == {"laboratories": 2, "canonical_tests": 9, "lab_tests": 13, "mapping_entries": 13}
        assert body["mappings"]["by_match_type"] == {"EXACT": 13}


class TestSearchEndpoint:
    def test_search(self, client, seeded):
        body = client.get("/tests/search", params={"q": "tsh"}).json()
        first = body["results"][0]
        assert first["name"] == "TSH"
        assert first["canonical_name"] == "TSH"
        assert first["match_type"] == "EXACT"
        assert {r["laboratory_name"] for r in body["results"]} >= {"Cdl", "Dynacare"}

    def test_hit_id_feeds_comparison(self, client, ids):
        hit = client.get("/tests/search", params={"q": "tsh"}).json()["results"][0]
        assert hit["test_mapping_id"] == ids["tsh"]
        assert hit["canonical_id"] == 2
        body = client.post("/comparison", json={"test_mapping_ids": [hit["test_mapping_id"]]}).json()
        assert body["unknown_test_ids"] == []
        assert {lab["id"] for lab in body["laboratories"]} == {ids["cdl"], ids["dyn"]}

    def test_short_query(self, client, seeded):
        assert client.get("/tests/search", params={"q": "a"}).json() == {"query": "a", "results": []}

    def test_laboratory_filter(self, client, ids):
        body = client.get("/tests/search", params={"q": "tsh", "laboratory_id": ids["cdl"]}).json()
        assert {r["laboratory_id"] for r in body["results"]} == {ids["cdl"]}

    def test_bad_page(self, client, seeded):
        assert client.get("/tests/search", params={"q": "tsh", "page": 0}).status_code == 422


class TestResolveEndpoint:
    def test_code_alias(self, client, ids):
        body = client.get("/tests/resolve", params={"code": "GLUC"}).json()
        assert body["match_type"] == "EXACT"
        assert body["definition"]["code"] == "GLU"
        assert body["test_mapping_id"] == ids["glu"]

    def test_no_match(self, client, seeded):
        body = client.get("/tests/resolve", params={"code": "ZN", "name": "ZINC"}).json()
        assert body["match_type"] == "NONE"
        assert body["definition"] is None


class TestComparisonEndpoint:
    def test_cheapest(self, client, ids):
        body = client.post("/comparison", json={"test_mapping_ids": [ids["glu"], ids["tsh"]]}).json()
        assert body["cheapest_laboratory"]["id"] == ids["dyn"]
        assert body["cheapest_laboratory"]["total_price"] == 145.0
        assert body["price_matrix"][ids["glu"]] == {ids["cdl"]: 30.0, ids["dyn"]: 35.0}

    def test_custom_price_with_dashed_ids(self, client, ids):
        key = f"{ids['glu']}-{ids['cdl']}"
        body = client.post("/comparison", json={
            "test_mapping_ids": [ids["glu"], ids["tsh"]],
            "custom_prices": {key: 10.0},
        }).json()
        assert body["cheapest_laboratory"]["id"] == ids["cdl"]
        assert body["cheapest_laboratory"]["total_price"] == 130.0

    def test_multi_lab(self, client, ids):
        body = client.post("/comparison", json={"test_mapping_ids": [ids["glu"], ids["tsh"]]}).json()
        multi = body["multi_lab_selection"]
        assert multi["total_price"] == 140.0
        assert multi["selection_mode"] == "CHEAPEST"

    def test_unknown_ids(self, client, ids):
        body = client.post("/comparison", json={"test_mapping_ids": [ids["glu"], "nope"]}).json()
        assert body["unknown_test_ids"] == ["nope"]

    def test_invalid_objective(self, client, ids):
        resp = client.post("/comparison", json={"test_mapping_ids": [ids["glu"]], "objective": "speed"})
        assert resp.status_code == 422


class TestBundleEndpoints:
    def test_distribute(self, client, ids):
        body = client.post("/bundles/distribute", json={
            "custom_rate": 100.0,
            "test_mapping_ids": [ids["glu"], ids["tsh"]],
            "prices": {
                f"{ids['glu']}-{ids['cdl']}": 30.0,
                f"{ids['tsh']}-{ids['cdl']}": 120.0,
                f"{ids['glu']}-{ids['dyn']}": 35.0,
            },
        }).json()
        assert body["prices"] == {
            f"{ids['glu']}-{ids['cdl']}": 20.0,
            f"{ids['tsh']}-{ids['cdl']}": 80.0,
        }

    def test_quotes(self, client, db, resolver, ids):
        upsert_bundle_deal(db, resolver, "Bilan", 100.0, ["Glycemie A Jeun", "TSH"])
        quotes = client.get("/bundles/quotes").json()["quotes"]
        assert len(quotes) == 1
        q = quotes[0]
        assert q["laboratory_id"] == ids["dyn"]
        assert q["original_total"] == 145.0
        assert q["savings"] == 45.0
        assert q["savings_percent"] == 31
