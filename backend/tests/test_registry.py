"""Registry build: cross-lab matching, aliases, naming, coverage, serialization."""
import pytest

import catalog.registry as reg
from catalog.config import RegistryBuildConfig
from catalog.registry import (
    CanonicalRegistry,
    CanonicalTestDefinition,
    RawCatalogRow,
    RegistryBuilder,
    RegistryError,
    disambiguate,
    title_case,
)


def _by_code(registry, code):
    return registry.by_code[code]


class TestCrossLabMatching:
    """Rows from different laboratories that name the same test share a definition"""

    def test_definition_count(self, registry_build):
        assert len(registry_build.registry) == 9
        assert registry_build.stats.multi_lab == 4
        assert registry_build.stats.single_lab == 5

    def test_same_name_different_codes_merge(self, registry):
        d = _by_code(registry, "GLU")
        assert "gluc" in d.aliases
        assert "glu" in d.aliases

    def test_shared_code_merges(self, registry):
        d = _by_code(registry, "TSH")
        assert "tsh ultrasensible" in d.aliases
        assert "tsh" in d.aliases

    def test_synonym_merges(self, registry):
        d = _by_code(registry, "B12")
        assert "vb12" in d.aliases
        assert "vitamine b12 (cobalamine)" in d.aliases

    def test_specimen_keeps_urine_separate(self, registry):
        serum = _by_code(registry, "CREA")
        urine = _by_code(registry, "CREAU")
        assert serum.canonical_id != urine.canonical_id
        assert "creat" in serum.aliases
        assert "creat" not in urine.aliases
        assert urine.specimen == "URINE_24H"

    def test_iron_is_not_fertility(self, registry):
        assert _by_code(registry, "FER").canonical_id != _by_code(registry, "FERT").canonical_id
        assert _by_code(registry, "FERR").canonical_id != _by_code(registry, "FER").canonical_id

    def test_within_lab_codes_never_merge(self):
        build = RegistryBuilder().build({
            "CDL": [
                RawCatalogRow(code="CA1", raw_name="CALCIUM"),
                RawCatalogRow(code="CA2", raw_name="CALCIUM"),
            ],
        })
        assert len(build.registry) == 2

    def test_number_conflict_keeps_tests_apart(self):
        build = RegistryBuilder().build({
            "A": [RawCatalogRow(code="D1", raw_name="PROFIL DIABETIQUE NO 1")],
            "B": [RawCatalogRow(code="D2", raw_name="PROFIL DIABETIQUE #2")],
        })
        assert len(build.registry) == 2

    def test_greedy_one_to_one(self):
        build = RegistryBuilder().build({
            "A": [RawCatalogRow(code="X", raw_name="GLYCEMIE A JEUN")],
            "B": [
                RawCatalogRow(code="Y1", raw_name="GLYCEMIE A JEUN"),
                RawCatalogRow(code="Y2", raw_name="GLYCEMIE A JEUN"),
            ],
        })
        # Only one of the B rows can join the A concept
        assert len(build.registry) == 2
        assert build.stats.multi_lab == 1


class TestDefinitions:
    def test_primary_code_is_seed_code(self, registry):
        d = registry.lookup("GLUC", None)
        assert d.code == "GLU"

    def test_canonical_names(self, registry):
        assert _by_code(registry, "GLU").canonical_name == "Glycemie A Jeun"
        assert _by_code(registry, "TSH").canonical_name == "TSH"
        assert _by_code(registry, "B12").canonical_name == "Vitamine B12"
        assert _by_code(registry, "CREAU").canonical_name.endswith("(Urine 24h)")

    def test_profile_category(self, registry):
        assert _by_code(registry, "FERT").category is reg.TestCategory.PROFILE
        assert _by_code(registry, "GLU").category is reg.TestCategory.INDIVIDUAL

    def test_medical_category(self, registry):
        assert _by_code(registry, "GLU").medical_category == "Diabetes/Glucose"
        assert _by_code(registry, "TSH").medical_category == "Thyroid"
        assert _by_code(registry, "FER").medical_category == "Iron/Anemia"

    def test_definitions_are_immutable(self, registry):
        d = _by_code(registry, "GLU")
        with pytest.raises(Exception):
            d.code = "OTHER"
        with pytest.raises(TypeError):
            registry.by_code["NEW"] = d

    def test_names_unique(self, registry):
        names = [d.canonical_name.casefold() for d in registry]
        assert len(names) == len(set(names))


class TestTitleCase:
    def test_keeps_short_abbreviations(self):
        assert title_case("ALT ET AST") == "ALT ET AST"
        assert title_case("BILAN HEPATIQUE ALT") == "Bilan Hepatique ALT"

    def test_lowercases_long_words(self):
        assert title_case("FERRITINE") == "Ferritine"


class TestDisambiguation:
    """First-seen keeps the bare name; later duplicates get the code appended"""

    def _def(self, cid, name, code):
        return CanonicalTestDefinition(
            canonical_id=cid, canonical_name=name, code=code, category=reg.TestCategory.INDIVIDUAL,
        )

    def test_first_seen_keeps_name(self):
        out, renamed = disambiguate([self._def(1, "Calcium", "CA1"), self._def(2, "Calcium", "CA2")])
        assert [d.canonical_name for d in out] == ["Calcium", "Calcium (CA2)"]
        assert renamed == 1

    def test_stable_when_more_are_added(self):
        before, _ = disambiguate([self._def(1, "Calcium", "CA1"), self._def(2, "Calcium", "CA2")])
        after, _ = disambiguate([
            self._def(3, "Calcium", "CA3"), self._def(2, "Calcium", "CA2"), self._def(1, "Calcium", "CA1"),
        ])
        assert [d.canonical_name for d in after][:2] == [d.canonical_name for d in before]
        assert after[2].canonical_name == "Calcium (CA3)"

    def test_repeated_code_gets_counter(self):
        out, _ = disambiguate([
            self._def(1, "Calcium", "CA"), self._def(2, "Calcium", "CA"), self._def(3, "Calcium", "CA"),
        ])
        assert [d.canonical_name for d in out] == ["Calcium", "Calcium (CA)", "Calcium (CA #2)"]

    def test_renamed_definition_resolves_by_new_name(self):
        build = RegistryBuilder().build({
            "CDL": [RawCatalogRow(code="CA1", raw_name="CALCIUM"), RawCatalogRow(code="CA2", raw_name="CALCIUM")],
        })
        assert build.registry.lookup(None, "Calcium (CA2)").code == "CA2"


class TestCoverage:
    def test_every_row_resolves(self, registry_build, raw_catalogs):
        cov = registry_build.coverage
        assert cov.total_rows == sum(len(rows) for rows in raw_catalogs.values())
        assert cov.resolved_rows == cov.total_rows
        assert cov.meets_target
        assert cov.by_laboratory["DYNACARE"] == {"total": 6, "resolved": 6}

    def test_unresolved_rows_are_reported(self, registry):
        builder = RegistryBuilder(RegistryBuildConfig(min_coverage=0.99))
        report = builder.coverage(registry, {
            "NEWLAB": [RawCatalogRow(code="ZN", raw_name="ZINC"), RawCatalogRow(code="GLU", raw_name="x")],
        })
        assert report.resolved_rows == 1
        assert report.coverage == 0.5
        assert not report.meets_target
        assert [u.raw_name for u in report.unresolved] == ["ZINC"]

    def test_row_without_code_keeps_its_name(self):
        build = RegistryBuilder().build({"A": [RawCatalogRow(code="", raw_name="Magnésium")]})
        assert build.coverage.resolved_rows == 1
        assert build.registry.lookup(None, "magnesium") is not None


class TestRegistryIndexes:
    def test_code_collision_keeps_first(self):
        first = CanonicalTestDefinition(1, "Alpha", "X", reg.TestCategory.INDIVIDUAL)
        second = CanonicalTestDefinition(2, "Beta", "x", reg.TestCategory.INDIVIDUAL)
        registry = CanonicalRegistry([second, first])
        assert registry.by_code["X"] is first

    def test_alias_collision_keeps_first(self):
        first = CanonicalTestDefinition(1, "Alpha", "A", reg.TestCategory.INDIVIDUAL, aliases=frozenset({"shared"}))
        second = CanonicalTestDefinition(2, "Beta", "B", reg.TestCategory.INDIVIDUAL, aliases=frozenset({"shared"}))
        registry = CanonicalRegistry.from_definitions([first, second])
        assert registry.by_alias["shared"] is first


class TestSerialization:
    def test_json_round_trip_preserves_lookups(self, registry, tmp_path):
        path = tmp_path / "registry.json"
        registry.dump(path)
        loaded = CanonicalRegistry.load(path)
        assert len(loaded) == len(registry)
        assert loaded.lookup("GLUC", None).canonical_name == "Glycemie A Jeun"

    def test_invalid_json(self):
        with pytest.raises(RegistryError):
            CanonicalRegistry.from_json("{not json")

    def test_definition_without_code(self):
        with pytest.raises(RegistryError):
            CanonicalRegistry.from_json('[{"canonical_id": 1, "canonical_name": "X", "code": ""}]')

    def test_not_a_list(self):
        with pytest.raises(RegistryError):
            CanonicalRegistry.from_json('{"canonical_id": 1}')
