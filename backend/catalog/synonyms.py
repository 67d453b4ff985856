"""
Medical synonym groups (French lab vocabulary) and the regex rule table the
search ranker uses for query expansion.

Rules:
  - Every form in a group refers to the same concept (B12 = cobalamine)
  - Groups are data; SynonymTable is the immutable object handed to the
    ranker at construction, so deployments can swap or extend it
"""
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Pattern, Sequence, Tuple

from .normalize import normalize_for_lookup

# ── Synonym Groups ───────────────────────────────────────────────
# key: preferred form → other forms

SYNONYM_GROUPS: dict[str, list[str]] = {
    # ── Vitamins ──
    "VITAMINE B12": ["B12", "CYANOCOBALAMINE", "COBALAMINE", "VIT B12", "VB12"],
    "ACIDE FOLIQUE": ["FOLATE", "FOL", "VITAMINE B9"],
    "VITAMINE D": ["25 HYDROXY VITAMINE D", "CHOLECALCIFEROL", "25 OH D", "VIT D"],
    "VITAMINE C": ["ACIDE ASCORBIQUE"],

    # ── Thyroid ──
    "TSH": ["THYREOSTIMULINE", "HORMONE STIMULATION THYROIDIENNE", "TSH ULTRASENSIBLE"],
    "T3 LIBRE": ["FT3", "FREE T3", "T3L"],
    "T4 LIBRE": ["FT4", "FREE T4", "T4L"],
    "THYROIDE": ["THYROIDIEN"],

    # ── Iron studies ──
    "FER": ["IRON", "FE"],
    "FERRITINE": ["FERR"],
    "TRANSFERRINE": ["TRFN"],

    # ── CBC ──
    "FORMULE SANGUINE COMPLETE": ["FSC", "CBC", "HEMOGRAMME", "NFS"],

    # ── Liver ──
    "HEPATIQUE": ["LIVER", "LFT", "BILAN HEPATIQUE", "FOIE"],
    "ALT": ["ALAT", "SGPT", "ALANINE AMINOTRANSFERASE"],
    "AST": ["ASAT", "SGOT", "ASPARTATE AMINOTRANSFERASE"],
    "GGT": ["GAMMA GLUTAMYLTRANSFERASE", "GAMMA GT"],
    "PHOSPHATASE ALCALINE": ["PAL", "ALP", "ALKP"],
    "BILIRUBINE": ["BILI"],

    # ── Kidney ──
    "CREATININE": ["CREA", "CREAT"],
    "UREE": ["BUN", "AZOTE UREIQUE", "UREA"],

    # ── Lipids ──
    "CHOLESTEROL": ["CHOL"],
    "TRIGLYCERIDES": ["TRIG", "TG"],
    "LIPIDIQUE": ["LIPID", "BILAN LIPIDIQUE"],

    # ── Coagulation ──
    "COAGULATION": ["COAG", "COAGULOGRAMME", "BILAN COAGULATION"],
    "TEMPS QUICK": ["TP", "INR", "RAPPORT INTERNATIONAL NORMALISE"],
    "TEMPS CEPHALINE ACTIVEE": ["TCA", "PTT", "APTT"],
    "FIBRINOGENE": ["FIB", "FIBR"],

    # ── Diabetes ──
    "HEMOGLOBINE A1C": ["HBA1C", "A1C", "HEMOGLOBINE GLYQUEE", "GLYCOSYLEE"],
    "GLUCOSE": ["GLYCEMIE", "SUCRE"],
    "INSULINE": ["INSUL"],

    # ── Hormones ──
    "PROLACTINE": ["PRL", "PRLA", "PROL"],
    "PROGESTERONE": ["PROG"],
    "ESTRADIOL": ["E2", "OESTRADIOL", "ESTR"],
    "TESTOSTERONE": ["TESTO"],
    "HORMONE LUTEINISANTE": ["LH"],
    "HORMONE FOLLICULOSTIMULANTE": ["FSH"],
    "CORTISOL": ["CORT"],
    "DHEAS": ["DHEA S", "DEHYDROEPIANDROSTERONE SULFATE"],

    # ── Immunology ──
    "ANTICORPS ANTINUCLEAIRES": ["ANA", "FAN"],
    "FACTEUR RHUMATOIDE": ["RF", "FR"],
    "PROTEINE C REACTIVE": ["CRP", "C REACTIVE PROTEIN"],
    "PROTEINE C REACTIVE HAUTE SENSIBILITE": ["CRPHS", "HS CRP", "CRP HAUTE SENSIBILITE"],

    # ── Tumor markers ──
    "ANTIGENE PROSTATIQUE SPECIFIQUE": ["PSA", "APS"],
    "ANTIGENE CARCINO EMBRYONNAIRE": ["CEA", "ACE"],
    "CA 125": ["CA125", "C125"],
    "CA 15 3": ["CA153", "C153"],
    "CA 19 9": ["CA199", "C199"],

    # ── Electrolytes ──
    "SODIUM": ["NA"],
    "POTASSIUM": ["K"],
    "CHLORURE": ["CL", "CHLORURES"],
    "ELECTROLYTES": ["IONOGRAMME", "LYTES"],
    "BICARBONATE": ["CO2 TOTAL", "HCO3"],
    "CALCIUM": ["CA"],
    "MAGNESIUM": ["MG"],
    "PHOSPHORE": ["PHOSPHATE", "PO4", "PHOS"],

    # ── Microbiology ──
    "CULTURE URINE": ["CULTURE D URINE", "UROCULTURE", "ECBU"],
    "ANALYSE URINE": ["ANALYSE D URINE", "SOMMAIRE URINE"],
    "MONOTEST": ["MONONUCLEOSE", "MONO"],

    # ── Hepatitis ──
    "HEPATITE A": ["HAV"],
    "HEPATITE B": ["HBV"],
    "HEPATITE C": ["HCV"],

    # ── Other common ──
    "VITESSE SEDIMENTATION": ["SED", "VS", "ESR", "SEDIMENTATION"],
    "AMYLASE": ["AMYL"],
    "ACIDE URIQUE": ["URATE", "URIC"],
    "ALBUMINE": ["ALB"],
    "D DIMERE": ["DDIM", "D DIMER"],
    "TROPONINE": ["TROP", "TROPHS"],
    "LACTATE DESHYDROGENASE": ["LDH"],
    "CREATINE KINASE": ["CK", "CPK"],
    "CALCITONINE": ["CALCI", "CLTN"],
    "CERULOPLASMINE": ["CERU"],

    # ── Profiles ──
    "BIOCHIMIE": ["BIOCHEMISTRY", "SMA", "CHEM"],
    "CARDIOVASCULAIRE": ["CARDIO", "CVD"],
    "FERTILITE": ["FERT"],
    "PRENATAL": ["PREN"],
    "ANEMIE": ["ANEM", "ANEMIA"],
    "COELIAQUE": ["CELIAC", "MALADIE COELIAQUE"],
}

_LETTER_DIGIT = re.compile(r"(?<=[a-z])(?=\d)|(?<=\d)(?=[a-z])")
_SEPARATOR = r"[\s\-]*"


def _form_pattern(form: str) -> str:
    """'VIT B12' → r'vit[\\s\\-]*b[\\s\\-]*12' (spaces, hyphens optional)."""
    key = normalize_for_lookup(form)
    key = _LETTER_DIGIT.sub(" ", key)
    return _SEPARATOR.join(re.escape(part) for part in key.split(" ") if part)


@dataclass(frozen=True)
class SynonymRule:
    """A query matching *pattern* is also searched with every term in *alternates*."""
    pattern: Pattern[str]
    alternates: Tuple[str, ...]

    @classmethod
    def from_forms(cls, forms: Sequence[str]) -> "SynonymRule":
        body = "|".join(_form_pattern(f) for f in forms if f.strip())
        pattern = re.compile(rf"(?<![a-z0-9])(?:{body})(?![a-z0-9])", re.IGNORECASE)
        alternates = tuple(dict.fromkeys(normalize_for_lookup(f) for f in forms if f.strip()))
        return cls(pattern=pattern, alternates=alternates)


@dataclass(frozen=True)
class SynonymTable:
    rules: Tuple[SynonymRule, ...] = ()

    @classmethod
    def from_groups(cls, groups: Mapping[str, Iterable[str]]) -> "SynonymTable":
        return cls(rules=tuple(
            SynonymRule.from_forms([key, *others]) for key, others in groups.items()
        ))

    def extend(self, rules: Iterable[SynonymRule]) -> "SynonymTable":
        return SynonymTable(rules=self.rules + tuple(rules))

    def expand(self, query: str) -> list[str]:
        """
        Alternate search terms for *query*, excluding the query itself.
        Order follows rule order, then the rule's alternates; no duplicates.
        """
        key = normalize_for_lookup(query)
        if not key:
            return []
        out: dict[str, None] = {}
        for rule in self.rules:
            if rule.pattern.search(key):
                for alt in rule.alternates:
                    if alt != key:
                        out.setdefault(alt, None)
        return list(out)


DEFAULT_SYNONYM_TABLE = SynonymTable.from_groups(SYNONYM_GROUPS)


def synonym_forms(groups: Optional[Mapping[str, Iterable[str]]] = None) -> list[list[str]]:
    """All forms of each group, uppercase medical spelling, for build-time scoring."""
    groups = SYNONYM_GROUPS if groups is None else groups
    return [[key, *others] for key, others in groups.items()]
