"""
Matching rules — deterministic, no ML dependencies.

- Trigram similarity (pg_trgm semantics) for interactive search
- Token Jaccard / containment and normalized Levenshtein for cross-lab matching
- Synonym bonus, false-positive guards, numeric and specimen anchoring
"""
import re
from functools import lru_cache
from typing import List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from .normalize import extract_integers, normalize_medical, strip_accents, tokenize
from .synonyms import synonym_forms

_NON_ALNUM = re.compile(r"[^0-9a-z]+")


# ── Trigrams ─────────────────────────────────────────────────────

def trigrams(s: str) -> frozenset:
    """
    pg_trgm-style trigram set: lowercase, split on non-alphanumerics,
    each word padded with two leading spaces and one trailing space.
    """
    words = _NON_ALNUM.split(strip_accents((s or "").lower()))
    grams = set()
    for w in words:
        if not w:
            continue
        padded = f"  {w} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return frozenset(grams)


def trigram_similarity(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over trigram sets; 0.0 when either side is empty."""
    ta, tb = trigrams(a), trigrams(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


# ── Token similarity ─────────────────────────────────────────────

def token_jaccard(a: str, b: str) -> float:
    """Token-level Jaccard similarity between two normalized strings."""
    ta = set(a.split())
    tb = set(b.split())
    if not ta or not tb:
        return 0.0
    inter = len(ta & tb)
    union = len(ta | tb)
    return inter / union


def token_containment(a: str, b: str) -> float:
    """
    What fraction of the smaller token set appears in the larger one?
    'VITAMINE B12' vs 'VITAMINE B12 CYANOCOBALAMINE' → 1.0
    """
    ta = set(a.split())
    tb = set(b.split())
    if not ta or not tb:
        return 0.0
    smaller, larger = (ta, tb) if len(ta) <= len(tb) else (tb, ta)
    return len(smaller & larger) / len(smaller)


def normalized_levenshtein(a: str, b: str) -> float:
    """1 − edit distance / longest length; identical empty strings score 1.0."""
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)


# ── Synonyms ─────────────────────────────────────────────────────

@lru_cache(maxsize=1)
def _normalized_synonym_forms() -> Tuple[Tuple[str, ...], ...]:
    out = []
    for forms in synonym_forms():
        norm = tuple(dict.fromkeys(f for f in (normalize_medical(x) for x in forms) if f))
        if len(norm) > 1:
            out.append(norm)
    return tuple(out)


def _contains_form(tokens_str: str, form: str) -> bool:
    return re.search(rf"(?<!\S){re.escape(form)}(?!\S)", tokens_str) is not None


def synonym_groups(norm: str) -> frozenset:
    """Indexes of the synonym groups with at least one form present in *norm*."""
    return frozenset(
        i for i, forms in enumerate(_normalized_synonym_forms())
        if any(_contains_form(norm, f) for f in forms)
    )


def synonym_score(norm_a: str, norm_b: str, bonus: float = 0.3) -> float:
    """
    *bonus* when one name carries one form of a synonym group and the other
    name carries a different form of the same group ('B12' vs 'COBALAMINE').
    """
    for forms in _normalized_synonym_forms():
        for form_a in forms:
            if not _contains_form(norm_a, form_a):
                continue
            for form_b in forms:
                if form_a != form_b and _contains_form(norm_b, form_b):
                    return bonus
    return 0.0


# ── False positive guards ────────────────────────────────────────

FALSE_POSITIVE_BLOCKS = [
    ("FER", "FERTILITE"),   # iron ≠ fertility
    ("FER", "FERT"),
    ("IRON", "FERTILITE"),
    ("IRON", "FERT"),
]


def _has_word(s: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", s) is not None


def is_blocked_pair(norm_a: str, norm_b: str) -> bool:
    """Pairs that look alike but must never be merged."""
    for w_a, w_b in FALSE_POSITIVE_BLOCKS:
        if (_has_word(norm_a, w_a) and not _has_word(norm_a, w_b)
                and _has_word(norm_b, w_b) and not _has_word(norm_b, w_a)):
            return True
        if (_has_word(norm_b, w_a) and not _has_word(norm_b, w_b)
                and _has_word(norm_a, w_b) and not _has_word(norm_a, w_a)):
            return True

    # Screening panels ≠ single antibody tests
    a_screen = "DEPISTAGE" in norm_a or "SCREENING" in norm_a
    b_screen = "DEPISTAGE" in norm_b or "SCREENING" in norm_b
    if a_screen != b_screen:
        other = norm_b if a_screen else norm_a
        if any(marker in other for marker in ("TOTAL", "IGG", "IGM", "AIGU")):
            return True
    return False


def has_number_conflict(norm_a: str, norm_b: str) -> bool:
    """'DIABETIQUE 1' vs 'DIABETIQUE 2': exactly one number each, and they differ."""
    nums_a = extract_integers(norm_a)
    nums_b = extract_integers(norm_b)
    if len(nums_a) == 1 and len(nums_b) == 1:
        return nums_a[0] != nums_b[0]
    return False


# ── Specimens ────────────────────────────────────────────────────

# Checked in order: 24h urine before random urine before generic urine.
SPECIMEN_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"URINES?\s*(DE\s+)?24\s*H"), "URINE_24H"),
    (re.compile(r"24\s*H(EURES?)?\s*(D'?\s*)?URINE"), "URINE_24H"),
    (re.compile(r"URINAIRE.*24\s*H"), "URINE_24H"),
    (re.compile(r"URINE\s+AU\s+HASARD"), "URINE_RANDOM"),
    (re.compile(r"URINE\s+ALEATOIRE"), "URINE_RANDOM"),
    (re.compile(r"\bURINES?\b"), "URINE"),
    (re.compile(r"\bURINAIRE\b"), "URINE"),
    (re.compile(r"SANG\s+ENTIER"), "WHOLE_BLOOD"),
    (re.compile(r"\bPLASMA\b"), "PLASMA"),
    (re.compile(r"\bSERUM\b"), "SERUM"),
    (re.compile(r"\bSELLES\b"), "STOOL"),
    (re.compile(r"\bGORGE\b"), "THROAT"),
    (re.compile(r"\bVAGINAL"), "VAGINAL"),
    (re.compile(r"\bCERVICAL"), "CERVICAL"),
    (re.compile(r"\bRECTAL"), "RECTAL"),
    (re.compile(r"\bNEZ\b|\bNASAL"), "NASAL"),
    (re.compile(r"\bPLAIE|WOUND"), "WOUND"),
    (re.compile(r"\bCRACHAT|SPUTUM"), "SPUTUM"),
    (re.compile(r"GLOBULES\s+ROUGES"), "RBC"),
    (re.compile(r"\bCHEVEUX\b"), "HAIR"),
]

SPECIMEN_LABELS = {
    "SERUM": "Sérum",
    "URINE": "Urine",
    "URINE_24H": "Urine 24h",
    "URINE_RANDOM": "Urine Hasard",
    "WHOLE_BLOOD": "Sang Entier",
    "PLASMA": "Plasma",
    "STOOL": "Selles",
    "THROAT": "Gorge",
    "VAGINAL": "Vaginal",
    "CERVICAL": "Cervical",
    "RECTAL": "Rectal",
    "NASAL": "Nasal",
    "WOUND": "Plaie",
    "SPUTUM": "Crachat",
    "RBC": "Globules Rouges",
    "HAIR": "Cheveux",
}


def extract_specimen(raw_name: str) -> str:
    name = strip_accents(raw_name or "").upper()
    for pattern, specimen in SPECIMEN_PATTERNS:
        if pattern.search(name):
            return specimen
    return "DEFAULT"


def specimens_compatible(spec_a: str, spec_b: str) -> bool:
    """An unqualified name is assumed to be a serum test."""
    if spec_a == spec_b:
        return True
    return {spec_a, spec_b} == {"DEFAULT", "SERUM"}


# ── Medical category ─────────────────────────────────────────────

_CATEGORY_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("Thyroid", ("thyro", "tsh", r"\bt[34]\b")),
    ("Hepatic/Liver", ("hepatique", "foie", "liver", r"\balt\b", r"\bast\b", r"\bggt\b", "bilirubine")),
    ("Renal/Kidney", ("renal", r"creatinine(?! kinase)", r"\buree\b", r"\bbun\b")),
    ("Iron/Anemia", (r"\bfer\b", "iron", "ferritin", "anem", "transferrin")),
    ("Coagulation", ("coag", "fibrin", r"\binr\b", r"\bptt?\b", "dimere", "plaquette")),
    ("Diabetes/Glucose", ("diab", "glucose", "glycemie", "hba1c", "insuline", "a1c")),
    ("Lipids/Cardiovascular", ("lipid", "cholesterol", "triglyceri", r"\bhdl\b", r"\bldl\b", "cardiovasc")),
    ("Prenatal", ("prenatal",)),
    ("Vitamins", ("vitamine", r"\bvit\b", "b12", "folique", "folate", "ascorb")),
    ("Immunology/Antibodies", ("anticorps", r"\banti\b", r"\bana\b", "immunoglobuline", "complement", "lupus")),
    ("Microbiology", ("culture", "chlamydia", "gonorrh", "strep", "clostridium")),
    ("Hormones/Endocrine", ("hormone", "prolactine", "testosterone", "estradiol", "progesterone",
                            r"\bfsh\b", r"\blh\b", "fertili", "menopause", "dhea", "cortisol", "aldoster")),
    ("Tumor Markers", (r"\bca 1", r"\bcea\b", r"\bpsa\b", r"\bafp\b", "carcino", "marqueur")),
    ("Electrolytes/Minerals", ("electrolyte", "sodium", "potassium", "calcium", "magnesium", "phospho", "chlor")),
    ("Biochemistry Panels", ("biochim", r"\bsma\b", "general", "complet")),
    ("Urinalysis", ("urine", "urinaire")),
    ("Toxicology", ("drogue", "cannabis", "cocaine", "opiac", "ampheta")),
    ("Infectious Disease", ("hepatite", r"\bvih\b", r"\bhiv\b", "syphilis", "herpes")),
    ("Cytology/Pathology", (r"\bpap\b", "cytologie", "biopsie")),
]


def classify_category(raw_name: str) -> str:
    """Coarse medical family used for reporting and filtering; first hit wins."""
    n = normalize_medical(raw_name).lower()
    for label, keywords in _CATEGORY_KEYWORDS:
        if any(re.search(k, n) for k in keywords):
            return label
    return "General"


# ── Cross-lab pair score ─────────────────────────────────────────

def pair_score(
    code_a: str,
    name_a: str,
    code_b: str,
    name_b: str,
    type_a: Optional[str] = None,
    type_b: Optional[str] = None,
) -> Tuple[float, List[str]]:
    """
    Score how likely two catalog rows from different laboratories are the
    same test. Returns (score in [0, 1], reasons).
    """
    norm_a = normalize_medical(name_a)
    norm_b = normalize_medical(name_b)
    code_match = bool(code_a) and (code_a or "").strip().upper() == (code_b or "").strip().upper()

    if is_blocked_pair(norm_a, norm_b):
        return 0.0, ["blocked"]
    if not code_match and has_number_conflict(norm_a, norm_b):
        return 0.0, ["number_conflict"]
    if not code_match and not specimens_compatible(extract_specimen(name_a), extract_specimen(name_b)):
        return 0.0, ["specimen_mismatch"]

    score = 0.0
    reasons: List[str] = []

    # 1. Exact code (strongest signal)
    if code_match:
        score += 0.50
        reasons.append("exact_code")

    # 2. Name similarity
    if norm_a and norm_a == norm_b:
        score += 0.45
        reasons.append("exact_name")
    elif norm_a and norm_b:
        tok_a = " ".join(tokenize(name_a))
        tok_b = " ".join(tokenize(name_b))

        jaccard = token_jaccard(tok_a, tok_b)
        if jaccard > 0.3:
            score += jaccard * 0.35
            reasons.append(f"jaccard:{jaccard:.2f}")

        len_ratio = min(len(norm_a), len(norm_b)) / max(len(norm_a), len(norm_b))
        if len_ratio > 0.5:
            lev = normalized_levenshtein(norm_a, norm_b)
            if lev > 0.6:
                score += lev * 0.15
                reasons.append(f"lev:{lev:.2f}")

        syn = synonym_score(norm_a, norm_b)
        if syn > 0:
            score += syn
            reasons.append("synonym")

        cont = token_containment(tok_a, tok_b)
        if cont > 0.7:
            score += cont * 0.10
            reasons.append(f"contain:{cont:.2f}")

    # 3. Same type bonus
    if type_a and type_b and type_a.lower() == type_b.lower():
        score += 0.02

    return min(score, 1.0), reasons
