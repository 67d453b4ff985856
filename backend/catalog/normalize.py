"""
Text normalization for stable matching of laboratory test names despite
casing, accents, punctuation and French filler words.

Two levels:
  - normalize_for_lookup → alias keys (lowercase, accents stripped, trimmed)
  - normalize_medical    → build-time comparison form (uppercase, filler
                           words and punctuation removed)
"""
import re
import unicodedata

_WS = re.compile(r"\s+")
_PUNCT = re.compile(r"[^\w\s\.\+\-/%]")  # keep lab-relevant symbols
_NUM = re.compile(r"(?<!\w)(\d+(\.\d+)?)(?!\w)")
_INT = re.compile(r"\b(\d+)\b")

# Applied in order on the uppercased, accent-free name.
_MEDICAL_FILLERS = [
    (re.compile(r"[‘’`]"), "'"),
    (re.compile(r"#"), " "),
    (re.compile(r"\bPROFIL\b"), ""),
    (re.compile(r"\bNO\s*(?=\d)"), ""),
    (re.compile(r"\bDE\s+LA\b"), ""),
    (re.compile(r"\bDE\s+L'"), ""),
    (re.compile(r"\bDU\b"), ""),
    (re.compile(r"\bDES\b"), ""),
    (re.compile(r"\bDE\b"), ""),
    (re.compile(r"\bD'"), ""),
    (re.compile(r"\bET\b"), ""),
    (re.compile(r"\bLE\b"), ""),
    (re.compile(r"\bLA\b"), ""),
    (re.compile(r"\bLES\b"), ""),
    (re.compile(r"\bL'"), ""),
    (re.compile(r"\bDIRIGES?\s+CONTRE\b"), ""),
    (re.compile(r"\bAVEC\b"), ""),
    (re.compile(r"\bPAR\b"), ""),
    (re.compile(r"\bAU\b"), ""),
    (re.compile(r"\bEN\b"), ""),
    (re.compile(r"\bTYPES?\b"), ""),
    (re.compile(r"[()\[\],.:;/\-+&']"), " "),
]


def strip_accents(s: str) -> str:
    """Decompose (NFD) and drop combining marks: 'Glycémie' → 'Glycemie'."""
    decomposed = unicodedata.normalize("NFD", s or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_for_lookup(s: str) -> str:
    """
    Alias key used both when indexing a registry and when resolving.
    Steps: lowercase → NFD accent strip → collapse whitespace → trim.
    """
    s = strip_accents((s or "").lower())
    return _WS.sub(" ", s).strip()


def norm_text(s: str) -> str:
    """Normalize text for comparison: lowercase, strip punctuation, collapse whitespace."""
    s = strip_accents((s or "").strip().lower())
    s = _PUNCT.sub(" ", s)
    s = _WS.sub(" ", s).strip()
    return s


def normalize_medical(s: str) -> str:
    """
    Build-time normalization for cross-laboratory comparison.

    'Profil DIABÉTIQUE No 1' and 'DIABETIQUE #1' both become 'DIABETIQUE 1'.
    """
    s = strip_accents(s or "").upper()
    for pattern, repl in _MEDICAL_FILLERS:
        s = pattern.sub(repl, s)
    return _WS.sub(" ", s).strip()


def tokenize(s: str) -> list[str]:
    """Word tokens of the medical form of *s*."""
    return [w for w in normalize_medical(s).split(" ") if w]


def extract_numbers(s: str) -> list[str]:
    """Extract all numeric values from a string (e.g., '25', '1.25', '24')."""
    return [m.group(1) for m in _NUM.finditer(s or "")]


def extract_integers(s: str) -> list[int]:
    """Whole numbers appearing as separate words: 'CA 15 3' → [15, 3]."""
    return [int(m.group(1)) for m in _INT.finditer(s or "")]
