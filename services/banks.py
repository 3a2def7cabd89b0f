from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

# display name -> aliases seen on statements (matched case/punctuation-insensitively)
KNOWN_BANKS: Dict[str, Tuple[str, ...]] = {
    "National Bank of Egypt": ("nbe", "national bank of egypt", "al ahly bank", "ahly"),
    "Banque Misr": ("bm", "banque misr", "bank misr", "misr bank"),
    "Commercial International Bank": ("cib", "commercial international bank", "cib egypt"),
    "QNB Alahli": ("qnb", "qnb alahli", "qnb al ahli", "qatar national bank alahli"),
    "HSBC Egypt": ("hsbc", "hsbc egypt", "hsbc bank egypt"),
    "Banque du Caire": ("bdc", "banque du caire", "bank du caire", "bank of cairo"),
    "Arab African International Bank": ("aaib", "arab african international bank"),
    "Bank of Alexandria": ("alexbank", "alex bank", "bank of alexandria"),
    "Credit Agricole Egypt": ("credit agricole", "credit agricole egypt", "ca egypt"),
    "Emirates NBD Egypt": ("emirates nbd", "enbd", "emirates nbd egypt"),
    "Faisal Islamic Bank of Egypt": ("faisal", "faisal islamic bank", "faisal islamic bank of egypt"),
    "Abu Dhabi Islamic Bank Egypt": ("adib", "abu dhabi islamic bank", "adib egypt"),
    "Attijariwafa Bank Egypt": ("attijariwafa", "attijariwafa bank"),
    "Arab Bank": ("arab bank",),
    "Mashreq Bank": ("mashreq", "mashreq bank"),
    "First Abu Dhabi Bank Misr": ("fab misr", "fabmisr", "first abu dhabi bank misr", "fab"),
    "Suez Canal Bank": ("suez canal bank", "scb"),
    "Housing and Development Bank": ("hdb", "housing and development bank", "housing & development bank"),
    "Egyptian Gulf Bank": ("egb", "egyptian gulf bank"),
    "Al Baraka Bank Egypt": ("al baraka", "albaraka", "al baraka bank egypt"),
    "Kuwait Finance House Egypt": ("kfh", "kuwait finance house"),
    "Export Development Bank of Egypt": ("ebe", "export development bank of egypt"),
    "Industrial Development Bank": ("idb", "industrial development bank"),
    "Agricultural Bank of Egypt": ("abe", "agricultural bank of egypt"),
    "Banque Misr Liban": ("banque misr liban",),
    "Citibank Egypt": ("citi", "citibank", "citibank egypt"),
}

# Short aliases are too ambiguous for free-text containment matching
_MIN_CONTAINED_ALIAS = 4


def _normalize(name: str) -> str:
    name = name.lower().replace("&", " and ")
    name = re.sub(r"[^a-z0-9 ]+", " ", name)
    name = re.sub(r"\bs\s*a\s*e\b", " ", name)  # "S.A.E." legal suffix
    return re.sub(r"\s+", " ", name).strip()


def _build_index() -> Tuple[Dict[str, str], List[Tuple[str, str]]]:
    exact: Dict[str, str] = {}
    contained: List[Tuple[str, str]] = []
    for display, aliases in KNOWN_BANKS.items():
        for alias in (display, *aliases):
            key = _normalize(alias)
            exact.setdefault(key, display)
            if len(key) >= _MIN_CONTAINED_ALIAS:
                contained.append((key, display))
    # Longest alias first so "banque misr liban" beats "banque misr"
    contained.sort(key=lambda item: len(item[0]), reverse=True)
    return exact, contained


_EXACT, _CONTAINED = _build_index()


def resolve_display_name(raw_name: Optional[str]) -> Optional[str]:
    """
    Map an extracted bank name onto the canonical display name of a known bank.
    Exact alias matches win over free-text containment; unknown names give None.
    """
    if not raw_name:
        return None
    key = _normalize(raw_name)
    if not key:
        return None
    if key in _EXACT:
        return _EXACT[key]
    padded = f" {key} "
    for alias, display in _CONTAINED:
        if f" {alias} " in padded:
            return display
    return None


def known_bank_names() -> List[str]:
    return list(KNOWN_BANKS.keys())
