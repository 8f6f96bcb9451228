def normalize_pair(pair: str) -> str:
    """Comparison form of a pair: upper-case, and ``/USD`` treated as ``/USDT``."""
    if not pair:
        return ""
    p = pair.strip().upper()
    if p.endswith("/USD"):
        p = p + "T"
    return p


def gateway_symbol(pair: str) -> str:
    """Exchange symbol for a pair, e.g. ``ADA/USD`` -> ``ADAUSDT``."""
    sym = (pair or "").strip().upper().replace("/", "")
    if sym.endswith("USD"):
        sym = sym + "T"
    return sym
