from decimal import Decimal, ROUND_HALF_UP


def round_half_up(value: float, places: int = 2) -> float:
    """2.675 → 2.68 (binary floats rounded through their decimal repr)."""
    q = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))


def format_currency(amount: float, currency: str = "MAD") -> str:
    """1250 → '1 250,00 MAD' (French grouping and decimal comma)."""
    text = f"{round_half_up(amount, 2):,.2f}".replace(",", " ").replace(".", ",")
    return f"{text} {currency}"
