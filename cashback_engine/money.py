from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Coerce a DB/JSON number to a 2-dp Decimal.

    SQLite hands SUM() back as float, so go through str() to avoid binary
    artifacts.
    """
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def round_down(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_DOWN)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    return round_down(to_money(amount) * Decimal(str(percent)) / Decimal(100))


def format_amount(value: Decimal) -> str:
    return f"{to_money(value):.2f}"
