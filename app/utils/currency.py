"""Конвертация сумм: рубли <-> копейки (minor units) и форматирование для пользователя."""
from decimal import Decimal, InvalidOperation

MINOR_PER_UNIT = 100


def rub_to_minor(rub: int | str | Decimal) -> int:
    """Whole or decimal rubles -> kopecks. Raises ValueError on fractional kopecks."""
    try:
        value = Decimal(str(rub)) * MINOR_PER_UNIT
    except InvalidOperation as e:
        raise ValueError(f"invalid amount: {rub!r}") from e
    if value != value.to_integral_value():
        raise ValueError(f"amount has fractional kopecks: {rub!r}")
    return int(value)


def minor_to_value(minor: int) -> str:
    """Kopecks -> gateway amount string, e.g. 75000 -> "750.00"."""
    return f"{Decimal(minor) / MINOR_PER_UNIT:.2f}"


def format_rub(minor: int) -> str:
    """Вернуть строку вида «750 ₽» (копейки показываются только если есть)."""
    rub = Decimal(minor) / MINOR_PER_UNIT
    if rub == rub.to_integral_value():
        return f"{int(rub)} ₽"
    return f"{rub:.2f} ₽"
