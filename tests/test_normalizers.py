from datetime import date, datetime
from decimal import Decimal

from withholdings.models import IncomeCategory
from withholdings.normalizers import parse_amount, parse_category, parse_date, parse_percentage


def test_parse_amount_handles_portuguese_and_english_formats():
    assert parse_amount("450,00") == Decimal("450.00")
    assert parse_amount("1.234,56") == Decimal("1234.56")
    assert parse_amount("1,234.56") == Decimal("1234.56")
    assert parse_amount("€ 100") == Decimal("100")
    assert parse_amount(12.5) == Decimal("12.5")


def test_parse_amount_reads_absolute_value():
    assert parse_amount("-50,00") == Decimal("50.00")
    assert parse_amount(-7) == Decimal("7")


def test_parse_amount_rejects_blank_garbage_and_percentages():
    assert parse_amount("") is None
    assert parse_amount(None) is None
    assert parse_amount("abc") is None
    assert parse_amount("25%") is None


def test_parse_percentage_accepts_fraction_or_percent():
    assert parse_percentage("25%") == Decimal("0.25")
    assert parse_percentage(0.23) == Decimal("0.23")
    assert parse_percentage("23,5") == Decimal("0.235")
    assert parse_percentage(150) is None
    assert parse_percentage(0) is None
    assert parse_percentage("") is None


def test_parse_date_shapes():
    assert parse_date("2025-03-01") == date(2025, 3, 1)
    assert parse_date("01-03-2025") == date(2025, 3, 1)
    assert parse_date("01/03/2025") == date(2025, 3, 1)
    assert parse_date("2025-03-01 00:00:00") == date(2025, 3, 1)
    assert parse_date(datetime(2025, 3, 1, 10, 30)) == date(2025, 3, 1)


def test_parse_date_excel_serial_only_in_plausible_range():
    assert parse_date(45658) == date(2025, 1, 1)
    assert parse_date("45658") == date(2025, 1, 1)
    assert parse_date(100) is None
    assert parse_date("not a date") is None


def test_parse_category():
    assert parse_category("B") == IncomeCategory.INDEPENDENT_WORK
    assert parse_category("Categoria F") == IncomeCategory.RENTAL
    assert parse_category("Rendas") == IncomeCategory.RENTAL
    assert parse_category("Pensões") == IncomeCategory.PENSION
    assert parse_category("Z") is None
    assert parse_category("") is None


def test_parse_amount_rejects_non_finite_and_oversized_values():
    assert parse_amount("1E+30") is None
    assert parse_amount("NaN") is None
    assert parse_amount(Decimal("Infinity")) is None
    assert parse_amount(float("inf")) is None
    assert parse_amount("999.999.999.999,99") == Decimal("999999999999.99")
