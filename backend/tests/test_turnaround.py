"""Turnaround parsing and currency formatting."""
import pytest

from app.services.turnaround import parse_turnaround_hours, slowest, sort_hours
from app.utils.formatting import format_currency, round_half_up


class TestParseTurnaround:
    @pytest.mark.parametrize("text,hours", [
        ("Même jour", 0),
        ("meme jour", 0),
        ("Same day", 0),
        ("24h", 24),
        ("24-48h", 24),
        ("24 – 48 h", 24),
        ("48 heures", 48),
        ("3 jours", 72),
        ("2-3 jours", 48),
        ("24 à 48h", 24),
        ("24 a 48 h", 24),
        ("2 à 3 jours", 48),
        ("24 to 48 hours", 24),
        ("5 business days", 120),
        ("7j", 168),
    ])
    def test_known_formats(self, text, hours):
        assert parse_turnaround_hours(text) == hours

    @pytest.mark.parametrize("text", [None, "", "sur demande", "variable"])
    def test_unknown(self, text):
        assert parse_turnaround_hours(text) is None

    def test_sort_key_puts_unknown_last(self):
        assert sorted([None, 48.0, 0.0], key=sort_hours) == [0.0, 48.0, None]

    def test_slowest(self):
        assert slowest([24.0, None, 72.0]) == 72.0
        assert slowest([None, None]) is None


class TestFormatting:
    def test_round_half_up(self):
        assert round_half_up(2.675, 2) == 2.68
        assert round_half_up(0.125, 2) == 0.13
        assert round_half_up(2.5, 0) == 3.0

    @pytest.mark.parametrize("amount,text", [
        (1250, "1 250,00 MAD"),
        (80, "80,00 MAD"),
        (1234567.891, "1 234 567,89 MAD"),
        (0, "0,00 MAD"),
    ])
    def test_format_currency(self, amount, text):
        assert format_currency(amount) == text

    def test_other_currency(self):
        assert format_currency(10, "EUR") == "10,00 EUR"
