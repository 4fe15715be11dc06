"""
Tests for type tag parsing and the field codecs.
"""
from datetime import date, datetime

import pytest
import sqlalchemy as sa

from hierorm.errors import ConfigurationError
from hierorm.fields import (
    Datetime, Enum, FieldCodec, FieldTypeRegistry, Money, MoneyValue, Varchar, is_numeric, parse_type_tag,
)


@pytest.fixture
def field_types():
    return FieldTypeRegistry.default()


class TestTypeTags:
    @pytest.mark.parametrize("tag, expected", [
        ("Int", ("Int", [])),
        ("Varchar(255)", ("Varchar", ["255"])),
        ("Varchar( 100 )", ("Varchar", ["100"])),
        ("Enum('Draft,Published', 'Draft')", ("Enum", ["Draft,Published", "Draft"])),
        ('Enum("A,B")', ("Enum", ["A,B"])),
    ])
    def test_parse(self, tag, expected):
        assert parse_type_tag(tag) == expected

    def test_malformed_tag(self):
        with pytest.raises(ConfigurationError):
            parse_type_tag("Varchar(")

    def test_unknown_type(self, field_types):
        with pytest.raises(ConfigurationError):
            field_types.codec("Geometry")

    def test_codecs_are_memoized(self, field_types):
        assert field_types.codec("Varchar(20)") is field_types.codec("Varchar(20)")
        assert field_types.codec("Varchar(20)") is not field_types.codec("Varchar(30)")

    def test_aliases(self, field_types):
        assert isinstance(field_types.codec("HTMLText").column_type(), sa.Text)
        assert field_types.codec("Decimal").decode("1.5") == 1.5
        assert field_types.is_composite("Money")
        assert "Money" in field_types.known_types()

    def test_custom_type(self, field_types):
        class Upper(FieldCodec):
            def encode(self, value):
                return None if value is None else str(value).upper()

        field_types.register("Upper", Upper)
        assert field_types.codec("Upper").encode("abc") == "ABC"

    @pytest.mark.parametrize("value, expected", [
        (1, True), (1.5, True), ("42", True), (" -3.5e2 ", True), ("", False), ("abc", False), (True, False),
    ])
    def test_is_numeric(self, value, expected):
        assert is_numeric(value) is expected


class TestScalarCodecs:
    def test_varchar_nullifies_empty_strings(self):
        assert Varchar("10").encode("") is None
        assert Varchar("10", "false").encode("") == ""
        assert Varchar("10").encode(5) == "5"
        assert Varchar("10").column_type().length == 10

    def test_int(self, field_types):
        codec = field_types.codec("Int")
        assert codec.decode("7") == 7
        assert codec.decode("7.0") == 7
        assert codec.decode("") is None

    def test_foreign_key_defaults_to_zero(self, field_types):
        codec = field_types.codec("ForeignKey")
        assert codec.decode(None) == 0
        assert codec.default() == 0

    @pytest.mark.parametrize("raw, expected", [
        ("0", False), ("1", True), ("true", True), (0, False), (None, None),
    ])
    def test_boolean(self, field_types, raw, expected):
        assert field_types.codec("Boolean").decode(raw) is expected

    def test_enum(self):
        codec = Enum("Draft,Published", "Draft")
        assert codec.values == ["Draft", "Published"]
        assert codec.default() == "Draft"
        assert codec.encode("") == "Draft"
        assert codec.encode("Published") == "Published"
        with pytest.raises(ValueError):
            codec.encode("Archived")


class TestDatetime:
    @pytest.fixture
    def codec(self):
        return Datetime()

    def test_nz_date(self, codec):
        assert codec.decode("25/12/2020") == datetime(2020, 12, 25)

    def test_impossible_nz_date(self, codec):
        assert codec.decode("31/02/2020") is None

    def test_iso_string(self, codec):
        assert codec.decode("2020-12-25 10:30:00") == datetime(2020, 12, 25, 10, 30)

    def test_timestamp(self, codec):
        assert codec.decode(0) == datetime.fromtimestamp(0)
        assert codec.decode("86400") == datetime.fromtimestamp(86400)

    @pytest.mark.parametrize("raw", [None, "", "  ", False, "not a date"])
    def test_empty_and_garbage(self, codec, raw):
        assert codec.decode(raw) is None

    def test_microseconds_are_dropped(self, codec):
        assert codec.decode(datetime(2020, 1, 1, 1, 1, 1, 999)) == datetime(2020, 1, 1, 1, 1, 1)

    def test_date(self, field_types):
        assert field_types.codec("Date").decode("25/12/2020") == date(2020, 12, 25)


class TestMoney:
    def test_columns(self):
        assert set(Money().columns("Price")) == {"PriceAmount", "PriceCurrency"}

    def test_coerce(self):
        codec = Money()
        assert codec.coerce({"Amount": 1.0, "Currency": "NZD"}) == MoneyValue(1.0, "NZD")
        assert codec.coerce((2.0, "USD")) == MoneyValue(2.0, "USD")
        assert not codec.coerce(None).exists()
        with pytest.raises(ValueError):
            codec.coerce("ten dollars")

    def test_write_to_manipulation(self):
        fields = {}
        Money().write_to_manipulation(fields, "Price", MoneyValue("3.5", "EUR"))
        assert fields == {"PriceAmount": 3.5, "PriceCurrency": "EUR"}

    def test_value_tracks_changes(self):
        money = MoneyValue(1.0, "NZD")
        money.amount = 1.0
        assert not money.is_changed()
        money.currency = "AUD"
        assert money.is_changed()
        money.mark_clean()
        assert not money.is_changed()

    def test_copy_is_independent_and_clean(self):
        money = MoneyValue(1.0, "NZD")
        money.amount = 2.0
        copy = money.copy()
        assert copy == money
        assert not copy.is_changed()
        copy.amount = 3.0
        assert money.amount == 2.0


class TestValidate:
    @pytest.mark.parametrize("tag, value", [
        ("Int", 3), ("Int", "42"), ("Int", None), ("Int", ""), ("Float", "1.5"),
        ("Varchar(10)", "anything"), ("Enum('Draft,Published', 'Draft')", "Published"),
        ("Enum('Draft,Published', 'Draft')", ""),
    ])
    def test_storable_values(self, field_types, tag, value):
        assert field_types.codec(tag).validate(value) is None

    @pytest.mark.parametrize("tag, value, reason", [
        ("Int", "abc", "'abc' is not a whole number"),
        ("Float", "x1", "'x1' is not a number"),
        ("Enum('Draft,Published', 'Draft')", "Archived", "'Archived' is not one of Draft, Published"),
    ])
    def test_rejected_values(self, field_types, tag, value, reason):
        assert field_types.codec(tag).validate(value) == reason
