"""
Field codecs: how declared field types are stored and loaded.

A record class declares its columns as type tags such as ``"Varchar(255)"``
or ``"Enum('Draft,Published', 'Draft')"``. The FieldTypeRegistry parses a tag
into a codec instance. Scalar codecs map one logical field to one column.
Composite codecs (Money) span several physical columns and take part in
query construction and write manipulation themselves.
"""
import re
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple, Type

import sqlalchemy as sa

from hierorm.errors import ConfigurationError

logger = logging.getLogger("FieldTypeRegistry")

_TAG_PATTERN = re.compile(r"^\s*(\w+)\s*(?:\((.*)\))?\s*$", re.DOTALL)
_ARG_PATTERN = re.compile(r"'[^']*'|\"[^\"]*\"|[^,]+")
_NZ_DATE = re.compile(r"^(\d+)/(\d+)/(\d+)$")
_NUMERIC = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?\s*$")

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and bool(_NUMERIC.match(value))


def parse_type_tag(tag: str) -> Tuple[str, List[str]]:
    """Split ``"Name(arg1, 'arg 2')"`` into ``("Name", ["arg1", "arg 2"])``."""
    match = _TAG_PATTERN.match(tag)
    if not match:
        raise ConfigurationError(f"Malformed field type '{tag}'")
    name, raw_args = match.group(1), match.group(2)
    args: List[str] = []
    if raw_args:
        for token in _ARG_PATTERN.findall(raw_args):
            token = token.strip()
            if not token:
                continue
            if len(token) >= 2 and token[0] == token[-1] and token[0] in ("'", '"'):
                token = token[1:-1]
            args.append(token)
    return name, args


class FieldCodec:
    """Scalar codec: one logical field, one column."""
    composite = False

    def __init__(self, *args: str) -> None:
        self.args = args

    def decode(self, raw: Any) -> Any:
        """Storage value -> python value."""
        return raw

    def encode(self, value: Any) -> Any:
        """Python value -> value handed to the storage backend."""
        return value

    def validate(self, value: Any) -> Optional[str]:
        """Reason ``value`` cannot be stored, or None when it can."""
        return None

    def column_type(self) -> sa.types.TypeEngine:
        return sa.String(255)

    def default(self) -> Any:
        return None

    def columns(self, name: str) -> Dict[str, "FieldCodec"]:
        """Physical columns backing the field ``name``."""
        return {name: self}

    def __repr__(self) -> str:
        args = ", ".join(self.args)
        return f"{type(self).__name__}({args})"


class Varchar(FieldCodec):
    def __init__(self, size: str = "50", *args: str) -> None:
        super().__init__(size, *args)
        self.size = int(size) if size else 50
        self.nullify_empty = not (args and args[0].lower() == "false")

    def decode(self, raw: Any) -> Any:
        return None if raw is None else str(raw)

    def encode(self, value: Any) -> Any:
        if value is None:
            return None
        value = str(value)
        if value == "" and self.nullify_empty:
            return None
        return value

    def column_type(self) -> sa.types.TypeEngine:
        return sa.String(self.size)


class Text(Varchar):
    def __init__(self, *args: str) -> None:
        super().__init__("50", *args)

    def column_type(self) -> sa.types.TypeEngine:
        return sa.Text()


class Int(FieldCodec):
    def decode(self, raw: Any) -> Any:
        if raw is None or raw == "":
            return None
        return int(float(raw)) if isinstance(raw, str) else int(raw)

    def encode(self, value: Any) -> Any:
        return self.decode(value)

    def validate(self, value: Any) -> Optional[str]:
        if value is None or value == "" or isinstance(value, bool) or is_numeric(value):
            return None
        return f"'{value}' is not a whole number"

    def column_type(self) -> sa.types.TypeEngine:
        return sa.Integer()


class ForeignKey(Int):
    """``<Relation>ID`` columns of one-to-one relations; 0 means unset."""

    def decode(self, raw: Any) -> Any:
        value = super().decode(raw)
        return 0 if value is None else value

    def default(self) -> Any:
        return 0


class Float(FieldCodec):
    def decode(self, raw: Any) -> Any:
        if raw is None or raw == "":
            return None
        return float(raw)

    def encode(self, value: Any) -> Any:
        return self.decode(value)

    def validate(self, value: Any) -> Optional[str]:
        if value is None or value == "" or isinstance(value, bool) or is_numeric(value):
            return None
        return f"'{value}' is not a number"

    def column_type(self) -> sa.types.TypeEngine:
        return sa.Float()


class Boolean(FieldCodec):
    def decode(self, raw: Any) -> Any:
        if raw is None:
            return None
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)

    def encode(self, value: Any) -> Any:
        return self.decode(value)

    def column_type(self) -> sa.types.TypeEngine:
        return sa.Boolean()

    def default(self) -> Any:
        return False


class Datetime(FieldCodec):
    """
    Accepts datetimes, ISO strings, NZ style ``dd/mm/yyyy`` dates and
    unix timestamps. Empty values become NULL; unparseable strings too.
    """
    python_type: Type = datetime

    def decode(self, raw: Any) -> Any:
        if raw is None or raw is False or (isinstance(raw, str) and not raw.strip()):
            return None
        if isinstance(raw, datetime):
            return raw.replace(microsecond=0)
        if isinstance(raw, date):
            return datetime(raw.year, raw.month, raw.day)
        if is_numeric(raw):
            return datetime.fromtimestamp(float(raw)).replace(microsecond=0)
        if isinstance(raw, str):
            value = raw.strip()
            nz = _NZ_DATE.match(value)
            if nz:
                day, month, year = (int(part) for part in nz.groups())
                try:
                    return datetime(year, month, day)
                except ValueError:
                    return None
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(microsecond=0)
            except ValueError:
                logger.debug(f"Could not parse '{value}' as a datetime")
                return None
        return None

    def encode(self, value: Any) -> Any:
        return self.decode(value)

    def column_type(self) -> sa.types.TypeEngine:
        return sa.DateTime()


class Date(Datetime):
    python_type = date

    def decode(self, raw: Any) -> Any:
        value = super().decode(raw)
        return value.date() if isinstance(value, datetime) else value

    def column_type(self) -> sa.types.TypeEngine:
        return sa.Date()


class Enum(FieldCodec):
    """``Enum('A,B,C', 'A')``: allowed values and an optional default."""

    def __init__(self, values: str = "", default: Optional[str] = None, *args: str) -> None:
        super().__init__(values, *([default] if default is not None else []), *args)
        self.values = [v.strip() for v in values.split(",") if v.strip()]
        self._default = default.strip() if default else None

    def encode(self, value: Any) -> Any:
        if value is None or value == "":
            return self._default
        if str(value) not in self.values:
            raise ValueError(f"'{value}' is not one of {self.values}")
        return str(value)

    def validate(self, value: Any) -> Optional[str]:
        if value is None or value == "" or str(value) in self.values:
            return None
        return f"'{value}' is not one of {', '.join(self.values)}"

    def default(self) -> Any:
        return self._default

    def column_type(self) -> sa.types.TypeEngine:
        return sa.String(max([len(v) for v in self.values] or [50]))


class MoneyValue:
    """Amount and currency pair that tracks its own modifications."""

    def __init__(self, amount: Optional[float] = None, currency: Optional[str] = None) -> None:
        self._amount = amount
        self._currency = currency
        self._changed = False

    @property
    def amount(self) -> Optional[float]:
        return self._amount

    @amount.setter
    def amount(self, value: Optional[float]) -> None:
        if value != self._amount:
            self._amount = value
            self._changed = True

    @property
    def currency(self) -> Optional[str]:
        return self._currency

    @currency.setter
    def currency(self, value: Optional[str]) -> None:
        if value != self._currency:
            self._currency = value
            self._changed = True

    def is_changed(self) -> bool:
        return self._changed

    def mark_clean(self) -> None:
        self._changed = False

    def copy(self) -> "MoneyValue":
        """An unmodified copy holding the same amount and currency."""
        return MoneyValue(self._amount, self._currency)

    def exists(self) -> bool:
        return self._amount is not None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MoneyValue):
            return NotImplemented
        return (self._amount, self._currency) == (other._amount, other._currency)

    def __hash__(self) -> int:
        return hash((self._amount, self._currency))

    def __repr__(self) -> str:
        return f"MoneyValue({self._amount!r}, {self._currency!r})"


class CompositeCodec(FieldCodec):
    """A field stored across several columns named ``<field><Suffix>``."""
    composite = True
    parts: Dict[str, FieldCodec] = {}

    def columns(self, name: str) -> Dict[str, FieldCodec]:
        return {f"{name}{suffix}": codec for suffix, codec in self.parts.items()}

    def from_record(self, name: str, values: Dict[str, Any]) -> Any:
        raise NotImplementedError

    def coerce(self, value: Any) -> Any:
        raise NotImplementedError

    def write_to_manipulation(self, fields: Dict[str, Any], name: str, value: Any) -> None:
        raise NotImplementedError

    def expand_into_query(self, query: Any, table: str, name: str) -> None:
        """Select the physical columns of ``name`` from ``table``."""
        from hierorm.query import column_ref, quote

        for column in self.columns(name):
            query.add_select(f"{column_ref(table, column)} AS {quote(column)}", column)


class Money(CompositeCodec):
    parts = {"Amount": Float(), "Currency": Varchar("3")}

    def from_record(self, name: str, values: Dict[str, Any]) -> MoneyValue:
        return MoneyValue(values.get(f"{name}Amount"), values.get(f"{name}Currency"))

    def coerce(self, value: Any) -> MoneyValue:
        if isinstance(value, MoneyValue):
            return value
        if value is None:
            return MoneyValue()
        if isinstance(value, dict):
            return MoneyValue(value.get("Amount"), value.get("Currency"))
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return MoneyValue(value[0], value[1])
        raise ValueError(f"Cannot use {value!r} as a Money value")

    def write_to_manipulation(self, fields: Dict[str, Any], name: str, value: Any) -> None:
        money = self.coerce(value)
        fields[f"{name}Amount"] = self.parts["Amount"].encode(money.amount)
        fields[f"{name}Currency"] = self.parts["Currency"].encode(money.currency)


class FieldTypeRegistry:
    """Maps type tags to codec instances; parsed codecs are memoized per tag."""

    def __init__(self) -> None:
        self._types: Dict[str, Type[FieldCodec]] = {}
        self._codecs: Dict[str, FieldCodec] = {}

    @classmethod
    def default(cls) -> "FieldTypeRegistry":
        registry = cls()
        for codec_class in (Varchar, Text, Int, ForeignKey, Float, Boolean, Datetime, Date, Enum, Money):
            registry.register(codec_class.__name__, codec_class)
        registry.register("HTMLText", Text)
        registry.register("Decimal", Float)
        return registry

    def register(self, name: str, codec_class: Type[FieldCodec]) -> None:
        self._types[name] = codec_class
        self._codecs = {tag: codec for tag, codec in self._codecs.items()
                        if parse_type_tag(tag)[0] != name}

    def codec(self, tag: str) -> FieldCodec:
        if tag in self._codecs:
            return self._codecs[tag]
        name, args = parse_type_tag(tag)
        codec_class = self._types.get(name)
        if codec_class is None:
            raise ConfigurationError(f"Unknown field type '{name}' in '{tag}'")
        codec = codec_class(*args)
        self._codecs[tag] = codec
        logger.debug(f"Created codec {codec!r} for '{tag}'")
        return codec

    def is_composite(self, tag: str) -> bool:
        return self.codec(tag).composite

    def known_types(self) -> List[str]:
        return sorted(self._types)
