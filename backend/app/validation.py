from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BeforeValidator, Field, StringConstraints

from .cash.models import CounterpartyType, SourceModule, TxnType, q6


def _to_upper_str(v):
    if v is None:
        return v
    if isinstance(v, Enum):
        v = v.value
    return str(v).strip().upper()


def _strip_str(v):
    if v is None:
        return v
    s = str(v).strip()
    return s or None


# ISO-4217 style codes; registers carry their own currency so no closed list here.
CurrencyCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=3, max_length=3, pattern=r"^[A-Z]{3}$"),
]

# Caller-supplied keys share the column width of derived keys.
IdempotencyKey = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=100),
]

EventUid = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=100),
]

ShortText = Annotated[str, BeforeValidator(_strip_str), StringConstraints(max_length=255)]

PositiveAmount = Annotated[Decimal, Field(gt=0), AfterValidator(q6)]
NonNegativeAmount = Annotated[Decimal, Field(ge=0), AfterValidator(q6)]

TxnTypeCode = Annotated[TxnType, BeforeValidator(_to_upper_str)]
CounterpartyTypeCode = Annotated[CounterpartyType, BeforeValidator(_to_upper_str)]
SourceModuleCode = Annotated[SourceModule, BeforeValidator(_to_upper_str)]
