from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

COMPONENT_TUITION = 'tuition'
COMPONENT_UNIFORM = 'uniform'
COMPONENT_TRANSPORTATION = 'transportation'
COMPONENT_INSCRIPTION_FEE = 'inscription_fee'
COMPONENTS = (
    COMPONENT_TUITION,
    COMPONENT_UNIFORM,
    COMPONENT_TRANSPORTATION,
    COMPONENT_INSCRIPTION_FEE,
)


def to_decimal(value) -> Decimal:
    return Decimal(str(value or '0'))


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percentage_of(amount, percentage) -> Decimal:
    return quantize(to_decimal(amount) * to_decimal(percentage) / Decimal('100'))


def allocate_amounts(total, parts: int) -> list[Decimal]:
    """Split ``total`` into ``parts`` cent amounts that sum exactly to it.

    Largest remainder: every part gets the floored share and the leftover
    cents go one each to the first parts.
    """
    if parts <= 0:
        raise ValueError('Cannot allocate an amount over zero parts.')

    total_cents = int(quantize(total) * 100)
    if total_cents < 0:
        raise ValueError('Cannot allocate a negative amount.')

    base, residual = divmod(total_cents, parts)
    return [
        (Decimal(base + 1 if index < residual else base) * CENT).quantize(CENT)
        for index in range(parts)
    ]


@dataclass(frozen=True)
class ComponentAmounts:
    tuition: Decimal = ZERO
    uniform: Decimal = ZERO
    transportation: Decimal = ZERO
    inscription_fee: Decimal = ZERO

    def __post_init__(self):
        for component in COMPONENTS:
            object.__setattr__(self, component, quantize(getattr(self, component)))

    @property
    def grand_total(self) -> Decimal:
        return quantize(self.tuition + self.uniform + self.transportation + self.inscription_fee)

    def get(self, component: str) -> Decimal:
        if component not in COMPONENTS:
            raise KeyError(component)
        return getattr(self, component)

    def only(self, component: str) -> ComponentAmounts:
        return ComponentAmounts(**{component: self.get(component)})

    def __add__(self, other: ComponentAmounts) -> ComponentAmounts:
        return ComponentAmounts(**{
            component: self.get(component) + other.get(component)
            for component in COMPONENTS
        })

    def as_dict(self) -> dict:
        values = {component: self.get(component) for component in COMPONENTS}
        values['grand_total'] = self.grand_total
        return values


@dataclass(frozen=True)
class LedgerAmounts:
    total: ComponentAmounts
    paid: ComponentAmounts
    remaining: ComponentAmounts
