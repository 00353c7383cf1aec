"""
Profiles -- Region, crop and category reference data.

Responsibility:
    Typed, frozen views of the content tables consumed by the simulation:
    region probability profiles, crop economics, and the category rate
    table (what an expense, investment, insurance policy or loan category
    costs, earns and protects against).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Loading from YAML
    lives in harvest_config; the kernel only sees these dataclasses and the
    ContentProvider protocol.

Invariants enforced:
    - Tables are immutable for the lifetime of a simulation (frozen
      dataclasses over MappingProxyType).
    - The four required expense categories are known here so loaders can
      reject tables that omit them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Protocol

from harvest_kernel.exceptions import UnknownCategoryError

# Every simulated year must draw from each of these at least once.
REQUIRED_EXPENSE_CATEGORIES: tuple[str, ...] = (
    "household",
    "farming_inputs",
    "education",
    "healthcare",
)

SAVINGS_CATEGORY = "savings"
HARVEST_INCOME_CATEGORY = "harvest"
INTEREST_INCOME_CATEGORY = "interest"
LOAN_INTEREST_CATEGORY = "loan_interest"


class CategoryKind(str, Enum):
    """What a category does to the ledger."""

    EXPENSE = "expense"
    INVESTMENT = "investment"
    INSURANCE = "insurance"
    LOAN = "loan"


class Liquidity(str, Enum):
    """How readily an allocation can absorb a shock."""

    LIQUID = "liquid"
    LOCKED = "locked"
    ILLIQUID = "illiquid"
    NONE = "none"


def freeze_mapping(data: Mapping) -> MappingProxyType:
    """Read-only copy of a mapping."""
    return MappingProxyType(dict(data))


@dataclass(frozen=True)
class CategoryRate:
    """
    One row of the category-rate table.

    ``expense_share`` > 0 marks a recurring expense category accrued every
    period.  ``coverage_multiple`` and ``covers`` only apply to insurance,
    ``max_amount`` to loans.
    """

    category: str
    kind: CategoryKind
    annual_rate: Decimal = Decimal("0")
    compounding_per_year: int = 1
    liquidity: Liquidity = Liquidity.NONE
    essential: bool = False
    expense_share: Decimal = Decimal("0")
    coverage_multiple: Decimal = Decimal("0")
    covers: frozenset[str] = frozenset()
    max_amount: Decimal | None = None


@dataclass(frozen=True)
class RegionProfile:
    """
    Region probability profile.

    Contract:
        ``season_calendar`` maps crop -> harvest months (1..12, relative to
        the start of the simulated year).  ``event_weights`` and
        ``severity_weights`` are relative, not normalized.
    """

    region: str
    crops: frozenset[str]
    season_calendar: Mapping[str, tuple[int, ...]]
    event_weights: Mapping[str, Decimal]
    severity_weights: Mapping[str, Decimal]
    category_rates: Mapping[str, CategoryRate] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def rate_for(self, category: str) -> CategoryRate:
        """
        Look up a category.

        Raises:
            UnknownCategoryError: If the category is not in the table.
        """
        rate = self.category_rates.get(category)
        if rate is None:
            raise UnknownCategoryError(category)
        return rate

    def categories_of(self, kind: CategoryKind) -> tuple[CategoryRate, ...]:
        """All categories of one kind, in name order."""
        return tuple(
            self.category_rates[name]
            for name in sorted(self.category_rates)
            if self.category_rates[name].kind is kind
        )

    def recurring_expenses(self) -> tuple[CategoryRate, ...]:
        """Expense categories accrued every period, in name order."""
        return tuple(
            rate for rate in self.categories_of(CategoryKind.EXPENSE)
            if rate.expense_share > 0
        )

    def harvest_months(self, crop: str) -> tuple[int, ...]:
        return tuple(self.season_calendar.get(crop, ()))


@dataclass(frozen=True)
class CropEconomics:
    """Income and cost envelope for one crop in one region."""

    crop: str
    region: str
    seasonal_income: Decimal
    monthly_expense_min: Decimal
    monthly_expense_max: Decimal
    opening_capital: Decimal

    @property
    def monthly_expense_range(self) -> tuple[Decimal, Decimal]:
        return self.monthly_expense_min, self.monthly_expense_max


class ContentProvider(Protocol):
    """External content collaborator (region and crop tables)."""

    def get_region_profile(self, region: str) -> RegionProfile:
        """Raises UnknownRegionError for regions without a profile."""
        ...

    def get_crop_economics(self, crop: str, region: str) -> CropEconomics:
        """Raises InvalidConfigError for unknown crop/region pairs."""
        ...
