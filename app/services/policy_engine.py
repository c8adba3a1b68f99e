"""
Expense Lifecycle - Policy Engine

Pure validation of expense reports against spending policy.

Nothing in this module performs I/O: the caller passes a snapshot of the
report together with the caps and mileage rates that apply, so a report can
be re-validated deterministically against historical rules.

Two kinds of findings are produced, both keyed by field path
(``reporting_period_end``, ``items[0].amount_cents``,
``items[2].receipts[0].mime_type``):

- errors: hard failures that block submission
- exceptions: soft cap violations that may be submitted but need an
  approver's override justification
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple
import uuid

from app.models.expense import ExpenseCategory
from app.models.policy import CapLimitType


# Categories whose per-diem caps accumulate over a day
PER_DIEM_CATEGORIES: FrozenSet[ExpenseCategory] = frozenset({ExpenseCategory.MEAL})


# ===========================================
# SNAPSHOTS
# ===========================================

@dataclass(frozen=True)
class ReceiptSnapshot:
    file_key: str
    file_name: str
    mime_type: str
    size_bytes: int


@dataclass(frozen=True)
class ItemSnapshot:
    expense_date: date
    category: ExpenseCategory
    amount_cents: int
    reimbursable: bool = True
    distance_miles: Optional[Decimal] = None
    receipts: Tuple[ReceiptSnapshot, ...] = ()


@dataclass(frozen=True)
class ReportSnapshot:
    reporting_period_start: date
    reporting_period_end: date
    currency: str
    items: Tuple[ItemSnapshot, ...] = ()


@dataclass(frozen=True)
class CapSnapshot:
    id: uuid.UUID
    policy_key: str
    category: Optional[ExpenseCategory]
    limit_type: CapLimitType
    amount_cents: int
    active_from: date
    active_to: Optional[date] = None

    def is_active_on(self, on_date: date) -> bool:
        if on_date < self.active_from:
            return False
        return self.active_to is None or on_date <= self.active_to


@dataclass(frozen=True)
class MileageRateSnapshot:
    effective_date: date
    rate_cents_per_mile: Decimal


@dataclass(frozen=True)
class PolicyRules:
    """Tunable thresholds, usually built from settings."""
    receipt_required_threshold_cents: int = 25000
    receipt_max_bytes: int = 5 * 1024 * 1024
    receipt_max_files_per_item: int = 10
    allowed_mime_types: FrozenSet[str] = frozenset(
        {"image/jpeg", "image/png", "image/heic", "application/pdf"}
    )

    @classmethod
    def from_settings(cls, settings) -> "PolicyRules":
        return cls(
            receipt_required_threshold_cents=settings.receipt_required_threshold_cents,
            receipt_max_bytes=settings.receipt_max_bytes,
            receipt_max_files_per_item=settings.receipt_max_files_per_item,
            allowed_mime_types=frozenset(settings.receipt_allowed_mime_types_list),
        )


@dataclass
class ValidationResult:
    """Outcome of a policy evaluation."""
    errors: Dict[str, List[str]] = field(default_factory=dict)
    exceptions: Dict[str, List[str]] = field(default_factory=dict)
    exception_items: Set[int] = field(default_factory=set)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def has_exceptions(self) -> bool:
        return bool(self.exception_items)

    def add_error(self, path: str, message: str) -> None:
        self.errors.setdefault(path, []).append(message)

    def add_exception(self, index: int, path: str, message: str) -> None:
        self.exceptions.setdefault(path, []).append(message)
        self.exception_items.add(index)

    def merge(self, other: "ValidationResult") -> None:
        for path, messages in other.errors.items():
            self.errors.setdefault(path, []).extend(messages)
        for path, messages in other.exceptions.items():
            self.exceptions.setdefault(path, []).extend(messages)
        self.exception_items |= other.exception_items

    def exception_reasons(self, index: int) -> List[str]:
        """Messages attached to one item, in field order."""
        prefix = f"items[{index}]."
        reasons: List[str] = []
        for path, messages in self.exceptions.items():
            if path.startswith(prefix):
                reasons.extend(messages)
        return reasons

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "exceptions": self.exceptions,
            "exception_items": sorted(self.exception_items),
        }


# ===========================================
# HELPERS
# ===========================================

def format_minor(amount_cents: int, currency: str) -> str:
    return f"{Decimal(amount_cents) / 100:.2f} {currency}"


def caps_as_of(caps: Iterable[CapSnapshot], on_date: date) -> List[CapSnapshot]:
    """Caps whose active window contains ``on_date``."""
    return [cap for cap in caps if cap.is_active_on(on_date)]


def _cap_preference(cap: CapSnapshot) -> tuple:
    # Lower sorts first: category match, bounded window, latest start,
    # narrowest window, then policy key and id for a total order.
    bounded = cap.active_to is not None
    window_days = (cap.active_to - cap.active_from).days if bounded else 0
    return (
        0 if cap.category is not None else 1,
        0 if bounded else 1,
        -cap.active_from.toordinal(),
        window_days,
        cap.policy_key,
        str(cap.id),
    )


def select_cap(
    caps: Iterable[CapSnapshot],
    category: ExpenseCategory,
    limit_type: CapLimitType,
    on_date: date,
) -> Optional[CapSnapshot]:
    """
    Pick the single cap that governs ``category`` on ``on_date``.

    Candidates are active caps of the requested limit type that either name
    the category or are category-less defaults. The most specific wins:
    category-specific over default, bounded range over open-ended, later
    ``active_from``, narrower range, then ``policy_key`` and id.
    """
    candidates = [
        cap for cap in caps_as_of(caps, on_date)
        if cap.limit_type == limit_type and cap.category in (None, category)
    ]
    if not candidates:
        return None
    return min(candidates, key=_cap_preference)


def mileage_rate_for(
    rates: Iterable[MileageRateSnapshot],
    on_date: date,
) -> Optional[MileageRateSnapshot]:
    """Most recent rate whose effective date is on or before ``on_date``."""
    effective = [rate for rate in rates if rate.effective_date <= on_date]
    if not effective:
        return None
    return max(effective, key=lambda rate: rate.effective_date)


def expected_mileage_cents(distance_miles: Decimal, rate: MileageRateSnapshot) -> int:
    amount = Decimal(distance_miles) * Decimal(rate.rate_cents_per_mile)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_minor_units(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# ===========================================
# ITEM RULES
# ===========================================

def validate_item(
    report: ReportSnapshot,
    index: int,
    item: ItemSnapshot,
    caps: Sequence[CapSnapshot],
    mileage_rates: Sequence[MileageRateSnapshot],
    rules: PolicyRules,
    day_totals: Optional[Dict[Tuple[date, ExpenseCategory], int]] = None,
    require_complete: bool = True,
) -> ValidationResult:
    """
    Validate one item.

    ``caps`` should already be restricted to the item's date (see
    ``caps_as_of``); ``day_totals`` carries the running same-day totals per
    category for per-diem caps and is updated in place.
    """
    result = ValidationResult()
    prefix = f"items[{index}]"
    currency = report.currency

    if not (report.reporting_period_start <= item.expense_date <= report.reporting_period_end):
        result.add_error(f"{prefix}.expense_date", "Date must fall within the reporting period")

    amount_ok = _is_minor_units(item.amount_cents) and item.amount_cents > 0
    if not _is_minor_units(item.amount_cents):
        result.add_error(f"{prefix}.amount_cents", "Amount must be a whole number of minor units")
    elif item.amount_cents <= 0:
        result.add_error(f"{prefix}.amount_cents", "Amount must be greater than 0")

    # Caps are only meaningful for a usable amount
    if amount_ok:
        if item.category in PER_DIEM_CATEGORIES:
            cap = select_cap(caps, item.category, CapLimitType.PER_DIEM, item.expense_date)
            totals = day_totals if day_totals is not None else {}
            key = (item.expense_date, item.category)
            running = totals.get(key, 0) + item.amount_cents
            totals[key] = running
            if cap is not None and running > cap.amount_cents:
                result.add_exception(
                    index,
                    f"{prefix}.amount_cents",
                    f"Daily {item.category.value} total {format_minor(running, currency)} exceeds "
                    f"per-diem cap {format_minor(cap.amount_cents, currency)} ({cap.policy_key})",
                )

        cap = select_cap(caps, item.category, CapLimitType.PER_ITEM, item.expense_date)
        if cap is not None and item.amount_cents > cap.amount_cents:
            result.add_exception(
                index,
                f"{prefix}.amount_cents",
                f"Amount {format_minor(item.amount_cents, currency)} exceeds per-item cap "
                f"{format_minor(cap.amount_cents, currency)} ({cap.policy_key})",
            )

    if item.category == ExpenseCategory.MILEAGE:
        _validate_mileage(result, index, item, mileage_rates, currency, amount_ok, require_complete)

    _validate_receipts(result, index, item, rules, currency, amount_ok, require_complete)
    return result


def _validate_mileage(
    result: ValidationResult,
    index: int,
    item: ItemSnapshot,
    mileage_rates: Sequence[MileageRateSnapshot],
    currency: str,
    amount_ok: bool,
    require_complete: bool,
) -> None:
    prefix = f"items[{index}]"
    if item.distance_miles is None:
        if require_complete:
            result.add_error(f"{prefix}.distance_miles", "Distance is required for mileage expenses")
        return
    if Decimal(item.distance_miles) <= 0:
        result.add_error(f"{prefix}.distance_miles", "Distance must be greater than 0")
        return

    rate = mileage_rate_for(mileage_rates, item.expense_date)
    if rate is None:
        if require_complete:
            result.add_error(
                f"{prefix}.expense_date",
                f"No mileage rate is in effect on {item.expense_date.isoformat()}",
            )
        return

    expected = expected_mileage_cents(item.distance_miles, rate)
    if amount_ok and item.amount_cents != expected:
        result.add_exception(
            index,
            f"{prefix}.amount_cents",
            f"Mileage amount {format_minor(item.amount_cents, currency)} does not match "
            f"{item.distance_miles} mi at {rate.rate_cents_per_mile} cents/mi "
            f"({format_minor(expected, currency)})",
        )


def _validate_receipts(
    result: ValidationResult,
    index: int,
    item: ItemSnapshot,
    rules: PolicyRules,
    currency: str,
    amount_ok: bool,
    require_complete: bool,
) -> None:
    prefix = f"items[{index}]"

    if (
        require_complete
        and amount_ok
        and item.amount_cents > rules.receipt_required_threshold_cents
        and not item.receipts
    ):
        result.add_error(
            f"{prefix}.receipts",
            f"A receipt is required for expenses over "
            f"{format_minor(rules.receipt_required_threshold_cents, currency)}",
        )

    if len(item.receipts) > rules.receipt_max_files_per_item:
        result.add_error(
            f"{prefix}.receipts",
            f"At most {rules.receipt_max_files_per_item} receipts may be attached to an item",
        )

    for position, receipt in enumerate(item.receipts):
        receipt_path = f"{prefix}.receipts[{position}]"
        if not receipt.file_key:
            result.add_error(f"{receipt_path}.file_key", "File key is required")
        if not receipt.file_name:
            result.add_error(f"{receipt_path}.file_name", "File name is required")
        if not receipt.mime_type:
            result.add_error(f"{receipt_path}.mime_type", "MIME type is required")
        elif receipt.mime_type not in rules.allowed_mime_types:
            result.add_error(f"{receipt_path}.mime_type", f"Unsupported MIME type '{receipt.mime_type}'")
        if receipt.size_bytes <= 0:
            result.add_error(f"{receipt_path}.size_bytes", "File size must be greater than 0")
        elif receipt.size_bytes > rules.receipt_max_bytes:
            result.add_error(
                f"{receipt_path}.size_bytes",
                f"File size must not exceed {rules.receipt_max_bytes} bytes",
            )


# ===========================================
# REPORT RULES
# ===========================================

def validate_report(
    report: ReportSnapshot,
    caps: Sequence[CapSnapshot],
    mileage_rates: Sequence[MileageRateSnapshot],
    rules: PolicyRules,
    require_complete: bool = True,
) -> ValidationResult:
    """
    Validate a whole report.

    Items are evaluated in report order so per-diem running totals flag the
    item that pushes a day over its cap and every later one on that day.
    ``require_complete=False`` is used for drafts: it skips the rules that
    a submitter can still satisfy later (items present, receipts attached,
    mileage details).
    """
    result = ValidationResult()

    if report.reporting_period_end < report.reporting_period_start:
        result.add_error("reporting_period_end", "End date must be on or after the start date")

    currency = (report.currency or "").strip()
    if not currency:
        result.add_error("currency", "Currency is required")
    elif len(currency) != 3 or not currency.isalpha() or not currency.isupper():
        result.add_error("currency", "Currency must be a 3-letter ISO 4217 code")

    if require_complete and not report.items:
        result.add_error("items", "At least one expense item is required")

    day_totals: Dict[Tuple[date, ExpenseCategory], int] = {}
    for index, item in enumerate(report.items):
        result.merge(
            validate_item(
                report,
                index,
                item,
                caps_as_of(caps, item.expense_date),
                mileage_rates,
                rules,
                day_totals=day_totals,
                require_complete=require_complete,
            )
        )

    return result
