# Overview: Document family catalogue; numbering, scoping and ledger direction per family.

"""
Document families.

One DocumentFamily value drives the shared allocator, orchestrator and
lifecycle code. Everything that differs between families lives in
FamilyRules so no service branches on family names except where the
business rule is genuinely family-specific (consolidation, returns).

Defaults can be overridden per deployment through
``app.config["DOCUMENT_FAMILIES"]``:

    DOCUMENT_FAMILIES = {"invoice": {"floor": 1000, "denylist": [51, 52]}}
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from flask import current_app, has_app_context

from .errors import ValidationError


class DocumentFamily(str, Enum):
    ORDER = "order"
    REMISSION = "remission"
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"
    PURCHASE_ORDER = "purchase_order"

    @classmethod
    def coerce(cls, value) -> "DocumentFamily":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            allowed = ", ".join(f.value for f in cls)
            raise ValidationError(
                f"Unknown document family '{value}'. Must be one of: {allowed}",
                code="UNKNOWN_FAMILY",
            )


LEDGER_IN = "IN"
LEDGER_OUT = "OUT"


@dataclass(frozen=True)
class FamilyRules:
    prefix: str
    pad: int = 6
    floor: int = 1
    # Numbers above the ceiling belong to the approval service's test range.
    ceiling: int = 999_999
    denylist: frozenset[int] = field(default_factory=frozenset)
    scoped_by_warehouse: bool = False
    reclaims_numbers: bool = False
    requires_approval: bool = False
    # Direction of the kardex movement recorded on commit (None = no movement)
    ledger_kind: str | None = None
    requires_client: bool = True
    origin_family: DocumentFamily | None = None
    approval_document_type: str | None = None

    def format_number(self, number: int) -> str:
        return f"{self.prefix}{number:0{self.pad}d}"

    def in_range(self, number: int) -> bool:
        return self.floor <= number <= self.ceiling and number not in self.denylist


DEFAULT_RULES: dict[DocumentFamily, FamilyRules] = {
    DocumentFamily.ORDER: FamilyRules(
        prefix="PED-",
    ),
    DocumentFamily.REMISSION: FamilyRules(
        prefix="REM-",
        ledger_kind=LEDGER_OUT,
        origin_family=DocumentFamily.ORDER,
    ),
    DocumentFamily.INVOICE: FamilyRules(
        prefix="FV-",
        floor=89_000,
        denylist=frozenset({51}),
        reclaims_numbers=True,
        requires_approval=True,
        ledger_kind=LEDGER_OUT,
        approval_document_type="invoice",
    ),
    DocumentFamily.CREDIT_NOTE: FamilyRules(
        prefix="NC-",
        floor=90_001,
        ceiling=100_000,
        reclaims_numbers=True,
        requires_approval=True,
        ledger_kind=LEDGER_IN,
        origin_family=DocumentFamily.INVOICE,
        approval_document_type="credit-note",
    ),
    DocumentFamily.PURCHASE_ORDER: FamilyRules(
        prefix="OC-",
        scoped_by_warehouse=True,
        requires_client=False,
    ),
}


def get_rules(family) -> FamilyRules:
    """Rules for a family, with app-config overrides applied."""
    family = DocumentFamily.coerce(family)
    rules = DEFAULT_RULES[family]
    if not has_app_context():
        return rules

    overrides = dict((current_app.config.get("DOCUMENT_FAMILIES") or {}).get(family.value) or {})
    if not overrides:
        return rules
    if "denylist" in overrides:
        overrides["denylist"] = frozenset(int(n) for n in overrides["denylist"])
    if overrides.get("origin_family") is not None:
        overrides["origin_family"] = DocumentFamily.coerce(overrides["origin_family"])
    return replace(rules, **overrides)
