"""
models.py - Data Models for the Reconciliation Engine

This file defines ALL data structures shared across the reconciliation
pipeline. Every module communicates exclusively through these models:

    normalize.py ->  InternalItem, ExternalRow
    match.py     ->  list[Pair]
    suggest.py   ->  MergeResult (list[Pair] + discarded Suggestion)
    lifecycle.py ->  OperationResult
    summary.py   ->  ReconciliationSummary

Design principles:
1. Inputs (InternalItem, ExternalRow) are frozen - a session never edits them
2. Pair construction enforces the pairing-shape invariants, so an invalid
   pair cannot exist in memory
3. Operations never raise for expected user races; they return a typed
   OperationResult carrying an ErrorKind instead
4. Field aliases accept the camelCase payloads produced by the bookkeeping
   web app as well as snake_case Python keywords

Schema relationships:
    Tier          --used by--> Pair.tier
    InternalItem  --used by--> Pair.internal_item
    ExternalRow   --used by--> Pair.external_row
    Suggestion    --used by--> MergeSuggestions, DiscardedSuggestion
    ErrorKind     --used by--> OperationResult.error, DiscardedSuggestion.kind
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

AUTO_TIER_CONFIDENCE: dict[str, float] = {
    "exact": 1.0,
    "strong": 0.95,
    "fuzzy": 0.8,
}
MANUAL_CONFIDENCE = 1.0
MANUAL_REASON = "Manually linked"


class Tier(str, Enum):
    """Category of a pair: how (and whether) its two sides were paired."""

    # Invoice numbers equal after trim + case fold. Confidence 1.0.
    EXACT = "exact"

    # Tax ids equal on digits only, base amounts within 0.01. Confidence 0.95.
    STRONG = "strong"

    # Base and VAT amounts within 0.01, dates at most 3 days apart. Confidence 0.8.
    FUZZY = "fuzzy"

    # Proposed by the external scorer; waits for a human confirm/reject.
    AI = "ai"

    # Asserted by the operator. Kept apart from FUZZY so audits can tell
    # algorithmic pairings from human ones.
    MANUAL = "manual"

    # Leftovers: exactly one side present.
    INTERNAL_ONLY = "internal-only"
    EXTERNAL_ONLY = "external-only"

    @property
    def is_paired(self) -> bool:
        return self not in (Tier.INTERNAL_ONLY, Tier.EXTERNAL_ONLY)

    @property
    def is_auto(self) -> bool:
        return self in (Tier.EXACT, Tier.STRONG, Tier.FUZZY)


PAIRED_TIERS = tuple(tier for tier in Tier if tier.is_paired)


class ErrorKind(str, Enum):
    """Why an operation or suggestion did not change the pairing set."""

    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    MALFORMED_INPUT = "malformed_input"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class InternalItem(_CamelModel):
    """One bookkeeping record (expense or income) being reconciled.

    Owned by the bookkeeping subsystem. The engine only ever references it
    by `id` and never changes it during a session.
    """

    id: str = Field(
        ...,
        min_length=1,
        description="Stable unique id of the record in the bookkeeping system.",
    )
    date: str = Field(
        default="",
        description="Document date as ISO YYYY-MM-DD, or '' when unknown.",
    )
    invoice_number: str = Field(
        default="",
        description=(
            "Tax invoice number. Compared trimmed and case-insensitively by "
            "the exact pass. Empty when the record has no invoice."
        ),
    )
    vendor_name: str = Field(
        default="",
        description="Vendor (expense) or customer (income) name as recorded.",
    )
    tax_id: str = Field(
        default="",
        description=(
            "Counterparty tax id as typed, e.g. '0-1055-5432-1'. Only the "
            "digits take part in comparisons."
        ),
    )
    base_amount: float = Field(default=0.0, description="Amount before VAT.")
    vat_amount: float = Field(default=0.0, description="VAT amount.")
    total_amount: float = Field(default=0.0, description="Base plus VAT.")
    description: str = Field(default="", description="Free-text description.")
    status: str = Field(default="", description="Workflow status in the bookkeeping system.")


class ExternalRow(_CamelModel):
    """One line of the imported third-party accounting report.

    Reports carry no natural key, so a row is identified only by its
    position in the imported batch (see `Pair.external_index`).
    """

    date: str = Field(default="", description="Document date as ISO YYYY-MM-DD.")
    invoice_number: str = Field(default="", description="Tax invoice number.")
    vendor_name: str = Field(default="", description="Counterparty name as printed in the report.")
    tax_id: str = Field(default="", description="Counterparty tax id as printed.")
    base_amount: float = Field(default=0.0, description="Amount before VAT.")
    vat_amount: float = Field(default=0.0, description="VAT amount.")
    total_amount: float = Field(default=0.0, description="Base plus VAT.")


class IndexedRow(_CamelModel):
    """An external row tagged with its position in the imported batch."""

    index: int = Field(..., ge=0)
    row: ExternalRow


class Pair(_CamelModel):
    """The unit of reconciliation state.

    Either a matched pairing (paired tiers) or a singleton placeholder for a
    leftover (`internal-only` / `external-only`). Construction validates:

    - paired tiers hold exactly one internal item and one external row
    - `internal-only` holds only an internal item, `external-only` only a row
    - `confidence` is present iff the tier is paired
    - `confirmed` is only ever set on the `ai` tier
    """

    id: str = Field(
        ...,
        description=(
            "Deterministic id derived from member ids, e.g. 'pair-s1-0', "
            "'ai-s2-3', 'manual-s4-7', 'int-s5', 'ext-2'."
        ),
    )
    tier: Tier
    internal_item: Optional[InternalItem] = None
    external_row: Optional[ExternalRow] = None
    external_index: Optional[int] = Field(default=None, ge=0)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    reason: Optional[str] = Field(
        default=None,
        description="Why the pair exists: scorer reason for AI, marker for manual.",
    )
    confirmed: Optional[bool] = Field(
        default=None,
        description=(
            "AI tier only. None = pending human review, True = confirmed. "
            "False is accepted for payload compatibility but treated as "
            "not confirmed."
        ),
    )

    @model_validator(mode="after")
    def _check_shape(self) -> "Pair":
        has_internal = self.internal_item is not None
        has_external = self.external_row is not None
        if has_external != (self.external_index is not None):
            raise ValueError("external_row and external_index must be set together")

        if self.tier.is_paired:
            if not (has_internal and has_external):
                raise ValueError(f"{self.tier.value} pair needs both sides")
            if self.confidence is None:
                raise ValueError(f"{self.tier.value} pair needs a confidence")
        else:
            if self.tier is Tier.INTERNAL_ONLY and (not has_internal or has_external):
                raise ValueError("internal-only pair holds exactly one internal item")
            if self.tier is Tier.EXTERNAL_ONLY and (has_internal or not has_external):
                raise ValueError("external-only pair holds exactly one external row")
            if self.confidence is not None:
                raise ValueError("leftover pairs carry no confidence")

        if self.confirmed is not None and self.tier is not Tier.AI:
            raise ValueError("confirmed is only meaningful for the ai tier")
        return self

    @property
    def internal_id(self) -> Optional[str]:
        return self.internal_item.id if self.internal_item is not None else None

    @property
    def is_paired(self) -> bool:
        return self.tier.is_paired

    @property
    def is_ai_pending(self) -> bool:
        return self.tier is Tier.AI and self.confirmed is None

    @property
    def is_settled(self) -> bool:
        """Counts as matched in the summary (confirmed AI included)."""
        if self.tier is Tier.AI:
            return self.confirmed is True
        return self.tier.is_paired


class Suggestion(_CamelModel):
    """One candidate pairing proposed by the external scorer."""

    internal_id: str = Field(..., description="Id of an internal item currently unpaired.")
    external_index: int = Field(
        ...,
        ge=0,
        description="Real batch index of an external row currently unpaired.",
    )
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: str = Field(default="", description="Short human-readable justification.")


class DiscardedSuggestion(_CamelModel):
    """A suggestion the merger refused, with the reason."""

    suggestion: Suggestion
    kind: ErrorKind
    message: str


class MergeResult(_CamelModel):
    """Outcome of folding a batch of suggestions into the pairing set."""

    pairs: list[Pair]
    merged: list[str] = Field(default_factory=list, description="Ids of the new ai pairs.")
    discarded: list[DiscardedSuggestion] = Field(default_factory=list)


class SuggestionRequest(_CamelModel):
    """What the external scorer gets to see: the current leftovers only."""

    internal_items: list[InternalItem] = Field(default_factory=list)
    external_rows: list[IndexedRow] = Field(default_factory=list)

    @property
    def is_actionable(self) -> bool:
        return bool(self.internal_items) and bool(self.external_rows)


class OperationResult(_CamelModel):
    """Typed outcome of a lifecycle operation.

    On failure `pairs` is the untouched input set; callers must check `ok`
    before assuming anything changed.
    """

    ok: bool
    pairs: list[Pair]
    error: Optional[ErrorKind] = None
    message: str = ""
    created: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)


class ConfirmAI(_CamelModel):
    kind: Literal["confirm"] = "confirm"
    pair_id: str


class RejectAI(_CamelModel):
    kind: Literal["reject"] = "reject"
    pair_id: str


class ManualLink(_CamelModel):
    kind: Literal["manual_link"] = "manual_link"
    internal_id: str
    external_index: int


class Unlink(_CamelModel):
    kind: Literal["unlink"] = "unlink"
    pair_id: str


class MergeSuggestions(_CamelModel):
    kind: Literal["merge_suggestions"] = "merge_suggestions"
    suggestions: list[Suggestion] = Field(default_factory=list)


Command = Annotated[
    Union[ConfirmAI, RejectAI, ManualLink, Unlink, MergeSuggestions],
    Field(discriminator="kind"),
]


class ReconciliationSummary(_CamelModel):
    """Balance/KPI view derived from one pairing set. Holds no state."""

    internal_count: int = 0
    external_count: int = 0
    internal_total: float = 0.0
    internal_vat: float = 0.0
    external_total: float = 0.0
    external_vat: float = 0.0
    total_diff: float = 0.0
    vat_diff: float = 0.0
    balanced: bool = True
    has_external_data: bool = False
    tier_counts: dict[str, int] = Field(default_factory=dict)
    matched: int = 0
    ai_pending: int = 0
    internal_only: int = 0
    external_only: int = 0
