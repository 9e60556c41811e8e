"""
lifecycle.py - Operator actions on the pairing set.

Four state transitions, each a pure function `pairs -> OperationResult`:

    confirm_ai(pairs, pair_id)                      ai -> ai (confirmed=True)
    reject_ai(pairs, pair_id)                       ai -> internal-only + external-only
    manual_link(pairs, internal_id, external_index) two leftovers -> manual
    unlink(pairs, pair_id)                          any paired tier -> two leftovers

None of them raise. Unknown references come back as `not_found`, wrong-state
requests as `invalid_transition`, and in both cases `result.pairs` is the
input set unchanged.

`apply_command` is the single reducer entry point used by sessions and HTTP
handlers; `replay` folds a command log for deterministic reconstruction.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from logging_config import get_logger
from match import internal_only_id, external_only_id, pair_id as make_pair_id
from models import (
    MANUAL_CONFIDENCE,
    MANUAL_REASON,
    Command,
    ConfirmAI,
    ErrorKind,
    ExternalRow,
    InternalItem,
    ManualLink,
    MergeSuggestions,
    OperationResult,
    Pair,
    RejectAI,
    Tier,
    Unlink,
)
from suggest import merge_suggestions

logger = get_logger(__name__)


def _find(pairs: Sequence[Pair], pair_id: str) -> Optional[int]:
    for pos, pair in enumerate(pairs):
        if pair.id == pair_id:
            return pos
    return None


def _failure(pairs: Sequence[Pair], kind: ErrorKind, message: str, operation: str) -> OperationResult:
    logger.info("lifecycle_rejected | op=%s | error=%s | message=%r", operation, kind.value, message)
    return OperationResult(ok=False, pairs=list(pairs), error=kind, message=message)


def split_pair(pair: Pair) -> list[Pair]:
    """Break a pair into its leftover entries, dropping tier/confidence/reason."""
    parts: list[Pair] = []
    if pair.internal_item is not None:
        parts.append(
            Pair(
                id=internal_only_id(pair.internal_item.id),
                tier=Tier.INTERNAL_ONLY,
                internal_item=pair.internal_item,
            )
        )
    if pair.external_row is not None and pair.external_index is not None:
        parts.append(
            Pair(
                id=external_only_id(pair.external_index),
                tier=Tier.EXTERNAL_ONLY,
                external_row=pair.external_row,
                external_index=pair.external_index,
            )
        )
    return parts


def _split_in_place(pairs: Sequence[Pair], pos: int, operation: str) -> OperationResult:
    target = pairs[pos]
    parts = split_pair(target)
    updated = list(pairs[:pos]) + parts + list(pairs[pos + 1 :])
    logger.info(
        "lifecycle_applied | op=%s | pair_id=%s | tier=%s | created=%s",
        operation,
        target.id,
        target.tier.value,
        [part.id for part in parts],
    )
    return OperationResult(
        ok=True,
        pairs=updated,
        message=f"{target.id} split into {len(parts)} unpaired entr{'y' if len(parts) == 1 else 'ies'}",
        created=[part.id for part in parts],
        removed=[target.id],
    )


def confirm_ai(pairs: Sequence[Pair], pair_id: str) -> OperationResult:
    """Mark an AI suggestion as accepted. Idempotent."""
    pos = _find(pairs, pair_id)
    if pos is None:
        return _failure(pairs, ErrorKind.NOT_FOUND, f"pair {pair_id!r} not found", "confirm")
    target = pairs[pos]
    if target.tier is not Tier.AI:
        return _failure(
            pairs,
            ErrorKind.INVALID_TRANSITION,
            f"pair {pair_id!r} is {target.tier.value}, only ai pairs can be confirmed",
            "confirm",
        )
    if target.confirmed is True:
        return OperationResult(ok=True, pairs=list(pairs), message=f"{pair_id} already confirmed")

    updated = list(pairs)
    updated[pos] = target.model_copy(update={"confirmed": True})
    logger.info("lifecycle_applied | op=confirm | pair_id=%s", pair_id)
    return OperationResult(ok=True, pairs=updated, message=f"{pair_id} confirmed")


def reject_ai(pairs: Sequence[Pair], pair_id: str) -> OperationResult:
    """Turn down an AI suggestion, confirmed or not, back into leftovers."""
    pos = _find(pairs, pair_id)
    if pos is None:
        return _failure(pairs, ErrorKind.NOT_FOUND, f"pair {pair_id!r} not found", "reject")
    if pairs[pos].tier is not Tier.AI:
        return _failure(
            pairs,
            ErrorKind.INVALID_TRANSITION,
            f"pair {pair_id!r} is {pairs[pos].tier.value}, only ai pairs can be rejected",
            "reject",
        )
    return _split_in_place(pairs, pos, "reject")


def manual_link(pairs: Sequence[Pair], internal_id: str, external_index: int) -> OperationResult:
    """Pair an unpaired internal item with an unpaired report row by hand."""
    internal_pos: Optional[int] = None
    external_pos: Optional[int] = None
    internal_known = False
    external_known = False
    for pos, pair in enumerate(pairs):
        if pair.internal_id == internal_id:
            internal_known = True
            if pair.tier is Tier.INTERNAL_ONLY:
                internal_pos = pos
        if pair.external_index == external_index:
            external_known = True
            if pair.tier is Tier.EXTERNAL_ONLY:
                external_pos = pos

    if not internal_known:
        return _failure(pairs, ErrorKind.NOT_FOUND, f"internal item {internal_id!r} not found", "manual_link")
    if not external_known:
        return _failure(pairs, ErrorKind.NOT_FOUND, f"external row {external_index} not found", "manual_link")
    if internal_pos is None or external_pos is None:
        side = "internal item" if internal_pos is None else "external row"
        return _failure(
            pairs,
            ErrorKind.INVALID_TRANSITION,
            f"{side} is already paired",
            "manual_link",
        )

    internal_pair = pairs[internal_pos]
    external_pair = pairs[external_pos]
    linked = Pair(
        id=make_pair_id("manual", internal_id, external_index),
        tier=Tier.MANUAL,
        internal_item=internal_pair.internal_item,
        external_row=external_pair.external_row,
        external_index=external_index,
        confidence=MANUAL_CONFIDENCE,
        reason=MANUAL_REASON,
    )
    updated = [pair for pos, pair in enumerate(pairs) if pos not in (internal_pos, external_pos)]
    updated.append(linked)
    logger.info(
        "lifecycle_applied | op=manual_link | internal_id=%s | external_index=%s | pair_id=%s",
        internal_id,
        external_index,
        linked.id,
    )
    return OperationResult(
        ok=True,
        pairs=updated,
        message=f"{linked.id} linked",
        created=[linked.id],
        removed=[internal_pair.id, external_pair.id],
    )


def unlink(pairs: Sequence[Pair], pair_id: str) -> OperationResult:
    """Split any paired tier back into leftovers."""
    pos = _find(pairs, pair_id)
    if pos is None:
        return _failure(pairs, ErrorKind.NOT_FOUND, f"pair {pair_id!r} not found", "unlink")
    if not pairs[pos].is_paired:
        return _failure(
            pairs,
            ErrorKind.INVALID_TRANSITION,
            f"pair {pair_id!r} is already unpaired",
            "unlink",
        )
    return _split_in_place(pairs, pos, "unlink")


def apply_command(pairs: Sequence[Pair], command: Command) -> OperationResult:
    """Single reducer entry point for every pairing-set mutation."""
    if isinstance(command, ConfirmAI):
        return confirm_ai(pairs, command.pair_id)
    if isinstance(command, RejectAI):
        return reject_ai(pairs, command.pair_id)
    if isinstance(command, ManualLink):
        return manual_link(pairs, command.internal_id, command.external_index)
    if isinstance(command, Unlink):
        return unlink(pairs, command.pair_id)
    if isinstance(command, MergeSuggestions):
        merged = merge_suggestions(pairs, command.suggestions)
        if not merged.merged:
            return OperationResult(
                ok=False,
                pairs=list(pairs),
                error=ErrorKind.MALFORMED_INPUT,
                message=f"no suggestion merged ({len(merged.discarded)} discarded)",
            )
        return OperationResult(
            ok=True,
            pairs=merged.pairs,
            message=f"{len(merged.merged)} suggestion(s) merged, {len(merged.discarded)} discarded",
            created=merged.merged,
        )
    raise TypeError(f"Unsupported command: {type(command).__name__}")


def replay(pairs: Sequence[Pair], commands: Iterable[Command]) -> list[Pair]:
    """Fold a command log over a pairing set. Failed commands are no-ops."""
    current = list(pairs)
    for command in commands:
        current = apply_command(current, command).pairs
    return current


def partition_violations(
    pairs: Sequence[Pair],
    internal_items: Sequence[InternalItem],
    external_rows: Sequence[ExternalRow],
) -> list[str]:
    """List every way `pairs` fails to partition the session inputs."""
    problems: list[str] = []
    internal_seen: list[str] = [pair.internal_id for pair in pairs if pair.internal_id is not None]
    external_seen: list[int] = [pair.external_index for pair in pairs if pair.external_index is not None]

    expected_internal = {item.id for item in internal_items}
    if len(internal_seen) != len(set(internal_seen)):
        problems.append("internal item appears in more than one pair")
    if set(internal_seen) != expected_internal:
        problems.append(
            f"internal ids differ: missing={sorted(expected_internal - set(internal_seen))} "
            f"extra={sorted(set(internal_seen) - expected_internal)}"
        )

    expected_external = set(range(len(external_rows)))
    if len(external_seen) != len(set(external_seen)):
        problems.append("external row appears in more than one pair")
    if set(external_seen) != expected_external:
        problems.append(
            f"external indices differ: missing={sorted(expected_external - set(external_seen))} "
            f"extra={sorted(set(external_seen) - expected_external)}"
        )

    pair_ids = [pair.id for pair in pairs]
    if len(pair_ids) != len(set(pair_ids)):
        problems.append("duplicate pair ids")
    return problems
