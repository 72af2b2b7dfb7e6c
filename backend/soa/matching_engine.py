"""
SOA Matching Engine

Assigns statement lines to ledger invoices in two ordered passes, each a
greedy assignment over an explicit candidate arena.

Pass 1 - Deterministic:
- normalized document numbers are equal
- amounts are equal within AMOUNT_EPSILON
- currencies are equal
- confidence 1.0, is_exact_match

Pass 2 - Probabilistic (lines and invoices left over from pass 1):
- one normalized number contains the other
- amounts within a relative or absolute tolerance, whichever is wider
- score blends document similarity, amount closeness and date proximity
- confidence is capped below 1.0 by the configured ceiling

With allow_partial, lines still unassigned after pass 2 may be paired with
a same-numbered invoice for a larger amount (a partial settlement). These
are proposed at a fixed confidence and record the remaining amount.

The engine is pure: no database access and no clock. Persisting the
proposals is the caller's job.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Sequence, Tuple

from soa.models import DocumentType, LineStatus, MatchType, MatchedBy


_STRIP_PATTERN = re.compile(r"[\s\-_.,/\\#:;'\"()]+")

# Sort key stand-in for "no date"
_NO_DATE_DISTANCE = 10 ** 6


def normalize_document_number(value: Optional[str]) -> str:
    """Strip whitespace and punctuation and upper-case: 'inv-001 ' -> 'INV001'."""
    if not value:
        return ""
    return _STRIP_PATTERN.sub("", str(value)).upper()


@dataclass
class MatchingConfig:
    """Tolerances used by both passes."""
    amount_epsilon: Decimal = Decimal("0.005")
    amount_tolerance_pct: Decimal = Decimal("0.01")
    amount_tolerance_abs: Decimal = Decimal("0.00")
    probabilistic_ceiling: float = 0.85
    min_containment_length: int = 3
    date_window_days: int = 30
    allow_partial: bool = False
    partial_confidence: float = 0.75

    # Pass 2 weights
    WEIGHT_DOCUMENT = 0.50
    WEIGHT_AMOUNT = 0.35
    WEIGHT_DATE = 0.15

    def __post_init__(self):
        if not 0 < self.probabilistic_ceiling < 1:
            raise ValueError("probabilistic_ceiling must be between 0 and 1 (exclusive)")
        if not 0 < self.partial_confidence < 1:
            raise ValueError("partial_confidence must be between 0 and 1 (exclusive)")
        self.amount_epsilon = Decimal(str(self.amount_epsilon))
        self.amount_tolerance_pct = Decimal(str(self.amount_tolerance_pct))
        self.amount_tolerance_abs = Decimal(str(self.amount_tolerance_abs))

    @classmethod
    def from_settings(cls, settings) -> "MatchingConfig":
        return cls(
            amount_epsilon=Decimal(str(settings.SOA_AMOUNT_EPSILON)),
            amount_tolerance_pct=Decimal(str(settings.SOA_AMOUNT_TOLERANCE_PCT)),
            amount_tolerance_abs=Decimal(str(settings.SOA_AMOUNT_TOLERANCE_ABS)),
            probabilistic_ceiling=settings.SOA_PROBABILISTIC_CEILING,
            min_containment_length=settings.SOA_MIN_CONTAINMENT_LENGTH,
            date_window_days=settings.SOA_DATE_WINDOW_DAYS,
            allow_partial=settings.SOA_ALLOW_PARTIAL_MATCHES,
            partial_confidence=settings.SOA_PARTIAL_CONFIDENCE,
        )


@dataclass(frozen=True)
class SOALineInput:
    """Snapshot of a statement line handed to the engine."""
    id: str
    document_number: str
    amount: Decimal
    currency: str
    document_type: str = DocumentType.INVOICE.value
    document_date: Optional[date] = None
    status: str = LineStatus.EXTRACTED.value
    line_number: Optional[int] = None


@dataclass(frozen=True)
class CandidateInvoice:
    """Snapshot of a ledger invoice offered for one or more lines."""
    id: str
    invoice_number: str
    total_amount: Decimal
    currency: str
    document_type: str = DocumentType.INVOICE.value
    invoice_date: Optional[date] = None


@dataclass
class ProposedMatch:
    """A match the engine proposes; persisted later through the match ledger."""
    invoice_id: str
    match_type: str
    is_exact_match: bool
    confidence: float
    match_score: int
    match_criteria: Dict[str, Any]
    soa_amount: Decimal
    invoice_amount: Decimal
    amount_difference: Decimal
    soa_date: Optional[date]
    invoice_date: Optional[date]
    date_difference_days: Optional[int]
    matched_by: str = MatchedBy.SYSTEM.value
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_match_data(self) -> Dict[str, Any]:
        return {
            "match_type": self.match_type,
            "is_exact_match": self.is_exact_match,
            "confidence": self.confidence,
            "match_score": self.match_score,
            "match_criteria": self.match_criteria,
            "soa_amount": self.soa_amount,
            "invoice_amount": self.invoice_amount,
            "soa_date": self.soa_date,
            "invoice_date": self.invoice_date,
            "matched_by": self.matched_by,
            "metadata": self.metadata,
        }


@dataclass
class MatchResult:
    """One result per input line; ``match`` is None when nothing was assigned."""
    line: SOALineInput
    match: Optional[ProposedMatch] = None
    pass_number: Optional[int] = None
    reason: str = "no_match"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_id": self.line.id,
            "document_number": self.line.document_number,
            "matched": self.match is not None,
            "pass_number": self.pass_number,
            "reason": self.reason,
            "invoice_id": self.match.invoice_id if self.match else None,
            "match_type": self.match.match_type if self.match else None,
            "confidence": self.match.confidence if self.match else None,
        }


@dataclass
class _ArenaEntry:
    invoice: CandidateInvoice
    normalized_number: str
    claimed: bool = False


class CandidateArena:
    """Invoices keyed by id with a claimed flag; shared by both passes."""

    def __init__(self):
        self._entries: Dict[str, _ArenaEntry] = {}

    def add(self, invoice: CandidateInvoice) -> None:
        if invoice.id not in self._entries:
            self._entries[invoice.id] = _ArenaEntry(invoice, normalize_document_number(invoice.invoice_number))

    def get(self, invoice_id: str) -> _ArenaEntry:
        return self._entries[invoice_id]

    def is_claimed(self, invoice_id: str) -> bool:
        return self._entries[invoice_id].claimed

    def claim(self, invoice_id: str) -> None:
        self._entries[invoice_id].claimed = True

    def __len__(self) -> int:
        return len(self._entries)


def _date_distance(a: Optional[date], b: Optional[date]) -> Optional[int]:
    if a is None or b is None:
        return None
    return abs((a - b).days)


def _sort_distance(distance: Optional[int]) -> int:
    return _NO_DATE_DISTANCE if distance is None else distance


def _same_currency(line: SOALineInput, invoice: CandidateInvoice) -> bool:
    return (line.currency or "").upper() == (invoice.currency or "").upper()


def _same_document_type(line: SOALineInput, invoice: CandidateInvoice) -> bool:
    return (line.document_type or "").upper() == (invoice.document_type or "").upper()


def _amount_gap(line: SOALineInput, invoice: CandidateInvoice) -> Decimal:
    """Difference of magnitudes; statement credit notes are often negative."""
    return abs(Decimal(line.amount)) - abs(Decimal(invoice.total_amount))


def amount_allowance(soa_abs: Decimal, inv_abs: Decimal, config: MatchingConfig) -> Decimal:
    """Largest gap pass 2 accepts: the relative or the absolute tolerance, whichever is wider."""
    return max(config.amount_tolerance_pct * max(soa_abs, inv_abs), config.amount_tolerance_abs)


def _build_proposal(
    line: SOALineInput,
    invoice: CandidateInvoice,
    match_type: MatchType,
    confidence: float,
    criteria: Dict[str, Any],
    metadata: Dict[str, Any]
) -> ProposedMatch:
    exact = match_type == MatchType.DETERMINISTIC
    return ProposedMatch(
        invoice_id=invoice.id,
        match_type=match_type.value,
        is_exact_match=exact,
        confidence=1.0 if exact else confidence,
        match_score=100 if exact else int(round(confidence * 100)),
        match_criteria=criteria,
        soa_amount=Decimal(line.amount),
        invoice_amount=Decimal(invoice.total_amount),
        amount_difference=_amount_gap(line, invoice),
        soa_date=line.document_date,
        invoice_date=invoice.invoice_date,
        date_difference_days=_date_distance(line.document_date, invoice.invoice_date),
        metadata=metadata,
    )


# ==================== PASS 1 ====================

def deterministic_pass(
    lines: Sequence[Tuple[int, SOALineInput]],
    candidates_by_line: Dict[str, List[str]],
    arena: CandidateArena,
    config: MatchingConfig
) -> Dict[str, ProposedMatch]:
    """
    Exact matches, assigned greedily.

    Pairs are ranked by (date distance, invoice id, line position) so that
    the closest-dated invoice wins and the lowest id breaks remaining ties.
    """
    pairs = []
    qualifying: Dict[str, List[Tuple[str, Optional[int]]]] = {}

    for position, line in lines:
        normalized = normalize_document_number(line.document_number)
        if not normalized:
            continue
        for invoice_id in candidates_by_line.get(line.id, []):
            entry = arena.get(invoice_id)
            invoice = entry.invoice
            if entry.normalized_number != normalized:
                continue
            if not _same_currency(line, invoice) or not _same_document_type(line, invoice):
                continue
            if abs(_amount_gap(line, invoice)) > config.amount_epsilon:
                continue
            distance = _date_distance(line.document_date, invoice.invoice_date)
            qualifying.setdefault(line.id, []).append((invoice_id, distance))
            pairs.append((_sort_distance(distance), invoice_id, position, line, invoice))

    pairs.sort(key=lambda p: (p[0], p[1], p[2]))

    assigned: Dict[str, ProposedMatch] = {}
    for _, invoice_id, position, line, invoice in pairs:
        if line.id in assigned or arena.is_claimed(invoice_id):
            continue
        arena.claim(invoice_id)

        options = qualifying[line.id]
        distance = _date_distance(line.document_date, invoice.invoice_date)
        if len(options) == 1:
            tie_break = None
        elif sum(1 for _, d in options if d == distance) > 1:
            tie_break = "lowest_invoice_id"
        else:
            tie_break = "closest_date"

        criteria = {
            "document_number": True,
            "amount": True,
            "currency": True,
            "date": distance == 0,
            "amount_epsilon": str(config.amount_epsilon),
        }
        metadata = {
            "pass": 1,
            "candidates_considered": len(options),
            "tie_break": tie_break,
        }
        assigned[line.id] = _build_proposal(line, invoice, MatchType.DETERMINISTIC, 1.0, criteria, metadata)

    return assigned


# ==================== PASS 2 ====================

def _contains(a: str, b: str, min_length: int) -> bool:
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    return len(shorter) >= min_length and shorter in longer


def score_probabilistic(
    line: SOALineInput,
    invoice: CandidateInvoice,
    normalized_line: str,
    normalized_invoice: str,
    config: MatchingConfig
) -> Optional[Tuple[float, Dict[str, float]]]:
    """
    Raw score in [0, 1] for a containment candidate, or None if ineligible.
    """
    if not _contains(normalized_line, normalized_invoice, config.min_containment_length):
        return None
    if not _same_currency(line, invoice) or not _same_document_type(line, invoice):
        return None

    soa_abs = abs(Decimal(line.amount))
    inv_abs = abs(Decimal(invoice.total_amount))
    allowed = amount_allowance(soa_abs, inv_abs, config)
    gap = abs(soa_abs - inv_abs)
    if gap > max(allowed, config.amount_epsilon):
        return None

    document_score = SequenceMatcher(None, normalized_line, normalized_invoice).ratio()
    amount_score = 1.0 if allowed == 0 else max(0.0, 1.0 - float(gap / allowed))

    distance = _date_distance(line.document_date, invoice.invoice_date)
    if distance is None:
        date_score = 0.5
    else:
        date_score = max(0.0, 1.0 - distance / config.date_window_days)

    raw = (
        config.WEIGHT_DOCUMENT * document_score +
        config.WEIGHT_AMOUNT * amount_score +
        config.WEIGHT_DATE * date_score
    )
    breakdown = {
        "document": round(document_score, 4),
        "amount": round(amount_score, 4),
        "date": round(date_score, 4),
    }
    return round(raw, 6), breakdown


def probabilistic_pass(
    lines: Sequence[Tuple[int, SOALineInput]],
    candidates_by_line: Dict[str, List[str]],
    arena: CandidateArena,
    config: MatchingConfig
) -> Dict[str, ProposedMatch]:
    """
    Best-effort matches over lines and invoices left unclaimed by pass 1.

    Pairs are ranked by (-raw score, date distance, invoice id, line
    position); confidence is raw score times the ceiling, so it never
    reaches 1.0.
    """
    pairs = []
    considered: Dict[str, int] = {}

    for position, line in lines:
        normalized = normalize_document_number(line.document_number)
        if not normalized:
            continue
        for invoice_id in candidates_by_line.get(line.id, []):
            entry = arena.get(invoice_id)
            if entry.claimed:
                continue
            scored = score_probabilistic(line, entry.invoice, normalized, entry.normalized_number, config)
            if scored is None:
                continue
            raw, breakdown = scored
            considered[line.id] = considered.get(line.id, 0) + 1
            distance = _date_distance(line.document_date, entry.invoice.invoice_date)
            pairs.append((-raw, _sort_distance(distance), invoice_id, position, line, entry.invoice, breakdown))

    pairs.sort(key=lambda p: (p[0], p[1], p[2], p[3]))

    assigned: Dict[str, ProposedMatch] = {}
    for neg_raw, _, invoice_id, position, line, invoice, breakdown in pairs:
        if line.id in assigned or arena.is_claimed(invoice_id):
            continue
        arena.claim(invoice_id)

        raw = -neg_raw
        confidence = round(raw * config.probabilistic_ceiling, 4)
        criteria = {
            "document_number": False,
            "document_number_contained": True,
            "amount": abs(_amount_gap(line, invoice)) <= config.amount_epsilon,
            "amount_within_tolerance": True,
            "currency": True,
            "date": _date_distance(line.document_date, invoice.invoice_date) == 0,
            "amount_tolerance_pct": str(config.amount_tolerance_pct),
            "amount_tolerance_abs": str(config.amount_tolerance_abs),
            "scores": breakdown,
        }
        metadata = {
            "pass": 2,
            "candidates_considered": considered[line.id],
            "raw_score": raw,
            "ceiling": config.probabilistic_ceiling,
        }
        assigned[line.id] = _build_proposal(line, invoice, MatchType.PROBABILISTIC, confidence, criteria, metadata)

    return assigned


def partial_pass(
    lines: Sequence[Tuple[int, SOALineInput]],
    candidates_by_line: Dict[str, List[str]],
    arena: CandidateArena,
    config: MatchingConfig
) -> Dict[str, ProposedMatch]:
    """
    Partial settlements, only when allow_partial is set.

    A line left over from the first two passes is paired with an invoice
    carrying the same normalized number and currency whose amount is larger
    than the line's. The uncovered part is recorded as remaining_amount.
    Pairs are ranked like pass 1, by date distance and then invoice id.
    """
    pairs = []
    considered: Dict[str, int] = {}

    for position, line in lines:
        normalized = normalize_document_number(line.document_number)
        soa_abs = abs(Decimal(line.amount))
        if not normalized or soa_abs == 0:
            continue
        for invoice_id in candidates_by_line.get(line.id, []):
            entry = arena.get(invoice_id)
            invoice = entry.invoice
            if entry.claimed or entry.normalized_number != normalized:
                continue
            if not _same_currency(line, invoice) or not _same_document_type(line, invoice):
                continue
            if soa_abs >= abs(Decimal(invoice.total_amount)):
                continue
            considered[line.id] = considered.get(line.id, 0) + 1
            distance = _date_distance(line.document_date, invoice.invoice_date)
            pairs.append((_sort_distance(distance), invoice_id, position, line, invoice))

    pairs.sort(key=lambda p: (p[0], p[1], p[2]))

    confidence = min(config.partial_confidence, config.probabilistic_ceiling)
    assigned: Dict[str, ProposedMatch] = {}
    for _, invoice_id, position, line, invoice in pairs:
        if line.id in assigned or arena.is_claimed(invoice_id):
            continue
        arena.claim(invoice_id)

        remaining = abs(Decimal(invoice.total_amount)) - abs(Decimal(line.amount))
        criteria = {
            "document_number": True,
            "amount": False,
            "currency": True,
            "date": _date_distance(line.document_date, invoice.invoice_date) == 0,
            "partial_match": True,
            "remaining_amount": str(remaining),
        }
        metadata = {
            "pass": 2,
            "partial": True,
            "candidates_considered": considered[line.id],
        }
        assigned[line.id] = _build_proposal(line, invoice, MatchType.PROBABILISTIC, confidence, criteria, metadata)

    return assigned


# ==================== BATCH ====================

def batch_match(
    lines: Sequence[SOALineInput],
    candidates_by_line: Dict[str, Optional[List[CandidateInvoice]]],
    config: Optional[MatchingConfig] = None
) -> List[MatchResult]:
    """
    Run both passes over a batch of lines.

    ``candidates_by_line[line.id]`` is the candidate list found for that
    line, or None when its lookup failed. Every input line appears exactly
    once in the output, in input order, and no invoice is assigned twice.
    """
    config = config or MatchingConfig()
    arena = CandidateArena()
    candidate_ids: Dict[str, List[str]] = {}
    results: Dict[int, MatchResult] = {}
    eligible: List[Tuple[int, SOALineInput]] = []

    for position, line in enumerate(lines):
        if line.status != LineStatus.EXTRACTED.value:
            results[position] = MatchResult(line=line, reason="not_eligible")
            continue

        candidates = candidates_by_line.get(line.id)
        if candidates is None:
            results[position] = MatchResult(line=line, reason="lookup_failed")
            continue

        for invoice in candidates:
            arena.add(invoice)
        candidate_ids[line.id] = sorted({c.id for c in candidates})

        if not candidates:
            results[position] = MatchResult(line=line, reason="no_candidates")
            continue
        eligible.append((position, line))

    exact = deterministic_pass(eligible, candidate_ids, arena, config)
    remaining = [(p, line) for p, line in eligible if line.id not in exact]
    fuzzy = probabilistic_pass(remaining, candidate_ids, arena, config)
    partial: Dict[str, ProposedMatch] = {}
    if config.allow_partial:
        leftover = [(p, line) for p, line in remaining if line.id not in fuzzy]
        partial = partial_pass(leftover, candidate_ids, arena, config)

    for position, line in eligible:
        if line.id in exact:
            results[position] = MatchResult(line=line, match=exact[line.id], pass_number=1, reason="deterministic")
        elif line.id in fuzzy:
            results[position] = MatchResult(line=line, match=fuzzy[line.id], pass_number=2, reason="probabilistic")
        elif line.id in partial:
            results[position] = MatchResult(line=line, match=partial[line.id], pass_number=2, reason="partial")
        else:
            results[position] = MatchResult(line=line, reason="no_match")

    return [results[position] for position in range(len(lines))]
