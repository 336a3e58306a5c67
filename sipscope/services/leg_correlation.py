"""
Multi-leg correlation for calls that traverse a B2BUA/PBX.

Each leg of such a call has its own Call-ID. Legs are tied together through
a shared header value (for example an X-...-Call-ID header) carried in their
INVITEs. The external leg often lacks the header itself, so a header group is
accepted when any of its members started shortly around the seed leg.
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Protocol, Sequence, Set, Tuple

from sipscope.services.call_correlator import CallSession, group_calls, refine_with_transactions
from sipscope.services.call_discovery import DEFAULT_BATCH_LIMIT, DEFAULT_MAX_BATCHES, discover_calls
from sipscope.services.collector_client import SearchParams, merge_search_results
from sipscope.services.collector_models import (
    CallRecord,
    SearchResult,
    TransactionMessage,
    TransactionResult,
)
from sipscope.services.query_compiler import build_smart_input, number_alternatives
from sipscope.services.sip_text import extract_header

LOGGER = logging.getLogger(__name__)

WINDOW_BEFORE = dt.timedelta(seconds=5)
WINDOW_AFTER = dt.timedelta(seconds=30)
FAN_OUT_MARGIN = dt.timedelta(minutes=30)


class CallAnalyzer(Protocol):
    def search_calls(self, params: SearchParams) -> SearchResult: ...

    def get_transaction(self, params: SearchParams, records: Iterable[CallRecord]) -> TransactionResult: ...


@dataclass
class CorrelationResult:
    legs: List[CallSession] = field(default_factory=list)
    matched: List[Tuple[str, str]] = field(default_factory=list)  # (header, value)
    number_legs: List[str] = field(default_factory=list)

    @property
    def call_ids(self) -> List[str]:
        return [leg.call_id for leg in self.legs]


def collect_header_groups(
    messages: Iterable[TransactionMessage],
    headers: Sequence[str],
) -> Dict[Tuple[str, str], Set[str]]:
    """Map (header, value) to the Call-IDs whose INVITEs carry it."""
    groups: Dict[Tuple[str, str], Set[str]] = {}
    for message in messages:
        if not message.raw or not message.is_sip() or not message.raw.startswith("INVITE "):
            continue
        for header in headers:
            value = extract_header(message.raw, header)
            if value:
                groups.setdefault((header, value), set()).add(message.call_id)
    return groups


def _starts_near(candidate: CallSession, seed: CallSession) -> bool:
    start = candidate.start_time
    return seed.start_time - WINDOW_BEFORE < start < seed.start_time + WINDOW_AFTER


def correlate_legs(
    seed: CallSession,
    candidates: Iterable[CallSession],
    messages: Iterable[TransactionMessage],
    headers: Sequence[str],
    extra_numbers: Sequence[str] = (),
) -> CorrelationResult:
    """
    Select the legs that belong to the same call as `seed`.

    A header group is included when one of its members starts within
    (seed.start - 5s, seed.start + 30s). Candidates whose caller or callee
    equals one of `extra_numbers` (ignoring a leading '+') are included as
    well. The seed is always part of the result; legs are sorted by start.
    """
    by_call_id: Dict[str, CallSession] = {}
    for candidate in candidates:
        by_call_id.setdefault(candidate.call_id, candidate)

    result = CorrelationResult()
    matching: Set[str] = {seed.call_id}

    groups = collect_header_groups(messages, headers)
    if not groups:
        LOGGER.info(
            "No correlation header values found headers=%s",
            ",".join(headers),
            extra={"category": "SIP"},
        )
    for (header, value), call_ids in sorted(groups.items()):
        overlaps = any(
            call_id in by_call_id and _starts_near(by_call_id[call_id], seed) for call_id in call_ids
        )
        if not overlaps:
            continue
        result.matched.append((header, value))
        matching.update(call_ids)
        LOGGER.info(
            "Correlating via header=%s value=%s call_ids=%d",
            header,
            value,
            len(call_ids),
            extra={"category": "SIP"},
        )

    extra = {number.lstrip("+") for number in extra_numbers if number.lstrip("+")}
    if extra:
        for candidate in by_call_id.values():
            if candidate.call_id in matching:
                continue
            if candidate.caller.lstrip("+") in extra or candidate.callee.lstrip("+") in extra:
                matching.add(candidate.call_id)
                result.number_legs.append(candidate.call_id)

    legs = [candidate for call_id, candidate in by_call_id.items() if call_id in matching]
    if seed.call_id not in by_call_id:
        legs.append(seed)
    legs.sort(key=lambda leg: leg.start_ms)
    result.legs = legs
    LOGGER.info(
        "Leg correlation completed seed=%s legs=%d",
        seed.call_id,
        len(legs),
        extra={"category": "SIP"},
    )
    return result


def party_seed_params(
    start: dt.datetime,
    end: dt.datetime,
    from_user: str,
    to_user: str,
    limit: int = DEFAULT_BATCH_LIMIT,
) -> SearchParams:
    """Seed search for a caller/callee pair, each matched with and without '+'."""
    if not from_user or not to_user:
        raise ValueError("both from_user and to_user are required to pick a seed call")
    criteria = [
        number_alternatives(from_user, ("from_user",)),
        number_alternatives(to_user, ("to_user",)),
    ]
    return SearchParams(start=start, end=end, smart_input=build_smart_input(criteria), limit=limit)


def _pick_seed(seed_params: SearchParams, sessions: List[CallSession]) -> CallSession:
    if not sessions:
        raise ValueError(f"call not found: {seed_params.call_id or seed_params.smart_input}")
    if len(sessions) == 1:
        return sessions[0]
    ordered = sorted(sessions, key=lambda s: s.start_ms)
    listing = "; ".join(
        f"{s.start_time.strftime('%Y-%m-%d %H:%M:%S')} {s.call_id} {s.caller} → {s.callee}" for s in ordered
    )
    raise ValueError(f"ambiguous seed: {len(ordered)} calls match, re-run with a Call-ID: {listing}")


def analyze_call(
    client: CallAnalyzer,
    seed_params: SearchParams,
    headers: Sequence[str],
    extra_numbers: Sequence[str] = (),
    max_calls: int = 100,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
    max_batches: int = DEFAULT_MAX_BATCHES,
) -> Tuple[CallSession, CorrelationResult]:
    """
    Find every leg related to the seed call selected by `seed_params`.

    The seed search (by Call-ID or by `party_seed_params`) must match exactly
    one call; several matches raise ValueError listing the candidates.

    The seed's caller number (plus any extra numbers) is searched within
    FAN_OUT_MARGIN of the seed; the candidates' INVITEs are then matched on
    `headers` and each leg's status and end time refreshed from its full
    transaction.
    """
    if not headers:
        raise ValueError("at least one correlation header is required")

    seed_result = client.search_calls(seed_params)
    seed = _pick_seed(seed_params, group_calls(seed_result.data))

    alternatives: List[str] = []
    if seed.caller:
        alternatives.extend(number_alternatives(seed.caller, ("from_user",)))
    for number in extra_numbers:
        alternatives.extend(number_alternatives(number, ("from_user", "to_user")))

    fan_params = SearchParams(
        start=seed.start_time - FAN_OUT_MARGIN,
        end=seed.end_time + FAN_OUT_MARGIN,
        smart_input=build_smart_input([alternatives] if alternatives else []),
    )
    fan_sessions = discover_calls(
        client,
        fan_params,
        max_calls=max_calls,
        batch_limit=batch_limit,
        max_batches=max_batches,
    )
    fan_records = [record for session in fan_sessions for record in session.records]
    merged = merge_search_results(SearchResult(data=fan_records), seed_result)
    candidate_records = list(merged.data) if merged is not None else []

    transaction = client.get_transaction(fan_params, candidate_records)
    messages = transaction.data.messages
    result = correlate_legs(seed, group_calls(candidate_records), messages, headers, extra_numbers)
    result.legs = refine_with_transactions(result.legs, messages)
    return seed, result
