from __future__ import annotations

import contextlib
import datetime as dt
import functools
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import click

from sipscope.config_loader import AppConfig, load_settings
from sipscope.logging_setup import correlation_context, setup_logging
from sipscope.services.call_correlator import derive_route, format_route, group_calls
from sipscope.services.call_discovery import discover_calls
from sipscope.services.collector_client import (
    CollectorClient,
    CollectorError,
    SearchParams,
    format_session_id,
    to_search_records,
)
from sipscope.services.leg_correlation import analyze_call, party_seed_params
from sipscope.services.pcap_export import write_export
from sipscope.services.qos_aggregator import aggregate_streams
from sipscope.services.query_compiler import QueryError, build_smart_input, compile_query, number_alternatives
from sipscope.services.sip_text import extract_header, extract_media_summary, format_user_agent, method_from_raw
from sipscope.time_range import resolve_range

LOGGER = logging.getLogger(__name__)

TimeWindow = Tuple[dt.datetime, dt.datetime]


@dataclass
class CliState:
    config: AppConfig
    url: str


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@contextlib.contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except (QueryError, CollectorError, ValueError) as exc:
        LOGGER.error("Command failed error=%s", exc, extra={"category": "ERRORS"})
        raise click.ClickException(str(exc)) from exc


def _connect(state: CliState) -> CollectorClient:
    if not state.url:
        raise ValueError("collector URL is not configured (use --url, SIPSCOPE_URL or the config file)")
    client = CollectorClient(state.url, timeout=state.config.collector.timeout_seconds)
    username, password = state.config.resolve_credentials(state.url)
    try:
        client.authenticate(username, password)
    except CollectorError:
        client.close()
        raise
    return client


def _smart_input(query: str, numbers: Sequence[str]) -> str:
    criteria: List[List[str]] = []
    compiled = compile_query(query)
    if compiled:
        criteria.append([f"({compiled})" if numbers and " OR " in compiled else compiled])
    for number in numbers:
        criteria.append(number_alternatives(number, ("from_user", "to_user")))
    return build_smart_input(criteria)


def _search_params(
    window: TimeWindow,
    query: str = "",
    numbers: Sequence[str] = (),
    call_id: str = "",
    limit: int = 0,
) -> SearchParams:
    start, end = window
    return SearchParams(
        start=start,
        end=end,
        smart_input=_smart_input(query, numbers),
        call_id=call_id,
        limit=limit,
    )


def _time_options(default_since: str):
    """Add --since/--until/--at and hand the command a resolved `window`."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, since: Optional[str], until: Optional[str], at: Optional[str], **kwargs):
            with _handle_errors():
                window = resolve_range(since, until, at, default_since=default_since)
            return func(*args, window=window, **kwargs)

        wrapper = click.option("--at", default=None, help="Centre a 10 minute window on this time.")(wrapper)
        wrapper = click.option("--until", default=None, help="End of the range (duration or timestamp).")(wrapper)
        wrapper = click.option("--since", default=None, help=f"Start of the range.  [default: {default_since}]")(wrapper)
        return wrapper

    return decorator


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None, help="YAML config file.")
@click.option("--url", default=None, help="Collector base URL.")
@click.option("--debug", is_flag=True, help="Log collector payloads.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], url: Optional[str], debug: bool) -> None:
    """sipscope: SIP call analytics against a collector."""
    setup_logging(level_name="DEBUG" if debug else None)
    try:
        config = load_settings(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.obj = CliState(config=config, url=(url or config.collector.url).strip().rstrip("/"))
    LOGGER.debug("CLI bootstrap completed url=%s", ctx.obj.url or "-", extra={"category": "CONFIG"})


@main.command()
@click.pass_obj
def check(state: CliState) -> None:
    """Check collector reachability and credentials."""
    with _handle_errors():
        if not state.url:
            raise ValueError("collector URL is not configured")
        with contextlib.closing(CollectorClient(state.url, timeout=state.config.collector.timeout_seconds)) as client:
            client.test_connection()
            client.authenticate(*state.config.resolve_credentials(state.url))
        _echo_json({"url": state.url, "status": "ok"})


@main.command()
@click.option("-q", "--query", default="", help="Filter expression, e.g. from_user = '123' AND status = 200.")
@click.option("-n", "--number", "numbers", multiple=True, help="Match this number as caller or callee.")
@click.option("--call-id", default="", help="Restrict to one Call-ID.")
@click.option("--limit", type=int, default=200, show_default=True)
@_time_options("1h")
@click.pass_obj
def search(
    state: CliState,
    query: str,
    numbers: Sequence[str],
    call_id: str,
    limit: int,
    window: TimeWindow,
) -> None:
    """Search raw signaling messages."""
    with _handle_errors(), correlation_context():
        params = _search_params(window, query, numbers, call_id, limit)
        with contextlib.closing(_connect(state)) as client:
            result = client.search_calls(params)
        _echo_json([record.to_dict() for record in to_search_records(result.data)])


@main.command()
@click.option("-q", "--query", default="", help="Filter expression.")
@click.option("-n", "--number", default="", help="Reference number; also sets call direction.")
@click.option("--max-calls", type=int, default=20, show_default=True)
@_time_options("1h")
@click.pass_obj
def calls(state: CliState, query: str, number: str, max_calls: int, window: TimeWindow) -> None:
    """List correlated calls, newest first."""
    with _handle_errors(), correlation_context():
        params = _search_params(window, query, [number] if number else [])
        with contextlib.closing(_connect(state)) as client:
            sessions = discover_calls(
                client,
                params,
                reference_number=number,
                max_calls=max_calls,
                batch_limit=state.config.discovery.batch_limit,
                max_batches=state.config.discovery.max_batches,
            )
        payload = []
        for session in sessions:
            item = session.to_dict()
            item["session_id"] = format_session_id(session.call_id)
            item["route"] = format_route(derive_route(session.records))
            payload.append(item)
        _echo_json(payload)


@main.command()
@click.argument("call_id")
@_time_options("24h")
@click.pass_obj
def show(state: CliState, call_id: str, window: TimeWindow) -> None:
    """Show one call with its full SIP messages."""
    with _handle_errors(), correlation_context():
        params = _search_params(window, call_id=call_id)
        with contextlib.closing(_connect(state)) as client:
            result = client.search_calls(params)
            sessions = group_calls(result.data)
            if not sessions:
                raise ValueError(f"call not found: {call_id}")
            transaction = client.get_transaction(params, result.data)
        messages = []
        for message in sorted(transaction.data.messages, key=lambda m: m.create_date):
            if not message.is_sip():
                continue
            messages.append(
                {
                    "date": message.create_date,
                    "src": f"{message.src_ip}:{message.src_port}",
                    "dst": f"{message.dst_ip}:{message.dst_port}",
                    "method": method_from_raw(message.raw),
                    "user_agent": format_user_agent(extract_header(message.raw, "User-Agent")),
                    "media": extract_media_summary(message.raw),
                    "raw": message.raw,
                }
            )
        payload = sessions[0].to_dict()
        payload["route"] = format_route(derive_route(sessions[0].records))
        payload["messages"] = messages
        _echo_json(payload)


@main.command()
@click.argument("call_id")
@click.option("-o", "--out", "output", type=click.Path(path_type=Path), default=None, help="Output pcap path.")
@_time_options("24h")
@click.pass_obj
def export(state: CliState, call_id: str, output: Optional[Path], window: TimeWindow) -> None:
    """Export a call's signaling as pcap."""
    with _handle_errors(), correlation_context():
        params = _search_params(window, call_id=call_id)
        with contextlib.closing(_connect(state)) as client:
            data = client.export_pcap(params)
        target = output or Path(f"{format_session_id(call_id).replace('..', '_').replace('@', '_')}.pcap")
        summary = write_export(data, target)
        _echo_json(summary.to_dict() if summary else {"path": None, "packets": 0})


@main.command()
@click.argument("call_id")
@_time_options("24h")
@click.pass_obj
def qos(state: CliState, call_id: str, window: TimeWindow) -> None:
    """Per-stream RTCP quality with MOS estimate."""
    with _handle_errors(), correlation_context():
        params = _search_params(window, call_id=call_id)
        with contextlib.closing(_connect(state)) as client:
            result = client.search_calls(params)
            if not result.data:
                raise ValueError(f"call not found: {call_id}")
            report = client.get_qos(params, result.data)
        streams = aggregate_streams(report, state.config.qos.clock_rate, state.config.qos.latency_ms)
        _echo_json([stream.to_dict() for stream in streams])


@main.command()
@click.argument("call_id", required=False, default="")
@click.option("-c", "--correlate", "headers", multiple=True, required=True, help="SIP header shared by legs.")
@click.option("-n", "--number", "numbers", multiple=True, help="Extra number whose legs belong to the call.")
@click.option("--from-user", default="", help="Pick the seed call by caller (with --to-user).")
@click.option("--to-user", default="", help="Pick the seed call by callee (with --from-user).")
@click.option("--max-calls", type=int, default=100, show_default=True)
@_time_options("24h")
@click.pass_obj
def analyze(
    state: CliState,
    call_id: str,
    headers: Sequence[str],
    numbers: Sequence[str],
    from_user: str,
    to_user: str,
    max_calls: int,
    window: TimeWindow,
) -> None:
    """Correlate the legs of a call through shared SIP headers.

    The seed call is either CALL_ID or the --from-user/--to-user pair.
    """
    with _handle_errors(), correlation_context():
        by_parties = bool(from_user and to_user)
        if not call_id and not by_parties:
            raise ValueError("provide a Call-ID argument or both --from-user and --to-user")
        if call_id and by_parties:
            raise ValueError("provide either a Call-ID argument or --from-user/--to-user, not both")
        if by_parties:
            params = party_seed_params(window[0], window[1], from_user, to_user, state.config.discovery.batch_limit)
        else:
            params = _search_params(window, call_id=call_id)
        with contextlib.closing(_connect(state)) as client:
            seed, result = analyze_call(
                client,
                params,
                headers,
                extra_numbers=numbers,
                max_calls=max_calls,
                batch_limit=state.config.discovery.batch_limit,
                max_batches=state.config.discovery.max_batches,
            )
        _echo_json(
            {
                "seed": seed.call_id,
                "matched": [{"header": header, "value": value} for header, value in result.matched],
                "number_legs": result.number_legs,
                "legs": [leg.to_dict() for leg in result.legs],
            }
        )


@main.command()
@click.pass_obj
def aliases(state: CliState) -> None:
    """List collector IP/port aliases."""
    with _handle_errors():
        with contextlib.closing(_connect(state)) as client:
            items = client.list_aliases()
        _echo_json([alias.model_dump() for alias in items])


if __name__ == "__main__":
    main()
