from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple

from pydantic import ValidationError

from sipscope.services.collector_models import QosReport, QosResult

LOGGER = logging.getLogger(__name__)

DEFAULT_CLOCK_RATE = 8000
DEFAULT_LATENCY_MS = 20.0

MOS_MIN = 1.0
MOS_MAX = 4.5


class StreamKey(NamedTuple):
    src_ip: str
    src_port: int
    dst_ip: str
    dst_port: int


@dataclass(frozen=True)
class StreamMetrics:
    src_ip: str
    src_port: int
    dst_ip: str
    dst_port: int
    reports: int
    packets: int
    packets_lost: int
    loss_percent: float
    avg_jitter_ms: float
    max_jitter_ms: float
    mos: float
    first_report: dt.datetime
    last_report: dt.datetime

    @property
    def key(self) -> StreamKey:
        return StreamKey(self.src_ip, self.src_port, self.dst_ip, self.dst_port)

    def to_dict(self) -> Dict[str, object]:
        return {
            "src_ip": self.src_ip,
            "src_port": self.src_port,
            "dst_ip": self.dst_ip,
            "dst_port": self.dst_port,
            "reports": self.reports,
            "packets": self.packets,
            "packets_lost": self.packets_lost,
            "loss_percent": self.loss_percent,
            "avg_jitter_ms": self.avg_jitter_ms,
            "max_jitter_ms": self.max_jitter_ms,
            "mos": self.mos,
            "first_report": self.first_report.isoformat(),
            "last_report": self.last_report.isoformat(),
        }


@dataclass
class _Accumulator:
    key: StreamKey
    first_ts: dt.datetime
    last_ts: dt.datetime
    reports: int = 0
    packets: int = 0
    packets_lost: int = 0
    total_jitter: float = 0.0
    max_jitter: float = 0.0


def _round_half_up(value: float, places: int = 2) -> float:
    factor = 10 ** places
    return math.floor(value * factor + 0.5) / factor


def calculate_mos(latency_ms: float, jitter_ms: float, loss_percent: float) -> float:
    """
    Simplified E-model estimate of the Mean Opinion Score.

    Effective latency adds twice the jitter (de-jitter buffer) and 10ms of
    codec delay. The R-factor is clamped to [0, 100] and the resulting MOS
    to [1.0, 4.5].
    """
    effective_latency = latency_ms + jitter_ms * 2 + 10
    r_factor = 93.2 - effective_latency / 40
    if loss_percent > 0:
        r_factor -= 2.5 * loss_percent + 0.03 * loss_percent * loss_percent
    r_factor = min(max(r_factor, 0.0), 100.0)

    mos = 1 + 0.035 * r_factor + r_factor * (r_factor - 60) * (100 - r_factor) * 7e-6
    mos = _round_half_up(mos)
    return min(max(mos, MOS_MIN), MOS_MAX)


def _accumulate(
    streams: Dict[StreamKey, _Accumulator],
    reports: Iterable[QosReport],
    clock_rate: int,
) -> int:
    skipped = 0
    for report in reports:
        try:
            message = report.parse_message()
        except ValidationError as exc:
            LOGGER.debug(
                "Skipping undecodable QoS report id=%s error=%s",
                report.id,
                exc.error_count(),
                extra={"category": "QOS"},
            )
            skipped += 1
            continue
        if not message.report_blocks:
            skipped += 1
            continue

        key = StreamKey(report.src_ip, report.src_port, report.dst_ip, report.dst_port)
        ts = report.create_time()
        acc = streams.get(key)
        if acc is None:
            acc = _Accumulator(key=key, first_ts=ts, last_ts=ts)
            streams[key] = acc
        acc.first_ts = min(acc.first_ts, ts)
        acc.last_ts = max(acc.last_ts, ts)

        if message.sender_information.packets > 0:
            acc.packets += message.sender_information.packets

        for block in message.report_blocks:
            acc.reports += 1
            acc.packets_lost += block.packets_lost
            jitter_ms = block.ia_jitter / clock_rate * 1000
            acc.total_jitter += jitter_ms
            acc.max_jitter = max(acc.max_jitter, jitter_ms)
    return skipped


def aggregate_streams(
    qos: QosResult,
    clock_rate: int = DEFAULT_CLOCK_RATE,
    latency_ms: float = DEFAULT_LATENCY_MS,
) -> List[StreamMetrics]:
    """
    Aggregate RTCP and RTP reports into per-direction stream metrics.

    Streams are keyed by their 4-tuple, so A->B and B->A are reported
    separately. Reports without decodable report blocks are skipped.
    Results are ordered by first report time.
    """
    if clock_rate <= 0:
        clock_rate = DEFAULT_CLOCK_RATE

    streams: Dict[StreamKey, _Accumulator] = {}
    skipped = _accumulate(streams, qos.rtcp.data, clock_rate)
    skipped += _accumulate(streams, qos.rtp.data, clock_rate)

    result: List[StreamMetrics] = []
    for acc in streams.values():
        if acc.reports == 0:
            continue
        avg_jitter = acc.total_jitter / acc.reports
        loss_percent = 0.0
        if acc.packets > 0:
            loss_percent = min(max(acc.packets_lost / acc.packets * 100, 0.0), 100.0)

        result.append(
            StreamMetrics(
                src_ip=acc.key.src_ip,
                src_port=acc.key.src_port,
                dst_ip=acc.key.dst_ip,
                dst_port=acc.key.dst_port,
                reports=acc.reports,
                packets=acc.packets,
                packets_lost=acc.packets_lost,
                loss_percent=loss_percent,
                avg_jitter_ms=avg_jitter,
                max_jitter_ms=acc.max_jitter,
                mos=calculate_mos(latency_ms, avg_jitter, loss_percent),
                first_report=acc.first_ts,
                last_report=acc.last_ts,
            )
        )

    result.sort(key=lambda m: m.first_report)
    LOGGER.info(
        "QoS aggregated streams=%d skipped_reports=%d clock_rate=%d",
        len(result),
        skipped,
        clock_rate,
        extra={"category": "QOS"},
    )
    return result
