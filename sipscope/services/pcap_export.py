from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from scapy.error import Scapy_Exception
from scapy.layers.inet import IP, TCP, UDP
from scapy.packet import Raw
from scapy.utils import PcapReader

from sipscope.services.sip_text import extract_header

LOGGER = logging.getLogger(__name__)


@dataclass
class PcapSummary:
    path: Path
    size_bytes: int
    packets: int = 0
    sip_packets: int = 0
    call_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "packets": self.packets,
            "sip_packets": self.sip_packets,
            "call_ids": list(self.call_ids),
        }


def _transport_payload(packet) -> Optional[bytes]:
    if UDP in packet and Raw in packet[UDP]:
        return bytes(packet[UDP][Raw].load)
    if TCP in packet and Raw in packet[TCP]:
        return bytes(packet[TCP][Raw].load)
    return None


def summarize_pcap(pcap_path: Path) -> PcapSummary:
    """Count packets and collect SIP Call-IDs (first-seen order) from a capture."""
    if not pcap_path.exists():
        raise ValueError(f"pcap not found: {pcap_path}")

    summary = PcapSummary(path=pcap_path, size_bytes=pcap_path.stat().st_size)
    seen = set()
    try:
        with PcapReader(str(pcap_path)) as reader:
            for packet in reader:
                summary.packets += 1
                if IP not in packet:
                    continue
                payload = _transport_payload(packet)
                if not payload:
                    continue
                text = payload.decode("utf-8", errors="ignore")
                if "SIP/2.0" not in text:
                    continue
                summary.sip_packets += 1
                call_id = extract_header(text, "Call-ID") or extract_header(text, "i")
                if call_id and call_id not in seen:
                    seen.add(call_id)
                    summary.call_ids.append(call_id)
    except Scapy_Exception as exc:
        raise ValueError(f"not a pcap capture: {pcap_path} ({exc})") from exc
    return summary


def write_export(data: bytes, output: Path) -> Optional[PcapSummary]:
    """
    Write an exported capture to `output` and summarize it.

    An empty export writes nothing and returns None. Bytes that are not a
    capture raise ValueError and the written file is removed.
    """
    if not data:
        LOGGER.info("Export returned no data; nothing written path=%s", output, extra={"category": "EXPORT"})
        return None

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(data)
    try:
        summary = summarize_pcap(output)
    except ValueError:
        output.unlink(missing_ok=True)
        LOGGER.warning("Export is not a capture; removed path=%s bytes=%d", output, len(data), extra={"category": "EXPORT"})
        raise
    LOGGER.info(
        "Export written path=%s bytes=%d packets=%d call_ids=%d",
        output,
        summary.size_bytes,
        summary.packets,
        len(summary.call_ids),
        extra={"category": "EXPORT"},
    )
    return summary
