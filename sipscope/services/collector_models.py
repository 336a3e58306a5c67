from __future__ import annotations

import datetime as dt
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

_MODEL_CONFIG = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

_CREATE_DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
)


def _none_to_default(value: object, default: object) -> object:
    return default if value is None else value


class CallRecord(BaseModel):
    """One signaling message as returned by the collector search."""

    model_config = _MODEL_CONFIG

    id: int = 0
    create_date: int = 0
    micro_ts: int = 0
    protocol: int = 0
    src_ip: str = Field(default="", alias="srcIp")
    src_port: int = Field(default=0, alias="srcPort")
    dst_ip: str = Field(default="", alias="dstIp")
    dst_port: int = Field(default=0, alias="dstPort")
    call_id: str = Field(default="", alias="sid")
    method: str = ""
    method_text: str = ""
    from_user: str = ""
    to_user: str = ""
    ruri_user: str = ""
    user_agent: str = ""
    cseq: str = ""
    status: int = 0
    alias_src: str = Field(default="", alias="aliasSrc")
    alias_dst: str = Field(default="", alias="aliasDst")
    table: str = ""

    @field_validator(
        "src_ip", "dst_ip", "call_id", "method", "method_text", "from_user", "to_user",
        "ruri_user", "user_agent", "cseq", "alias_src", "alias_dst", "table",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, value: object) -> object:
        value = _none_to_default(value, "")
        return str(value) if isinstance(value, (int, float)) else value

    @field_validator("id", "create_date", "micro_ts", "protocol", "src_port", "dst_port", "status", mode="before")
    @classmethod
    def coerce_number(cls, value: object) -> object:
        value = _none_to_default(value, 0)
        return int(value) if isinstance(value, float) else value


class SearchResult(BaseModel):
    model_config = _MODEL_CONFIG

    data: List[CallRecord] = Field(default_factory=list)

    @field_validator("data", mode="before")
    @classmethod
    def null_data(cls, value: object) -> object:
        return _none_to_default(value, [])


class TransactionMessage(BaseModel):
    """A full message from the transaction endpoint, including its raw SIP text."""

    model_config = _MODEL_CONFIG

    id: int = 0
    create_date: int = 0
    protocol: int = 0
    src_ip: str = Field(default="", alias="srcIp")
    src_port: int = Field(default=0, alias="srcPort")
    dst_ip: str = Field(default="", alias="dstIp")
    dst_port: int = Field(default=0, alias="dstPort")
    call_id: str = Field(default="", alias="sid")
    method: str = ""
    from_user: str = ""
    to_user: str = ""
    raw: str = ""

    @field_validator("src_ip", "dst_ip", "call_id", "method", "from_user", "to_user", "raw", mode="before")
    @classmethod
    def coerce_text(cls, value: object) -> object:
        value = _none_to_default(value, "")
        return str(value) if isinstance(value, (int, float)) else value

    @field_validator("id", "create_date", "protocol", "src_port", "dst_port", mode="before")
    @classmethod
    def coerce_number(cls, value: object) -> object:
        value = _none_to_default(value, 0)
        return int(value) if isinstance(value, float) else value

    def is_sip(self) -> bool:
        first_line = self.raw.split("\n", 1)[0].rstrip("\r")
        return first_line.startswith("SIP/2.0 ") or first_line.endswith(" SIP/2.0")


class TransactionData(BaseModel):
    model_config = _MODEL_CONFIG

    messages: List[TransactionMessage] = Field(default_factory=list)

    @field_validator("messages", mode="before")
    @classmethod
    def null_messages(cls, value: object) -> object:
        return _none_to_default(value, [])


class TransactionResult(BaseModel):
    model_config = _MODEL_CONFIG

    data: TransactionData = Field(default_factory=TransactionData)

    @field_validator("data", mode="before")
    @classmethod
    def null_data(cls, value: object) -> object:
        return _none_to_default(value, {})


class SenderInformation(BaseModel):
    model_config = _MODEL_CONFIG

    packets: int = 0
    octets: int = 0
    ntp_timestamp_sec: int = 0
    ntp_timestamp_usec: int = 0
    rtp_timestamp: int = 0


class ReportBlock(BaseModel):
    model_config = _MODEL_CONFIG

    source_ssrc: int = 0
    fraction_lost: float = 0.0
    packets_lost: int = 0
    highest_seq_no: int = 0
    ia_jitter: int = 0
    lsr: int = 0
    dlsr: int = 0


class RtcpMessage(BaseModel):
    """Decoded form of a QoS report's embedded `raw` payload."""

    model_config = _MODEL_CONFIG

    type: int = 0  # 200=SR, 201=RR, 202=SDES
    ssrc: int = 0
    report_count: int = 0
    sender_information: SenderInformation = Field(default_factory=SenderInformation)
    report_blocks: List[ReportBlock] = Field(default_factory=list)

    @field_validator("sender_information", mode="before")
    @classmethod
    def null_sender(cls, value: object) -> object:
        return _none_to_default(value, {})

    @field_validator("report_blocks", mode="before")
    @classmethod
    def null_blocks(cls, value: object) -> object:
        return _none_to_default(value, [])


NodeValue = Union[List[Union[int, str]], int, str]


class QosReport(BaseModel):
    """One RTCP/RTP report; transport metadata at top level, statistics in `raw`."""

    model_config = _MODEL_CONFIG

    id: int = 0
    src_ip: str = Field(default="", alias="srcIp")
    src_port: int = Field(default=0, alias="srcPort")
    dst_ip: str = Field(default="", alias="dstIp")
    dst_port: int = Field(default=0, alias="dstPort")
    call_id: str = Field(default="", alias="sid")
    correlation_id: str = ""
    create_date: str = ""
    proto: str = ""
    time_seconds: int = Field(default=0, alias="timeSeconds")
    time_useconds: int = Field(default=0, alias="timeUseconds")
    raw: str = ""
    node: Optional[NodeValue] = None

    @field_validator("src_ip", "dst_ip", "call_id", "correlation_id", "create_date", "proto", "raw", mode="before")
    @classmethod
    def coerce_text(cls, value: object) -> object:
        value = _none_to_default(value, "")
        return str(value) if isinstance(value, (int, float)) else value

    @property
    def nodes(self) -> List[str]:
        if self.node is None:
            return []
        if isinstance(self.node, list):
            return [str(item) for item in self.node]
        return [str(self.node)]

    def create_time(self) -> dt.datetime:
        text = self.create_date.strip()
        for fmt in _CREATE_DATE_FORMATS:
            try:
                return dt.datetime.strptime(text, fmt).replace(tzinfo=dt.timezone.utc)
            except ValueError:
                continue
        if text:
            try:
                parsed = dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)
            except ValueError:
                pass
        if self.time_seconds > 0:
            return dt.datetime.fromtimestamp(
                self.time_seconds + self.time_useconds / 1_000_000, tz=dt.timezone.utc
            )
        return dt.datetime.fromtimestamp(0, tz=dt.timezone.utc)

    def parse_message(self) -> RtcpMessage:
        """Decode the embedded payload; raises pydantic.ValidationError when malformed."""
        if not self.raw:
            return RtcpMessage()
        return RtcpMessage.model_validate_json(self.raw)


class QosData(BaseModel):
    model_config = _MODEL_CONFIG

    data: List[QosReport] = Field(default_factory=list)
    total: int = 0

    @field_validator("data", mode="before")
    @classmethod
    def null_data(cls, value: object) -> object:
        return _none_to_default(value, [])


class QosResult(BaseModel):
    model_config = _MODEL_CONFIG

    rtcp: QosData = Field(default_factory=QosData)
    rtp: QosData = Field(default_factory=QosData)

    @field_validator("rtcp", "rtp", mode="before")
    @classmethod
    def null_section(cls, value: object) -> object:
        return _none_to_default(value, {})


class Alias(BaseModel):
    model_config = _MODEL_CONFIG

    id: int = 0
    ip: str = ""
    port: int = 0
    mask: int = 0
    alias: str = ""
    status: bool = False
    capture_id: str = Field(default="", alias="captureID")
