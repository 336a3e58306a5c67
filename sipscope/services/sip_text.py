from __future__ import annotations

import re
from typing import Dict, List

_VERSION_RUN_RE = re.compile(r"[0-9][0-9.]*")
_AUDIO_MEDIA_RE = re.compile(r"^m=audio\s+(\d+)\s")
_RTPMAP_RE = re.compile(r"^a=rtpmap:\d+\s+([^/\s]+)/")
_STATUS_LINE_RE = re.compile(r"^SIP/2\.0\s+(\d{3})")


def _lines(raw: str) -> List[str]:
    return [line.rstrip("\r") for line in (raw or "").split("\n")]


def extract_header(raw: str, name: str) -> str:
    """Case-insensitive lookup of the first `name:` header; stops at the blank line before the body."""
    prefix = name.lower() + ":"
    for line in _lines(raw):
        if not line:
            break
        if line.lower().startswith(prefix):
            return line[len(prefix):].strip()
    return ""


def extract_headers_by_prefix(raw: str, prefix: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    prefix_lower = prefix.lower()
    for line in _lines(raw):
        if not line:
            break
        name, sep, value = line.partition(":")
        if not sep:
            continue
        if name.lower().startswith(prefix_lower):
            result[name] = value.strip()
    return result


def extract_all_headers(raw: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for line in _lines(raw)[1:]:
        if not line:
            break
        name, sep, value = line.partition(":")
        if not sep:
            continue
        result[name] = value.strip()
    return result


def extract_sdp(raw: str) -> str:
    lines = _lines(raw)
    for index, line in enumerate(lines):
        if not line and index > 0:
            return "\n".join(lines[index + 1 :]).strip()
    return ""


def extract_media_summary(raw: str) -> str:
    """
    Compact audio descriptor from the SDP body.

    "m=audio 17818 RTP/AVP 8" + "a=rtpmap:8 PCMA/8000" -> "PCMA :17818";
    without an rtpmap line only the port is kept (":17818").
    """
    sdp = extract_sdp(raw)
    if not sdp:
        return ""

    port = ""
    codec = ""
    for line in _lines(sdp):
        line = line.strip()
        if not port:
            match = _AUDIO_MEDIA_RE.match(line + " ")
            if match:
                port = match.group(1)
                continue
        if not codec:
            match = _RTPMAP_RE.match(line)
            if match:
                codec = match.group(1)
    if not port:
        return ""
    if codec:
        return f"{codec} :{port}"
    return f":{port}"


def format_user_agent(ua: str) -> str:
    # "Asterisk PBX 11.13.1~dfsg-2+deb8u4" -> "Asterisk 11.13.1"
    # "FPBX-15.0.16.75(16.13.0)" -> "FPBX 16.13.0"
    ua = (ua or "").strip()
    if not ua:
        return ""

    if "asterisk" in ua.lower():
        for match in _VERSION_RUN_RE.finditer(ua):
            version = match.group(0).rstrip(".")
            if "." in version:
                return f"Asterisk {version}"

    if ua.startswith("FPBX"):
        open_idx = ua.find("(")
        if open_idx >= 0:
            close_idx = ua.find(")", open_idx)
            if close_idx >= 0:
                return f"FPBX {ua[open_idx + 1 : close_idx]}"

    return ua


def method_from_raw(raw: str) -> str:
    """Request verb or response code from the first line of a raw message."""
    first_line = _lines(raw)[0].strip()
    if not first_line:
        return ""
    match = _STATUS_LINE_RE.match(first_line)
    if match:
        return match.group(1)
    if first_line.startswith("SIP/2.0"):
        return ""
    return first_line.split()[0].upper()


def status_code_from_raw(raw: str) -> int:
    """Numeric response code of a raw SIP response; 0 for requests."""
    match = _STATUS_LINE_RE.match(_lines(raw)[0].strip())
    return int(match.group(1)) if match else 0
