from __future__ import annotations

import json
from enum import Enum
from typing import Any, Callable, Mapping

MAX_FRAME_SIZE = 1 << 20


class MsgType(str, Enum):
    # Proxy-engine configuration
    ADD_SERVICE = "AddService"
    UPDATE_SERVICE = "UpdateService"
    DELETE_SERVICE = "DeleteService"
    PAUSE_SERVICE = "PauseService"
    RESUME_SERVICE = "ResumeService"
    UPSERT_LIMITERS = "UpsertLimiters"
    GET_SERVICE = "GetService"
    QUERY_SERVICES = "QueryServices"
    ENABLE_GOST_API = "EnableGostAPI"
    RESTART_GOST = "RestartGost"

    # Diagnostics
    DIAGNOSE = "Diagnose"
    SUGGEST_PORTS = "SuggestPorts"
    PROBE_PORT = "ProbePort"
    SINGBOX_TEST = "SingboxTest"

    # AnyTLS gateway
    SET_ANYTLS = "SetAnyTLS"

    # Log capture
    LOG_CAPTURE_START = "LogCaptureStart"
    LOG_CAPTURE_STOP = "LogCaptureStop"
    LOG_CAPTURE_RESULT = "LogCaptureResult"

    # Agent lifecycle
    UPGRADE_AGENT = "UpgradeAgent"
    UPGRADE_AGENT1 = "UpgradeAgent1"
    UPGRADE_AGENT2 = "UpgradeAgent2"
    UNINSTALL_AGENT = "UninstallAgent"

    # Interactive shell
    SHELL_START = "ShellStart"
    SHELL_INPUT = "ShellInput"
    SHELL_RESIZE = "ShellResize"
    SHELL_STOP = "ShellStop"
    SHELL_READY = "ShellReady"
    SHELL_DATA = "ShellData"
    SHELL_EXIT = "ShellExit"

    # Generic host operations
    RUN_SCRIPT = "RunScript"
    RUN_STREAM_SCRIPT = "RunStreamScript"
    WRITE_FILE = "WriteFile"
    RESTART_SERVICE = "RestartService"
    STOP_SERVICE = "StopService"

    # Agent -> panel
    OP_LOG = "OpLog"


class ProtocolError(ValueError):
    pass


def result_type(command_type: str) -> str:
    return f"{command_type}Result"


def build_message(msg_type: MsgType | str, **fields: Any) -> dict[str, Any]:
    value = msg_type.value if isinstance(msg_type, MsgType) else str(msg_type)
    return {"type": value, **fields}


def build_result(command_type: str, request_id: str, data: Any) -> dict[str, Any]:
    return {"type": result_type(command_type), "requestId": request_id, "data": data}


def encode_message(message: Mapping[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


# Layered decoding: each strategy takes (text, depth) and either returns a
# command dict or raises ProtocolError; decode_frame_text tries them in order.

MAX_DECODE_DEPTH = 3


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ProtocolError(f"invalid JSON: {exc}") from exc


def _as_command(obj: Any) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ProtocolError("frame is not a JSON object")
    msg_type = obj.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("frame missing type")
    return {"type": msg_type, "data": obj.get("data")}


def decode_structured(text: str, depth: int = 0) -> dict[str, Any]:
    """Strict form: a ``{type, data}`` object whose data is any JSON value."""
    return _as_command(_loads(text))


def decode_loose_map(text: str, depth: int = 0) -> dict[str, Any]:
    """Looser form: key case is ignored and ``data`` may arrive as an embedded JSON string."""
    obj = _loads(text)
    if not isinstance(obj, dict):
        raise ProtocolError("frame is not a JSON object")
    folded = {str(k).lower(): v for k, v in obj.items()}
    data = folded.get("data")
    if isinstance(data, str) and data.strip().startswith(("{", "[")):
        data = _loads(data)
    return _as_command({"type": folded.get("type"), "data": data})


def decode_json_string(text: str, depth: int = 0) -> dict[str, Any]:
    """Double-encoded frame: a JSON string holding the real frame."""
    inner = _loads(text)
    if not isinstance(inner, str) or not inner.strip():
        raise ProtocolError("frame is not a JSON string")
    return decode_frame_text(inner.strip(), depth + 1)


def decode_brace_slice(text: str, depth: int = 0) -> dict[str, Any]:
    """Best-effort recovery of an object embedded in noisy input."""
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise ProtocolError("no braced object in frame")
    sliced = text[start : end + 1]
    if sliced != text:
        try:
            return decode_frame_text(sliced, depth + 1)
        except ProtocolError:
            pass
    decoder = json.JSONDecoder()
    idx = start
    while idx >= 0:
        try:
            obj, _ = decoder.raw_decode(text, idx)
            return _as_command(obj)
        except (ValueError, ProtocolError):
            idx = text.find("{", idx + 1)
    raise ProtocolError("no decodable object in frame")


DECODE_STRATEGIES: tuple[Callable[[str, int], dict[str, Any]], ...] = (
    decode_structured,
    decode_loose_map,
    decode_json_string,
    decode_brace_slice,
)


def normalize_frame(raw: bytes | str) -> str:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    return text.replace("\r", " ").replace("\n", " ").strip()


def decode_frame_text(text: str, depth: int = 0) -> dict[str, Any]:
    if depth > MAX_DECODE_DEPTH:
        raise ProtocolError("frame nested too deeply")
    errors: list[str] = []
    for strategy in DECODE_STRATEGIES:
        try:
            return strategy(text, depth)
        except ProtocolError as exc:
            errors.append(f"{strategy.__name__}: {exc}")
    raise ProtocolError("; ".join(errors))


def decode_frame(raw: bytes | str) -> dict[str, Any]:
    """Decode one inbound control frame into ``{"type", "data"}``.

    Raises ProtocolError when no strategy recovers a command.
    """
    text = normalize_frame(raw)
    if not text:
        raise ProtocolError("empty frame")
    return decode_frame_text(text)
