import http.client
import json
import os
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Literal, Optional, Sequence
from urllib import error, request

from node_models import Message

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
OFFLINE_MODEL = "No AI (offline dummy output)"
_NETWORK_MODELS = [
    "openrouter/polaris-alpha",
    "google/gemini-2.0-flash-exp:free",
    "google/gemma-3-27b-it:free",
    "meta-llama/llama-3.3-70b-instruct:free",
    "meta-llama/llama-4-maverick:free",
    "mistralai/mistral-small-3.2-24b-instruct:free",
    "moonshotai/kimi-k2:free",
    "openai/gpt-oss-20b:free",
    "qwen/qwen3-14b:free",
    "z-ai/glm-4.5-air:free",
]
AVAILABLE_MODELS = [OFFLINE_MODEL, *_NETWORK_MODELS]
DEFAULT_MODEL = _NETWORK_MODELS[0]
DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful AI assistant. Answer concisely and clearly."
_STREAM_TIMEOUT = 60
_LABEL_TIMEOUT = 30
_PROMPT_LOG_PATH = Path("prompt.log")
_prompt_log_lock = threading.Lock()
_force_new_prompt_task = True
_current_task_prompt_count = 0
_CONNECTION_LOG_PATH = Path("connection.log")
_connection_log_lock = threading.Lock()
_WORD_RE = re.compile(r"\S+\s*")

ErrorKind = Literal["quota", "credential", "permission", "generic"]

ERROR_MESSAGES: dict[str, str] = {
    "quota": "API quota exceeded (rate limit reached). Please wait or upgrade your plan.",
    "credential": "Invalid or expired API Key. Please check your credentials.",
    "permission": "Permission denied. Check your API Key and permissions.",
    "generic": "Connection to the model was interrupted. Please check your API Key and network.",
}


def _reset_prompt_state_locked() -> None:
    global _force_new_prompt_task, _current_task_prompt_count
    _force_new_prompt_task = True
    _current_task_prompt_count = 0


def reset_prompt_log() -> None:
    with _prompt_log_lock:
        _PROMPT_LOG_PATH.write_text("", encoding="utf-8")
        _reset_prompt_state_locked()


def reset_connection_log() -> None:
    with _connection_log_lock:
        _CONNECTION_LOG_PATH.write_text("", encoding="utf-8")


def start_prompt_session() -> None:
    with _prompt_log_lock:
        _reset_prompt_state_locked()


def _ensure_prompt_header_locked() -> None:
    global _force_new_prompt_task, _current_task_prompt_count
    if not _force_new_prompt_task:
        return
    size = _PROMPT_LOG_PATH.stat().st_size if _PROMPT_LOG_PATH.exists() else 0
    with _PROMPT_LOG_PATH.open("a", encoding="utf-8") as log:
        if size:
            log.write("=====\n")
    _force_new_prompt_task = False
    _current_task_prompt_count = 0


def _log_prompt_exchange(model: str, prompt: str, response_raw: str | None, error: str | None) -> None:
    prompt_text = prompt.strip()
    if not prompt_text:
        prompt_text = "<empty prompt>"
    response_text = (response_raw or "").strip()
    global _current_task_prompt_count
    prompt_timestamp = datetime.now().isoformat(timespec="seconds")
    with _prompt_log_lock:
        _ensure_prompt_header_locked()
        with _PROMPT_LOG_PATH.open("a", encoding="utf-8") as log:
            if _current_task_prompt_count:
                log.write("----\n")
            entry_no = _current_task_prompt_count + 1
            log.write(f"f0rkch4t [{prompt_timestamp}] Prompt {entry_no}:\n")
            log.write("------------------------------------------------------------\n")
            log.write(f"{prompt_text}\n")
            log.write("============================================================\n")
            response_timestamp = datetime.now().isoformat(timespec="seconds")
            log.write(f"{model} [{response_timestamp}] Response {entry_no}:\n")
            log.write("------------------------------------------------------------\n")
            if error:
                log.write(f"<error> {error}\n")
            elif response_text:
                log.write(f"{response_text}\n")
            else:
                log.write("<empty>\n")
            log.write("============================================================\n")
        _current_task_prompt_count += 1


def _log_connection_event(status: str, model: str, detail: str | None = None) -> None:
    timestamp = datetime.now().isoformat(timespec="seconds")
    message = detail.strip() if detail else ""
    line = f"{timestamp}\t{status.upper()}\t{model}"
    if message:
        line = f"{line}\t{message}"
    with _connection_log_lock:
        with _CONNECTION_LOG_PATH.open("a", encoding="utf-8") as log:
            log.write(line + "\n")


def get_active_model() -> str:
    return os.getenv("OPENROUTER_MODEL", DEFAULT_MODEL)


def set_active_model(model: str) -> None:
    os.environ["OPENROUTER_MODEL"] = model


def get_label_model() -> str:
    return os.getenv("F0RKCH4T_LABEL_MODEL", get_active_model())


def set_label_model(model: str) -> None:
    os.environ["F0RKCH4T_LABEL_MODEL"] = model


def _uses_network(model: str) -> bool:
    return bool(os.getenv("OPENROUTER_API_KEY")) and model != OFFLINE_MODEL


def classify_error(status: Optional[int], detail: str | None) -> tuple[ErrorKind, str]:
    """Map an HTTP status and/or provider error text to a user-facing message."""
    text = (detail or "").lower()
    kind: ErrorKind
    if status == 429 or "quota" in text or "resource_exhausted" in text or "rate limit" in text:
        kind = "quota"
    elif status == 401 or "api key" in text or "api_key" in text or "unauthorized" in text:
        kind = "credential"
    elif status == 403 or "permission" in text or "forbidden" in text:
        kind = "permission"
    else:
        kind = "generic"
    return kind, ERROR_MESSAGES[kind]


def _request_headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "X-Title": "f0rkch4t",
        "X-App-Name": "f0rkch4t",
    }


def _to_openrouter_messages(history: Sequence[Message], system_instruction: str) -> list[dict]:
    messages: list[dict] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    for message in history:
        role = "user" if message.role == "user" else "assistant"
        if message.attachments:
            parts: list[dict] = [
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{attachment.mime_type};base64,{attachment.data}"},
                }
                for attachment in message.attachments
            ]
            parts.append({"type": "text", "text": message.content or ""})
            messages.append({"role": role, "content": parts})
        else:
            messages.append({"role": role, "content": message.content or ""})
    return messages


def _prompt_for_log(history: Sequence[Message]) -> str:
    lines = []
    for message in history:
        label = "User" if message.role == "user" else "AI"
        attachments = f" (+{len(message.attachments)} attachment(s))" if message.attachments else ""
        lines.append(f"[{label}]{attachments}: {message.content}")
    return "\n".join(lines)


def _http_error_detail(exc: error.HTTPError) -> str:
    try:
        body = exc.read().decode("utf-8", errors="replace")
    except OSError:
        body = ""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body or str(exc)
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return str(payload["error"].get("message") or body)
    return body or str(exc)


class _StreamFailure(Exception):
    def __init__(self, status: Optional[int], detail: str) -> None:
        super().__init__(detail)
        self.status = status
        self.detail = detail


def _iter_stream_deltas(response) -> Iterator[str]:
    for raw_line in response:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line or line.startswith(":") or not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict) and event.get("error"):
            err = event["error"]
            detail = err.get("message") if isinstance(err, dict) else str(err)
            code = err.get("code") if isinstance(err, dict) else None
            raise _StreamFailure(code if isinstance(code, int) else None, str(detail))
        try:
            delta = event["choices"][0].get("delta") or {}
        except (KeyError, IndexError, TypeError, AttributeError):
            continue
        if not isinstance(delta, dict):
            continue
        text = delta.get("content")
        if isinstance(text, str) and text:
            yield text


def _offline_reply(history: Sequence[Message]) -> str:
    prompt = history[-1].content.strip() if history else ""
    snippet = prompt.splitlines()[-1] if prompt else "(empty prompt)"
    if len(snippet) > 80:
        snippet = snippet[:80].rstrip() + "..."
    return (
        f"Offline reply with {len(history)} message(s) of context. "
        f"You said: {snippet}"
    )


def stream_response(
    history: Sequence[Message],
    on_chunk: Callable[[str], None],
    model: str | None = None,
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION,
    on_error: Optional[Callable[[str], None]] = None,
) -> bool:
    """Stream a reply for ``history`` through ``on_chunk``, in arrival order.

    Failures are classified, reported once through ``on_error`` and also
    emitted as a final bracketed chunk so the reply shows what happened.
    Returns True when the stream completed without error.
    """
    model = model or get_active_model()
    prompt_text = _prompt_for_log(history)
    if not _uses_network(model):
        reply = _offline_reply(history)
        for word in _WORD_RE.findall(reply):
            on_chunk(word)
        _log_prompt_exchange(OFFLINE_MODEL, prompt_text, reply, None)
        return True

    api_key = os.getenv("OPENROUTER_API_KEY", "")
    body = {
        "model": model,
        "messages": _to_openrouter_messages(history, system_instruction),
        "stream": True,
    }
    http_request = request.Request(
        OPENROUTER_API_URL,
        data=json.dumps(body).encode("utf-8"),
        headers=_request_headers(api_key),
        method="POST",
    )
    received: list[str] = []
    failure: Optional[_StreamFailure] = None
    try:
        with request.urlopen(http_request, timeout=_STREAM_TIMEOUT) as response:
            for text in _iter_stream_deltas(response):
                received.append(text)
                on_chunk(text)
    except error.HTTPError as exc:
        failure = _StreamFailure(exc.code, _http_error_detail(exc))
    except _StreamFailure as exc:
        failure = exc
    except (error.URLError, TimeoutError, OSError, http.client.HTTPException) as exc:
        failure = _StreamFailure(None, str(exc) or type(exc).__name__)

    response_text = "".join(received)
    if failure is None:
        _log_connection_event("SUCCESS", model)
        _log_prompt_exchange(model, prompt_text, response_text, None)
        return True

    _log_connection_event("FAIL", model, failure.detail)
    _log_prompt_exchange(model, prompt_text, response_text, failure.detail)
    _, message = classify_error(failure.status, failure.detail)
    if on_error is not None:
        on_error(message)
    on_chunk(f"\n[{message}]")
    return False


def _post_openrouter(
    model: str, messages: list[dict]
) -> tuple[Optional[dict], Optional[str], Optional[str]]:
    api_key = os.getenv("OPENROUTER_API_KEY")
    if not api_key:
        return None, "missing api key", None

    body = {
        "model": model,
        "messages": messages,
    }
    http_request = request.Request(
        OPENROUTER_API_URL,
        data=json.dumps(body).encode("utf-8"),
        headers=_request_headers(api_key),
        method="POST",
    )
    raw_payload: Optional[str] = None
    try:
        with request.urlopen(http_request, timeout=_LABEL_TIMEOUT) as response:
            status = getattr(response, "status", 200)
            if not 200 <= status < 300:
                return None, f"HTTP {status}", None
            raw_payload = response.read().decode("utf-8")
    except error.HTTPError as exc:
        return None, f"HTTP {exc.code}: {_http_error_detail(exc)}", raw_payload
    except (error.URLError, TimeoutError, OSError) as exc:
        return None, str(exc), raw_payload

    try:
        parsed = json.loads(raw_payload or "")
    except json.JSONDecodeError as exc:
        return None, f"invalid JSON: {exc}", raw_payload
    return parsed, None, raw_payload


def _extract_text(response: dict) -> Optional[str]:
    try:
        choices = response["choices"]
        if not choices:
            return None
        message = choices[0]["message"]
        return message.get("content")
    except (KeyError, TypeError):
        return None


def _call_openrouter(prompt: str, model: str) -> Optional[str]:
    response_payload, error_text, raw_payload = _post_openrouter(
        model, [{"role": "user", "content": prompt}]
    )
    if error_text:
        _log_connection_event("FAIL", model, error_text)
    else:
        _log_connection_event("SUCCESS", model)
    raw_for_log = raw_payload
    if raw_for_log is None and response_payload is not None:
        raw_for_log = json.dumps(response_payload, ensure_ascii=False)
    completion_text = _extract_text(response_payload) if response_payload else None
    _log_prompt_exchange(model, prompt, raw_for_log, error_text)
    if not response_payload:
        return None
    return completion_text


def _offline_label(text: str) -> str:
    words = text.split()
    return " ".join(words[:4])


def generate_node_label(text: str, model: str | None = None) -> str:
    """Short 3-5 word label for a prompt, in the prompt's language; "" on failure."""
    snippet = (text or "").strip()
    if not snippet:
        return ""
    model = model or get_label_model()
    if not _uses_network(model):
        return _offline_label(snippet)
    prompt = (
        "Summarize the following user input into a very short label (max 3-5 words) "
        "to be used as a name for a node in a conversation graph. Identify the language "
        "of the input and generate the label in the SAME language. Return only the label text. "
        f'Input: "{snippet[:2000]}"'
    )
    result = _call_openrouter(prompt, model)
    if not result:
        return ""
    label = result.strip().splitlines()[0] if result.strip() else ""
    return label.strip().strip('"').strip()
