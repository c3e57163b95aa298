#!/usr/bin/env python3
"""
===================================================================
AI REQUEST EXPLAINER
===================================================================

PURPOSE:
    Streams an explanation of a captured HTTP request (or any selected
    fragment of one) from the Anthropic Messages API. Used next to the
    extractor to triage endpoints it surfaced.

FEATURES:
    ✓ Streaming (server-sent events) with incremental callbacks
    ✓ Explain / suggest-attacks / explain-selection prompts
    ✓ API key and model persisted in a small JSON settings file

REQUIREMENTS:
    pip install aiohttp

USAGE:
    # Explain a raw request saved to a file
    python request_explainer.py request.txt

    # Attack checklist, reading the request from stdin
    cat request.txt | python request_explainer.py - --mode attacks

    # Store the key once
    python request_explainer.py request.txt --api-key sk-ant-... --save-settings

CONFIGURATION:
    - ANTHROPIC_API_KEY: Used when no key is stored in settings
    - ANTHROPIC_MODEL: Default model (default: claude-3-5-sonnet-20241022)
    - AI_SETTINGS_FILE: Settings path (default: ~/.config/js-secret-extractor/ai_settings.json)

===================================================================
"""
import argparse
import asyncio
import codecs
import json
import logging
import os
import sys
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from js_secret_extractor import ExtractorError, HTTP_TIMEOUT_SECONDS, LOG_FORMAT, setup_logging

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = os.environ.get("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")
MAX_TOKENS = 1024
AI_SETTINGS_FILE = Path(os.environ.get(
    "AI_SETTINGS_FILE", "~/.config/js-secret-extractor/ai_settings.json"
)).expanduser()

SYSTEM_PROMPT = (
    "You are an expert security researcher and web developer. Explain the following "
    "HTTP request in detail, highlighting interesting parameters, potential security "
    "implications, and what this request is likely doing. Be concise but thorough."
)
EXPLAIN_PROMPT = "Explain this HTTP request:"
ATTACK_CHECKLIST_PROMPT = (
    "Analyze this HTTP request for potential security vulnerabilities. Provide a "
    "prioritized checklist of specific attack vectors to test. For each item, specify "
    "the target parameter/header, the potential vulnerability (e.g., IDOR, SQLi, XSS), "
    "and a brief test instruction. Format the output as a clear Markdown checklist."
)
GENERIC_API_ERROR = "Failed to communicate with Anthropic API"

logger = logging.getLogger("js_secret_extractor")


class ExplanationError(ExtractorError):
    """The explanation could not be produced."""


# ===================================================================
# SETTINGS
# ===================================================================

@dataclass
class AISettings:
    api_key: str = ""
    model: str = DEFAULT_MODEL

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


def read_settings_file(path: Path) -> Dict[str, Any]:
    """Settings dict from disk; missing or unreadable files give {}."""
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable AI settings file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def write_settings_file(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(data, f, indent=2)
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.debug(f"Could not restrict permissions on {path}: {e}")


class SettingsStore:
    """Loads and saves AISettings through injected read/write callables."""

    def __init__(
        self,
        load: Callable[[], Dict[str, Any]],
        save: Callable[[Dict[str, Any]], None]
    ):
        self._load = load
        self._save = save

    @classmethod
    def from_file(cls, path: Path = AI_SETTINGS_FILE) -> "SettingsStore":
        return cls(lambda: read_settings_file(path), lambda data: write_settings_file(path, data))

    def load(self) -> AISettings:
        data = self._load() or {}
        return AISettings(
            api_key=str(data.get("api_key") or ""),
            model=str(data.get("model") or DEFAULT_MODEL),
        )

    def save(self, settings: AISettings) -> bool:
        """Persist settings; an empty key is never written."""
        if not settings.api_key:
            return False
        self._save(asdict(settings))
        return True


# ===================================================================
# PROMPTS
# ===================================================================

def build_prompt(prefix: str, content: str) -> str:
    return f"{prefix}\n\n{content}" if content else prefix


def build_selection_prompt(selection: str) -> str:
    return (
        f'Explain this specific part of an HTTP request/response:\n\n"{selection}"\n\n'
        "Provide context on what it is, how it's used, and any security relevance."
    )


# ===================================================================
# SERVER-SENT EVENTS
# ===================================================================

class SSEDecoder:
    """
    Incremental decoder for a text/event-stream body.

    Bytes may be split anywhere, including inside a UTF-8 sequence or a
    line; events are only emitted once their terminating blank line has
    arrived.
    """

    def __init__(self):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        self._buffer += self._text.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        events = []
        while "\n\n" in self._buffer:
            record, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse_record(record)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[Dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        self._buffer += self._text.decode(b"", final=True)
        record, self._buffer = self._buffer.strip("\n"), ""
        event = self._parse_record(record) if record else None
        return [event] if event is not None else []

    @staticmethod
    def _parse_record(record: str) -> Optional[Dict[str, Any]]:
        event_name = None
        data_lines = []
        for line in record.split("\n"):
            if line.startswith(":"):
                continue
            if line.startswith("event:"):
                event_name = line[6:].strip()
            elif line.startswith("data:"):
                value = line[5:]
                data_lines.append(value[1:] if value.startswith(" ") else value)

        if not data_lines:
            return None
        data = "\n".join(data_lines)
        if data == "[DONE]":
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed SSE data: {data[:80]}")
            return None
        return {"event": event_name, "data": payload}


def extract_text_delta(event: Dict[str, Any]) -> Optional[str]:
    """Text carried by a content_block_delta event; raises on stream errors."""
    data = event.get("data")
    if not isinstance(data, dict):
        return None
    if data.get("type") == "error":
        error = data.get("error") or {}
        raise ExplanationError(error.get("message") or GENERIC_API_ERROR)
    if data.get("type") == "content_block_delta":
        delta = data.get("delta") or {}
        text = delta.get("text")
        return text if isinstance(text, str) else None
    return None


# ===================================================================
# STREAMING CLIENT
# ===================================================================

async def _error_message(resp: "aiohttp.ClientResponse") -> str:
    try:
        data = await resp.json(content_type=None)
    except (ValueError, aiohttp.ClientError):
        return f"{GENERIC_API_ERROR} (HTTP {resp.status})"
    if isinstance(data, dict):
        message = (data.get("error") or {}).get("message")
        if message:
            return message
    return f"{GENERIC_API_ERROR} (HTTP {resp.status})"


async def stream_explanation(
    settings: AISettings,
    prompt: str,
    on_update: Callable[[str], None],
    session: Optional["aiohttp.ClientSession"] = None,
    api_url: str = ANTHROPIC_API_URL
) -> str:
    """
    Stream a model response for prompt.

    on_update receives the full accumulated text after every delta.

    Args:
        settings: API key and model
        prompt: User message content
        on_update: Callback for the growing text
        session: Optional shared aiohttp session
        api_url: Messages endpoint

    Returns:
        The complete response text

    Raises:
        ExplanationError: missing key, non-200 reply, stream error or transport failure
    """
    if not settings.is_configured:
        raise ExplanationError("Anthropic API key is not configured")

    payload = {
        "model": settings.model,
        "max_tokens": MAX_TOKENS,
        "system": SYSTEM_PROMPT,
        "stream": True,
        "messages": [{"role": "user", "content": prompt}],
    }
    headers = {
        "x-api-key": settings.api_key,
        "anthropic-version": ANTHROPIC_VERSION,
        "content-type": "application/json",
    }

    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_read=HTTP_TIMEOUT_SECONDS)
        )

    full_text = ""

    def apply(events: List[Dict[str, Any]]) -> None:
        nonlocal full_text
        for event in events:
            delta = extract_text_delta(event)
            if delta:
                full_text += delta
                on_update(full_text)

    try:
        async with session.post(api_url, json=payload, headers=headers) as resp:
            if resp.status != 200:
                raise ExplanationError(await _error_message(resp))

            decoder = SSEDecoder()
            async for chunk in resp.content.iter_any():
                apply(decoder.feed(chunk))
            apply(decoder.flush())

    except aiohttp.ClientError as e:
        raise ExplanationError(f"{GENERIC_API_ERROR}: {e}") from e
    except asyncio.TimeoutError as e:
        raise ExplanationError(f"{GENERIC_API_ERROR}: timed out") from e
    finally:
        if owns_session:
            await session.close()

    logger.debug(f"Explanation complete ({len(full_text)} chars)")
    return full_text


async def explain_request(settings: AISettings, request_text: str, on_update: Callable[[str], None],
                          session: Optional["aiohttp.ClientSession"] = None,
                          api_url: str = ANTHROPIC_API_URL) -> str:
    if not request_text.strip():
        raise ExplanationError("Request is empty.")
    return await stream_explanation(
        settings, build_prompt(EXPLAIN_PROMPT, request_text), on_update, session, api_url
    )


async def suggest_attacks(settings: AISettings, request_text: str, on_update: Callable[[str], None],
                          session: Optional["aiohttp.ClientSession"] = None,
                          api_url: str = ANTHROPIC_API_URL) -> str:
    if not request_text.strip():
        raise ExplanationError("Request is empty.")
    return await stream_explanation(
        settings, build_prompt(ATTACK_CHECKLIST_PROMPT, request_text), on_update, session, api_url
    )


async def explain_selection(settings: AISettings, selection: str, on_update: Callable[[str], None],
                            session: Optional["aiohttp.ClientSession"] = None,
                            api_url: str = ANTHROPIC_API_URL) -> str:
    if not selection.strip():
        raise ExplanationError("Please select some text to explain.")
    return await stream_explanation(
        settings, build_selection_prompt(selection), on_update, session, api_url
    )


MODES = {
    "explain": explain_request,
    "attacks": suggest_attacks,
    "selection": explain_selection,
}


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Stream an AI explanation of a captured HTTP request'
    )
    parser.add_argument('request_file', type=str,
                        help="File holding the raw request ('-' for stdin)")
    parser.add_argument('--mode', choices=sorted(MODES), default='explain',
                        help='What to ask for (default: explain)')
    parser.add_argument('--api-key', type=str, default='',
                        help='Anthropic API key (overrides stored settings)')
    parser.add_argument('--model', type=str, default='',
                        help=f'Model name (default: stored setting or {DEFAULT_MODEL})')
    parser.add_argument('--save-settings', action='store_true',
                        help='Persist the key and model for later runs')
    parser.add_argument('--settings-file', type=str, default=str(AI_SETTINGS_FILE),
                        help=f'Settings path (default: {AI_SETTINGS_FILE})')
    parser.add_argument('--log-format', type=str, choices=['text', 'json'], default=LOG_FORMAT,
                        help=f'Logging format (default: {LOG_FORMAT})')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    global logger

    args = parse_arguments(argv)
    logger = setup_logging(args.log_format)

    store = SettingsStore.from_file(Path(args.settings_file).expanduser())
    settings = store.load()
    if args.api_key:
        settings.api_key = args.api_key
    elif not settings.api_key:
        settings.api_key = os.environ.get("ANTHROPIC_API_KEY", "")
    if args.model:
        settings.model = args.model

    if args.save_settings:
        if store.save(settings):
            logger.info(f"Settings saved to {args.settings_file}")
        else:
            logger.warning("No API key given; settings not saved")

    if not settings.is_configured:
        logger.error("Anthropic API key is not configured (use --api-key or ANTHROPIC_API_KEY)")
        return 1

    try:
        if args.request_file == '-':
            request_text = sys.stdin.read()
        else:
            request_text = Path(args.request_file).read_text(encoding='utf-8', errors='replace')
    except OSError as e:
        logger.error(f"Cannot read request: {e}")
        return 1

    printed = 0

    def on_update(text: str) -> None:
        nonlocal printed
        sys.stdout.write(text[printed:])
        sys.stdout.flush()
        printed = len(text)

    try:
        asyncio.run(MODES[args.mode](settings, request_text, on_update))
    except ExplanationError as e:
        logger.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        return 130

    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
