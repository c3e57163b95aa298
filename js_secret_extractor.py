#!/usr/bin/env python3
"""
===================================================================
JS SECRET & ENDPOINT EXTRACTOR
===================================================================

PURPOSE:
    Scans the script resources loaded by a web page (JavaScript bundles,
    inline scripts and their source maps) for leaked credentials and for
    the API endpoints the front-end talks to. Every finding carries a
    0-100 confidence score so results can be ranked and tiered.

FEATURES:
    ✓ Pattern catalog of provider-specific and generic secret rules
    ✓ Deterministic confidence adjusters (placeholder, variable name, entropy)
    ✓ Endpoint extraction from HTTP-client calls, path literals and
      template literals, with HTTP method and base URL inference
    ✓ Per-rule, per-file matching time budget
    ✓ Sequential async scan with per-file fault isolation
    ✓ Incremental (processed, total) progress reporting
    ✓ Case-insensitive result filtering over an atomically replaced store
    ✓ Source map expansion (sourcesContent)
    ✓ Local directory and live page (HTTP) resource sources
    ✓ Custom regex pattern support
    ✓ JSON and CSV reports, structured JSON logging

DETECTION METHODS:
    1. Pattern matching (regex) for known credential formats
    2. Context analysis around each match (enclosing literal, assigned name)
    3. Shannon entropy for generic assignment rules
    4. HTTP-client call shapes and path-like literals for endpoints

SECURITY NOTICE:
    This tool NEVER uses discovered credentials and never sends requests
    to discovered endpoints. Findings are format-based only.

REQUIREMENTS:
    pip install aiohttp aiofiles tqdm

USAGE:
    # Scan a directory of built scripts / source maps
    python js_secret_extractor.py --local ./dist

    # Scan the scripts a live page loads
    python js_secret_extractor.py --url https://app.example.com/

    # Narrow and export
    python js_secret_extractor.py --local ./dist --filter aws --min-confidence 50
    python js_secret_extractor.py --url https://app.example.com/ --output-format all

CONFIGURATION:
    Set via environment variables:
    - MAX_FILE_SIZE_MB: Skip local files larger than this (default: 10)
    - RULE_TIME_BUDGET_MS: Matching budget per rule per file (default: 250)
    - HTTP_TIMEOUT_SECONDS: Timeout for page/script fetches (default: 30)
    - MAX_SCRIPTS: Max external scripts taken from one page (default: 500)
    - OUTPUT_FILE: Report output path (default: extract_report.json)
    - OUTPUT_FORMAT: json|csv|all (default: json)
    - CUSTOM_PATTERNS_FILE: Path to custom regex patterns JSON
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import argparse
import asyncio
import csv
import json
import logging
import math
import os
import re
import sys
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from pathlib import Path
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple
)
from urllib.parse import urljoin, urlparse

from tqdm import tqdm

# Third-party imports with error handling
try:
    import aiofiles
    import aiohttp
except ImportError as e:
    print(f"ERROR: Missing required dependency: {e}")
    print("Install with: pip install aiohttp aiofiles tqdm")
    sys.exit(1)

__version__ = "1.0.0"

# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

# Environment-driven configuration
MAX_FILE_SIZE_MB = int(os.environ.get("MAX_FILE_SIZE_MB", "10"))
RULE_TIME_BUDGET_MS = int(os.environ.get("RULE_TIME_BUDGET_MS", "250"))
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "30"))
MAX_SCRIPTS = int(os.environ.get("MAX_SCRIPTS", "500"))
OUTPUT_FILE = Path(os.environ.get("OUTPUT_FILE", "extract_report.json"))
OUTPUT_FORMAT = os.environ.get("OUTPUT_FORMAT", "json")  # json|csv|all
CUSTOM_PATTERNS_FILE = os.environ.get("CUSTOM_PATTERNS_FILE", "")
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json
USER_AGENT = os.environ.get("USER_AGENT", f"js-secret-extractor/{__version__}")

# Local scan configuration
LOCAL_SCAN_MAX_DEPTH = int(os.environ.get("LOCAL_SCAN_MAX_DEPTH", "10"))

# Operational constants
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024

# Resources the orchestrator treats as script-bearing
SCRIPT_RESOURCE_TYPES = {"script", "sourcemap"}
SCRIPT_SUFFIXES = (".js", ".mjs", ".cjs", ".jsx", ".map")
SOURCE_MAP_SUFFIX = ".map"

# Directory names skipped when walking a local tree
SKIP_DIR_NAMES = {".git", "node_modules", "__pycache__", ".venv", "venv", ".cache"}

# Terms marking a value as a placeholder rather than a live credential
PLACEHOLDER_TERMS = [
    "example", "sample", "dummy", "changeme", "placeholder", "your_",
    "your-", "xxxx", "redacted", "replace_me", "fake", "test_key", "insert",
]

# Variable/key names that make an assigned literal look like a credential
SUGGESTIVE_NAME_TERMS = ["key", "secret", "token", "passw", "pwd", "auth", "credential"]

# Paths ending in these are static assets, not API endpoints
STATIC_ASSET_EXTENSIONS = (
    ".js", ".mjs", ".css", ".map", ".png", ".jpg", ".jpeg", ".gif", ".svg",
    ".ico", ".webp", ".avif", ".bmp", ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".mp4", ".webm", ".mp3", ".wav", ".ogg", ".pdf", ".zip", ".gz",
)

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
METHOD_UNKNOWN = "UNKNOWN"


# ===================================================================
# CONFIDENCE SCORING CONSTANTS
# ===================================================================

CONFIDENCE_MIN = 0
CONFIDENCE_MAX = 100

# UI tiers: high >= 80, medium >= 50, low below
CONFIDENCE_TIER_HIGH = 80
CONFIDENCE_TIER_MEDIUM = 50

# Secret adjusters. Bump ADJUSTER_VERSION whenever a value below changes.
ADJUSTER_VERSION = 1
PLACEHOLDER_PENALTY = 20
SUGGESTIVE_NAME_BOOST = 10
LOW_ENTROPY_PENALTY = 15
LOW_ENTROPY_THRESHOLD = 3.0      # bits per character
MIN_ENTROPY_CALC_LENGTH = 2
LOCAL_CONTEXT_WINDOW = 200       # chars searched around a match

# Endpoint confidence bands
CONFIDENCE_VERB_ABSOLUTE = 85    # axios.post("https://...")
CONFIDENCE_VERB_RELATIVE = 70    # axios.post("/api/...")
CONFIDENCE_CALL_ABSOLUTE = 65    # fetch("https://...")
CONFIDENCE_CALL_RELATIVE = 60    # fetch("/api/...")
CONFIDENCE_API_URL_LITERAL = 50  # "https://api.host/v1/..."
CONFIDENCE_TEMPLATE_LITERAL = 45 # `${base}/users/${id}`
CONFIDENCE_API_PATH_LITERAL = 40 # "/api/v1/users"
CONFIDENCE_BARE_PATH_LITERAL = 30  # "/account/settings"
CLIENT_CONTEXT_BOOST = 10
BASE_URL_PROXIMITY_BOOST = 5    # relative literal with an API root nearby
CONFIDENCE_HEURISTIC_CAP = 50
CLIENT_CONTEXT_WINDOW = 120
BASE_URL_WINDOW = 2000


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add custom fields
        if hasattr(record, 'scan_id'):
            log_data["scan_id"] = record.scan_id
        if hasattr(record, 'resource'):
            log_data["resource"] = record.resource
        if hasattr(record, 'finding_count'):
            log_data["finding_count"] = record.finding_count

        return json.dumps(log_data)


def setup_logging(log_format: str = "text") -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(LOG_FORMAT)


# ===================================================================
# ERRORS
# ===================================================================

class ExtractorError(Exception):
    """Base class for extractor errors."""


class ResourceRetrievalError(ExtractorError):
    """Content of a single resource could not be fetched."""


class ScanInfrastructureError(ExtractorError):
    """The resource listing itself failed; the scan cannot start."""


class ScanAlreadyRunningError(ExtractorError):
    """A scan was requested while another one holds the result store."""


# ===================================================================
# DATA MODEL
# ===================================================================

class ScanState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SecretFinding:
    """A credential-like substring found in one resource."""
    type: str
    match: str
    confidence: int
    file: str


@dataclass(frozen=True)
class EndpointFinding:
    """An API call target found in one resource."""
    method: str
    endpoint: str
    confidence: int
    file: str
    base_url: Optional[str] = None


@dataclass
class ResourceRef:
    """A script-bearing resource and the coroutine that fetches its text."""
    url: str
    type: str = "script"
    fetcher: Optional[Callable[[], Awaitable[Optional[str]]]] = field(
        default=None, repr=False, compare=False
    )

    async def get_content(self) -> Optional[str]:
        if self.fetcher is None:
            return None
        return await self.fetcher()


@dataclass
class ScanFailure:
    file: str
    error: str


@dataclass
class ScanSession:
    """State of one scan, owned by the orchestrator while it runs."""
    scan_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: ScanState = ScanState.IDLE
    total_files: int = 0
    processed_files: int = 0
    secret_results: List[SecretFinding] = field(default_factory=list)
    endpoint_results: List[EndpointFinding] = field(default_factory=list)
    failures: List[ScanFailure] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


# ===================================================================
# UTILITY FUNCTIONS
# ===================================================================

def shannon_entropy(data: str) -> float:
    """
    Calculate Shannon entropy of a string (bits per character).

    High entropy (>4.5) often indicates cryptographic material.
    Low entropy (<3.0) typically indicates words or repeated characters.

    Args:
        data: String to analyze

    Returns:
        Entropy value in bits per character (0.0 to ~8.0)
    """
    if not data or len(data) < MIN_ENTROPY_CALC_LENGTH:
        return 0.0

    counts = Counter(data)
    probs = [count / len(data) for count in counts.values()]
    return -sum(p * math.log2(p) for p in probs if p > 0)


def is_placeholder(value: str) -> bool:
    """
    Check if value contains known fake/example credential terms.

    Args:
        value: String to check

    Returns:
        True if value appears to be a placeholder/example
    """
    value_lower = value.lower()
    return any(term in value_lower for term in PLACEHOLDER_TERMS)


def coerce_text(content: Any) -> str:
    """Turn whatever a collaborator handed back into scannable text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (bytes, bytearray)):
        return bytes(content).decode("utf-8", errors="replace")
    return str(content)


def clamp_confidence(value: int) -> int:
    return max(CONFIDENCE_MIN, min(CONFIDENCE_MAX, int(value)))


def confidence_tier(confidence: int) -> str:
    """Map a confidence score onto the high/medium/low display tiers."""
    if confidence >= CONFIDENCE_TIER_HIGH:
        return "high"
    if confidence >= CONFIDENCE_TIER_MEDIUM:
        return "medium"
    return "low"


def is_absolute_url(url: str) -> bool:
    return url.lower().startswith(("http://", "https://", "ws://", "wss://"))


def is_source_map(url: str) -> bool:
    return urlparse(url).path.lower().endswith(SOURCE_MAP_SUFFIX)


def iter_matches_within_budget(
    pattern: "re.Pattern",
    content: str,
    budget_seconds: float,
    rule_label: str,
    file_url: str
) -> Iterator["re.Match"]:
    """
    Yield matches of pattern in content until the time budget runs out.

    The deadline is checked after every match; once it passes the rule
    stops for this file and whatever was already yielded stands.
    """
    deadline = time.monotonic() + budget_seconds
    for match in pattern.finditer(content):
        yield match
        if time.monotonic() > deadline:
            logger.debug(
                f"Rule '{rule_label}' exceeded its {budget_seconds * 1000:.0f}ms budget "
                f"on {file_url}; remaining matches skipped"
            )
            return


# ===================================================================
# MATCH CONTEXT & CONFIDENCE ADJUSTERS
# ===================================================================

QUOTE_CHARS = "\"'`"

# `name = `, `name: `, `"name": `, `obj["name"] = ` at the end of a prefix
ASSIGNMENT_TARGET = re.compile(r'''([A-Za-z_$][\w$\-]*)["'\]]*\s*(?<![=!<>])[:=]\s*$''')

ANGLE_PLACEHOLDER = re.compile(r'^<[^<>]{1,64}>$')


def find_enclosing_literal(
    content: str,
    start: int,
    end: int,
    window: int = LOCAL_CONTEXT_WINDOW
) -> Optional[Tuple[int, int]]:
    """
    Locate the string literal around content[start:end].

    Returns (open_quote, close_quote) offsets, or None if the span does not
    sit inside a quoted literal on its line.
    """
    line_start = content.rfind("\n", 0, start) + 1
    floor = max(line_start, start - window)
    for i in range(start - 1, floor - 1, -1):
        quote = content[i]
        if quote not in QUOTE_CHARS:
            continue
        # An odd number of the same quote before it means it closes a literal
        if content.count(quote, floor, i) % 2:
            return None
        close = content.find(quote, end, min(len(content), end + window))
        if close == -1:
            return None
        if quote != "`" and "\n" in content[end:close]:
            return None
        return i, close
    return None


class MatchContext:
    """Where a rule matched inside a file's text."""

    __slots__ = ("content", "start", "end")

    def __init__(self, content: str, start: int, end: int):
        self.content = content
        self.start = start
        self.end = end

    def literal_span(self) -> Optional[Tuple[int, int]]:
        return find_enclosing_literal(self.content, self.start, self.end)

    def literal(self) -> Optional[str]:
        span = self.literal_span()
        if span is None:
            return None
        return self.content[span[0] + 1:span[1]]

    def assigned_name(self) -> Optional[str]:
        """Name of the variable or key the enclosing literal is assigned to."""
        span = self.literal_span()
        if span is None:
            return None
        line_start = self.content.rfind("\n", 0, span[0]) + 1
        prefix = self.content[max(line_start, span[0] - LOCAL_CONTEXT_WINDOW):span[0]]
        target = ASSIGNMENT_TARGET.search(prefix)
        return target.group(1) if target else None


Adjuster = Callable[[str, MatchContext], int]


def placeholder_adjuster(match: str, context: MatchContext) -> int:
    """Penalize values that look like documentation placeholders."""
    literal = context.literal()
    if is_placeholder(match):
        return -PLACEHOLDER_PENALTY
    if literal is not None:
        if is_placeholder(literal) or ANGLE_PLACEHOLDER.match(literal.strip()):
            return -PLACEHOLDER_PENALTY
    return 0


def suggestive_name_adjuster(match: str, context: MatchContext) -> int:
    """Boost literals assigned to names like apiKey, authToken, clientSecret."""
    name = context.assigned_name()
    if name and any(term in name.lower() for term in SUGGESTIVE_NAME_TERMS):
        return SUGGESTIVE_NAME_BOOST
    return 0


def low_entropy_adjuster(match: str, context: MatchContext) -> int:
    """Penalize repetitive or word-like values caught by generic rules."""
    if shannon_entropy(match) < LOW_ENTROPY_THRESHOLD:
        return -LOW_ENTROPY_PENALTY
    return 0


def combine_adjustments(deltas: Iterable[int]) -> int:
    """
    Fold adjuster outputs into one delta.

    Any penalty discards every boost and the penalties add up; otherwise
    the single largest boost applies.
    """
    deltas = list(deltas)
    penalties = [d for d in deltas if d < 0]
    if penalties:
        return sum(penalties)
    return max(deltas, default=0)


DEFAULT_ADJUSTERS: Tuple[Adjuster, ...] = (placeholder_adjuster, suggestive_name_adjuster)
# Generic rules already require a suggestive name in the pattern itself
GENERIC_ADJUSTERS: Tuple[Adjuster, ...] = (placeholder_adjuster, low_entropy_adjuster)


# ===================================================================
# PATTERN CATALOG
# ===================================================================

@dataclass(frozen=True)
class SecretRule:
    """A secret-detection rule. A `val` group, if present, is the reported match."""
    type: str
    pattern: "re.Pattern"
    base_confidence: int
    adjusters: Tuple[Adjuster, ...] = DEFAULT_ADJUSTERS

    def __post_init__(self):
        if not CONFIDENCE_MIN <= self.base_confidence <= CONFIDENCE_MAX:
            raise ValueError(f"Rule {self.type!r}: base confidence {self.base_confidence} out of range")


@dataclass(frozen=True)
class EndpointRule:
    """
    An endpoint-detection rule.

    The pattern must define a `url` group and may define a `method` group.
    `method_hint` forces a method; without it the `method` group is used,
    falling back to UNKNOWN.
    """
    kind: str
    pattern: "re.Pattern"
    base_confidence: int
    absolute_confidence: Optional[int] = None
    method_hint: Optional[str] = None
    heuristic: bool = False
    validator: Optional[Callable[[str], bool]] = None

    def accepts(self, url: str) -> bool:
        if not url:
            return False
        return self.validator(url) if self.validator else True


# Closing-boundary for tokens whose alphabet includes - and _
TOKEN_END = r'(?![A-Za-z0-9_\-])'


class SecretPatterns:
    """Compiled regex patterns for secret detection with provider-specific rules."""

    # AWS credentials
    AWS_ACCESS_KEY_ID = re.compile(r'\b(?:AKIA|ASIA|AGPA|AIDA|AROA|AIPA|ANPA|ANVA)[A-Z0-9]{16}\b')
    AWS_SECRET_ACCESS_KEY = re.compile(
        r'''(?i)aws[\w\-.]{0,20}?(?:secret|private)[\w\-.]{0,20}?["']?\s*[:=]\s*'''
        r'''["'](?P<val>[A-Za-z0-9/+=]{40})["']'''
    )

    # Google API keys (Maps, Firebase, Gemini)
    GOOGLE_API_KEY = re.compile(r'\bAIza[0-9A-Za-z_\-]{35}' + TOKEN_END)

    # GitHub / GitLab tokens
    GITHUB_TOKEN = re.compile(r'\b(?:ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{36}\b')
    GITHUB_FINE_GRAINED_TOKEN = re.compile(r'\bgithub_pat_[A-Za-z0-9_]{82}\b')
    GITLAB_PAT = re.compile(r'\bglpat-[A-Za-z0-9_\-]{20}' + TOKEN_END)

    # Slack
    SLACK_TOKEN = re.compile(r'\bxox[baprs]-[0-9A-Za-z\-]{10,72}\b')
    SLACK_WEBHOOK = re.compile(
        r'https://hooks\.slack\.com/services/T[A-Z0-9]{8,12}/B[A-Z0-9]{8,12}/[A-Za-z0-9]{24}'
    )

    # Payments
    STRIPE_SECRET_KEY = re.compile(r'\b(?:sk|rk)_live_[0-9a-zA-Z]{24,99}\b')
    STRIPE_PUBLISHABLE_KEY = re.compile(r'\bpk_live_[0-9a-zA-Z]{24,99}\b')
    SQUARE_TOKEN = re.compile(r'\bsq0(?:atp|csp)-[0-9A-Za-z_\-]{22,43}' + TOKEN_END)
    SHOPIFY_TOKEN = re.compile(r'\bshp(?:at|ca|pa|ss)_[a-fA-F0-9]{32}\b')

    # AI providers
    OPENAI_API_KEY = re.compile(
        r'\b(?:sk-[a-zA-Z0-9]{20}T3BlbkFJ[a-zA-Z0-9]{20}|sk-proj-[a-zA-Z0-9_\-]{43,200})' + TOKEN_END
    )
    ANTHROPIC_API_KEY = re.compile(r'\bsk-ant-(?:api|admin)\d{2}-[A-Za-z0-9_\-]{80,120}' + TOKEN_END)

    # Messaging / email
    SENDGRID_KEY = re.compile(r'\bSG\.[A-Za-z0-9_\-]{22}\.[A-Za-z0-9_\-]{43}' + TOKEN_END)
    MAILGUN_KEY = re.compile(r'\bkey-[0-9a-f]{32}\b')
    TWILIO_KEY = re.compile(r'\bSK[0-9a-fA-F]{32}\b')
    DISCORD_WEBHOOK = re.compile(
        r'https://(?:ptb\.|canary\.)?discord(?:app)?\.com/api/webhooks/\d{17,20}/[A-Za-z0-9_\-]{60,80}'
    )
    TELEGRAM_BOT_TOKEN = re.compile(r'\b\d{8,10}:AA[A-Za-z0-9_\-]{33}' + TOKEN_END)

    # Package registries
    NPM_TOKEN = re.compile(r'\bnpm_[A-Za-z0-9]{36}\b')

    # Tokens & keys
    JWT_TOKEN = re.compile(
        r'\beyJ[A-Za-z0-9_\-]{10,2000}\.eyJ[A-Za-z0-9_\-]{10,4000}\.[A-Za-z0-9_\-]{10,1000}' + TOKEN_END
    )
    PRIVATE_KEY = re.compile(
        r'-----BEGIN (?:RSA |EC |DSA |OPENSSH |ENCRYPTED |PGP )?PRIVATE KEY(?: BLOCK)?-----'
        r'[\s\S]{20,8000}?'
        r'-----END (?:RSA |EC |DSA |OPENSSH |ENCRYPTED |PGP )?PRIVATE KEY(?: BLOCK)?-----'
    )
    BEARER_TOKEN = re.compile(r'\b[Bb]earer\s+(?P<val>[A-Za-z0-9\-._~+/]{20,2048}=*)')
    BASIC_AUTH_HEADER = re.compile(r'\b[Bb]asic\s+(?P<val>[A-Za-z0-9+/]{16,1024}={0,2})')

    # Connection strings with embedded credentials
    DATABASE_URI = re.compile(
        r'''\b(?:mongodb(?:\+srv)?|postgres(?:ql)?|mysql|mariadb|redis|amqps?)://'''
        r'''[^\s:@/"'`]{1,128}:[^\s:@/"'`]{1,128}@[\w.\-]{1,253}(?::\d{1,5})?'''
    )
    URL_CREDENTIALS = re.compile(
        r'''\bhttps?://[^\s:@/"'`]{1,128}:[^\s:@/"'`]{1,128}@[\w.\-]{1,253}'''
    )

    # Generic assignments (should be last for specificity)
    GENERIC_API_KEY = re.compile(
        r'''(?i)(?:api[_\-]?key|apikey|access[_\-]?token|auth[_\-]?token|client[_\-]?secret'''
        r'''|secret[_\-]?key|app[_\-]?secret|private[_\-]?key)["']?\s*[:=]\s*'''
        r'''["'`](?P<val>[A-Za-z0-9_\-.+/=]{16,256})["'`]'''
    )
    GENERIC_SECRET = re.compile(
        r'''(?i)(?:password|passwd|pwd|secret|token)["']?\s*[:=]\s*'''
        r'''["'`](?P<val>[^"'`\s]{8,256})["'`]'''
    )


SECRET_RULES: Tuple[SecretRule, ...] = (
    # Cloud providers
    SecretRule("AWS Access Key", SecretPatterns.AWS_ACCESS_KEY_ID, 90),
    SecretRule("AWS Secret Key", SecretPatterns.AWS_SECRET_ACCESS_KEY, 85, (placeholder_adjuster,)),
    SecretRule("Google API Key", SecretPatterns.GOOGLE_API_KEY, 75),

    # Version control & registries
    SecretRule("GitHub Token", SecretPatterns.GITHUB_TOKEN, 90),
    SecretRule("GitHub Fine-Grained Token", SecretPatterns.GITHUB_FINE_GRAINED_TOKEN, 90),
    SecretRule("GitLab Token", SecretPatterns.GITLAB_PAT, 90),
    SecretRule("NPM Token", SecretPatterns.NPM_TOKEN, 85),

    # Communication
    SecretRule("Slack Token", SecretPatterns.SLACK_TOKEN, 85),
    SecretRule("Slack Webhook", SecretPatterns.SLACK_WEBHOOK, 85),
    SecretRule("Discord Webhook", SecretPatterns.DISCORD_WEBHOOK, 85),
    SecretRule("Telegram Bot Token", SecretPatterns.TELEGRAM_BOT_TOKEN, 70),
    SecretRule("SendGrid API Key", SecretPatterns.SENDGRID_KEY, 90),
    SecretRule("Mailgun API Key", SecretPatterns.MAILGUN_KEY, 70),
    SecretRule("Twilio API Key", SecretPatterns.TWILIO_KEY, 65),

    # Payments & commerce
    SecretRule("Stripe Secret Key", SecretPatterns.STRIPE_SECRET_KEY, 95),
    SecretRule("Stripe Publishable Key", SecretPatterns.STRIPE_PUBLISHABLE_KEY, 30),
    SecretRule("Square Token", SecretPatterns.SQUARE_TOKEN, 85),
    SecretRule("Shopify Token", SecretPatterns.SHOPIFY_TOKEN, 90),

    # AI services
    SecretRule("OpenAI API Key", SecretPatterns.OPENAI_API_KEY, 90),
    SecretRule("Anthropic API Key", SecretPatterns.ANTHROPIC_API_KEY, 90),

    # Keys & tokens
    SecretRule("Private Key", SecretPatterns.PRIVATE_KEY, 95),
    SecretRule("JSON Web Token", SecretPatterns.JWT_TOKEN, 70),
    SecretRule("Bearer Token", SecretPatterns.BEARER_TOKEN, 60),
    SecretRule("Basic Auth Header", SecretPatterns.BASIC_AUTH_HEADER, 50),

    # Connection strings
    SecretRule("Database Connection String", SecretPatterns.DATABASE_URI, 85),
    SecretRule("Credentials in URL", SecretPatterns.URL_CREDENTIALS, 70),

    # Generic
    SecretRule("Generic API Key", SecretPatterns.GENERIC_API_KEY, 50, GENERIC_ADJUSTERS),
    SecretRule("Generic Secret", SecretPatterns.GENERIC_SECRET, 40, GENERIC_ADJUSTERS),
)


# Endpoint validators

API_PATH_HINT = re.compile(r'/(?:api|v\d{1,2}|graphql|gql|rest|rpc)(?:[/?#]|$)', re.IGNORECASE)
LEADING_TEMPLATE_EXPR = re.compile(r'^\$\{[^}]*\}')


def _strip_query(url: str) -> str:
    return re.split(r'[?#]', url, maxsplit=1)[0]


def is_static_asset(url: str) -> bool:
    return _strip_query(url).lower().endswith(STATIC_ASSET_EXTENSIONS)


def is_plausible_call_target(url: str) -> bool:
    """Anything an HTTP client was explicitly handed, minus non-network schemes."""
    lowered = url.lower()
    return not (url.startswith("#") or lowered.startswith(("data:", "javascript:", "blob:", "mailto:")))


def is_plausible_path(url: str) -> bool:
    """Path literals that could be API routes rather than assets or junk."""
    if len(url) < 2 or url.startswith("//") or "<" in url or ">" in url:
        return False
    if is_static_asset(url):
        return False
    segments = [s for s in _strip_query(url).split("/") if s]
    return any(re.search(r'[A-Za-z]', s) for s in segments)


def is_api_url(url: str) -> bool:
    """Absolute URLs that look like an API rather than a page or CDN asset."""
    if is_static_asset(url):
        return False
    parsed = urlparse(url)
    if not parsed.netloc:
        return False
    return parsed.netloc.lower().startswith("api.") or bool(API_PATH_HINT.search(parsed.path))


def looks_like_url_template(url: str) -> bool:
    """`${base}/users/${id}` or `https://host/${x}` but not `${w}px`."""
    rest = LEADING_TEMPLATE_EXPR.sub("", url)
    if rest.lower().startswith(("http://", "https://")):
        return True
    return rest.startswith("/") and bool(re.search(r'/[A-Za-z]', rest)) and not is_static_asset(rest)


# String argument: same quote opens and closes, no whitespace inside
QUOTED_URL = r'''(?P<q>["'`])(?P<url>[^"'`\s]{1,2048})(?P=q)'''
VERB = r'''(?P<method>get|post|put|delete|patch)'''
# Gap inside an options object; one level of nested braces like headers: {...}
OPTIONS_GAP = r'''(?:[^{}]|\{[^{}]{0,200}\}){0,400}?'''


class EndpointPatterns:
    """Compiled regex patterns for endpoint detection, most specific first."""

    XHR_OPEN = re.compile(
        r'''\.open\s*\(\s*["']''' + VERB + r'''["']\s*,\s*''' + QUOTED_URL,
        re.IGNORECASE
    )
    FETCH_WITH_METHOD = re.compile(
        r'''(?<![\w$])fetch\s*\(\s*''' + QUOTED_URL +
        r'''\s*,\s*\{''' + OPTIONS_GAP + r'''\bmethod["']?\s*:\s*["']''' + VERB + r'''["']''',
        re.IGNORECASE
    )
    CONFIG_METHOD_FIRST = re.compile(
        r'''(?<![\w$])(?:axios|ajax|\$\.ajax|request)\s*\(\s*\{''' + OPTIONS_GAP +
        r'''\b(?:method|type)["']?\s*:\s*["']''' + VERB + r'''["']''' +
        OPTIONS_GAP + r'''\burl["']?\s*:\s*''' + QUOTED_URL,
        re.IGNORECASE
    )
    CONFIG_URL_FIRST = re.compile(
        r'''(?<![\w$])(?:axios|ajax|\$\.ajax|request)\s*\(\s*\{''' + OPTIONS_GAP +
        r'''\burl["']?\s*:\s*''' + QUOTED_URL +
        OPTIONS_GAP + r'''\b(?:method|type)["']?\s*:\s*["']''' + VERB + r'''["']''',
        re.IGNORECASE
    )
    VERB_CALL = re.compile(
        r'''(?<![\w$])(?:axios|\$http|https|http|httpClient|apiClient|client|api|request'''
        r'''|superagent|ky|got|instance|\$)\s*\.\s*''' + VERB + r'''\s*\(\s*''' + QUOTED_URL
    )
    CLIENT_CALL = re.compile(
        r'''(?:(?<![\w$])fetch|(?<![\w$])axios|\bnew\s+Request|(?<![\w$])\$\.ajax'''
        r'''|\bnew\s+EventSource|\bnew\s+WebSocket)\s*\(\s*''' + QUOTED_URL
    )
    TEMPLATE_LITERAL = re.compile(r'''`(?P<url>[^`\s]{0,512}?\$\{[^`{}]{1,200}\}[^`\s]{0,1024})`''')
    API_URL_LITERAL = re.compile(r'''["'`](?P<url>https?://[^\s"'`<>\\]{3,2048})["'`]''')
    API_PATH_LITERAL = re.compile(
        r'''["'`](?P<url>/(?:api|v\d{1,2}|rest|graphql|gql|rpc|auth|oauth2?|internal|admin)'''
        r'''(?:[/?#][^\s"'`<>\\]{0,1024})?)["'`]'''
    )
    BARE_PATH_LITERAL = re.compile(
        r'''["'`](?P<url>/[A-Za-z0-9_\-.~%]{1,100}(?:/[A-Za-z0-9_\-.~%:{}]{1,100}){1,15}/?)["'`]'''
    )


ENDPOINT_RULES: Tuple[EndpointRule, ...] = (
    EndpointRule("xhr_open", EndpointPatterns.XHR_OPEN, CONFIDENCE_VERB_RELATIVE,
                 CONFIDENCE_VERB_ABSOLUTE, validator=is_plausible_call_target),
    EndpointRule("fetch_with_method", EndpointPatterns.FETCH_WITH_METHOD, CONFIDENCE_VERB_RELATIVE,
                 CONFIDENCE_VERB_ABSOLUTE, validator=is_plausible_call_target),
    EndpointRule("request_config", EndpointPatterns.CONFIG_METHOD_FIRST, CONFIDENCE_VERB_RELATIVE,
                 CONFIDENCE_VERB_ABSOLUTE, validator=is_plausible_call_target),
    EndpointRule("request_config", EndpointPatterns.CONFIG_URL_FIRST, CONFIDENCE_VERB_RELATIVE,
                 CONFIDENCE_VERB_ABSOLUTE, validator=is_plausible_call_target),
    EndpointRule("verb_call", EndpointPatterns.VERB_CALL, CONFIDENCE_VERB_RELATIVE,
                 CONFIDENCE_VERB_ABSOLUTE, validator=is_plausible_call_target),
    EndpointRule("client_call", EndpointPatterns.CLIENT_CALL, CONFIDENCE_CALL_RELATIVE,
                 CONFIDENCE_CALL_ABSOLUTE, method_hint=METHOD_UNKNOWN,
                 validator=is_plausible_call_target),
    EndpointRule("template_literal", EndpointPatterns.TEMPLATE_LITERAL, CONFIDENCE_TEMPLATE_LITERAL,
                 method_hint=METHOD_UNKNOWN, heuristic=True, validator=looks_like_url_template),
    EndpointRule("api_url", EndpointPatterns.API_URL_LITERAL, CONFIDENCE_API_URL_LITERAL,
                 method_hint=METHOD_UNKNOWN, heuristic=True, validator=is_api_url),
    EndpointRule("api_path", EndpointPatterns.API_PATH_LITERAL, CONFIDENCE_API_PATH_LITERAL,
                 method_hint=METHOD_UNKNOWN, heuristic=True, validator=is_plausible_path),
    EndpointRule("bare_path", EndpointPatterns.BARE_PATH_LITERAL, CONFIDENCE_BARE_PATH_LITERAL,
                 method_hint=METHOD_UNKNOWN, heuristic=True, validator=is_plausible_path),
)


class PatternCatalog:
    """Read-only table of secret and endpoint rules."""

    def __init__(self, extra_secret_rules: Iterable[SecretRule] = ()):
        self._secret_rules = SECRET_RULES + tuple(extra_secret_rules)
        self._endpoint_rules = ENDPOINT_RULES

    def get_secret_rules(self) -> Tuple[SecretRule, ...]:
        return self._secret_rules

    def get_endpoint_rules(self) -> Tuple[EndpointRule, ...]:
        return self._endpoint_rules


def load_custom_patterns(filepath: str) -> List[SecretRule]:
    """
    Load custom secret rules from a JSON file.

    Expected format:
    {
      "patterns": [
        {
          "name": "Internal Service Key",
          "regex": "isk_[A-Za-z0-9]{32}",
          "confidence": 80
        }
      ]
    }

    Args:
        filepath: Path to custom patterns JSON file

    Returns:
        List of SecretRule objects, in file order
    """
    custom_rules = []

    try:
        with open(filepath, 'r') as f:
            data = json.load(f)

        if not isinstance(data, dict):
            logger.error(f"Custom patterns file must hold a JSON object: {filepath}")
            return custom_rules

        pattern_defs = data.get('patterns', [])
        if not isinstance(pattern_defs, list):
            logger.error(f"'patterns' must be a list in {filepath}")
            return custom_rules

        for index, pattern_def in enumerate(pattern_defs):
            if not isinstance(pattern_def, dict):
                logger.warning(f"Skipping pattern #{index}: expected an object, got {type(pattern_def).__name__}")
                continue

            name = pattern_def.get('name', 'Custom Pattern')
            regex = pattern_def.get('regex')

            if not regex:
                logger.warning(f"Skipping pattern {name}: no regex provided")
                continue

            try:
                compiled = re.compile(regex)
                confidence = int(pattern_def.get('confidence', 50))
                custom_rules.append(SecretRule(name, compiled, confidence))
                logger.info(f"Loaded custom pattern: {name}")
            except re.error as e:
                logger.error(f"Invalid regex for pattern {name}: {e}")
            except (TypeError, ValueError) as e:
                logger.error(f"Invalid confidence for pattern {name}: {e}")

    except FileNotFoundError:
        logger.warning(f"Custom patterns file not found: {filepath}")
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in custom patterns file: {e}")

    return custom_rules


# ===================================================================
# SECRET SCANNER
# ===================================================================

def score_secret(rule: SecretRule, value: str, context: MatchContext) -> int:
    """Base confidence of the rule folded with its adjusters, clamped to 0-100."""
    delta = combine_adjustments(adjuster(value, context) for adjuster in rule.adjusters)
    return clamp_confidence(rule.base_confidence + delta)


class SecretScanner:
    """Applies the catalog's secret rules to one file at a time."""

    def __init__(
        self,
        catalog: Optional[PatternCatalog] = None,
        time_budget_ms: int = RULE_TIME_BUDGET_MS
    ):
        self.catalog = catalog or PatternCatalog()
        self.time_budget_ms = time_budget_ms

    def scan(self, content: Any, file_url: str) -> List[SecretFinding]:
        """
        Scan one file's text for secrets.

        Rules run in catalog order and each reports its matches in the order
        found. Identical (type, match) pairs are all kept.

        Args:
            content: File text (None and bytes are tolerated)
            file_url: URL recorded on every finding

        Returns:
            List of SecretFinding
        """
        text = coerce_text(content)
        findings: List[SecretFinding] = []
        if not text:
            return findings

        budget = self.time_budget_ms / 1000.0
        for rule in self.catalog.get_secret_rules():
            for match in iter_matches_within_budget(rule.pattern, text, budget, rule.type, file_url):
                if match.groupdict().get('val') is not None:
                    start, end = match.span('val')
                else:
                    start, end = match.span()
                value = text[start:end]
                if not value:
                    continue

                confidence = score_secret(rule, value, MatchContext(text, start, end))
                findings.append(SecretFinding(rule.type, value, confidence, file_url))

        return findings


# ===================================================================
# ENDPOINT EXTRACTOR
# ===================================================================

BASE_URL_ASSIGNMENT = re.compile(
    r'''(?i)\b(?:base_?url|api_?(?:url|base|root|host|endpoint|server)|base_?api(?:_?url)?'''
    r'''|server_?url|backend_?url|root_?url)["']?\s*[:=]\s*'''
    r'''["'`](?P<url>https?://[^\s"'`<>\\]{3,512})["'`]'''
)
ROOT_URL_LITERAL = re.compile(
    r'''["'`](?P<url>https?://[A-Za-z0-9.\-]{1,253}(?::\d{1,5})?'''
    r'''(?:/(?:api|v\d{1,2}|rest|graphql)(?:/v\d{1,2})?)?/?)["'`]'''
)
CLIENT_CONTEXT_TOKEN = re.compile(
    r'''(?<![\w$])(?:fetch|axios|XMLHttpRequest|\$\.ajax)\b|\b(?:method|url)["']?\s*:'''
)


@dataclass(frozen=True)
class BaseUrlCandidate:
    position: int
    url: str
    named: bool


def has_client_context(content: str, start: int, end: int, window: int = CLIENT_CONTEXT_WINDOW) -> bool:
    """True if an HTTP-client token appears near content[start:end]."""
    nearby = content[max(0, start - window):min(len(content), end + window)]
    return bool(CLIENT_CONTEXT_TOKEN.search(nearby))


def has_nearby_base_url(candidates: Sequence[BaseUrlCandidate], position: int) -> bool:
    return any(abs(c.position - position) <= BASE_URL_WINDOW for c in candidates)


def infer_base_url(candidates: Sequence[BaseUrlCandidate], position: int) -> Optional[str]:
    """
    Pick the API root a relative endpoint at `position` most plausibly uses.

    The nearest candidate within BASE_URL_WINDOW wins (named assignments win
    ties). Failing that, a file with exactly one named assignment uses it.
    """
    nearby = [c for c in candidates if abs(c.position - position) <= BASE_URL_WINDOW]
    if nearby:
        best = min(nearby, key=lambda c: (abs(c.position - position), not c.named))
        return best.url
    named = {c.url for c in candidates if c.named}
    if len(named) == 1:
        return named.pop()
    return None


class EndpointExtractor:
    """Applies the catalog's endpoint rules plus base-URL inference to one file."""

    def __init__(
        self,
        catalog: Optional[PatternCatalog] = None,
        time_budget_ms: int = RULE_TIME_BUDGET_MS
    ):
        self.catalog = catalog or PatternCatalog()
        self.time_budget_ms = time_budget_ms

    def extract(self, content: Any, file_url: str) -> List[EndpointFinding]:
        """
        Extract endpoint references from one file's text.

        Each literal occurrence is claimed by the first rule that accepts it,
        so an argument of `axios.post(...)` is not reported again as a bare
        path.

        Args:
            content: File text (None and bytes are tolerated)
            file_url: URL recorded on every finding

        Returns:
            List of EndpointFinding
        """
        text = coerce_text(content)
        findings: List[EndpointFinding] = []
        if not text:
            return findings

        budget = self.time_budget_ms / 1000.0
        candidates = self._find_base_url_candidates(text, file_url, budget)
        claimed: Set[int] = set()

        for rule in self.catalog.get_endpoint_rules():
            for match in iter_matches_within_budget(rule.pattern, text, budget, rule.kind, file_url):
                url = match.group('url')
                start, end = match.span('url')
                if start in claimed or not rule.accepts(url):
                    continue
                claimed.add(start)

                method = rule.method_hint
                if method is None:
                    verb = match.groupdict().get('method')
                    method = verb.upper() if verb else METHOD_UNKNOWN

                base_url = None
                near_base = False
                if not is_absolute_url(url):
                    base_url = infer_base_url(candidates, start)
                    near_base = has_nearby_base_url(candidates, start)

                findings.append(EndpointFinding(
                    method=method,
                    endpoint=url,
                    confidence=self._confidence(rule, url, text, start, end, near_base),
                    file=file_url,
                    base_url=base_url,
                ))

        return findings

    @staticmethod
    def _confidence(rule: EndpointRule, url: str, text: str, start: int, end: int, near_base: bool) -> int:
        confidence = rule.base_confidence
        if rule.absolute_confidence is not None and is_absolute_url(url):
            confidence = rule.absolute_confidence
        if rule.heuristic and confidence < CONFIDENCE_HEURISTIC_CAP:
            boost = 0
            if has_client_context(text, start, end):
                boost += CLIENT_CONTEXT_BOOST
            if near_base:
                boost += BASE_URL_PROXIMITY_BOOST
            confidence = min(confidence + boost, CONFIDENCE_HEURISTIC_CAP)
        return clamp_confidence(confidence)

    @staticmethod
    def _find_base_url_candidates(text: str, file_url: str, budget: float) -> List[BaseUrlCandidate]:
        candidates: Dict[int, BaseUrlCandidate] = {}
        for match in iter_matches_within_budget(BASE_URL_ASSIGNMENT, text, budget, "base_url", file_url):
            position = match.start('url')
            candidates[position] = BaseUrlCandidate(position, match.group('url').rstrip('/'), True)
        for match in iter_matches_within_budget(ROOT_URL_LITERAL, text, budget, "root_url", file_url):
            position = match.start('url')
            if position not in candidates:
                candidates[position] = BaseUrlCandidate(position, match.group('url').rstrip('/'), False)
        return sorted(candidates.values(), key=lambda c: c.position)


# ===================================================================
# RESULT STORE & FILTER
# ===================================================================

def filter_secrets(findings: Iterable[SecretFinding], term: str) -> List[SecretFinding]:
    """Case-insensitive substring match against type, match and file."""
    needle = (term or "").lower()
    if not needle:
        return list(findings)
    return [
        f for f in findings
        if needle in f.type.lower() or needle in f.match.lower() or needle in f.file.lower()
    ]


def filter_endpoints(findings: Iterable[EndpointFinding], term: str) -> List[EndpointFinding]:
    """Case-insensitive substring match against method, endpoint and file."""
    needle = (term or "").lower()
    if not needle:
        return list(findings)
    return [
        f for f in findings
        if needle in f.method.lower() or needle in f.endpoint.lower() or needle in f.file.lower()
    ]


class ResultStore:
    """
    Latest completed scan's results.

    Both collections live in one tuple that is swapped in a single
    assignment, so readers always see a matching pair.
    """

    def __init__(self):
        self._results: Tuple[Tuple[SecretFinding, ...], Tuple[EndpointFinding, ...]] = ((), ())
        self._scan_in_progress = False

    @property
    def secret_results(self) -> Tuple[SecretFinding, ...]:
        return self._results[0]

    @property
    def endpoint_results(self) -> Tuple[EndpointFinding, ...]:
        return self._results[1]

    @property
    def scan_in_progress(self) -> bool:
        return self._scan_in_progress

    def claim(self) -> None:
        if self._scan_in_progress:
            raise ScanAlreadyRunningError("scan already running")
        self._scan_in_progress = True

    def release(self) -> None:
        self._scan_in_progress = False

    def replace(self, secrets: Iterable[SecretFinding], endpoints: Iterable[EndpointFinding]) -> None:
        self._results = (tuple(secrets), tuple(endpoints))

    def filter_secrets(self, term: str) -> List[SecretFinding]:
        return filter_secrets(self.secret_results, term)

    def filter_endpoints(self, term: str) -> List[EndpointFinding]:
        return filter_endpoints(self.endpoint_results, term)


def resolve_endpoint_url(finding: EndpointFinding) -> str:
    """Full URL for display/copy; relative endpoints are joined to base_url."""
    endpoint = finding.endpoint
    if not finding.base_url or is_absolute_url(endpoint) or endpoint.startswith("${"):
        return endpoint
    if endpoint.startswith("/"):
        return finding.base_url + endpoint
    return f"{finding.base_url}/{endpoint}"


def deduplicate_secrets(findings: Iterable[SecretFinding]) -> List[SecretFinding]:
    """Keep the first occurrence of each (type, match, file)."""
    seen = set()
    unique = []
    for finding in findings:
        key = (finding.type, finding.match, finding.file)
        if key not in seen:
            seen.add(key)
            unique.append(finding)
    return unique


def deduplicate_endpoints(findings: Iterable[EndpointFinding]) -> List[EndpointFinding]:
    """Keep the first occurrence of each (method, endpoint, file)."""
    seen = set()
    unique = []
    for finding in findings:
        key = (finding.method, finding.endpoint, finding.file)
        if key not in seen:
            seen.add(key)
            unique.append(finding)
    return unique


def summarize(secrets: Sequence[SecretFinding], endpoints: Sequence[EndpointFinding]) -> Dict[str, Any]:
    """Tier, type and method counts for reporting."""
    return {
        "secrets": {
            "total": len(secrets),
            "by_tier": dict(Counter(confidence_tier(f.confidence) for f in secrets)),
            "by_type": dict(Counter(f.type for f in secrets)),
        },
        "endpoints": {
            "total": len(endpoints),
            "by_tier": dict(Counter(confidence_tier(f.confidence) for f in endpoints)),
            "by_method": dict(Counter(f.method for f in endpoints)),
        },
    }


# ===================================================================
# SCAN ORCHESTRATOR
# ===================================================================

def is_script_resource(resource: ResourceRef) -> bool:
    """Declared as a script, or named like one."""
    if resource.type in SCRIPT_RESOURCE_TYPES:
        return True
    return urlparse(resource.url).path.lower().endswith(SCRIPT_SUFFIXES)


def expand_source_map(content: str) -> str:
    """
    Return the original sources embedded in a source map.

    Maps without sourcesContent, or that do not decode as JSON (including
    pathologically nested ones), are scanned as-is.
    """
    try:
        data = json.loads(content)
    except (ValueError, RecursionError):
        return content
    if not isinstance(data, dict):
        return content
    sources = data.get("sourcesContent")
    if not isinstance(sources, list):
        return content
    embedded = [source for source in sources if isinstance(source, str)]
    return "\n".join(embedded) if embedded else content


ProgressCallback = Callable[[int, int], None]


class ScanOrchestrator:
    """
    Runs one scan at a time over a resource set.

    Files are processed sequentially: each content fetch is an await point,
    scanning then runs synchronously before the next file.
    """

    def __init__(
        self,
        store: Optional[ResultStore] = None,
        catalog: Optional[PatternCatalog] = None,
        secret_scanner: Optional[SecretScanner] = None,
        endpoint_extractor: Optional[EndpointExtractor] = None,
        time_budget_ms: int = RULE_TIME_BUDGET_MS
    ):
        catalog = catalog or PatternCatalog()
        self.store = store or ResultStore()
        self.secret_scanner = secret_scanner or SecretScanner(catalog, time_budget_ms)
        self.endpoint_extractor = endpoint_extractor or EndpointExtractor(catalog, time_budget_ms)
        self.last_session: Optional[ScanSession] = None

    async def run(
        self,
        resources: Iterable[ResourceRef],
        on_progress: Optional[ProgressCallback] = None
    ) -> ScanSession:
        """
        Scan an already-enumerated resource list.

        Raises:
            ScanAlreadyRunningError: another scan holds the store
        """
        self.store.claim()
        try:
            session = ScanSession()
            self.last_session = session
            return await self._run_session(session, list(resources), on_progress)
        finally:
            self.store.release()

    async def scan_source(self, source: Any, on_progress: Optional[ProgressCallback] = None) -> ScanSession:
        """
        List resources from a source, then scan them.

        Raises:
            ScanAlreadyRunningError: another scan holds the store
            ScanInfrastructureError: the listing call failed
        """
        self.store.claim()
        try:
            session = ScanSession()
            self.last_session = session
            session.state = ScanState.RUNNING
            session.started_at = datetime.now(timezone.utc)
            try:
                resources = await source.list_resources()
            except Exception as e:
                session.state = ScanState.FAILED
                session.finished_at = datetime.now(timezone.utc)
                logger.error(f"Could not list resources: {e}", extra={"scan_id": session.scan_id})
                raise ScanInfrastructureError(f"Could not list resources: {e}") from e
            return await self._run_session(session, list(resources), on_progress)
        finally:
            self.store.release()

    async def _run_session(
        self,
        session: ScanSession,
        resources: List[ResourceRef],
        on_progress: Optional[ProgressCallback]
    ) -> ScanSession:
        scripts = [r for r in resources if is_script_resource(r)]
        session.state = ScanState.RUNNING
        session.started_at = session.started_at or datetime.now(timezone.utc)
        session.total_files = len(scripts)
        logger.info(
            f"Scanning {len(scripts)} script resources ({len(resources)} listed)",
            extra={"scan_id": session.scan_id}
        )

        try:
            for resource in scripts:
                await self._process_resource(session, resource)
                session.processed_files += 1
                if on_progress is not None:
                    on_progress(session.processed_files, session.total_files)
        except Exception:
            session.state = ScanState.FAILED
            session.finished_at = datetime.now(timezone.utc)
            logger.exception("Scan aborted by an internal error", extra={"scan_id": session.scan_id})
            raise

        session.state = ScanState.COMPLETED
        session.finished_at = datetime.now(timezone.utc)
        self.store.replace(session.secret_results, session.endpoint_results)

        logger.info(
            f"Scan complete: {len(session.secret_results)} secrets, "
            f"{len(session.endpoint_results)} endpoints, {len(session.failures)} failures",
            extra={
                "scan_id": session.scan_id,
                "finding_count": len(session.secret_results) + len(session.endpoint_results),
            }
        )
        return session

    async def _process_resource(self, session: ScanSession, resource: ResourceRef) -> None:
        try:
            content = await resource.get_content()
        except Exception as e:
            error = str(e) or type(e).__name__
            session.failures.append(ScanFailure(resource.url, error))
            logger.warning(
                f"Failed to read {resource.url}: {error}",
                extra={"scan_id": session.scan_id, "resource": resource.url}
            )
            return

        if content is None:
            logger.debug(f"No content for {resource.url}")
            return

        text = coerce_text(content)
        if is_source_map(resource.url):
            text = expand_source_map(text)

        secrets = self.secret_scanner.scan(text, resource.url)
        endpoints = self.endpoint_extractor.extract(text, resource.url)
        session.secret_results.extend(secrets)
        session.endpoint_results.extend(endpoints)
        logger.debug(f"{resource.url}: {len(secrets)} secrets, {len(endpoints)} endpoints")


# ===================================================================
# RESOURCE SOURCES
# ===================================================================

async def _static_content(text: str) -> str:
    return text


def resource_type_for(path: str) -> str:
    lowered = path.lower()
    if lowered.endswith(SOURCE_MAP_SUFFIX):
        return "sourcemap"
    if lowered.endswith(SCRIPT_SUFFIXES):
        return "script"
    return "other"


class LocalResourceSource:
    """Enumerates files under a local directory (e.g. a build output)."""

    def __init__(self, root: Path, max_depth: int = LOCAL_SCAN_MAX_DEPTH, follow_symlinks: bool = False):
        self.root = Path(root)
        self.max_depth = max_depth
        self.follow_symlinks = follow_symlinks

    async def __aenter__(self) -> "LocalResourceSource":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def list_resources(self) -> List[ResourceRef]:
        if not self.root.is_dir():
            raise NotADirectoryError(f"Not a directory: {self.root}")

        resources = []
        root_depth = len(self.root.parts)
        for dirpath, dirnames, filenames in os.walk(self.root, followlinks=self.follow_symlinks):
            current = Path(dirpath)
            if len(current.parts) - root_depth >= self.max_depth:
                dirnames[:] = []
            else:
                dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIR_NAMES)

            for filename in sorted(filenames):
                file_path = current / filename
                try:
                    size = file_path.stat().st_size
                except OSError as e:
                    logger.debug(f"Cannot stat {file_path}: {e}")
                    continue
                if size > MAX_FILE_SIZE_BYTES:
                    logger.debug(f"Skipping large file: {file_path} ({size} bytes)")
                    continue
                resources.append(ResourceRef(
                    url=file_path.resolve().as_uri(),
                    type=resource_type_for(filename),
                    fetcher=partial(self._read_file, file_path),
                ))

        logger.info(f"Found {len(resources)} files under {self.root}")
        return resources

    @staticmethod
    async def _read_file(file_path: Path) -> str:
        try:
            async with aiofiles.open(file_path, 'r', encoding='utf-8', errors='replace') as f:
                return await f.read()
        except OSError as e:
            raise ResourceRetrievalError(f"Failed to read {file_path}: {e}") from e


SCRIPT_SRC = re.compile(r'''<script\b[^>]*?\bsrc\s*=\s*["']([^"']+)["']''', re.IGNORECASE)
MODULE_PRELOAD = re.compile(
    r'''<link\b[^>]*?\brel\s*=\s*["'](?:modulepreload|preload)["'][^>]*?\bhref\s*=\s*["']([^"']+\.m?js[^"']*)["']'''
    r'''|<link\b[^>]*?\bhref\s*=\s*["']([^"']+\.m?js[^"']*)["'][^>]*?\brel\s*=\s*["'](?:modulepreload|preload)["']''',
    re.IGNORECASE
)
INLINE_SCRIPT = re.compile(
    r'''<script\b(?![^>]*\bsrc\s*=)[^>]*>(?P<body>[\s\S]*?)</script\s*>''',
    re.IGNORECASE
)


def extract_script_urls(html: str, page_url: str) -> List[str]:
    """Absolute URLs of <script src> and JS preload links, in page order."""
    found = []
    for match in SCRIPT_SRC.finditer(html):
        found.append((match.start(), match.group(1)))
    for match in MODULE_PRELOAD.finditer(html):
        found.append((match.start(), match.group(1) or match.group(2)))

    urls = []
    seen = set()
    for _, src in sorted(found):
        src = src.strip()
        if not src or src.lower().startswith(("data:", "javascript:", "blob:")):
            continue
        full_url = urljoin(page_url, src)
        if full_url not in seen:
            seen.add(full_url)
            urls.append(full_url)
    return urls


def extract_inline_scripts(html: str) -> List[str]:
    """Non-empty bodies of inline <script> elements."""
    return [m.group('body') for m in INLINE_SCRIPT.finditer(html) if m.group('body').strip()]


class HttpResourceSource:
    """Enumerates the scripts a live page loads and fetches them over HTTP."""

    def __init__(
        self,
        page_url: str,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        max_scripts: int = MAX_SCRIPTS,
        max_size: int = MAX_FILE_SIZE_BYTES,
        session: Optional["aiohttp.ClientSession"] = None
    ):
        self.page_url = page_url
        self.timeout = timeout
        self.max_scripts = max_scripts
        self.max_size = max_size
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpResourceSource":
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _ensure_session(self) -> "aiohttp.ClientSession":
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def list_resources(self) -> List[ResourceRef]:
        session = self._ensure_session()
        async with session.get(self.page_url, allow_redirects=True) as resp:
            if resp.status != 200:
                raise ScanInfrastructureError(f"HTTP {resp.status} fetching {self.page_url}")
            html = await resp.text(errors="replace")
            page_url = str(resp.url)

        resources = []
        for index, body in enumerate(extract_inline_scripts(html), 1):
            resources.append(ResourceRef(
                url=f"{page_url}#inline-{index}",
                type="script",
                fetcher=partial(_static_content, body),
            ))

        script_urls = extract_script_urls(html, page_url)
        if len(script_urls) > self.max_scripts:
            logger.warning(f"Page lists {len(script_urls)} scripts; keeping the first {self.max_scripts}")
        for url in script_urls[:self.max_scripts]:
            resources.append(ResourceRef(url=url, type="script", fetcher=partial(self._fetch_script, url)))

        logger.info(f"Found {len(resources)} scripts on {page_url}")
        return resources

    async def _fetch_script(self, url: str) -> str:
        session = self._ensure_session()
        try:
            async with session.get(url, allow_redirects=True) as resp:
                if resp.status != 200:
                    raise ResourceRetrievalError(f"HTTP {resp.status}")
                size = int(resp.headers.get("Content-Length", 0) or 0)
                if size > self.max_size:
                    raise ResourceRetrievalError(f"Too large ({size} bytes)")
                return await resp.text(errors="replace")
        except aiohttp.ClientError as e:
            raise ResourceRetrievalError(f"Request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ResourceRetrievalError("Request timed out") from e


# ===================================================================
# REPORT GENERATION
# ===================================================================

def _ranked(findings: Iterable[Any]) -> List[Any]:
    return sorted(findings, key=lambda f: f.confidence, reverse=True)


def generate_report(
    session: ScanSession,
    secrets: Sequence[SecretFinding],
    endpoints: Sequence[EndpointFinding],
    output_path: Path,
    output_format: str = OUTPUT_FORMAT
) -> List[Path]:
    """
    Generate reports in the requested formats.

    Args:
        session: Completed scan session (metadata and failures)
        secrets: Secret findings to report (possibly filtered)
        endpoints: Endpoint findings to report (possibly filtered)
        output_path: Base path for output files
        output_format: json, csv or all

    Returns:
        Paths of the files written
    """
    formats_to_generate = ["json", "csv"] if output_format == "all" else [output_format]
    written = []

    for fmt in formats_to_generate:
        if fmt == "json":
            output_file = output_path.with_suffix(".json")
            if generate_json_report(session, secrets, endpoints, output_file):
                written.append(output_file)
        elif fmt == "csv":
            written.extend(generate_csv_report(secrets, endpoints, output_path))
        else:
            logger.error(f"Unknown output format: {fmt}")

    return written


def generate_json_report(
    session: ScanSession,
    secrets: Sequence[SecretFinding],
    endpoints: Sequence[EndpointFinding],
    output_path: Path
) -> bool:
    """Generate JSON report with summary statistics."""
    try:
        report = {
            "scan_metadata": {
                "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
                "scan_id": session.scan_id,
                "state": session.state.value,
                "total_files": session.total_files,
                "processed_files": session.processed_files,
                "duration_seconds": session.duration_seconds,
                "extractor_version": __version__,
                "adjuster_version": ADJUSTER_VERSION,
            },
            "summary": summarize(secrets, endpoints),
            "secrets": [
                dict(asdict(f), tier=confidence_tier(f.confidence)) for f in _ranked(secrets)
            ],
            "endpoints": [
                dict(asdict(f), tier=confidence_tier(f.confidence), url=resolve_endpoint_url(f))
                for f in _ranked(endpoints)
            ],
            "failures": [asdict(failure) for failure in session.failures],
        }

        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2)

        logger.info(f"JSON report written to {output_path}")
        return True

    except OSError as e:
        logger.error(f"Failed to generate JSON report: {e}")
        return False


def generate_csv_report(
    secrets: Sequence[SecretFinding],
    endpoints: Sequence[EndpointFinding],
    output_path: Path
) -> List[Path]:
    """Generate <stem>_secrets.csv and <stem>_endpoints.csv for spreadsheet analysis."""
    secrets_file = output_path.with_name(f"{output_path.stem}_secrets.csv")
    endpoints_file = output_path.with_name(f"{output_path.stem}_endpoints.csv")
    written = []

    try:
        with open(secrets_file, 'w', newline='', encoding='utf-8') as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=['tier', 'confidence', 'type', 'match', 'file'])
            writer.writeheader()
            for finding in _ranked(secrets):
                writer.writerow(dict(asdict(finding), tier=confidence_tier(finding.confidence)))
        written.append(secrets_file)

        with open(endpoints_file, 'w', newline='', encoding='utf-8') as csvfile:
            writer = csv.DictWriter(
                csvfile,
                fieldnames=['tier', 'confidence', 'method', 'endpoint', 'base_url', 'url', 'file']
            )
            writer.writeheader()
            for finding in _ranked(endpoints):
                writer.writerow(dict(
                    asdict(finding),
                    tier=confidence_tier(finding.confidence),
                    url=resolve_endpoint_url(finding),
                ))
        written.append(endpoints_file)

        logger.info(f"CSV reports written to {secrets_file} and {endpoints_file}")

    except OSError as e:
        logger.error(f"Failed to generate CSV report: {e}")

    return written


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments and display help information."""
    parser = argparse.ArgumentParser(
        description='Extract leaked secrets and API endpoints from the scripts a web page loads',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES (Optional):
  MAX_FILE_SIZE_MB      Skip local files larger than this in MB (default: 10)
  RULE_TIME_BUDGET_MS   Matching budget per rule per file (default: 250)
  HTTP_TIMEOUT_SECONDS  Timeout for page and script fetches (default: 30)
  MAX_SCRIPTS           Max external scripts taken from one page (default: 500)
  OUTPUT_FILE           Report output path (default: extract_report.json)

USAGE EXAMPLES:
  Scan a build directory:
    python js_secret_extractor.py --local ./dist

  Scan a live page:
    python js_secret_extractor.py --url https://app.example.com/

  Only high-confidence AWS findings:
    python js_secret_extractor.py --local ./dist --filter aws --min-confidence 80

SECURITY NOTICE:
  This tool NEVER uses discovered credentials or calls discovered endpoints.

EXIT CODES:
  0   Success
  1   Error (bad target, listing failure, etc.)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--local', type=str, metavar='PATH',
                        help='Scan script files under a local directory')
    target.add_argument('--url', type=str, metavar='URL',
                        help='Scan the scripts loaded by a live page')

    parser.add_argument('--max-depth', type=int, default=LOCAL_SCAN_MAX_DEPTH,
                        help=f'Maximum directory depth for local scans (default: {LOCAL_SCAN_MAX_DEPTH})')
    parser.add_argument('--filter', type=str, default='', metavar='TERM',
                        help='Only report findings containing TERM (case-insensitive)')
    parser.add_argument('--min-confidence', type=int, default=0, metavar='N',
                        help='Only report findings with confidence >= N')
    parser.add_argument('--dedupe', action='store_true',
                        help='Collapse repeated findings within the same file')
    parser.add_argument('--custom-patterns', type=str, metavar='FILE', default=CUSTOM_PATTERNS_FILE,
                        help='Path to custom regex patterns JSON file')
    parser.add_argument('--output', type=str, metavar='FILE', default=str(OUTPUT_FILE),
                        help=f'Report output path (default: {OUTPUT_FILE})')
    parser.add_argument('--output-format', type=str, choices=['json', 'csv', 'all'],
                        default=OUTPUT_FORMAT, help=f'Output format (default: {OUTPUT_FORMAT})')
    parser.add_argument('--log-format', type=str, choices=['text', 'json'],
                        default=LOG_FORMAT, help=f'Logging format (default: {LOG_FORMAT})')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser.parse_args(argv)


async def run_scan_with_progress(orchestrator: ScanOrchestrator, source: Any) -> ScanSession:
    """Run a source scan with a tqdm bar driven by the progress callback."""
    with tqdm(total=0, desc="Scanning scripts", unit="file") as pbar:

        def on_progress(processed: int, total: int) -> None:
            if pbar.total != total:
                pbar.total = total
                pbar.refresh()
            pbar.update(processed - pbar.n)

        async with source:
            return await orchestrator.scan_source(source, on_progress)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    global logger

    args = parse_arguments(argv)

    logger = setup_logging(args.log_format)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    custom_rules = load_custom_patterns(args.custom_patterns) if args.custom_patterns else []
    orchestrator = ScanOrchestrator(catalog=PatternCatalog(custom_rules))

    if args.local:
        scan_path = Path(args.local).expanduser().resolve()
        if not scan_path.is_dir():
            logger.error(f"Path is not a directory: {scan_path}")
            return 1
        source = LocalResourceSource(scan_path, args.max_depth)
        target = str(scan_path)
    else:
        source = HttpResourceSource(args.url)
        target = args.url

    logger.info("=" * 70)
    logger.info("JS SECRET & ENDPOINT EXTRACTOR")
    logger.info("=" * 70)
    logger.info(f"Target: {target}")
    logger.info(f"Custom patterns: {len(custom_rules)}")
    logger.info(f"Rule time budget: {RULE_TIME_BUDGET_MS} ms")
    logger.info(f"Output format: {args.output_format}")
    logger.info("=" * 70)

    try:
        session = asyncio.run(run_scan_with_progress(orchestrator, source))
    except KeyboardInterrupt:
        logger.warning("Scan interrupted by user")
        return 130
    except ScanInfrastructureError as e:
        logger.error(f"Scan failed: {e}")
        return 1

    store = orchestrator.store
    secrets = [f for f in store.filter_secrets(args.filter) if f.confidence >= args.min_confidence]
    endpoints = [f for f in store.filter_endpoints(args.filter) if f.confidence >= args.min_confidence]
    if args.dedupe:
        secrets = deduplicate_secrets(secrets)
        endpoints = deduplicate_endpoints(endpoints)

    summary = summarize(secrets, endpoints)
    logger.info(
        f"Secrets: {summary['secrets']['total']} {summary['secrets']['by_tier']} | "
        f"Endpoints: {summary['endpoints']['total']} {summary['endpoints']['by_tier']} | "
        f"Failures: {len(session.failures)}"
    )

    generate_report(session, secrets, endpoints, Path(args.output), args.output_format)

    logger.info("=" * 70)
    logger.info("SCAN COMPLETED SUCCESSFULLY")
    logger.info("=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
