# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "playwright",
#   "rich",
# ]
# ///
"""Frontend Performance Analyzer CLI Tool.

Drives a headless Chromium and the Lighthouse CLI to score one or more URLs,
then renders the results as console output, JSON, Markdown, or the HTML
report Lighthouse produces.
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import math
import os
import platform
import re
import socket
import sys
import tempfile
import time
import tomllib
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import httpx
import pandas as pd
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from rich.console import Console
from rich.text import Text

__version__ = "0.3.0"

TOOL_NAME = "frontend-performance-analyzer"
TOOL_HOMEPAGE = "https://github.com/OleksandrZadvornyi/frontend-performance-analyzer"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_CATEGORIES = ("performance", "accessibility", "best-practices", "seo", "pwa")
VALID_PRESETS = ("mobile", "desktop")
VALID_INPUT_SUFFIXES = (".txt", ".json")

DEFAULT_CATEGORIES = ["performance"]
DEFAULT_PRESET = "mobile"
DEFAULT_OUTPUT_DIR = "."
DEFAULT_LIGHTHOUSE_BIN = "lighthouse"
DEFAULT_AUDIT_TIMEOUT = 300.0

PROBE_TIMEOUT = 10.0

CHROME_FLAGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
]

# Substrings of Lighthouse stderr lines that are internal, non-fatal noise.
LIGHTHOUSE_NOISE_MARKERS = ("LanternError", "Invalid dependency graph")

CONFIG_FILENAMES = ["perf-analyzer.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "perf-analyzer",
]

# Console metrics: (audit_id, display label)
CONSOLE_METRICS = [
    ("first-contentful-paint", "First Contentful Paint"),
    ("speed-index", "Speed Index"),
    ("largest-contentful-paint", "Largest Contentful Paint"),
    ("interactive", "Time to Interactive"),
    ("total-blocking-time", "Total Blocking Time"),
    ("cumulative-layout-shift", "Cumulative Layout Shift"),
]

# JSON metrics: (audit_id, camelCase key)
JSON_METRICS = [
    ("first-contentful-paint", "firstContentfulPaint"),
    ("speed-index", "speedIndex"),
    ("largest-contentful-paint", "largestContentfulPaint"),
    ("interactive", "timeToInteractive"),
    ("total-blocking-time", "totalBlockingTime"),
    ("cumulative-layout-shift", "cumulativeLayoutShift"),
]

# JSON categories: (lighthouse category id, camelCase key)
JSON_CATEGORIES = [
    ("performance", "performance"),
    ("accessibility", "accessibility"),
    ("best-practices", "bestPractices"),
    ("seo", "seo"),
    ("pwa", "pwa"),
]

# Core Web Vitals for the Markdown report: (label, audit_id, description, good threshold)
CORE_WEB_VITALS = [
    ("Largest Contentful Paint (LCP)", "largest-contentful-paint", "Measures loading performance", "≤ 2.5s"),
    ("First Input Delay / Total Blocking Time", "total-blocking-time", "Measures interactivity", "≤ 200ms"),
    ("Cumulative Layout Shift (CLS)", "cumulative-layout-shift", "Measures visual stability", "≤ 0.1"),
]

SECONDARY_METRICS = [
    ("First Contentful Paint (FCP)", "first-contentful-paint", "Time when first text/image is painted"),
    ("Speed Index", "speed-index", "How quickly content is visually displayed"),
    ("Time to Interactive (TTI)", "interactive", "Time when page becomes fully interactive"),
]

MARKDOWN_CATEGORIES = [
    ("performance", "Performance", "⚡"),
    ("accessibility", "Accessibility", "♿"),
    ("best-practices", "Best Practices", "✅"),
    ("seo", "SEO", "🔍"),
    ("pwa", "PWA", "📱"),
]

MAX_OPPORTUNITIES = 5
MAX_DIAGNOSTICS = 3


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AnalyzerError(Exception):
    """Base class for every error the analyzer reports to the user."""


class InputError(AnalyzerError):
    """Raised when the URL source or configuration is missing or unreadable."""


class ValidationError(AnalyzerError):
    """Raised when collected URLs are malformed or none remain."""

    def __init__(self, message: str, invalid_urls: list | None = None):
        super().__init__(message)
        self.invalid_urls = list(invalid_urls or [])


class NoAccessibleUrlsError(AnalyzerError):
    """Raised when the accessibility probe finds no reachable URL."""


class AuditError(AnalyzerError):
    """Raised when the browser session or Lighthouse fails for one URL."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.message = message


class ExportError(AnalyzerError):
    """Raised when a report file cannot be written."""


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class Verbosity(enum.IntEnum):
    SILENT = 0
    NORMAL = 1
    VERBOSE = 2


class Logger:
    """Level-filtered output over a pair of rich consoles.

    Built once from the resolved options and handed to every component that
    prints. Messages are printed with markup disabled, so URLs and engine
    output containing square brackets render literally.
    """

    def __init__(
        self,
        level: Verbosity = Verbosity.NORMAL,
        out: Console | None = None,
        err: Console | None = None,
    ):
        self.level = level
        self.out = out or Console(highlight=False)
        self.err = err or Console(stderr=True, highlight=False)

    @classmethod
    def from_options(cls, options: AnalysisOptions) -> Logger:
        # Keep stdout clean for the JSON envelope when it is the only output.
        json_to_stdout = options.emit_json and not options.json_file_path
        out = Console(stderr=True, highlight=False) if json_to_stdout else None
        return cls(options.verbosity, out=out)

    @property
    def is_verbose(self) -> bool:
        return self.level >= Verbosity.VERBOSE

    def _print(self, console: Console, message, style: str | None = None, end: str = "\n") -> None:
        console.print(message, style=style, end=end, markup=False, highlight=False, soft_wrap=True)

    def info(self, message, min_level: Verbosity = Verbosity.NORMAL, style: str | None = None, end: str = "\n") -> None:
        if self.level >= min_level:
            self._print(self.out, message, style=style, end=end)

    def verbose(self, message: str) -> None:
        if self.is_verbose:
            self._print(self.out, f"[VERBOSE] {message}", style="dim")

    def success(self, message: str, min_level: Verbosity = Verbosity.NORMAL) -> None:
        if self.level >= min_level:
            self._print(self.out, f"✓ {message}", style="green")

    def warn(self, message: str, min_level: Verbosity = Verbosity.NORMAL) -> None:
        if self.level >= min_level:
            self._print(self.err, f"⚠ {message}", style="yellow")

    def error(self, message: str) -> None:
        self._print(self.err, f"✗ {message}", style="red")

    def engine_output(self, line: str) -> None:
        """Relay a line the audit engine wrote to its error stream."""
        if self.is_verbose:
            self.verbose(f"lighthouse: {line}")
        else:
            self._print(self.err, line)

    def exception_detail(self) -> None:
        """Print the active exception's traceback, verbose runs only."""
        if self.is_verbose:
            self.err.print_exception()


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalysisOptions:
    urls: tuple[str, ...] = ()
    input_file: str | None = None
    output_html_path: str | None = None
    emit_json: bool = False
    json_file_path: str | None = None
    emit_markdown: bool = False
    threshold_score: float | None = None
    verbosity: Verbosity = Verbosity.NORMAL
    output_dir: str = DEFAULT_OUTPUT_DIR
    categories: tuple[str, ...] = tuple(DEFAULT_CATEGORIES)
    preset: str = DEFAULT_PRESET
    follow_redirects: bool = True
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN
    audit_timeout: float = DEFAULT_AUDIT_TIMEOUT


def _parse_threshold(value) -> float | None:
    """Coerce a threshold from CLI text or config into a float in [0, 100]."""
    if value is None:
        return None
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        raise InputError("Threshold must be a number between 0 and 100") from None
    if math.isnan(threshold) or threshold < 0 or threshold > 100:
        raise InputError("Threshold must be a number between 0 and 100")
    return threshold


def resolve_options(args: argparse.Namespace) -> AnalysisOptions:
    """Validate merged CLI/config arguments and freeze them into AnalysisOptions."""
    verbose = bool(getattr(args, "verbose", False))
    silent = bool(getattr(args, "silent", False))
    if verbose and silent:
        raise InputError("--verbose and --silent cannot be used together")

    if silent:
        verbosity = Verbosity.SILENT
    elif verbose:
        verbosity = Verbosity.VERBOSE
    else:
        verbosity = Verbosity.NORMAL

    urls = tuple(getattr(args, "url", None) or [])
    input_file = getattr(args, "input", None)
    if not urls and not input_file:
        raise InputError("Please provide URLs using --url or --input")

    if input_file:
        path = Path(input_file)
        if not path.is_file():
            raise InputError(f'Input file "{input_file}" does not exist')
        if path.suffix.lower() not in VALID_INPUT_SUFFIXES:
            raise InputError("Input file must be .txt or .json")

    categories = getattr(args, "categories", None) or DEFAULT_CATEGORIES
    if isinstance(categories, str):
        categories = [categories]
    unknown = [c for c in categories if c not in VALID_CATEGORIES]
    if unknown:
        raise InputError(f"Unknown Lighthouse categories: {', '.join(map(str, unknown))}")
    # The performance score drives every report and the threshold gate
    categories = ["performance", *[c for c in dict.fromkeys(categories) if c != "performance"]]

    preset = getattr(args, "preset", None) or DEFAULT_PRESET
    if preset not in VALID_PRESETS:
        raise InputError(f"Preset must be one of: {', '.join(VALID_PRESETS)}")

    raw_timeout = getattr(args, "audit_timeout", None)
    try:
        audit_timeout = float(DEFAULT_AUDIT_TIMEOUT if raw_timeout is None else raw_timeout)
    except (TypeError, ValueError):
        raise InputError("Audit timeout must be a number of seconds") from None
    if math.isnan(audit_timeout) or audit_timeout <= 0:
        raise InputError("Audit timeout must be a positive number of seconds")

    return AnalysisOptions(
        urls=urls,
        input_file=input_file,
        output_html_path=getattr(args, "output", None),
        emit_json=bool(getattr(args, "json", False)),
        json_file_path=getattr(args, "json_file", None),
        emit_markdown=bool(getattr(args, "markdown", False)),
        threshold_score=_parse_threshold(getattr(args, "threshold", None)),
        verbosity=verbosity,
        output_dir=getattr(args, "output_dir", None) or DEFAULT_OUTPUT_DIR,
        categories=tuple(categories),
        preset=preset,
        follow_redirects=bool(getattr(args, "follow_redirects", True)),
        lighthouse_bin=getattr(args, "lighthouse_bin", None) or DEFAULT_LIGHTHOUSE_BIN,
        audit_timeout=audit_timeout,
    )


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise InputError(f"malformed config file {config_path}: {exc}") from exc
    except OSError as exc:
        raise InputError(f"cannot read config file {config_path}: {exc}") from exc


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            raise InputError(f"profile '{profile_name}' not found in config. Available: {available}")
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "input": "input",
        "output_dir": "output_dir",
        "json_file": "json_file",
        "markdown": "markdown",
        "threshold": "threshold",
        "categories": "categories",
        "preset": "preset",
        "follow_redirects": "follow_redirects",
        "lighthouse_bin": "lighthouse_bin",
        "audit_timeout": "audit_timeout",
        "verbose": "verbose",
        "silent": "silent",
    }

    # Track which args were explicitly set on the CLI
    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue  # CLI flag takes priority
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    # -v/-s on the command line replace whichever verbosity the config picked
    if "verbose" in cli_explicit and "silent" not in cli_explicit:
        args.silent = False
    elif "silent" in cli_explicit and "verbose" not in cli_explicit:
        args.verbose = False

    if not getattr(args, "lighthouse_bin", None):
        env_bin = os.environ.get("LIGHTHOUSE_BIN")
        if env_bin:
            args.lighthouse_bin = env_bin

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreConstAction(argparse.Action):
    """Like store_true/store_false but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, const=True, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=const, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, self.const)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description="Analyze frontend performance of one or more URLs with Lighthouse",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-u", "--url", dest="url", action="extend", nargs="+", default=[], help="One or more URLs to analyze (repeatable)")
    parser.add_argument("--input", dest="input", action=TrackingAction, default=None, help="Load URLs from a .txt or .json file")
    parser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Save HTML report to file (per-URL names in batch mode)")
    parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for per-URL HTML/Markdown reports")
    parser.add_argument("--json", dest="json", action=TrackingStoreConstAction, help="Print JSON report to stdout")
    parser.add_argument("--json-file", dest="json_file", action=TrackingAction, default=None, help="Save JSON report to file")
    parser.add_argument("--markdown", dest="markdown", action=TrackingStoreConstAction, help="Save metrics as Markdown report")
    parser.add_argument("--threshold", dest="threshold", action=TrackingAction, default=None, help="Minimum acceptable Lighthouse performance score (0-100)")
    parser.add_argument("--categories", dest="categories", action=TrackingAction, nargs="+", default=DEFAULT_CATEGORIES, choices=VALID_CATEGORIES, help="Lighthouse categories to audit")
    parser.add_argument("--preset", dest="preset", action=TrackingAction, default=DEFAULT_PRESET, choices=VALID_PRESETS, help="Device emulation preset")
    parser.add_argument("--no-follow-redirects", dest="follow_redirects", action=TrackingStoreConstAction, const=False, default=True, help="Do not follow redirects during the accessibility check")
    parser.add_argument("--lighthouse-bin", dest="lighthouse_bin", action=TrackingAction, default=None, help="Lighthouse executable (or set LIGHTHOUSE_BIN env var)")
    parser.add_argument("--audit-timeout", dest="audit_timeout", action=TrackingAction, type=float, default=DEFAULT_AUDIT_TIMEOUT, help="Seconds before a Lighthouse run is aborted")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreConstAction, help="Enable verbose output with debugging details")
    parser.add_argument("-s", "--silent", dest="silent", action=TrackingStoreConstAction, help="Minimal output (errors and final results only)")
    return parser


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def is_valid_url(url) -> bool:
    """True when url is an absolute http(s) URL with a host.

    The URL must also be one httpx can request: a numeric port and no
    whitespace or control characters in the authority.
    """
    if not isinstance(url, str):
        return False
    candidate = url.strip()
    try:
        parsed = urlparse(candidate)
        parsed.port  # raises ValueError for a non-numeric or out-of-range port
        httpx.URL(candidate)
    except (ValueError, httpx.InvalidURL):
        return False
    if any(ch.isspace() or not ch.isprintable() for ch in parsed.netloc):
        return False
    return parsed.scheme.lower() in ("http", "https") and bool(parsed.netloc)


def get_url_list(options: AnalysisOptions, logger: Logger) -> list:
    """Collect raw URL entries from the input file or the --url list."""
    logger.verbose("Extracting URL list from options...")
    if options.input_file:
        logger.verbose(f"Reading URLs from input file: {options.input_file}")
        path = Path(options.input_file)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise InputError(f"Error reading input file: {exc}") from exc
        logger.verbose(f"File content length: {len(content)} characters")

        if path.suffix.lower() == ".json":
            try:
                parsed = json.loads(content)
            except json.JSONDecodeError as exc:
                raise InputError(f"Error reading input file: invalid JSON ({exc})") from exc
            urls = parsed if isinstance(parsed, list) else [parsed]
        else:
            urls = [line.strip() for line in content.split("\n") if line.strip()]
        logger.verbose(f"Extracted {len(urls)} URLs from file")
        return urls

    if options.urls:
        logger.verbose(f"Using {len(options.urls)} URLs from command line arguments")
        return list(options.urls)

    raise InputError("Please provide URLs using --url or --input")


def validate_urls(urls: list, logger: Logger) -> list[str]:
    """Return urls unchanged if every entry is a valid http(s) URL.

    A single malformed entry fails the whole batch.
    """
    logger.verbose("Validating URL formats...")
    invalid = [url for url in urls if not is_valid_url(url)]
    if invalid:
        listing = ", ".join(str(url) for url in invalid)
        raise ValidationError(f"Invalid URL format: {listing}", invalid)
    if not urls:
        raise ValidationError("No valid URLs found")
    logger.verbose(f"URL validation completed: {len(urls)} valid URLs")
    return list(urls)


def derive_report_basename(url: str) -> str:
    """Filesystem-safe stem for per-URL report files."""
    stripped = re.sub(r"https?://", "", url, count=1)
    return re.sub(r"[^\w]", "_", stripped, flags=re.ASCII)


# ---------------------------------------------------------------------------
# Accessibility Probe
# ---------------------------------------------------------------------------


async def check_url_accessibility(url: str, client: httpx.AsyncClient, logger: Logger) -> bool:
    """HEAD the URL; reachable means no network error and a status below 400."""
    logger.verbose(f"Checking accessibility for: {url}")
    start_time = time.monotonic()
    try:
        response = await asyncio.wait_for(client.head(url), timeout=PROBE_TIMEOUT)
    except (httpx.HTTPError, httpx.InvalidURL, TimeoutError, OSError, ValueError) as exc:
        # ValueError covers idna's UnicodeError for hosts that fail IDNA encoding
        logger.verbose(f"Accessibility check failed: {exc!r}")
        return False
    duration_ms = (time.monotonic() - start_time) * 1000
    logger.verbose(f"Response received in {duration_ms:.0f}ms - Status: {response.status_code}")
    return response.is_success or response.status_code < 400


async def validate_url_accessibility(urls: list[str], options: AnalysisOptions, logger: Logger) -> list[str]:
    """Probe each URL in order and return the accessible subset."""
    logger.info("🔍 Checking URL accessibility...", style="blue")
    logger.verbose(f"Starting accessibility check for {len(urls)} URLs")

    accessible: list[str] = []
    inaccessible: list[str] = []

    async with httpx.AsyncClient(timeout=PROBE_TIMEOUT, follow_redirects=options.follow_redirects) as client:
        for index, url in enumerate(urls, 1):
            logger.verbose(f"Checking URL {index}/{len(urls)}: {url}")
            logger.info(f"  Checking {url}... ", end="")
            if await check_url_accessibility(url, client, logger):
                logger.info("✓", style="green")
                accessible.append(url)
            else:
                logger.info("✗", style="red")
                inaccessible.append(url)

    if inaccessible:
        logger.warn(f"{len(inaccessible)} URL(s) are not accessible and will be skipped:")
        for url in inaccessible:
            logger.warn(f"  - {url}")

    if not accessible:
        raise NoAccessibleUrlsError("No accessible URLs found")

    logger.success(f"{len(accessible)} URL(s) are accessible and will be analyzed\n")
    logger.verbose(f"Accessibility check completed: {len(accessible)} accessible, {len(inaccessible)} inaccessible")
    return accessible


# ---------------------------------------------------------------------------
# Lighthouse Runner
# ---------------------------------------------------------------------------


def _find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@asynccontextmanager
async def browser_session(port: int, logger: Logger):
    """Headless Chromium exposing a DevTools endpoint on port.

    The browser is closed on every exit path, including cancellation.
    """
    launch_start = time.monotonic()
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(
            headless=True,
            args=[*CHROME_FLAGS, f"--remote-debugging-port={port}"],
        )
        logger.verbose(f"Browser launched in {(time.monotonic() - launch_start) * 1000:.0f}ms (port {port})")
        try:
            yield browser
        finally:
            close_start = time.monotonic()
            await browser.close()
            logger.verbose(f"Browser closed in {(time.monotonic() - close_start) * 1000:.0f}ms")


class EngineNoiseFilter:
    """Relays Lighthouse stderr for one audit, holding back known internal noise.

    Noise lines are collected and reported once, at verbose level, when the
    scope exits. Everything else reaches the user.
    """

    def __init__(self, logger: Logger, markers=LIGHTHOUSE_NOISE_MARKERS):
        self.logger = logger
        self.markers = tuple(markers)
        self.suppressed: list[str] = []

    def __enter__(self) -> EngineNoiseFilter:
        return self

    def relay(self, text: str) -> None:
        for line in text.splitlines():
            if not line.strip():
                continue
            if any(marker in line for marker in self.markers):
                self.suppressed.append(line)
            else:
                self.logger.engine_output(line)

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.suppressed:
            self.logger.verbose(
                f"Suppressed {len(self.suppressed)} Lighthouse internal warning(s), first: {self.suppressed[0]}"
            )
        return False


def build_lighthouse_command(url: str, port: int, output_base: Path, options: AnalysisOptions) -> list[str]:
    command = [
        options.lighthouse_bin,
        url,
        f"--port={port}",
        "--output=json",
        "--output=html",
        f"--output-path={output_base}",
        f"--only-categories={','.join(options.categories)}",
    ]
    if options.preset == "desktop":
        command.append("--preset=desktop")
    if options.verbosity < Verbosity.VERBOSE:
        command.append("--quiet")
    return command


async def run_lighthouse_cli(url: str, port: int, options: AnalysisOptions, logger: Logger) -> tuple[dict, str]:
    """Run Lighthouse against the browser listening on port.

    Returns the parsed result (lhr) and the rendered HTML report.
    """
    with tempfile.TemporaryDirectory(prefix="perf-analyzer-") as tmpdir:
        output_base = Path(tmpdir) / "report"
        command = build_lighthouse_command(url, port, output_base, options)
        logger.verbose(f"Running: {' '.join(command)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AuditError(url, f"cannot run Lighthouse ({options.lighthouse_bin}): {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=options.audit_timeout)
        except TimeoutError:
            raise AuditError(url, f"Lighthouse timed out after {options.audit_timeout:g}s") from None
        finally:
            # Reached on timeout and on cancellation; the child must not outlive the audit
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        with EngineNoiseFilter(logger) as noise_filter:
            noise_filter.relay(stderr.decode("utf-8", "replace"))

        if proc.returncode != 0:
            raise AuditError(url, f"Lighthouse exited with status {proc.returncode}")

        json_path = output_base.with_name("report.report.json")
        html_path = output_base.with_name("report.report.html")
        try:
            lhr = json.loads(json_path.read_text(encoding="utf-8"))
            html_report = html_path.read_text(encoding="utf-8")
        except (OSError, json.JSONDecodeError) as exc:
            raise AuditError(url, f"unreadable Lighthouse output: {exc}") from exc

    runtime_error = lhr.get("runtimeError")
    if runtime_error:
        code = runtime_error.get("code", "RUNTIME_ERROR")
        raise AuditError(url, f"{code}: {runtime_error.get('message') or 'Lighthouse runtime error'}")
    if lhr.get("categories", {}).get("performance", {}).get("score") is None:
        raise AuditError(url, "Lighthouse returned no performance score")
    return lhr, html_report


async def run_lighthouse_analysis(url: str, options: AnalysisOptions, logger: Logger) -> tuple[dict, str]:
    """Audit one URL in its own browser session."""
    logger.verbose(f"Starting Lighthouse analysis for: {url}")
    port = _find_free_port()
    try:
        async with browser_session(port, logger):
            lighthouse_start = time.monotonic()
            lhr, html_report = await run_lighthouse_cli(url, port, options, logger)
    except PlaywrightError as exc:
        raise AuditError(url, f"browser session failed: {exc}") from exc

    logger.verbose(f"Lighthouse analysis completed in {(time.monotonic() - lighthouse_start) * 1000:.0f}ms")
    logger.verbose(f"Performance score: {lhr['categories']['performance']['score'] * 100:.1f}")
    logger.verbose(f"Lighthouse version: {lhr.get('lighthouseVersion', 'unknown')}")
    return lhr, html_report


# ---------------------------------------------------------------------------
# Report Formatters
# ---------------------------------------------------------------------------


def _format_score(score: float) -> str:
    return f"{score * 100:g}"


def _performance_score(lhr: dict) -> float:
    return lhr["categories"]["performance"]["score"]


def format_console_metrics(lhr: dict) -> Text:
    """Render the performance score and the six headline metrics."""
    audits = lhr.get("audits", {})
    text = Text()
    text.append(f"\n📊 Performance Metrics for {lhr.get('finalUrl', '')}\n", style="bold green")
    text.append(f"Score: {_format_score(_performance_score(lhr))}/100\n\n", style="yellow")
    for audit_id, label in CONSOLE_METRICS:
        display_value = audits.get(audit_id, {}).get("displayValue") or "N/A"
        text.append(label, style="cyan")
        text.append(f": {display_value}\n")
    text.rstrip()
    return text


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_result_entry(entry: dict) -> dict:
    lhr = entry["lhr"]
    audits = lhr.get("audits", {})
    categories = lhr.get("categories", {})

    metrics = {}
    for audit_id, key in JSON_METRICS:
        audit = audits.get(audit_id, {})
        metrics[key] = {
            "value": audit.get("numericValue"),
            "displayValue": audit.get("displayValue"),
            "score": audit.get("score"),
        }

    category_scores = {}
    for category_id, key in JSON_CATEGORIES:
        if category_id in categories:
            category_scores[key] = categories[category_id].get("score")

    return {
        "url": lhr.get("finalUrl") or entry.get("url"),
        "timestamp": lhr.get("fetchTime"),
        "performance": {
            "score": _performance_score(lhr) * 100,
            "metrics": metrics,
            "categories": category_scores,
        },
    }


def build_json_report(results: dict | list[dict], generated_at: str | None = None) -> dict:
    """Build the JSON envelope for one {url, lhr} entry or a list of them."""
    entries = results if isinstance(results, list) else [results]
    return {
        "timestamp": generated_at or _utc_timestamp(),
        "tool": TOOL_NAME,
        "version": __version__,
        "results": [_json_result_entry(entry) for entry in entries],
    }


def write_report_file(file_path: str | Path, content: str) -> Path:
    """Write a report, creating parent directories. Raises ExportError."""
    path = Path(file_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise ExportError(f"cannot write {path}: {exc}") from exc
    return path


def export_json_report(results: dict | list[dict], file_path: str | None, logger: Logger) -> dict:
    """Write the JSON envelope to file_path, or stdout when no path is given."""
    envelope = build_json_report(results)
    logger.verbose(f"Processing {len(envelope['results'])} result(s) for JSON export")
    json_string = json.dumps(envelope, indent=2, ensure_ascii=False)

    if file_path:
        try:
            write_report_file(file_path, json_string)
        except ExportError as exc:
            logger.error(f"Error writing JSON file: {exc}")
        else:
            logger.info(f"  └─ JSON report saved to {file_path}", style="dim")
    else:
        print(json_string)
    return envelope


def _score_badge(score: float | None) -> str:
    if score is None:
        return "⚪ **N/A**"
    percentage = round(score * 100)
    if percentage >= 90:
        return f"🟢 **{percentage}** (Excellent)"
    if percentage >= 75:
        return f"🟡 **{percentage}** (Good)"
    if percentage >= 50:
        return f"🟠 **{percentage}** (Needs Improvement)"
    return f"🔴 **{percentage}** (Poor)"


def _metric_badge(score: float | None) -> str:
    if score is None:
        return "⚪"
    if score >= 0.9:
        return "🟢"
    if score >= 0.5:
        return "🟡"
    return "🔴"


def _score_out_of_100(score: float | None) -> str:
    return "N/A" if score is None else f"{round(score * 100)}/100"


def _format_fetch_time(fetch_time: str | None) -> str:
    if not fetch_time:
        return "unknown"
    try:
        parsed = datetime.fromisoformat(fetch_time)
    except ValueError:
        return fetch_time
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_markdown_report(lhr: dict) -> str:
    """Render a full Markdown report for one Lighthouse result."""
    audits = lhr.get("audits", {})
    categories = lhr.get("categories", {})
    environment = lhr.get("environment", {})
    final_url = lhr.get("finalUrl", "")
    lines = []

    lines.append("# 🚀 Performance Analysis Report")
    lines.append(f"**Analyzed URL:** [{final_url}]({final_url})")
    lines.append("")
    lines.append(f"**Generated:** {_format_fetch_time(lhr.get('fetchTime'))}")
    lines.append("")
    lines.append(f"**Tool:** [{TOOL_NAME}]({TOOL_HOMEPAGE}) v{__version__}")
    lines.append("")

    lines.append("## 📊 Overall Performance Score")
    lines.append(f"### {_score_badge(_performance_score(lhr))}")
    lines.append("")

    lines.append("## 🎯 Core Web Vitals")
    lines.append("")
    for name, audit_id, description, good_threshold in CORE_WEB_VITALS:
        audit = audits.get(audit_id, {})
        lines.append(f"### {_metric_badge(audit.get('score'))} {name}")
        lines.append(f"- **Value:** {audit.get('displayValue') or 'N/A'}")
        lines.append(f"- **Score:** {_score_out_of_100(audit.get('score'))}")
        lines.append(f"- **Good:** {good_threshold}")
        lines.append(f"- **Description:** {description}")
        lines.append("")

    lines.append("## 📈 Detailed Performance Metrics")
    lines.append("")
    lines.append("| Metric | Value | Score | Status |")
    lines.append("|--------|-------|-------|--------|")
    table_metrics = [(name, audit_id) for name, audit_id, _, _ in CORE_WEB_VITALS]
    table_metrics += [(name, audit_id) for name, audit_id, _ in SECONDARY_METRICS]
    for name, audit_id in table_metrics:
        audit = audits.get(audit_id, {})
        score = audit.get("score")
        lines.append(
            f"| {name} | {audit.get('displayValue') or 'N/A'} | {_score_out_of_100(score)} | {_metric_badge(score)} |"
        )
    lines.append("")

    lines.append("## 🏆 Lighthouse Category Scores")
    lines.append("")
    for key, name, icon in MARKDOWN_CATEGORIES:
        category = categories.get(key)
        if category:
            lines.append(f"### {icon} {name}")
            lines.append(_score_badge(category.get("score")))
            lines.append("")

    opportunities = [
        audit for audit in audits.values()
        if audit.get("details", {}).get("type") == "opportunity"
        and (audit.get("score") is None or audit["score"] < 1)
    ]
    if opportunities:
        lines.append("## 🔧 Performance Opportunities")
        lines.append("")
        lines.append("These suggestions can help improve your page's performance:")
        lines.append("")
        for index, audit in enumerate(opportunities[:MAX_OPPORTUNITIES], 1):
            lines.append(f"{index}. **{audit.get('title', '')}**")
            if audit.get("displayValue"):
                lines.append(f"   - Potential savings: {audit['displayValue']}")
            if audit.get("description"):
                lines.append(f"   - {audit['description']}")
            lines.append("")

    diagnostics = [
        audit for audit in audits.values()
        if audit.get("details", {}).get("type") == "diagnostic"
        and audit.get("score") is not None
        and audit["score"] < 1
    ]
    if diagnostics:
        lines.append("## 🔍 Diagnostics")
        lines.append("")
        lines.append("Issues that may affect your page's performance:")
        lines.append("")
        for index, audit in enumerate(diagnostics[:MAX_DIAGNOSTICS], 1):
            lines.append(f"{index}. {_metric_badge(audit['score'])} **{audit.get('title', '')}**")
            if audit.get("displayValue"):
                lines.append(f"   - Value: {audit['displayValue']}")
            if audit.get("description"):
                lines.append(f"   - {audit['description']}")
            lines.append("")

    lines.append("---")
    lines.append("## 📝 Report Information")
    lines.append("")
    lines.append(f"- **Lighthouse Version:** {lhr.get('lighthouseVersion', 'unknown')}")
    lines.append(f"- **User Agent:** {environment.get('networkUserAgent', 'unknown')}")
    lines.append(f"- **Benchmark Index:** {environment.get('benchmarkIndex', 'unknown')}")
    lines.append("")
    lines.append("### 🎯 Score Ranges")
    lines.append("- 🟢 **90-100:** Excellent")
    lines.append("- 🟡 **75-89:** Good")
    lines.append("- 🟠 **50-74:** Needs Improvement")
    lines.append("- 🔴 **0-49:** Poor")
    lines.append("")
    lines.append(f"*Generated by [{TOOL_NAME}]({TOOL_HOMEPAGE}) v{__version__}*")
    return "\n".join(lines)


def export_markdown_report(lhr: dict, file_path: str | Path, logger: Logger) -> bool:
    """Write the Markdown report. Write failures are logged, not raised."""
    logger.verbose(f"Starting Markdown export for {lhr.get('finalUrl')}")
    content = format_markdown_report(lhr)
    try:
        write_report_file(file_path, content)
    except ExportError as exc:
        logger.error(f"Error writing Markdown file: {exc}")
        return False
    logger.info(f"  └─ 📝 Markdown report saved to {file_path}", style="dim")
    logger.verbose(f"Markdown export completed: {file_path} ({len(content)} characters)")
    return True


# ---------------------------------------------------------------------------
# Batch Orchestration
# ---------------------------------------------------------------------------


class RunStage(enum.Enum):
    COLLECTING = "collecting"
    VALIDATING = "validating"
    PROBING = "probing"
    ANALYZING = "analyzing"
    SUMMARIZING = "summarizing"
    DONE = "done"


@dataclass
class RunSummary:
    success_count: int = 0
    failure_count: int = 0
    total_considered: int = 0
    skipped_inaccessible: int = 0
    threshold_violated: bool = False
    scores: list[float] = field(default_factory=list)

    @property
    def analyzed(self) -> int:
        return self.success_count + self.failure_count

    @property
    def exit_code(self) -> int:
        return 1 if self.failure_count or self.threshold_violated else 0


class BatchAnalysis:
    """Runs the collect → validate → probe → analyze → summarize pipeline.

    Owns the run's counters and the batch results; nothing else mutates them.
    """

    def __init__(self, options: AnalysisOptions, logger: Logger):
        self.options = options
        self.logger = logger
        self.stage = RunStage.COLLECTING
        self.summary = RunSummary()
        self.results: list[dict] = []

    def _enter(self, stage: RunStage) -> None:
        self.logger.verbose(f"Stage: {self.stage.value} -> {stage.value}")
        self.stage = stage

    async def run(self) -> int:
        """Execute the whole batch and return the process exit code.

        Collection, validation and probing errors propagate to the caller.
        """
        start_time = time.monotonic()

        raw_urls = get_url_list(self.options, self.logger)
        self.summary.total_considered = len(raw_urls)

        self._enter(RunStage.VALIDATING)
        urls = validate_urls(raw_urls, self.logger)

        self._enter(RunStage.PROBING)
        accessible = await validate_url_accessibility(urls, self.options, self.logger)
        self.summary.skipped_inaccessible = len(urls) - len(accessible)

        self._enter(RunStage.ANALYZING)
        self.logger.info("🚀 Starting Lighthouse analysis...\n", style="bold blue")
        for index, url in enumerate(accessible, 1):
            await self.analyze_url(url, index, len(accessible))
            if index < len(accessible):
                self.logger.info("")

        self._enter(RunStage.SUMMARIZING)
        self.export_batch_json()
        self.print_summary(time.monotonic() - start_time)

        self._enter(RunStage.DONE)
        return self.summary.exit_code

    async def analyze_url(self, url: str, index: int, total: int) -> bool:
        """Audit one URL and commit either a success or a failure record."""
        options = self.options
        logger = self.logger
        logger.info(f"[{index}/{total}] 🔍 Analyzing {url}...", style="blue")
        logger.verbose(f"Starting analysis {index}/{total} at {_utc_timestamp()}")
        url_start = time.monotonic()

        try:
            logger.info("  └─ Launching browser...", style="dim")
            lhr, html_report = await run_lighthouse_analysis(url, options, logger)
        except AuditError as exc:
            logger.error(f"Failed: {exc.message}")
            logger.verbose(f"Analysis failed for {url} after {(time.monotonic() - url_start) * 1000:.0f}ms")
            logger.exception_detail()
            self.summary.failure_count += 1
            return False

        logger.info("  └─ Analysis complete!", style="dim")
        logger.verbose(f"Total analysis time for {url}: {(time.monotonic() - url_start) * 1000:.0f}ms")
        entry = {"url": url, "lhr": lhr, "report": html_report}
        self.results.append(entry)
        self.summary.success_count += 1
        self.summary.scores.append(_performance_score(lhr) * 100)

        if not options.emit_json or options.json_file_path:
            logger.info(format_console_metrics(lhr), min_level=Verbosity.SILENT)

        if options.output_html_path:
            self.write_html_report(url, html_report, single=(total == 1))

        if options.emit_markdown:
            markdown_path = Path(options.output_dir) / f"{derive_report_basename(url)}.md"
            export_markdown_report(lhr, markdown_path, logger)

        if total == 1:
            if options.emit_json:
                export_json_report(entry, None, logger)
            if options.json_file_path:
                export_json_report(entry, options.json_file_path, logger)

        self.check_threshold(lhr)
        return True

    def write_html_report(self, url: str, html_report: str, single: bool) -> None:
        if single:
            html_path = Path(self.options.output_html_path)
        else:
            html_path = Path(self.options.output_dir) / f"{derive_report_basename(url)}.html"
        self.logger.verbose(f"Saving HTML report to: {html_path}")
        try:
            write_report_file(html_path, html_report)
        except ExportError as exc:
            self.logger.error(f"Error writing HTML report: {exc}")
            return
        self.logger.info(f"  └─ HTML report saved to {html_path}", style="dim")

    def check_threshold(self, lhr: dict) -> None:
        threshold = self.options.threshold_score
        if threshold is None:
            return
        actual = _performance_score(lhr) * 100
        self.logger.verbose(f"Comparing score {actual} against threshold {threshold:g}")
        if actual < threshold:
            self.logger.warn(f"Score {actual} is below threshold of {threshold:g}", min_level=Verbosity.SILENT)
            self.summary.threshold_violated = True

    def export_batch_json(self) -> None:
        if self.summary.analyzed <= 1:
            return
        if self.options.emit_json:
            self.logger.verbose("Performing batch JSON export to stdout")
            export_json_report(self.results, None, self.logger)
        if self.options.json_file_path:
            self.logger.verbose(f"Performing batch JSON export to file: {self.options.json_file_path}")
            export_json_report(self.results, self.options.json_file_path, self.logger)

    def print_summary(self, elapsed: float) -> None:
        summary = self.summary
        logger = self.logger
        analyzed_count = summary.analyzed
        logger.info("\n📋 Analysis Summary:", style="bold blue")
        logger.info(f"✓ Successful: {summary.success_count}", style="green")
        if summary.failure_count > 0:
            logger.info(f"✗ Failed: {summary.failure_count}", style="red")
        logger.info(f"📊 Total analyzed: {analyzed_count}")
        if summary.skipped_inaccessible > 0:
            logger.info(f"⚠ Skipped (inaccessible): {summary.skipped_inaccessible}", style="yellow")

        scores = pd.Series(summary.scores, dtype=float)
        if len(scores) > 1:
            logger.info(f"   Avg score: {scores.mean():.0f}")
            logger.info(f"   Min score: {scores.min():.0f}")
            logger.info(f"   Max score: {scores.max():.0f}")

        logger.verbose(f"Analysis completed at {_utc_timestamp()}")
        if elapsed > 0:
            logger.verbose(f"Performance: {analyzed_count / elapsed:.2f} URLs/sec")
        logger.verbose(f"Total execution time: {elapsed * 1000:.0f}ms")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def _log_startup(options: AnalysisOptions, logger: Logger) -> None:
    logger.verbose(f"Starting {TOOL_NAME} v{__version__}")
    logger.verbose(f"Python version: {platform.python_version()}")
    logger.verbose(f"Platform: {sys.platform} {platform.machine()}")
    logger.verbose(f"Working directory: {Path.cwd()}")
    logger.verbose(f"Command line arguments: {json.dumps(sys.argv)}")
    logger.verbose(f"Options: {json.dumps(asdict(options), indent=2, default=str)}")


async def run(options: AnalysisOptions, logger: Logger) -> int:
    _log_startup(options, logger)
    return await BatchAnalysis(options, logger).run()


def main(argv: list[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)
    logger = Logger()

    try:
        config_path = Path(args.config) if args.config else discover_config_path()
        config = load_config(config_path)
        args = apply_profile(args, config, getattr(args, "profile", None))
        options = resolve_options(args)
        logger = Logger.from_options(options)
        return asyncio.run(run(options, logger))
    except AnalyzerError as exc:
        logger.error(f"Error: {exc}")
        logger.exception_detail()
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
