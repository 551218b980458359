# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "rich",
# ]
# ///
"""Performance Budgets CLI Tool.

Runs a Lighthouse audit against a single URL in a locally launched headless
Chrome, checks the report against timing and resource budgets, and exits
non-zero when any budget is exceeded.
"""

from __future__ import annotations

import argparse
import copy
import json
import math
import os
import re
import shutil
import socket
import subprocess
import sys
import tempfile
import time
import tomllib
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import pandas as pd
import requests
from rich.console import Console
from rich.text import Text

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_BUDGET_FORMATS = ("text", "json", "github")
VALID_RESOURCE_TYPES = (
    "document",
    "font",
    "image",
    "media",
    "other",
    "script",
    "stylesheet",
    "third-party",
    "total",
)

DEFAULT_BUDGET_NAME = "Performance budget"
DEFAULT_BUDGET_PATH = "/*"

BUDGET_EXIT_CODE = 2

# Lighthouse audit that carries the pre-evaluated resource budget items
PERFORMANCE_BUDGET_AUDIT = "performance-budget"

CHROME_CANDIDATES = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser")
CHROME_STARTUP_TIMEOUT = 30.0
CHROME_POLL_INTERVAL = 0.25
CHROME_SHUTDOWN_TIMEOUT = 5.0

CONFIG_FILENAMES = ["performance-budgets.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "performance-budgets",
]

LIGHTHOUSE_CONFIG_OVERRIDE = Path("config-override") / "lighthouse.json"

# Bundled example used when no Lighthouse config is supplied
DEFAULT_LIGHTHOUSE_CONFIG = {
    "isCustom": False,
    "extends": "lighthouse:default",
    "settings": {
        "onlyCategories": ["performance"],
        "speedBudgets": {
            "first-contentful-paint": 2000,
            "first-meaningful-paint": 2500,
            "speed-index": 4000,
            "interactive": 5000,
        },
    },
}

EXAMPLE_CONFIG_NOTICE = """
-------
Using example configuration for lighthouse.
You can configure your own lighthouse rules & budgets, read the documentation for more information.
https://github.com/boyney123/performance-budgets
-------"""

TIMING_HEADING = "----- Failed page speed budget audits ------"
REQUEST_COUNT_HEADING = "----- Failed resource count budget audits ------"
RESOURCE_SIZE_HEADING = "----- Failed resource size budget audits ------"

SUMMARY_COLUMNS = ["category", "name", "budget", "actual", "verdict"]

# Lighthouse formats the count with grouping separators, e.g. "1,200 requests"
COUNT_OVER_BUDGET_PATTERN = re.compile(r"^\s*(\d[\d,]*)")

# Scheme-less targets on these hosts default to http (local dev servers)
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PerformanceBudgetError(Exception):
    """Base class for errors raised by the budget checker."""


class UsageError(PerformanceBudgetError):
    """Raised when the command line does not name a usable URL."""


class ReportAcquisitionError(PerformanceBudgetError):
    """Raised when Chrome or Lighthouse fails to produce a report."""


class ReportShapeError(PerformanceBudgetError):
    """Raised when a Lighthouse report lacks the sections budgets are read from."""


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
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def _is_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def _parse_resource_budgets(entries: object, section: str, budget_source: str) -> list[dict]:
    """Validate a [[resource_sizes]] or [[resource_counts]] array of tables."""
    if not isinstance(entries, list):
        print(f"Error: [[{section}]] in {budget_source} must be an array of tables", file=sys.stderr)
        sys.exit(1)

    parsed = []
    for entry in entries:
        resource_type = entry.get("resource_type") if isinstance(entry, dict) else None
        budget_value = entry.get("budget") if isinstance(entry, dict) else None
        if resource_type not in VALID_RESOURCE_TYPES:
            valid = ", ".join(VALID_RESOURCE_TYPES)
            print(
                f"Error: {section} entry in {budget_source} has invalid resource_type {resource_type!r}. Valid: {valid}",
                file=sys.stderr,
            )
            sys.exit(1)
        if not _is_number(budget_value) or budget_value < 0:
            print(
                f"Error: {section} budget for '{resource_type}' in {budget_source} must be a non-negative number",
                file=sys.stderr,
            )
            sys.exit(1)
        parsed.append({"resource_type": resource_type, "budget": budget_value})
    return parsed


def load_budget(budget_source: str | None) -> dict:
    """Load timing thresholds and resource budgets from a TOML file.

    With no budget file an empty budget is returned; timing thresholds may
    then still come from the report's ``configSettings.speedBudgets``.
    """
    empty = {"meta": {}, "timings": {}, "resource_sizes": [], "resource_counts": []}
    if budget_source is None:
        return empty

    budget_path = Path(budget_source)
    if not budget_path.is_file():
        print(f"Error: budget file not found: {budget_source}", file=sys.stderr)
        sys.exit(1)
    try:
        with open(budget_path, "rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed budget file {budget_source}: {exc}", file=sys.stderr)
        sys.exit(1)

    timings = data.get("timings", {})
    if not isinstance(timings, dict):
        print(f"Error: [timings] in {budget_source} must be a table of audit ids to milliseconds", file=sys.stderr)
        sys.exit(1)
    for audit_id, threshold in timings.items():
        if not _is_number(threshold):
            print(
                f"Error: timing budget for '{audit_id}' in {budget_source} must be a number of milliseconds",
                file=sys.stderr,
            )
            sys.exit(1)

    return {
        "meta": data.get("meta", {}),
        "timings": timings,
        "resource_sizes": _parse_resource_budgets(data.get("resource_sizes", []), "resource_sizes", budget_source),
        "resource_counts": _parse_resource_budgets(data.get("resource_counts", []), "resource_counts", budget_source),
    }


def load_lighthouse_config(config_path: str | None) -> dict:
    """Load the Lighthouse config passed through to the audit engine.

    Lookup order: explicit path, ``config-override/lighthouse.json`` in the
    working directory, then the bundled example config.
    """
    if config_path is not None:
        path = Path(config_path)
        if not path.is_file():
            print(f"Error: lighthouse config not found: {config_path}", file=sys.stderr)
            sys.exit(1)
    elif LIGHTHOUSE_CONFIG_OVERRIDE.is_file():
        path = LIGHTHOUSE_CONFIG_OVERRIDE
    else:
        return copy.deepcopy(DEFAULT_LIGHTHOUSE_CONFIG)

    try:
        with open(path) as fh:
            data = json.load(fh)
    except ValueError as exc:
        print(f"Error: malformed lighthouse config {path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read lighthouse config {path}: {exc}", file=sys.stderr)
        sys.exit(1)

    if not isinstance(data, dict):
        print(f"Error: lighthouse config {path} must be a JSON object", file=sys.stderr)
        sys.exit(1)
    return data


def build_lighthouse_budgets(budget: dict) -> list[dict]:
    """Translate resource budgets into Lighthouse's budget.json structure.

    Lighthouse evaluates these itself and reports the result through the
    performance-budget audit. Returns an empty list when none are configured.
    """
    resource_sizes = budget.get("resource_sizes", [])
    resource_counts = budget.get("resource_counts", [])
    if not resource_sizes and not resource_counts:
        return []

    entry: dict[str, object] = {"path": budget.get("meta", {}).get("path", DEFAULT_BUDGET_PATH)}
    if resource_sizes:
        entry["resourceSizes"] = [
            {"resourceType": item["resource_type"], "budget": item["budget"]} for item in resource_sizes
        ]
    if resource_counts:
        entry["resourceCounts"] = [
            {"resourceType": item["resource_type"], "budget": item["budget"]} for item in resource_counts
        ]
    return [entry]


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
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "budget": "budget",
        "lighthouse_config": "lighthouse_config",
        "budget_format": "budget_format",
        "webhook_url": "webhook",
        "webhook_on": "webhook_on",
        "port": "port",
        "chrome_path": "chrome_path",
        "verbose": "verbose",
        # Launch options with no CLI flag
        "headless": "headless",
        "disable_gpu": "disable_gpu",
        "no_sandbox": "no_sandbox",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "chrome_path", None):
        env_chrome = os.environ.get("CHROME_PATH")
        if env_chrome:
            args.chrome_path = env_chrome

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


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="performance-budgets",
        description="Audit a URL with Lighthouse and check it against performance budgets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("url", nargs="?", default=None, help="URL to audit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")
    parser.add_argument("--budget", dest="budget", action=TrackingAction, default=None, help="Budget file (TOML) with timing and resource budgets")
    parser.add_argument("--lighthouse-config", dest="lighthouse_config", action=TrackingAction, default=None, help="Lighthouse config JSON (default: config-override/lighthouse.json or bundled example)")
    parser.add_argument("--port", dest="port", action=TrackingAction, type=int, default=None, help="Chrome remote debugging port (default: any free port)")
    parser.add_argument("--chrome-path", dest="chrome_path", action=TrackingAction, default=None, help="Chrome executable (or set CHROME_PATH env var)")
    parser.add_argument("--budget-format", dest="budget_format", action=TrackingAction, default="text", choices=VALID_BUDGET_FORMATS, help="Budget output format (default: text)")
    parser.add_argument("--webhook", dest="webhook", action=TrackingAction, default=None, help="Webhook URL for budget notifications")
    parser.add_argument("--webhook-on", dest="webhook_on", action=TrackingAction, default="always", choices=("always", "fail"), help="When to send webhook: always or fail only")
    return parser


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    if any(char.isspace() for char in url):
        return None

    try:
        # Add scheme if missing
        if "://" not in url:
            scheme = "http" if urlparse("//" + url).hostname in LOOPBACK_HOSTS else "https"
            url = f"{scheme}://{url}"

        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        # Malformed IPv6 literal
        return None

    if parsed.scheme.lower() not in ("http", "https") or not hostname:
        return None
    return url


def require_url(raw_url: str | None) -> str:
    """Return the normalized URL or raise UsageError before any audit starts."""
    if not raw_url or not raw_url.strip():
        raise UsageError("Please provide a url")
    url = validate_url(raw_url)
    if url is None:
        raise UsageError(f"Please provide a valid url (got {raw_url!r})")
    return url


# ---------------------------------------------------------------------------
# Data Contracts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LaunchOptions:
    """Chrome launch settings handed to the audit runner."""

    disable_gpu: bool = True
    headless: bool = True
    sandbox_disabled: bool = True
    port: int | None = None
    chrome_path: str | None = None

    def chrome_flags(self) -> list[str]:
        flags = []
        if self.headless:
            flags.append("--headless")
        if self.disable_gpu:
            flags.append("--disable-gpu")
        if self.sandbox_disabled:
            # --no-zygote is only accepted alongside --no-sandbox
            flags.extend(["--no-sandbox", "--no-zygote"])
        return flags


def launch_options_from_args(args: argparse.Namespace) -> LaunchOptions:
    port = getattr(args, "port", None)
    if port is not None and not (isinstance(port, int) and 0 < port < 65536):
        raise UsageError(f"--port must be between 1 and 65535 (got {port!r})")
    return LaunchOptions(
        disable_gpu=bool(getattr(args, "disable_gpu", True)),
        headless=bool(getattr(args, "headless", True)),
        sandbox_disabled=bool(getattr(args, "no_sandbox", True)),
        port=port,
        chrome_path=getattr(args, "chrome_path", None),
    )


def _round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (display only)."""
    return math.floor(value + 0.5)


def _format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@dataclass(frozen=True)
class TimingAudit:
    """A timing measurement paired with its configured threshold, in ms."""

    audit_id: str
    measured: float
    threshold: float
    overage: float = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "overage", self.measured - self.threshold)

    @property
    def over_budget(self) -> bool:
        return self.overage > 0


@dataclass(frozen=True)
class ResourceBudgetItem:
    """One resource group from Lighthouse's performance-budget audit.

    The over-budget fields are computed by Lighthouse from the budget.json it
    was given; this layer only classifies them.
    """

    label: str
    size: float
    request_count: int
    size_over_budget: float | None = None
    count_over_budget: str | None = None

    @classmethod
    def from_report_item(cls, item: object) -> ResourceBudgetItem:
        """Validate a raw performance-budget item and wrap it."""
        if not isinstance(item, dict):
            raise ReportShapeError(f"performance-budget item must be an object, got {type(item).__name__}")

        label = item.get("label")
        if not isinstance(label, str):
            raise ReportShapeError(f"performance-budget item is missing a label: {item!r}")

        request_count = item.get("requestCount")
        if not _is_number(request_count):
            raise ReportShapeError(f"performance-budget item '{label}' has no numeric requestCount")

        # Older Lighthouse releases report "size", newer ones "transferSize"
        size = item.get("size", item.get("transferSize"))
        if not _is_number(size):
            raise ReportShapeError(f"performance-budget item '{label}' has no numeric size")

        size_over_budget = item.get("sizeOverBudget")
        if size_over_budget is not None and not _is_number(size_over_budget):
            raise ReportShapeError(f"performance-budget item '{label}' has a non-numeric sizeOverBudget")

        count_over_budget = item.get("countOverBudget")
        if count_over_budget is not None and (
            not isinstance(count_over_budget, str) or not COUNT_OVER_BUDGET_PATTERN.match(count_over_budget)
        ):
            raise ReportShapeError(
                f"performance-budget item '{label}' has an unreadable countOverBudget {count_over_budget!r}"
            )

        return cls(
            label=label,
            size=size,
            request_count=int(request_count),
            size_over_budget=size_over_budget,
            count_over_budget=count_over_budget,
        )

    @property
    def over_size_budget(self) -> bool:
        return self.size_over_budget is not None

    @property
    def over_count_budget(self) -> bool:
        return self.count_over_budget is not None

    @property
    def over_budget(self) -> bool:
        return self.over_size_budget or self.over_count_budget

    @property
    def requests_over_budget(self) -> int | None:
        """Numeric prefix of the descriptor, e.g. 5 for "5 requests"."""
        if self.count_over_budget is None:
            return None
        digits = COUNT_OVER_BUDGET_PATTERN.match(self.count_over_budget).group(1)
        return int(digits.replace(",", ""))

    @property
    def expected_count(self) -> int | None:
        if self.count_over_budget is None:
            return None
        return self.request_count - self.requests_over_budget

    @property
    def expected_size_kb(self) -> int | None:
        if self.size_over_budget is None:
            return None
        return _round_half_up((self.size - self.size_over_budget) / 1024)

    @property
    def actual_size_kb(self) -> int:
        return _round_half_up(self.size / 1024)


@dataclass
class EvaluationResult:
    """Outcome of checking one report against a budget.

    ``error`` is set when the report could not be evaluated at all; the
    verdict is then "error" rather than "pass" or "fail".
    """

    timings: list[TimingAudit] = field(default_factory=list)
    resources: list[ResourceBudgetItem] = field(default_factory=list)
    budget_name: str = DEFAULT_BUDGET_NAME
    url: str | None = None
    error: str | None = None

    @property
    def failed_timings(self) -> list[TimingAudit]:
        return [audit for audit in self.timings if audit.over_budget]

    @property
    def failed_request_counts(self) -> list[ResourceBudgetItem]:
        return [item for item in self.resources if item.over_count_budget]

    @property
    def failed_sizes(self) -> list[ResourceBudgetItem]:
        return [item for item in self.resources if item.over_size_budget]

    @property
    def total(self) -> int:
        return len(self.timings) + len(self.resources)

    @property
    def failed(self) -> int:
        return len(self.failed_timings) + sum(1 for item in self.resources if item.over_budget)

    @property
    def passed(self) -> int:
        return self.total - self.failed

    @property
    def verdict(self) -> str:
        if self.error is not None:
            return "error"
        return "pass" if is_valid(self) else "fail"

    def to_dict(self) -> dict:
        """Plain-data form used for JSON output and webhook payloads."""
        return {
            "budget_name": self.budget_name,
            "url": self.url,
            "verdict": self.verdict,
            "passed": self.passed,
            "failed": self.failed,
            "total": self.total,
            "error": self.error,
            "timings": [
                {
                    "audit_id": audit.audit_id,
                    "threshold": audit.threshold,
                    "measured": audit.measured,
                    "over_budget_by": audit.overage if audit.over_budget else None,
                    "verdict": "fail" if audit.over_budget else "pass",
                }
                for audit in self.timings
            ],
            "resources": [
                {
                    "label": item.label,
                    "size": item.size,
                    "request_count": item.request_count,
                    "size_over_budget": item.size_over_budget,
                    "count_over_budget": item.count_over_budget,
                    "verdict": "fail" if item.over_budget else "pass",
                }
                for item in self.resources
            ],
            "diagnostics": [
                line.plain for _, lines in build_diagnostics(self) for line in lines
            ],
        }


# ---------------------------------------------------------------------------
# Budget Evaluation
# ---------------------------------------------------------------------------


def evaluate_timings(audits: dict, thresholds: dict) -> list[TimingAudit]:
    """Pair each configured threshold with the report's numeric measurement.

    Thresholds whose audit is missing from the report, or has no numeric
    ``numericValue``, are skipped rather than failed.
    """
    results = []
    for audit_id, threshold in thresholds.items():
        record = audits.get(audit_id)
        if not isinstance(record, dict):
            continue
        measured = record.get("numericValue")
        if not _is_number(measured):
            continue
        results.append(TimingAudit(audit_id=audit_id, measured=measured, threshold=threshold))
    return results


def evaluate_resources(items: list) -> list[ResourceBudgetItem]:
    """Wrap performance-budget items; raises ReportShapeError on a bad item."""
    return [ResourceBudgetItem.from_report_item(item) for item in items]


def is_valid(result: EvaluationResult) -> bool:
    """True when every timing audit and every resource item is within budget."""
    within_timings = [audit for audit in result.timings if not audit.over_budget]
    within_resources = [item for item in result.resources if not item.over_budget]
    return len(within_timings) == len(result.timings) and len(within_resources) == len(result.resources)


def _budget_items(audits: dict) -> list:
    budget_audit = audits.get(PERFORMANCE_BUDGET_AUDIT)
    if budget_audit is None:
        return []
    if not isinstance(budget_audit, dict):
        raise ReportShapeError(f"audit '{PERFORMANCE_BUDGET_AUDIT}' must be an object")

    # Lighthouse omits details when no budget.json was supplied
    details = budget_audit.get("details")
    if details is None:
        return []
    if not isinstance(details, dict):
        raise ReportShapeError(f"audit '{PERFORMANCE_BUDGET_AUDIT}' has malformed details")
    items = details.get("items", [])
    if not isinstance(items, list):
        raise ReportShapeError(f"audit '{PERFORMANCE_BUDGET_AUDIT}' details.items must be a list")
    return items


def _timing_thresholds(report: dict, budget: dict) -> dict:
    """Budget file timings win; otherwise fall back to configSettings.speedBudgets."""
    timings = budget.get("timings") or {}
    if timings:
        return timings
    config_settings = report.get("configSettings")
    if isinstance(config_settings, dict):
        speed_budgets = config_settings.get("speedBudgets")
        if isinstance(speed_budgets, dict):
            return {key: value for key, value in speed_budgets.items() if _is_number(value)}
    return {}


def evaluate_report(report: object, budget: dict, url: str | None = None) -> EvaluationResult:
    """Evaluate a Lighthouse result (lhr) against a budget.

    A report that is missing required sections yields a result whose verdict
    is "error" instead of raising.
    """
    budget_name = budget.get("meta", {}).get("name", DEFAULT_BUDGET_NAME)
    try:
        if not isinstance(report, dict):
            raise ReportShapeError("lighthouse report must be a JSON object")
        audits = report.get("audits")
        if not isinstance(audits, dict):
            raise ReportShapeError("lighthouse report has no 'audits' section")

        timings = evaluate_timings(audits, _timing_thresholds(report, budget))
        resources = evaluate_resources(_budget_items(audits))
    except ReportShapeError as exc:
        return EvaluationResult(budget_name=budget_name, url=url, error=str(exc))

    return EvaluationResult(timings=timings, resources=resources, budget_name=budget_name, url=url)


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


def build_diagnostics(result: EvaluationResult) -> list[tuple[str, list[Text]]]:
    """Group failure lines by category: timings, request counts, then sizes.

    Only categories with at least one failure are included.
    """
    groups: list[tuple[str, list[Text]]] = []

    timing_lines = [
        Text.assemble(
            (audit.audit_id, "green"),
            ": Expected ",
            (_format_number(audit.threshold), "green"),
            " ms but got ",
            (str(_round_half_up(audit.measured)), "red"),
            " ms",
        )
        for audit in result.failed_timings
    ]
    if timing_lines:
        groups.append((TIMING_HEADING, timing_lines))

    count_lines = [
        Text.assemble(
            (item.label, "green"),
            ": Expected ",
            (str(item.expected_count), "green"),
            " total number of requests but got ",
            (str(item.request_count), "red"),
        )
        for item in result.failed_request_counts
    ]
    if count_lines:
        groups.append((REQUEST_COUNT_HEADING, count_lines))

    size_lines = [
        Text.assemble(
            (item.label, "green"),
            ": Expected ",
            (f"{item.expected_size_kb}kb", "green"),
            " download size but got ",
            (f"{item.actual_size_kb}kb", "red"),
        )
        for item in result.failed_sizes
    ]
    if size_lines:
        groups.append((RESOURCE_SIZE_HEADING, size_lines))

    return groups


def render_diagnostics(result: EvaluationResult, console: Console) -> None:
    """Print grouped failure diagnostics to a rich console."""
    for heading, lines in build_diagnostics(result):
        console.print(Text(heading, style="red"), soft_wrap=True)
        for line in lines:
            console.print(line, soft_wrap=True)


def format_budget_json(result: EvaluationResult) -> str:
    """Format the evaluation result as JSON."""
    return json.dumps(result.to_dict(), indent=2, default=str)


def format_budget_github(result: EvaluationResult) -> str:
    """Format the evaluation result as GitHub Actions annotations."""
    if result.verdict == "error":
        return f"::error::Budget ERROR ({result.url}): {result.error}"

    lines = []
    for _, group_lines in build_diagnostics(result):
        for line in group_lines:
            lines.append(f"::error::Budget FAIL ({result.url}): {line.plain}")
    if not lines:
        lines.append(f"::notice::Budget PASS: {result.budget_name}")
    return "\n".join(lines)


def summary_frame(result: EvaluationResult) -> pd.DataFrame:
    """Tabulate every evaluated budget, passing or failing."""
    rows = []
    for audit in result.timings:
        rows.append({
            "category": "timing",
            "name": audit.audit_id,
            "budget": f"{_format_number(audit.threshold)} ms",
            "actual": f"{_round_half_up(audit.measured)} ms",
            "verdict": "fail" if audit.over_budget else "pass",
        })
    for item in result.resources:
        rows.append({
            "category": "requests",
            "name": item.label,
            "budget": str(item.expected_count) if item.over_count_budget else "-",
            "actual": str(item.request_count),
            "verdict": "fail" if item.over_count_budget else "pass",
        })
        rows.append({
            "category": "size",
            "name": item.label,
            "budget": f"{item.expected_size_kb}kb" if item.over_size_budget else "-",
            "actual": f"{item.actual_size_kb}kb",
            "verdict": "fail" if item.over_size_budget else "pass",
        })
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def send_budget_webhook(webhook_url: str, payload: dict) -> None:
    """POST the budget verdict to a webhook URL. Failures are warnings only."""
    try:
        response = requests.post(webhook_url, json=payload, timeout=30)
        response.raise_for_status()
    except (requests.RequestException, OSError) as exc:
        print(f"Warning: webhook delivery failed: {exc}", file=sys.stderr)


def report_budget_result(result: EvaluationResult, args: argparse.Namespace, console: Console) -> int:
    """Print the evaluation in the selected format and return the exit code."""
    if result.verdict == "error":
        print(f"Error: cannot evaluate budgets: {result.error}", file=sys.stderr)
        return 1

    if result.total == 0:
        print("Warning: no budgets matched the report; all budgets pass by default", file=sys.stderr)

    if getattr(args, "verbose", False) and result.total:
        print(summary_frame(result).to_string(index=False), file=sys.stderr)

    # Pick output format: explicit flag > GitHub Actions auto-detect > text
    cli_explicit = set(getattr(args, "_explicit_args", []))
    budget_format = getattr(args, "budget_format", "text")
    if "budget_format" not in cli_explicit and os.environ.get("GITHUB_ACTIONS"):
        budget_format = "github"

    if budget_format == "json":
        console.out(format_budget_json(result))
    elif budget_format == "github":
        console.out(format_budget_github(result))
    elif result.verdict == "fail":
        render_diagnostics(result, console)
    else:
        console.print(Text("All budgets passed. ✔", style="green"))

    webhook_url = getattr(args, "webhook", None)
    if webhook_url:
        webhook_on = getattr(args, "webhook_on", "always")
        if webhook_on == "always" or (webhook_on == "fail" and result.verdict == "fail"):
            send_budget_webhook(webhook_url, result.to_dict())

    if result.verdict == "fail":
        return BUDGET_EXIT_CODE
    return 0


# ---------------------------------------------------------------------------
# Audit Runner
# ---------------------------------------------------------------------------


def find_chrome(chrome_path: str | None = None) -> str:
    """Resolve the Chrome executable from an explicit path or PATH."""
    if chrome_path:
        return chrome_path
    for candidate in CHROME_CANDIDATES:
        found = shutil.which(candidate)
        if found:
            return found
    raise ReportAcquisitionError("Chrome not found; install it or set CHROME_PATH / --chrome-path")


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _wait_for_devtools(port: int, process: subprocess.Popen) -> None:
    """Poll the DevTools endpoint until Chrome accepts connections."""
    endpoint = f"http://127.0.0.1:{port}/json/version"
    deadline = time.monotonic() + CHROME_STARTUP_TIMEOUT
    last_error: Exception | None = None
    while time.monotonic() < deadline:
        exit_code = process.poll()
        if exit_code is not None:
            raise ReportAcquisitionError(f"Chrome exited with code {exit_code} before DevTools became available")
        try:
            response = requests.get(endpoint, timeout=1)
            if response.status_code == 200:
                return
            last_error = ReportAcquisitionError(f"HTTP {response.status_code} from {endpoint}")
        except requests.RequestException as exc:
            last_error = exc
        time.sleep(CHROME_POLL_INTERVAL)
    raise ReportAcquisitionError(
        f"Chrome did not open DevTools on port {port} within {CHROME_STARTUP_TIMEOUT:.0f}s: {last_error}"
    )


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=CHROME_SHUTDOWN_TIMEOUT)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


@contextmanager
def launch_chrome(options: LaunchOptions, verbose: bool = False) -> Iterator[int]:
    """Start Chrome with remote debugging enabled and yield its port.

    Chrome is terminated on exit whether or not the body raised.
    """
    chrome_binary = find_chrome(options.chrome_path)
    port = options.port or _free_port()

    with tempfile.TemporaryDirectory(prefix="performance-budgets-chrome-", ignore_cleanup_errors=True) as profile_dir:
        command = [
            chrome_binary,
            *options.chrome_flags(),
            f"--remote-debugging-port={port}",
            f"--user-data-dir={profile_dir}",
            "about:blank",
        ]
        if verbose:
            print(f"  Launching Chrome: {' '.join(command)}", file=sys.stderr)
        try:
            process = subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            raise ReportAcquisitionError(f"cannot launch Chrome ({chrome_binary}): {exc}") from exc

        try:
            _wait_for_devtools(port, process)
            yield port
        finally:
            _terminate(process)
            if verbose:
                print("  Chrome stopped", file=sys.stderr)


def run_lighthouse(url: str, port: int, lighthouse_config: dict, budget: dict, verbose: bool = False) -> dict:
    """Run the Lighthouse CLI against an already running Chrome.

    Returns the Lighthouse result (lhr) parsed from the JSON output.
    """
    lighthouse_binary = os.environ.get("LIGHTHOUSE_PATH") or shutil.which("lighthouse")
    if not lighthouse_binary:
        raise ReportAcquisitionError("lighthouse CLI not found; install it with `npm install -g lighthouse` or set LIGHTHOUSE_PATH")

    # isCustom only selects the advisory notice; Lighthouse must not see it
    engine_config = {key: value for key, value in lighthouse_config.items() if key != "isCustom"}
    lighthouse_budgets = build_lighthouse_budgets(budget)

    with tempfile.TemporaryDirectory(prefix="performance-budgets-lh-") as work_dir:
        config_path = Path(work_dir) / "lighthouse.json"
        config_path.write_text(json.dumps(engine_config))
        command = [
            lighthouse_binary,
            url,
            f"--port={port}",
            "--output=json",
            "--output-path=stdout",
            "--quiet",
            f"--config-path={config_path}",
        ]
        if lighthouse_budgets:
            budget_path = Path(work_dir) / "budget.json"
            budget_path.write_text(json.dumps(lighthouse_budgets))
            command.append(f"--budget-path={budget_path}")

        if verbose:
            print(f"  Running: {' '.join(command)}", file=sys.stderr)
        try:
            completed = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise ReportAcquisitionError(f"cannot run lighthouse ({lighthouse_binary}): {exc}") from exc

    if completed.returncode != 0:
        detail = completed.stderr.strip()[-500:] or f"exit code {completed.returncode}"
        raise ReportAcquisitionError(f"lighthouse failed for {url}: {detail}")

    try:
        report = json.loads(completed.stdout)
    except ValueError as exc:
        raise ReportAcquisitionError(f"lighthouse returned invalid JSON for {url}: {exc}") from exc

    # The node API wraps the result in {"lhr": ...}; the CLI prints it bare
    if isinstance(report, dict) and isinstance(report.get("lhr"), dict):
        return report["lhr"]
    return report


def fetch_lighthouse_report(
    url: str,
    options: LaunchOptions,
    lighthouse_config: dict,
    budget: dict,
    verbose: bool = False,
) -> dict:
    """Launch Chrome, run Lighthouse once, and always release the browser."""
    with launch_chrome(options, verbose) as port:
        if verbose:
            print(f"  Chrome DevTools listening on port {port}", file=sys.stderr)
        return run_lighthouse(url, port, lighthouse_config, budget, verbose)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


ReportSource = Callable[..., dict]


def run_budget_check(
    args: argparse.Namespace,
    launch_options: LaunchOptions,
    console: Console | None = None,
    fetch_report: ReportSource | None = None,
) -> int:
    """Audit the URL in args, evaluate budgets, and return the exit code.

    Raises UsageError before any audit is requested when the URL is unusable.
    """
    url = require_url(getattr(args, "url", None))
    console = console or Console(highlight=False)
    fetch_report = fetch_report or fetch_lighthouse_report
    verbose = getattr(args, "verbose", False)

    lighthouse_config = load_lighthouse_config(getattr(args, "lighthouse_config", None))
    budget = load_budget(getattr(args, "budget", None))

    if not lighthouse_config.get("isCustom", False):
        print(EXAMPLE_CONFIG_NOTICE, file=sys.stderr)

    print(f"Requesting lighthouse data for {url}", file=sys.stderr)
    try:
        report = fetch_report(url, launch_options, lighthouse_config, budget, verbose=verbose)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Error: Failed to get lighthouse data", file=sys.stderr)
        return 1

    result = evaluate_report(report, budget, url=url)
    return report_budget_result(result, args, console)


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    # Load config
    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    # Apply profile and config defaults
    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    try:
        exit_code = run_budget_check(args, launch_options_from_args(args))
    except UsageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
