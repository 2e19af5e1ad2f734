#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastmcp"]
# ///
"""Token-frugal digests: grouped grep summaries and JSON shape schemas.

Runs a text search and compresses the hits into a bounded per-file report, or
walks a JSON document and prints its structure (types and shapes, no values).
Every run records raw vs. rendered size in a per-project usage ledger.

Usage:
    sft_digest.py grep "pattern" [path] [-l 80] [-m 50] [-c] [-v]
    sft_digest.py json data.json [-d 5] [-v]
    cat data.json | sft_digest.py json
    sft_digest.py gain
    sft_digest.py mcp-stdio
"""

import csv
import hashlib
import json
import math
import os
import re
import shutil
import subprocess
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, NamedTuple

# =============================================================================
# LOGGING
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n")
    except Exception:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================
EXPOSED = ["grep", "json_schema", "gain"]  # CLI + MCP

CONFIG = {
    "version": "1.0.0",
    "max_line_len": 80,
    "max_results": 50,
    "max_depth": 5,
    "matches_per_file": 10,
    "max_object_keys": 16,
    "long_string_len": 50,
    "compact_path_len": 50,
    "context_lead_chars": 20,
    "search_timeout_seconds": 60,
    "chars_per_token": 4,
}

USAGE_COLS = [
    "timestamp",
    "command",
    "subcommand",
    "input_tokens",
    "output_tokens",
    "saved_tokens",
    "savings_pct",
]

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1


class RawMatch(NamedTuple):
    """One search hit: file, line number (0 when unknown), raw line text."""

    file: str
    line: int
    content: str


# =============================================================================
# CORE FUNCTIONS
# =============================================================================


# --- Line condensing ---


def condense_line(line: str, max_len: int, context_only: bool, pattern: str) -> str:
    """Shrink a matched line to at most max_len characters, keeping the hit in view.

    With context_only, prefer a tight "up to 20 chars + match + rest" excerpt
    when it fits. Otherwise short lines pass through, long lines get a window
    with a one-third lead-in before the first case-insensitive occurrence of
    pattern, and lines without an occurrence are cut from the left.
    """
    trimmed = line.strip()

    if context_only:
        try:
            regex = re.compile(
                f".{{0,{CONFIG['context_lead_chars']}}}{re.escape(pattern)}.*",
                re.IGNORECASE,
            )
        except re.error:
            regex = None
        if regex is not None:
            m = regex.search(trimmed)
            if m and len(m.group(0)) <= max_len:
                return m.group(0)

    if len(trimmed) <= max_len:
        return trimmed

    pos = trimmed.lower().find(pattern.lower())
    if pos < 0:
        return trimmed[: max(max_len - 3, 0)] + "..."

    n = len(trimmed)
    start = max(pos - max_len // 3, 0)
    end = min(start + max_len, n)
    if end == n:
        start = max(end - max_len, 0)

    prefix = "..." if start > 0 else ""
    suffix = "..." if end < n else ""
    if len(prefix) + len(suffix) >= max_len:
        return (prefix + trimmed[pos:])[:max_len]
    # Ellipses are paid for out of the window.
    start += len(prefix)
    end = max(end - len(suffix), start)
    return f"{prefix}{trimmed[start:end]}{suffix}"


def compact_path(path: str) -> str:
    """Collapse long paths to first/.../parent/name."""
    if len(path) <= CONFIG["compact_path_len"]:
        return path
    parts = path.split("/")
    if len(parts) <= 3:
        return path
    return f"{parts[0]}/.../{parts[-2]}/{parts[-1]}"


# --- Search output parsing ---


def _parse_line_number(text: str) -> int:
    return int(text) if text.isascii() and text.isdigit() else 0


def parse_search_line(line: str, default_path: str) -> RawMatch | None:
    """Parse `file:line:content` or `line:content` (single-file search)."""
    parts = line.split(":", 2)
    if len(parts) == 3:
        return RawMatch(parts[0], _parse_line_number(parts[1]), parts[2])
    if len(parts) == 2:
        return RawMatch(default_path, _parse_line_number(parts[0]), parts[1])
    return None


def parse_search_output(output: str, default_path: str) -> list[RawMatch]:
    """Turn raw search tool stdout into matches, dropping malformed lines."""
    matches: list[RawMatch] = []
    skipped = 0
    lines = output.split("\n")
    if lines and not lines[-1]:
        lines.pop()
    for line in lines:
        line = line.removesuffix("\r")
        match = parse_search_line(line, default_path)
        if match is None:
            skipped += 1
            continue
        matches.append(match)
    if skipped:
        _log("DEBUG", "parse", f"skipped {skipped} malformed line(s)")
    return matches


# --- Aggregation ---


def aggregate_matches(
    raw_matches: list[RawMatch],
    max_line_len: int,
    max_results: int,
    context_only: bool,
    pattern: str,
) -> tuple[str, int]:
    """Group matches by file and render the capped report.

    Files are listed in lexicographic order and rendering stops once
    max_results rows have been shown. A file with more than matches_per_file
    hits gets a `+N` note computed from its full count, even when the global
    cap cut it short. Whatever was not shown is disclosed on a trailing
    `... +N` line.

    Returns (report_text, total_matches).
    """
    if not raw_matches:
        return f"🔍 0 for '{pattern}'", 0

    per_file = CONFIG["matches_per_file"]
    by_file: dict[str, list[tuple[int, str]]] = {}
    for match in raw_matches:
        cleaned = condense_line(match.content, max_line_len, context_only, pattern)
        by_file.setdefault(match.file, []).append((match.line, cleaned))

    total = len(raw_matches)
    out = [f"🔍 {total} in {len(by_file)}F:", ""]
    shown = 0

    for file in sorted(by_file):
        if shown >= max_results:
            break
        matches = by_file[file]
        out.append(f"📄 {compact_path(file)} ({len(matches)}):")
        for line_num, content in matches[:per_file]:
            out.append(f"  {line_num:>4}: {content}")
            shown += 1
            if shown >= max_results:
                break
        if len(matches) > per_file:
            out.append(f"  +{len(matches) - per_file}")
        out.append("")

    if total > shown:
        out.append(f"... +{total - shown}")

    return "\n".join(out) + "\n", total


# --- Search invocation ---


def _get_tool_path(tool_name: str, env_var: str) -> str:
    """Get path to external tool, checking env override first."""
    override = os.environ.get(env_var)
    if override and os.path.exists(override):
        return override
    return shutil.which(tool_name) or tool_name


def run_search(pattern: str, path: str) -> tuple[str, str]:
    """Run ripgrep, falling back to grep when rg cannot be launched.

    A "no matches" exit status is not a failure; only a tool that fails to
    start triggers the fallback.

    Returns (stdout, tool_name).
    """
    timeout = CONFIG["search_timeout_seconds"]
    attempts = [
        ("rg", [_get_tool_path("rg", "SFA_RG_PATH"), "-n", "--no-heading", "--", pattern, path]),
        ("grep", [_get_tool_path("grep", "SFA_GREP_PATH"), "-rn", "--", pattern, path]),
    ]
    failures: list[str] = []
    for tool, cmd in attempts:
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise RuntimeError(f"{tool} timed out after {timeout}s") from e
        except OSError as e:
            _log("DEBUG", "search_fallback", f"{tool} unavailable", detail=str(e))
            failures.append(f"{tool}: {e}")
            continue
        return result.stdout.decode("utf-8", errors="replace"), tool
    raise RuntimeError(f"grep/rg failed: {'; '.join(failures)}")


# --- JSON schema ---


def _string_label(s: str) -> str:
    if len(s) > CONFIG["long_string_len"]:
        return f"string[{len(s)}]"
    if not s:
        return "string"
    if s.startswith("http"):
        return "url"
    if "-" in s and len(s) == 10:
        return "date?"
    return "string"


def _is_simple(value: Any) -> bool:
    return value is None or isinstance(value, (bool, int, float, str))


def infer_schema(value: Any, depth: int = 0, max_depth: int = 5) -> str:
    """Render the type shape of a parsed JSON value, two spaces per level.

    Arrays are assumed uniform: only the first element is inspected. Objects
    list keys in sorted order, inlining scalar values and cutting off after
    max_object_keys keys with a `+N more keys` note.
    """
    indent = "  " * depth

    if depth > max_depth:
        return f"{indent}..."

    if value is None:
        return f"{indent}null"
    if isinstance(value, bool):
        return f"{indent}bool"
    if isinstance(value, int):
        return f"{indent}int" if _I64_MIN <= value <= _I64_MAX else f"{indent}float"
    if isinstance(value, float):
        return f"{indent}float"
    if isinstance(value, str):
        return f"{indent}{_string_label(value)}"

    if isinstance(value, list):
        if not value:
            return f"{indent}[]"
        first_schema = infer_schema(value[0], depth + 1, max_depth)
        if len(value) == 1:
            return f"{indent}[\n{first_schema}\n{indent}]"
        return f"{indent}[{first_schema.strip()}] ({len(value)})"

    if isinstance(value, dict):
        if not value:
            return f"{indent}{{}}"
        lines = [f"{indent}{{"]
        keys = sorted(value)
        key_cap = CONFIG["max_object_keys"]
        for i, key in enumerate(keys):
            val = value[key]
            val_schema = infer_schema(val, depth + 1, max_depth)
            if _is_simple(val):
                comma = "," if i < len(keys) - 1 else ""
                lines.append(f"{indent}  {key}: {val_schema.strip()}{comma}")
            else:
                lines.append(f"{indent}  {key}:")
                lines.append(val_schema)
            if i >= key_cap - 1:
                lines.append(f"{indent}  ... +{len(keys) - i - 1} more keys")
                break
        lines.append(f"{indent}}}")
        return "\n".join(lines)

    raise TypeError(f"Not a JSON value: {type(value).__name__}")


# --- Usage tracking ---


def _get_project_id() -> str:
    """Generate unique project ID from current working directory."""
    cwd = Path.cwd()
    path_hash = hashlib.md5(str(cwd).encode()).hexdigest()[:8]
    return f"{cwd.name}-{path_hash}"


def _usage_file() -> Path:
    override = os.environ.get("SFB_DIGEST_DATA_DIR")
    data_dir = Path(override) if override else Path.home() / ".sfb" / "projects" / _get_project_id()
    return data_dir / "digest_usage.tsv"


def _estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CONFIG["chars_per_token"])


def track_usage(command: str, subcommand: str, raw_input: str, rendered_output: str) -> None:
    """Record raw vs. rendered size for one run. Never raises."""
    try:
        input_tokens = _estimate_tokens(raw_input)
        output_tokens = _estimate_tokens(rendered_output)
        saved = max(input_tokens - output_tokens, 0)
        pct = round(saved / input_tokens * 100, 1) if input_tokens else 0.0

        usage_file = _usage_file()
        usage_file.parent.mkdir(parents=True, exist_ok=True)
        with open(usage_file, "a", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=USAGE_COLS, delimiter="\t")
            if usage_file.stat().st_size == 0:
                writer.writeheader()
            writer.writerow(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
                    "command": command,
                    "subcommand": subcommand,
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    "saved_tokens": saved,
                    "savings_pct": pct,
                }
            )
    except Exception as e:
        _log("WARN", "track_failed", str(e), detail=subcommand)


def _gain_impl() -> tuple[dict[str, Any], dict[str, Any]]:
    """Summarize the usage ledger: totals overall and per subcommand.

    CLI: gain
    MCP: gain

    Returns (summary_dict, metrics_dict).
    """
    start_ms = time.time() * 1000
    usage_file = _usage_file()

    rows: list[dict[str, str]] = []
    if usage_file.exists():
        with open(usage_file, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f, delimiter="\t"))

    def _int(row: dict[str, str], col: str) -> int:
        value = row.get(col) or "0"
        return int(value) if value.isdigit() else 0

    by_subcommand: dict[str, dict[str, int]] = {}
    input_total = output_total = saved_total = 0
    for row in rows:
        bucket = by_subcommand.setdefault(
            row.get("subcommand") or "unknown",
            {"commands": 0, "input_tokens": 0, "output_tokens": 0, "saved_tokens": 0},
        )
        bucket["commands"] += 1
        for col in ("input_tokens", "output_tokens", "saved_tokens"):
            bucket[col] += _int(row, col)
        input_total += _int(row, "input_tokens")
        output_total += _int(row, "output_tokens")
        saved_total += _int(row, "saved_tokens")

    summary = {
        "ledger": str(usage_file),
        "commands": len(rows),
        "input_tokens": input_total,
        "output_tokens": output_total,
        "saved_tokens": saved_total,
        "savings_pct": round(saved_total / input_total * 100, 1) if input_total else 0.0,
        "by_subcommand": by_subcommand,
    }
    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log(
        "INFO",
        "gain",
        f"{len(rows)} run(s)",
        metrics=f"latency_ms={latency_ms} status=success",
    )
    return summary, {"status": "success", "latency_ms": latency_ms, "commands": len(rows)}


# --- Commands ---


def _grep_impl(
    pattern: str,
    path: str = ".",
    max_line_len: int = CONFIG["max_line_len"],
    max_results: int = CONFIG["max_results"],
    context_only: bool = False,
    verbose: int = 0,
    *,
    search: Callable[[str, str], tuple[str, str]] = run_search,
    tracker: Callable[[str, str, str, str], None] = track_usage,
) -> tuple[str, dict[str, Any]]:
    """Search and render a compact per-file summary of the hits.

    CLI: grep
    MCP: grep

    Returns (report_str, metrics_dict).
    """
    assert pattern, "pattern required"
    assert max_line_len > 0, f"max_line_len must be positive (got {max_line_len})"
    assert max_results >= 0, f"max_results must be >= 0 (got {max_results})"

    start_ms = time.time() * 1000
    if verbose > 0:
        print(f"grep: '{pattern}' in {path}", file=sys.stderr)

    raw_output, tool = search(pattern, path)

    if not raw_output.strip():
        report, total, files = f"🔍 0 for '{pattern}'", 0, 0
    else:
        matches = parse_search_output(raw_output, path)
        report, total = aggregate_matches(matches, max_line_len, max_results, context_only, pattern)
        files = len({m.file for m in matches})

    tracker(f"grep -rn '{pattern}' {path}", "sft_digest grep", raw_output, report)

    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log(
        "INFO",
        "grep",
        f"{tool}: {pattern} in {path}",
        detail=f"total={total} files={files}",
        metrics=f"latency_ms={latency_ms} status=success",
    )
    return report, {
        "status": "success",
        "latency_ms": latency_ms,
        "tool": tool,
        "pattern": pattern,
        "total": total,
        "files": files,
        "input_chars": len(raw_output),
        "output_chars": len(report),
    }


def _json_impl(
    file: str,
    max_depth: int = CONFIG["max_depth"],
    verbose: int = 0,
    *,
    tracker: Callable[[str, str, str, str], None] = track_usage,
) -> tuple[str, dict[str, Any]]:
    """Show the structure of a JSON document without its values.

    CLI: json, json-schema
    MCP: json_schema

    A file of "-" reads the document from stdin.

    Returns (schema_str, metrics_dict).
    """
    assert file, "file required"
    assert max_depth >= 0, f"max_depth must be >= 0 (got {max_depth})"

    start_ms = time.time() * 1000
    if verbose > 0:
        print(f"Analyzing JSON: {file}", file=sys.stderr)

    if file == "-":
        content = sys.stdin.read()
    else:
        try:
            content = Path(file).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise RuntimeError(f"Failed to read file: {file}: {e}") from e

    try:
        value = json.loads(content)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse JSON: {file}: {e}") from e

    schema = infer_schema(value, 0, max_depth)
    tracker(f"cat {file}", "sft_digest json", content, schema)

    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log(
        "INFO",
        "json",
        file,
        detail=f"depth={max_depth}",
        metrics=f"latency_ms={latency_ms} status=success",
    )
    return schema, {
        "status": "success",
        "latency_ms": latency_ms,
        "file": file,
        "input_chars": len(content),
        "output_chars": len(schema),
    }


# =============================================================================
# CLI INTERFACE
# =============================================================================
def main():
    import argparse

    parser = argparse.ArgumentParser(
        description="Token-frugal digests: grouped grep summaries and JSON shape schemas"
    )
    parser.add_argument("-V", "--version", action="version", version=CONFIG["version"])
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # --- mcp-stdio ---
    subparsers.add_parser("mcp-stdio", help="Run as MCP server")

    # --- grep ---
    p_grep = subparsers.add_parser("grep", help="Search and summarize matches per file")
    p_grep.add_argument("pattern")
    p_grep.add_argument("path", nargs="?", default=".")
    p_grep.add_argument(
        "-l", "--max-len", type=int, default=CONFIG["max_line_len"], help="Max chars per match line"
    )
    p_grep.add_argument(
        "-m", "--max", type=int, dest="max_results", default=CONFIG["max_results"],
        help="Max match lines shown",
    )
    p_grep.add_argument(
        "-c", "--context-only", action="store_true", help="Show only the match with a short lead-in"
    )
    p_grep.add_argument("-v", "--verbose", action="count", default=0)

    # --- json (primary) and json-schema (alias matching EXPOSED name) ---
    def _add_json_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("file", nargs="?", default=None, help="JSON file (- or piped stdin)")
        p.add_argument("-d", "--depth", type=int, default=CONFIG["max_depth"], help="Max nesting depth")
        p.add_argument("-v", "--verbose", action="count", default=0)

    p_json = subparsers.add_parser("json", help="Show JSON structure without values")
    _add_json_args(p_json)
    p_json2 = subparsers.add_parser("json-schema", help="Show JSON structure (alias)")
    _add_json_args(p_json2)

    # --- gain ---
    subparsers.add_parser("gain", help="Summarize token savings from the usage ledger")

    args = parser.parse_args()

    try:
        # --- Dispatch ---
        if args.command == "mcp-stdio":
            _run_mcp()

        elif args.command == "grep":
            report, _ = _grep_impl(
                args.pattern,
                args.path,
                args.max_len,
                args.max_results,
                args.context_only,
                args.verbose,
            )
            print(report, end="" if report.endswith("\n") else "\n")

        elif args.command in ("json", "json-schema"):
            if not args.file and not sys.stdin.isatty():
                args.file = "-"
            assert args.file, "file required. Usage: sft_digest.py json <file>"
            schema, _ = _json_impl(args.file, args.depth, args.verbose)
            print(schema)

        elif args.command == "gain":
            summary, _ = _gain_impl()
            print(json.dumps(summary, indent=2))

        else:
            parser.print_help()
    except (AssertionError, Exception) as e:
        _log("ERROR", args.command or "unknown", str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER
# =============================================================================
def _run_mcp():
    from fastmcp import FastMCP

    mcp = FastMCP("digest")

    @mcp.tool()
    def grep(
        pattern: str,
        path: str = ".",
        max_len: int = 80,
        max_results: int = 50,
        context_only: bool = False,
    ) -> str:
        """Search file contents and return a compact per-file summary.

        Hits are grouped by file (sorted), long lines are shortened around the
        match, and anything past the caps is reported as +N.

        Args:
            pattern: Text or regex pattern to search for
            path: Directory or file to search in (default: current directory)
            max_len: Max characters per match line (default: 80)
            max_results: Max match lines shown in total (default: 50)
            context_only: Show only a short lead-in plus the match
        """
        report, _ = _grep_impl(pattern, path, max_len, max_results, context_only)
        return report

    @mcp.tool()
    def json_schema(file: str, depth: int = 5) -> str:
        """Show the structure of a JSON file: types and shapes, no values.

        Args:
            file: Path to a JSON file
            depth: Max nesting depth before collapsing to ... (default: 5)
        """
        schema, _ = _json_impl(file, depth)
        return schema

    @mcp.tool()
    def gain() -> str:
        """Summarize estimated token savings recorded for this project.

        Args:
            (none)
        """
        summary, _ = _gain_impl()
        return json.dumps(summary, indent=2)

    print("digest MCP server starting...", file=sys.stderr)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
