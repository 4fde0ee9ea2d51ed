#!/usr/bin/env python3
"""Validate vmmanager/distros.yaml: catalog schema and image URL reachability."""

from __future__ import annotations

import re
import sys
from pathlib import Path

import requests
import yaml

DISTROS_PATH = Path(__file__).resolve().parents[2] / "vmmanager" / "distros.yaml"
REQUIRED_FIELDS = ("name", "os_type", "codename", "url", "hostname")
URL_RE = re.compile(r"^https?://")
HOSTNAME_RE = re.compile(r"^[A-Za-z0-9_-]+\Z")
IMAGE_SUFFIXES = (".img", ".qcow2", ".tar.xz", ".txz", ".tar.gz", ".tgz", ".tar")
REQUEST_TIMEOUT = 30
USER_AGENT = "vm-manager/distro-validator"


def load_distros(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)


# ── Phase 1: Schema validation (fail-fast) ──────────────────────────


def validate_schema(data: dict) -> list[str]:
    errors: list[str] = []

    if "distributions" not in data:
        errors.append("Top-level 'distributions' key is missing")
        return errors

    distros = data["distributions"]
    if not isinstance(distros, dict):
        errors.append("'distributions' must be a mapping")
        return errors

    hostnames: dict[str, str] = {}
    for key, entry in distros.items():
        if not isinstance(entry, dict):
            errors.append(f"[{key}] entry is not a mapping")
            continue

        for field in REQUIRED_FIELDS:
            if field not in entry:
                errors.append(f"[{key}] missing required field '{field}'")
            elif not isinstance(entry[field], str):
                errors.append(f"[{key}] '{field}' must be a string (quote numeric codenames)")

        url = entry.get("url")
        if isinstance(url, str):
            if not URL_RE.match(url):
                errors.append(f"[{key}] 'url' must start with http:// or https://")
            elif not url.lower().endswith(IMAGE_SUFFIXES):
                errors.append(f"[{key}] 'url' does not look like a disk image or image archive")

        hostname = entry.get("hostname")
        if isinstance(hostname, str):
            if not HOSTNAME_RE.match(hostname):
                errors.append(f"[{key}] 'hostname' may only contain letters, numbers, '-' and '_'")
            elif hostname in hostnames:
                errors.append(f"[{key}] 'hostname' duplicates [{hostnames[hostname]}]")
            else:
                hostnames[hostname] = key

    return errors


# ── Phase 2: URL reachability (collect-all) ──────────────────────────


def check_url(key: str, url: str) -> str | None:
    """Return an error string if the URL is unreachable, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code < 400:
            return None
        # HEAD is refused by some mirrors
        if resp.status_code in (403, 405):
            resp = session.get(
                url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True
            )
            resp.close()
            if resp.status_code < 400:
                return None
        return f"[{key}] HTTP {resp.status_code} for {url}"
    except requests.RequestException as exc:
        return f"[{key}] {exc.__class__.__name__}: {exc} for {url}"


def validate_urls(data: dict) -> list[str]:
    errors: list[str] = []
    for key, entry in data["distributions"].items():
        err = check_url(key, entry["url"])
        if err:
            errors.append(err)
    return errors


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print(f"Loading {DISTROS_PATH}")
    data = load_distros(DISTROS_PATH)

    print("\n=== Phase 1: Schema validation ===")
    schema_errors = validate_schema(data)
    if schema_errors:
        for e in schema_errors:
            print(f"  ERROR: {e}")
        print(f"\nSchema validation failed with {len(schema_errors)} error(s)")
        return 1
    distro_count = len(data["distributions"])
    print(f"  OK: {distro_count} distributions, all schemas valid")

    if "--offline" in sys.argv[1:]:
        print("\nSkipping URL reachability (--offline)")
        return 0

    print("\n=== Phase 2: URL reachability ===")
    url_errors = validate_urls(data)
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)}/{distro_count} unreachable")
        return 1
    print(f"  OK: all {distro_count} URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
