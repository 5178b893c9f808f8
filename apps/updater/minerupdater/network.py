"""Preconditions checked before the installation is touched."""

from __future__ import annotations

import logging
import socket
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from .installation import Installation
from .models import NetworkUnavailableError, RemoteConfigError
from .runner import CommandRunner

LOGGER = logging.getLogger(__name__)

HTTP_PROBE_URL = "http://connectivitycheck.gstatic.com/generate_204"
HTTPS_PROBE_URL = "https://github.com"
DNS_PROBE_HOST = "github.com"
PROBE_TIMEOUT_S = 8
GIT_TIMEOUT_S = 30


def _http_probe(url: str, timeout_s: float) -> bool:
    req = Request(url, headers={"User-Agent": "refurbminer-updater"})
    try:
        with urlopen(req, timeout=timeout_s):  # noqa: S310
            return True
    except HTTPError:
        # Any HTTP status means we reached the server.
        return True
    except (OSError, ValueError) as exc:
        LOGGER.debug("Probe %s failed: %s", url, exc)
        return False


def _dns_probe(host: str) -> bool:
    try:
        socket.getaddrinfo(host, 443, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, OSError) as exc:
        LOGGER.debug("DNS probe for %s failed: %s", host, exc)
        return False
    return True


def check_connectivity(
    *,
    http_url: str = HTTP_PROBE_URL,
    https_url: str = HTTPS_PROBE_URL,
    dns_host: str = DNS_PROBE_HOST,
    timeout_s: float = PROBE_TIMEOUT_S,
) -> str:
    """Return the name of the first probe that succeeded.

    ICMP is not assumed to be available (Termux, containers), so reachability
    is judged by HTTP, then HTTPS, then plain DNS resolution.
    """
    if _http_probe(http_url, timeout_s):
        return "http"
    LOGGER.warning("HTTP connectivity probe failed; trying HTTPS")
    if _http_probe(https_url, timeout_s):
        return "https"
    LOGGER.warning("HTTPS connectivity probe failed; trying DNS")
    if _dns_probe(dns_host):
        return "dns"
    raise NetworkUnavailableError(
        "No network connectivity (HTTP, HTTPS and DNS probes all failed)"
    )


def _normalize_remote(url: str) -> str:
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url.lower()


def ensure_remote(
    runner: CommandRunner,
    installation: Installation,
    remote: str,
    expected_url: str,
) -> bool:
    """Make sure *remote* points at *expected_url*.  Returns True if repaired."""
    if not installation.git_dir.exists():
        raise RemoteConfigError(f"{installation.root} is not a git working copy")

    git = ["git", "-C", str(installation.root)]
    current = runner.run([*git, "remote", "get-url", remote], timeout_s=GIT_TIMEOUT_S)
    if current.returncode == 127:
        raise RemoteConfigError("git is not installed")
    if current.ok and _normalize_remote(current.stdout) == _normalize_remote(expected_url):
        return False

    if current.ok:
        LOGGER.warning(
            "Remote '%s' points at %s; resetting to %s", remote, current.stdout, expected_url
        )
        fix = runner.run([*git, "remote", "set-url", remote, expected_url], timeout_s=GIT_TIMEOUT_S)
    else:
        LOGGER.warning("Remote '%s' missing; adding %s", remote, expected_url)
        fix = runner.run([*git, "remote", "add", remote, expected_url], timeout_s=GIT_TIMEOUT_S)
    if not fix.ok:
        raise RemoteConfigError(f"Could not repair git remote '{remote}': {fix.output()}")

    check = runner.run([*git, "remote", "get-url", remote], timeout_s=GIT_TIMEOUT_S)
    if not check.ok or _normalize_remote(check.stdout) != _normalize_remote(expected_url):
        raise RemoteConfigError(f"Git remote '{remote}' still misconfigured after repair")
    LOGGER.info("Repaired git remote '%s'", remote)
    return True
