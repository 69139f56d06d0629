"""Readiness waiting and pre-flight checks.

- wait_until_ready(): poll a predicate until true or a bounded timeout
- Pre-flight checks validate provider prerequisites before a run:
  API endpoint reachability and credentials (rest), helm binary (helm)
"""

import logging
import socket
import time
from typing import Callable
from urllib.parse import urlparse

import requests

from common import run_command
from errors import ReadinessTimeoutError
from stack import Stack

logger = logging.getLogger(__name__)


def wait_until_ready(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    description: str = 'resource',
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> float:
    """Poll predicate until it returns True.

    Args:
        predicate: Readiness check; exceptions propagate to the caller
        timeout: Seconds before giving up
        interval: Seconds between polls
        description: Used in log and error messages
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        Seconds spent waiting

    Raises:
        ReadinessTimeoutError: If predicate is still False after timeout
    """
    start = clock()
    logger.info(f"Waiting for {description} to become ready (timeout {timeout:g}s)...")
    while True:
        if predicate():
            waited = clock() - start
            logger.info(f"{description} ready after {waited:.1f}s")
            return waited
        elapsed = clock() - start
        if elapsed >= timeout:
            raise ReadinessTimeoutError(description, timeout)
        logger.debug(f"{description} not ready, retrying in {interval:g}s...")
        sleep(min(interval, max(timeout - elapsed, 0)))


def validate_api_endpoint(endpoint: str, token: str = '', timeout: float = 10) -> tuple[bool, str]:
    """Verify an API endpoint answers and accepts the credentials.

    Args:
        endpoint: API base URL
        token: Bearer token (may be empty)

    Returns:
        (success, message) tuple
    """
    headers = {'Authorization': f'Bearer {token}'} if token else {}
    try:
        resp = requests.get(endpoint, headers=headers, timeout=timeout)
    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to {endpoint}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {endpoint}"

    if resp.status_code in (401, 403):
        return False, (
            f"Credentials rejected by {endpoint} ({resp.status_code}). "
            "Check the provider's credentials key in secrets.yaml"
        )
    if resp.status_code >= 500:
        return False, f"Unexpected API response: {resp.status_code} - {resp.text[:100]}"
    return True, f"{endpoint} accessible ({resp.status_code})"


def validate_host_reachable(host: str, port: int, timeout: float = 5.0) -> tuple[bool, str]:
    """Check if host accepts TCP connections on port.

    Returns:
        (success, message) tuple
    """
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
        return True, f"Host {host} reachable on port {port}"
    except socket.timeout:
        return False, f"Timeout connecting to {host}:{port}"
    except OSError as e:
        return False, f"Cannot connect to {host}:{port}: {e}"


def validate_helm_available() -> tuple[bool, str]:
    """Check that the helm binary runs."""
    rc, out, err = run_command(['helm', 'version', '--short'], timeout=30)
    if rc != 0:
        return False, f"helm not available: {err.strip() or 'command failed'}"
    return True, f"helm {out.strip()}"


def run_preflight_checks(stack: Stack, tokens: dict[str, str]) -> list[str]:
    """Validate prerequisites of every provider the stack uses.

    Args:
        stack: Loaded stack
        tokens: Resolved credentials by provider name

    Returns:
        List of error messages (empty = ready)
    """
    used = {r.provider for r in stack.resources}
    errors: list[str] = []
    helm_checked = False

    for name in sorted(used):
        settings = stack.providers[name]
        if settings.kind == 'rest':
            endpoint = settings.options.get('endpoint', '')
            parsed = urlparse(endpoint)
            port = parsed.port or (443 if parsed.scheme == 'https' else 80)
            ok, msg = validate_host_reachable(parsed.hostname or '', port)
            if ok:
                ok, msg = validate_api_endpoint(endpoint, tokens.get(name, ''))
        elif settings.kind == 'helm' and not helm_checked:
            helm_checked = True
            ok, msg = validate_helm_available()
        else:
            continue
        if ok:
            logger.debug(f"Pre-flight [{name}]: {msg}")
        else:
            errors.append(f"[{name}] {msg}")
    return errors
