"""
Host Reachability Probe
=======================

Best-effort ICMP echo check used as a pre-connect gate and by the liveness
loop. Delegates to the operating system's `ping` binary so no raw-socket
privileges are required.

Any callable with the signature `(host: str, timeout_ms: int) -> bool` can be
injected into the connection manager instead.
"""

import logging
import platform
import subprocess
from typing import List

logger = logging.getLogger(__name__)


def _ping_command(host: str, timeout_ms: int) -> List[str]:
    system = platform.system().lower()
    if system == "windows":
        return ["ping", "-n", "1", "-w", str(max(timeout_ms, 1)), host]
    if system == "darwin":
        # BSD ping: -W takes milliseconds
        return ["ping", "-c", "1", "-W", str(max(timeout_ms, 1)), host]
    # Linux iputils: -W takes whole seconds
    timeout_s = max(1, -(-timeout_ms // 1000))
    return ["ping", "-c", "1", "-W", str(timeout_s), host]


def ping_host(host: str, timeout_ms: int = 3000) -> bool:
    """
    Send one ICMP echo request.

    Args:
        host: IP address or hostname
        timeout_ms: Reply timeout in milliseconds

    Returns:
        True if a reply arrived, False on no reply or any probe failure
    """
    command = _ping_command(host, timeout_ms)
    try:
        result = subprocess.run(
            command,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout_ms / 1000.0 + 1.0,
        )
    except subprocess.TimeoutExpired:
        logger.debug(f"Ping {host} timed out after {timeout_ms} ms")
        return False
    except OSError as e:
        logger.warning(f"Ping {host} could not run: {e}")
        return False

    return result.returncode == 0


def always_reachable(host: str, timeout_ms: int = 0) -> bool:
    """Probe that skips the check, for hosts that drop ICMP."""
    return True
