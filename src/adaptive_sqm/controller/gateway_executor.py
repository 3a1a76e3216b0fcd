#!/usr/bin/env python3
"""
Gateway Executors
Apply a computed ceiling to the gateway's shaping layer.

Every executor is idempotent per link: a command identical to the last one
the gateway acknowledged is not sent again. At most one command per link is
in flight; a caller that cannot get the link within the apply timeout gets a
failure instead of queueing behind a stuck call.
"""

import re
import logging
import threading
import subprocess
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import requests

from .config_loader import WanLink
from .models import AppliedRateCommand

logger = logging.getLogger(__name__)


class GatewayExecutor:
    """Base executor: per-link serialization and acknowledgement tracking"""

    def __init__(self, apply_timeout: float = 10.0):
        self.apply_timeout = apply_timeout
        self._guard = threading.Lock()
        self._link_locks: Dict[str, threading.Lock] = {}
        self._acknowledged: Dict[str, AppliedRateCommand] = {}

    def _lock_for(self, link_id: str) -> threading.Lock:
        with self._guard:
            if link_id not in self._link_locks:
                self._link_locks[link_id] = threading.Lock()
            return self._link_locks[link_id]

    def apply_ceiling(self, link_id: str, download_mbps: float, upload_mbps: float) -> bool:
        """
        Apply download/upload ceilings for a link.

        Returns True when the gateway acknowledged the command (or already
        runs exactly this ceiling), False on any failure or timeout.
        """
        command = AppliedRateCommand(
            link_id=link_id,
            download_mbps=download_mbps,
            upload_mbps=upload_mbps,
            timestamp=datetime.now(),
        )

        lock = self._lock_for(link_id)
        if not lock.acquire(timeout=self.apply_timeout):
            logger.error(f"{link_id}: previous gateway command still in flight, not applying")
            return False

        try:
            if command.same_rates(self._acknowledged.get(link_id)):
                logger.debug(f"{link_id}: ceiling {download_mbps}/{upload_mbps} Mbps already applied")
                return True

            try:
                success = self._send(command)
            except Exception as e:
                logger.error(f"{link_id}: gateway apply raised: {e}")
                success = False

            if success:
                self._acknowledged[link_id] = command
            else:
                # Gateway state is unknown now; the next command must go out
                self._acknowledged.pop(link_id, None)
            return success
        finally:
            lock.release()

    def last_acknowledged(self, link_id: str) -> Optional[AppliedRateCommand]:
        with self._guard:
            return self._acknowledged.get(link_id)

    def forget(self, link_id: str):
        """Drop the acknowledgement so the next command is sent unconditionally"""
        with self._guard:
            self._acknowledged.pop(link_id, None)

    def _send(self, command: AppliedRateCommand) -> bool:
        raise NotImplementedError


def format_rate_for_tc(rate_mbps: float) -> str:
    """tc rate string with 0.1 Mbit resolution"""
    return f"{rate_mbps:.1f}Mbit"


# class htb 1:10 parent 1:1 leaf 10: prio 0 rate 64bit ceil 250Mbit burst 1500b cburst 1500b
TC_CLASS_REGEX = re.compile(r"class htb (\d+:\d+) parent 1:1\b")
TC_PRIO_REGEX = re.compile(r"\bprio (\d+)")
TC_RATE_REGEX = re.compile(r"\brate (\S+)")


def parse_child_classes(tc_output: str) -> List[Tuple[str, Optional[str]]]:
    """
    (classid, prio) of the child classes under 1:1 that carry the standard
    64bit guaranteed rate; other classes are vendor-specific and left alone.
    """
    children = []
    for line in tc_output.splitlines():
        class_match = TC_CLASS_REGEX.search(line)
        if not class_match:
            continue
        rate_match = TC_RATE_REGEX.search(line)
        if not rate_match or rate_match.group(1) != "64bit":
            continue
        prio_match = TC_PRIO_REGEX.search(line)
        children.append((class_match.group(1), prio_match.group(1) if prio_match else None))
    return children


class TcGatewayExecutor(GatewayExecutor):
    """
    Rewrites HTB class ceilings with tc.

    Download is shaped on the link's IFB device, upload on the WAN
    interface itself. A command is only ever half-applied transiently: when
    the upload change fails the download class is put back.
    """

    def __init__(self, resolve_link: Callable[[str], WanLink], apply_timeout: float = 10.0,
                 dry_run: bool = True, tc_binary: str = "tc"):
        super().__init__(apply_timeout=apply_timeout)
        self.resolve_link = resolve_link
        self.dry_run = dry_run
        self.tc_binary = tc_binary

    def _run_cmd(self, args: List[str]) -> Tuple[int, str]:
        cmd = [self.tc_binary] + args
        cmd_str = " ".join(cmd)
        if self.dry_run:
            logger.info(f"[DRY RUN] {cmd_str}")
            return 0, ""
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True,
                                    timeout=self.apply_timeout)
            logger.debug(f"Executed: {cmd_str}")
            return 0, result.stdout
        except subprocess.CalledProcessError as e:
            message = (e.stderr or e.output or "").strip()
            logger.error(f"Command failed ({cmd_str}): {message}")
            return e.returncode or 1, message
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out after {self.apply_timeout}s: {cmd_str}")
            return 1, "timeout"
        except FileNotFoundError:
            logger.error(f"Command not found: {self.tc_binary}")
            return 1, "Command not found"

    def _update_device(self, device: str, rate_mbps: float) -> bool:
        rate = format_rate_for_tc(rate_mbps)

        rc, _ = self._run_cmd([
            "class", "change", "dev", device, "parent", "1:", "classid", "1:1", "htb",
            "rate", rate, "ceil", rate, "burst", "1500b", "cburst", "1500b",
        ])
        if rc != 0:
            return False

        if self.dry_run:
            return True

        rc, output = self._run_cmd(["class", "show", "dev", device])
        if rc != 0:
            return False

        for classid, prio in parse_child_classes(output):
            args = [
                "class", "change", "dev", device, "parent", "1:1", "classid", classid, "htb",
                "rate", "64bit", "ceil", rate, "burst", "1500b", "cburst", "1500b",
            ]
            if prio is not None:
                args += ["prio", prio]
            rc, _ = self._run_cmd(args)
            if rc != 0:
                return False
        return True

    def _send(self, command):
        link = self.resolve_link(command.link_id)
        if not link.interface:
            logger.error(f"{command.link_id}: no interface configured")
            return False

        # Called with the link lock held, so this is the ceiling the gateway runs now
        previous = self._acknowledged.get(command.link_id)

        if not self._update_device(link.ifb_device, command.download_mbps):
            return False

        if not self._update_device(link.interface, command.upload_mbps):
            if previous is None:
                logger.error(f"{command.link_id}: upload change failed, download ceiling on "
                             f"{link.ifb_device} left at {command.download_mbps} Mbps")
            elif self._update_device(link.ifb_device, previous.download_mbps):
                logger.warning(f"{command.link_id}: upload change failed, download ceiling "
                               f"restored to {previous.download_mbps} Mbps")
            else:
                logger.error(f"{command.link_id}: upload change failed and download ceiling "
                             f"could not be restored")
            return False

        logger.info(f"{command.link_id}: tc ceilings set to "
                    f"{command.download_mbps}/{command.upload_mbps} Mbps on {link.interface}")
        return True


class HttpGatewayExecutor(GatewayExecutor):
    """Posts ceiling commands to an agent running on the gateway"""

    def __init__(self, endpoint: str, apply_timeout: float = 10.0, token: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        super().__init__(apply_timeout=apply_timeout)
        self.endpoint = endpoint.rstrip('/')
        self.token = token
        self.session = session or requests.Session()

    def _send(self, command):
        url = f"{self.endpoint}/links/{command.link_id}/ceiling"
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = self.session.post(url, json=command.to_dict(), headers=headers,
                                         timeout=self.apply_timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"{command.link_id}: gateway rejected ceiling: {e}")
            return False
