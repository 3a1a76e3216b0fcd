"""
Unit tests for gateway executors: idempotence, in-flight limit, tc and HTTP backends
"""

import subprocess
import threading
import time
from unittest.mock import Mock, patch

import requests

from adaptive_sqm.controller.gateway_executor import (
    HttpGatewayExecutor,
    TcGatewayExecutor,
    format_rate_for_tc,
    parse_child_classes,
)

from conftest import RecordingExecutor, make_link

TC_CLASS_SHOW = """class htb 1:1 root rate 300Mbit ceil 300Mbit burst 1500b cburst 1500b
class htb 1:10 parent 1:1 leaf 10: prio 0 rate 64bit ceil 300Mbit burst 1500b cburst 1500b
class htb 1:20 parent 1:1 leaf 20: prio 3 rate 64bit ceil 300Mbit burst 1500b cburst 1500b
class htb 1:30 parent 1:1 leaf 30: prio 5 rate 10Mbit ceil 300Mbit burst 1500b cburst 1500b
class fq_codel 10:1 parent 10:
"""


class TestIdempotence:

    def test_same_ceiling_sent_once(self):
        executor = RecordingExecutor()
        assert executor.apply_ceiling("wan1", 250.0, 25.0)
        assert executor.apply_ceiling("wan1", 250.0, 25.0)
        assert executor.sent == [("wan1", 250.0, 25.0)]

    def test_changed_ceiling_is_sent(self):
        executor = RecordingExecutor()
        executor.apply_ceiling("wan1", 250.0, 25.0)
        executor.apply_ceiling("wan1", 242.5, 25.0)
        assert len(executor.sent) == 2

    def test_failure_invalidates_acknowledgement(self):
        executor = RecordingExecutor()
        executor.apply_ceiling("wan1", 250.0, 25.0)
        executor.fail = True
        assert not executor.apply_ceiling("wan1", 240.0, 25.0)
        executor.fail = False

        # Gateway state unknown after a failure, so even the old ceiling is resent
        assert executor.apply_ceiling("wan1", 250.0, 25.0)
        assert executor.sent == [("wan1", 250.0, 25.0), ("wan1", 250.0, 25.0)]

    def test_forget_forces_resend(self):
        executor = RecordingExecutor()
        executor.apply_ceiling("wan1", 250.0, 25.0)
        executor.forget("wan1")
        executor.apply_ceiling("wan1", 250.0, 25.0)
        assert len(executor.sent) == 2

    def test_links_are_independent(self):
        executor = RecordingExecutor()
        executor.apply_ceiling("wan1", 250.0, 25.0)
        executor.apply_ceiling("wan2", 250.0, 25.0)
        assert len(executor.sent) == 2
        assert executor.last_acknowledged("wan2").download_mbps == 250.0

    def test_send_exception_is_failure(self):
        executor = RecordingExecutor()
        executor._send = Mock(side_effect=RuntimeError("ssh dropped"))
        assert executor.apply_ceiling("wan1", 250.0, 25.0) is False
        assert executor.last_acknowledged("wan1") is None


class TestInFlightLimit:

    def test_times_out_while_previous_command_in_flight(self):
        executor = RecordingExecutor(apply_timeout=0.05)
        executor.hang = threading.Event()

        worker = threading.Thread(target=executor.apply_ceiling, args=("wan1", 250.0, 25.0))
        worker.start()
        try:
            # Give the first command time to take the link
            for _ in range(100):
                if executor._lock_for("wan1").locked():
                    break
                time.sleep(0.01)
            assert executor.apply_ceiling("wan1", 240.0, 25.0) is False
        finally:
            executor.hang.set()
            worker.join(2)

        assert executor.sent == [("wan1", 250.0, 25.0)]

    def test_other_link_not_blocked(self):
        executor = RecordingExecutor(apply_timeout=0.05)
        executor._lock_for("wan1").acquire()
        try:
            assert executor.apply_ceiling("wan2", 100.0, 10.0) is True
        finally:
            executor._lock_for("wan1").release()


class TestTcGatewayExecutor:

    def test_rate_format(self):
        assert format_rate_for_tc(242.5) == "242.5Mbit"
        assert format_rate_for_tc(21) == "21.0Mbit"

    def test_child_classes_with_64bit_rate_only(self):
        assert parse_child_classes(TC_CLASS_SHOW) == [("1:10", "0"), ("1:20", "3")]

    @patch("adaptive_sqm.controller.gateway_executor.subprocess.run")
    def test_dry_run_runs_nothing(self, mock_run):
        executor = TcGatewayExecutor(lambda link_id: make_link(link_id), dry_run=True)
        assert executor.apply_ceiling("wan1", 250.0, 25.0)
        mock_run.assert_not_called()

    @patch("adaptive_sqm.controller.gateway_executor.subprocess.run")
    def test_updates_root_and_children_on_both_devices(self, mock_run):
        mock_run.return_value = Mock(stdout=TC_CLASS_SHOW, stderr="", returncode=0)
        executor = TcGatewayExecutor(lambda link_id: make_link(link_id), dry_run=False)

        assert executor.apply_ceiling("wan1", 242.5, 24.3)

        commands = [c.args[0] for c in mock_run.call_args_list]
        assert commands[0] == ["tc", "class", "change", "dev", "ifbeth0", "parent", "1:", "classid", "1:1",
                               "htb", "rate", "242.5Mbit", "ceil", "242.5Mbit", "burst", "1500b",
                               "cburst", "1500b"]
        assert commands[1] == ["tc", "class", "show", "dev", "ifbeth0"]
        assert "1:10" in commands[2] and "prio" in commands[2]
        assert "1:20" in commands[3]
        assert all("1:30" not in cmd for cmd in commands)
        assert commands[4][4] == "eth0" and "24.3Mbit" in commands[4]
        assert len(commands) == 8

    @patch("adaptive_sqm.controller.gateway_executor.subprocess.run")
    def test_rejected_command_fails_apply(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(2, "tc", stderr="RTNETLINK answers: No such file")
        executor = TcGatewayExecutor(lambda link_id: make_link(link_id), dry_run=False)

        assert executor.apply_ceiling("wan1", 242.5, 24.3) is False
        assert executor.last_acknowledged("wan1") is None

    @patch("adaptive_sqm.controller.gateway_executor.subprocess.run")
    def test_failed_upload_change_restores_download(self, mock_run):
        def tc(cmd, **kwargs):
            if cmd[4] == "eth0" and "20.0Mbit" in cmd:
                raise subprocess.CalledProcessError(2, cmd, stderr="RTNETLINK answers: Device or resource busy")
            return Mock(stdout=TC_CLASS_SHOW, stderr="", returncode=0)

        mock_run.side_effect = tc
        executor = TcGatewayExecutor(lambda link_id: make_link(link_id), dry_run=False)
        assert executor.apply_ceiling("wan1", 250.0, 25.0)
        mock_run.reset_mock()

        assert executor.apply_ceiling("wan1", 240.0, 20.0) is False

        root_changes = [c.args[0] for c in mock_run.call_args_list
                        if c.args[0][2] == "change" and c.args[0][8] == "1:1"]
        assert [cmd[4] for cmd in root_changes] == ["ifbeth0", "eth0", "ifbeth0"]
        assert "250.0Mbit" in root_changes[-1], f"Expected download restored to 250, got {root_changes[-1]}"
        assert executor.last_acknowledged("wan1") is None

    @patch("adaptive_sqm.controller.gateway_executor.subprocess.run")
    def test_ifb_device_follows_link_interface(self, mock_run):
        mock_run.return_value = Mock(stdout="", stderr="", returncode=0)
        executor = TcGatewayExecutor(lambda link_id: make_link(link_id, interface="eth1"), dry_run=False)

        assert executor.apply_ceiling("wan2", 100.0, 10.0)
        devices = [c.args[0][4] for c in mock_run.call_args_list]
        assert devices == ["ifbeth1", "ifbeth1", "eth1", "eth1"]


class TestHttpGatewayExecutor:

    def test_posts_command(self):
        session = Mock()
        session.post.return_value = Mock(raise_for_status=Mock())
        executor = HttpGatewayExecutor("http://gw.local:8080/", apply_timeout=10, token="secret",
                                       session=session)

        assert executor.apply_ceiling("wan1", 250.0, 25.0)
        args, kwargs = session.post.call_args
        assert args[0] == "http://gw.local:8080/links/wan1/ceiling"
        assert kwargs["json"]["download_mbps"] == 250.0
        assert kwargs["headers"] == {"Authorization": "Bearer secret"}
        assert kwargs["timeout"] == 10

    def test_http_error_is_failure(self):
        session = Mock()
        session.post.return_value = Mock(
            raise_for_status=Mock(side_effect=requests.HTTPError("503 Service Unavailable")))
        executor = HttpGatewayExecutor("http://gw.local:8080", session=session)
        assert executor.apply_ceiling("wan1", 250.0, 25.0) is False

    def test_timeout_is_failure(self):
        session = Mock()
        session.post.side_effect = requests.Timeout("read timed out")
        executor = HttpGatewayExecutor("http://gw.local:8080", session=session)
        assert executor.apply_ceiling("wan1", 250.0, 25.0) is False
        session.post.assert_called_once()
