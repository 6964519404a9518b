"""Tests for the action dispatcher."""

import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from torrouter.actions import ACTIONS, ALIASES, ActionDispatcher, store_profile
from torrouter.contract import ActionRequest, UploadedFile
from torrouter.runner import CommandResult

OK = CommandResult(0, "done")


class DispatcherTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.vpn_dir = self.tmp / "vpn"
        self.dispatcher = ActionDispatcher(
            scripts_dir="/opt/scripts", vpn_dir=self.vpn_dir, trigger_timeout=30,
        )
        patcher = mock.patch("torrouter.actions.runner.run", return_value=OK)
        self.run = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self._tmp.cleanup()

    def dispatch(self, action, upload=None, **params):
        return self.dispatcher.dispatch(ActionRequest(action, params, upload))

    def argv(self):
        return self.run.call_args[0][0]


class TestTriggers(DispatcherTestCase):

    def test_new_circuit(self):
        result = self.dispatch("new-circuit")
        self.assertTrue(result.ok)
        self.assertEqual(result.message, "done")
        self.assertEqual(self.argv(), ["sudo", "/opt/scripts/new_tor_circuit.sh"])
        self.assertEqual(self.run.call_args.kwargs["timeout"], 30)

    def test_tor_restart_custom_message(self):
        result = self.dispatch("tor-restart")
        self.assertEqual((result.ok, result.message), (True, "Tor restarted."))
        self.assertEqual(self.argv()[-2:], ["restart", "tor"])

    def test_failure_passes_output_through(self):
        self.run.return_value = CommandResult(1, "Job for tor.service failed.")
        result = self.dispatch("tor-restart")
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "Job for tor.service failed.")
        self.assertEqual(result.http_status, 200)

    def test_failure_without_output(self):
        self.run.return_value = CommandResult(2, "")
        result = self.dispatch("firewall-reload")
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "Command failed (exit status 2).")

    def test_timeout_is_execution_failure(self):
        self.run.return_value = CommandResult(-1, "Timed out after 30s.", timed_out=True)
        result = self.dispatch("new-circuit")
        self.assertFalse(result.ok)
        self.assertIn("Timed out", result.message)

    def test_disconnect_and_firewall_messages(self):
        self.assertEqual(self.dispatch("vpn-disconnect").message, "VPN disconnected.")
        self.assertEqual(self.argv(), ["sudo", "/opt/scripts/disconnect_vpn.sh"])
        self.assertEqual(self.dispatch("firewall-reload").message, "Firewall reloaded.")

    def test_front_end_aliases(self):
        self.assertEqual(set(ALIASES.values()), set(ACTIONS))
        result = self.dispatch("tor_new_circuit")
        self.assertTrue(result.ok)
        self.assertEqual(self.argv(), ["sudo", "/opt/scripts/new_tor_circuit.sh"])

    def test_without_sudo(self):
        dispatcher = ActionDispatcher(scripts_dir="/opt/scripts", sudo="")
        dispatcher.dispatch(ActionRequest("new-circuit"))
        self.assertEqual(self.argv(), ["/opt/scripts/new_tor_circuit.sh"])


class TestVpnConnect(DispatcherTestCase):

    def test_profile_passed_as_single_token(self):
        result = self.dispatch("vpn-connect", profile="home office.conf")
        self.assertTrue(result.ok)
        self.assertEqual(self.argv(), ["sudo", "/opt/scripts/connect_vpn.sh", "home office.conf"])

    def test_traversal_rejected_before_running(self):
        result = self.dispatch("vpn-connect", profile="../../etc/passwd")
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "Invalid profile name.")
        self.assertEqual(result.http_status, 200)
        self.run.assert_not_called()

    def test_other_bad_names(self):
        for name in ("..", "a\\b.conf", "-x", "x\x00.conf"):
            result = self.dispatch("vpn-connect", profile=name)
            self.assertFalse(result.ok, name)
        self.run.assert_not_called()

    def test_missing_profile(self):
        for params in ({}, {"profile": ""}, {"profile": None}, {"profile": 5}):
            result = self.dispatcher.dispatch(ActionRequest("vpn-connect", params))
            self.assertEqual(result.message, "No profile specified.")
        self.run.assert_not_called()


class TestWanSetPrimary(DispatcherTestCase):

    def test_allowed_interfaces(self):
        for iface in ("eth0", "wlan0"):
            result = self.dispatch("wan-set-primary", interface=iface)
            self.assertTrue(result.ok)
            self.assertEqual(self.argv(), ["sudo", "/opt/scripts/wan_manager.sh", "set-primary", iface])

    def test_anything_else_rejected(self):
        for iface in ("eth9", "eth0 ", "ETH0", "eth0; reboot", None, ["eth0"]):
            result = self.dispatch("wan-set-primary", interface=iface)
            self.assertFalse(result.ok)
            self.assertEqual(result.message, "Invalid interface.")
        self.dispatcher.dispatch(ActionRequest("wan-set-primary"))
        self.run.assert_not_called()


class TestVpnUpload(DispatcherTestCase):

    def test_disallowed_extension_touches_nothing(self):
        result = self.dispatch("vpn-upload", upload=UploadedFile("profile.exe", b"MZ"))
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "Only .conf and .ovpn files allowed.")
        self.assertFalse(self.vpn_dir.exists())

    def test_stored_under_base_name_with_owner_only_mode(self):
        upload = UploadedFile("../../tmp/profile.ovpn", b"client\nremote vpn.example 1194\n")
        result = self.dispatch("vpn-upload", upload=upload)
        self.assertTrue(result.ok)
        self.assertEqual(result.message, "Profile 'profile.ovpn' uploaded.")
        self.assertEqual(result.to_dict()["profile"], "profile.ovpn")

        dest = self.vpn_dir / "profile.ovpn"
        self.assertEqual(dest.read_bytes(), upload.content)
        self.assertEqual(stat.S_IMODE(os.stat(dest).st_mode), 0o600)
        self.assertEqual(os.listdir(self.vpn_dir), ["profile.ovpn"])

    def test_windows_style_path(self):
        result = self.dispatch("vpn-upload", upload=UploadedFile("C:\\Users\\me\\home.conf", b"x"))
        self.assertTrue(result.ok)
        self.assertTrue((self.vpn_dir / "home.conf").is_file())

    def test_hidden_or_bare_extension_rejected(self):
        for name in (".ovpn", "../.conf", "profile.ovpn.exe", "profile.OVPN"):
            result = self.dispatch("vpn-upload", upload=UploadedFile(name, b"x"))
            self.assertFalse(result.ok, name)
        self.assertFalse(self.vpn_dir.exists())

    def test_no_file(self):
        result = self.dispatch("vpn-upload")
        self.assertEqual((result.ok, result.message), (False, "No file uploaded."))

    def test_overwrite_replaces_existing(self):
        self.dispatch("vpn-upload", upload=UploadedFile("a.conf", b"old"))
        self.dispatch("vpn-upload", upload=UploadedFile("a.conf", b"new"))
        self.assertEqual((self.vpn_dir / "a.conf").read_bytes(), b"new")

    def test_store_failure(self):
        with mock.patch("torrouter.actions.store_profile", side_effect=PermissionError("denied")):
            result = self.dispatch("vpn-upload", upload=UploadedFile("a.conf", b"x"))
        self.assertEqual((result.ok, result.message), (False, "Upload failed."))

    def test_temp_file_removed_on_error(self):
        with mock.patch("torrouter.actions.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                store_profile(self.vpn_dir, "a.conf", b"x")
        self.assertEqual(os.listdir(self.vpn_dir), [])


class TestDispatch(DispatcherTestCase):

    def test_unknown_action_named_in_message(self):
        result = self.dispatch("reboot-now")
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "Unknown action: reboot-now")
        self.assertEqual(result.http_status, 400)
        self.run.assert_not_called()

    def test_empty_action(self):
        result = self.dispatch("")
        self.assertEqual((result.message, result.http_status), ("Unknown action: ", 400))

    def test_busy_subsystem_rejected(self):
        self.dispatcher.locks["vpn"].acquire()
        try:
            result = self.dispatch("vpn-connect", profile="home.conf")
        finally:
            self.dispatcher.locks["vpn"].release()
        self.assertFalse(result.ok)
        self.assertEqual(result.message, "Another vpn operation is in progress.")
        self.run.assert_not_called()

    def test_other_subsystems_not_blocked(self):
        self.dispatcher.locks["vpn"].acquire()
        try:
            result = self.dispatch("firewall-reload")
        finally:
            self.dispatcher.locks["vpn"].release()
        self.assertTrue(result.ok)

    def test_lock_released_after_failure(self):
        self.run.side_effect = [RuntimeError("boom"), OK]
        crashed = self.dispatch("new-circuit")
        self.assertEqual(crashed.http_status, 500)
        self.assertFalse(crashed.ok)
        self.assertTrue(self.dispatch("new-circuit").ok)

    def test_result_shape(self):
        self.assertEqual(self.dispatch("new-circuit").to_dict(), {"ok": True, "message": "done"})


if __name__ == "__main__":
    unittest.main()
