"""Privileged maintenance actions.

Only actions registered in ACTIONS can run. Each handler validates its input
before anything is executed, and every external trigger is a fixed program
path plus already-validated argument tokens.
"""

import contextlib
import logging
import os
import tempfile
import threading
from pathlib import Path

from torrouter import runner, settings
from torrouter.contract import (
    ActionResult,
    validate_choice,
    validate_profile_name,
    validate_upload_name,
)
from torrouter.errors import BusyError, TorRouterError, UnknownActionError, ValidationError

logger = logging.getLogger(__name__)

SUBSYSTEMS = ("tor", "vpn", "wan", "firewall")


def store_profile(directory, name, content):
    """Write ``content`` to ``directory/name`` with mode 0600.

    The data goes to a hidden temp file first and is renamed into place, so a
    reader never sees a partial profile.
    """
    directory = Path(directory)
    directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".upload-", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o600)
        dest = directory / name
        os.replace(tmp, dest)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise
    return dest


class ActionDispatcher:
    """Validates and runs one action request at a time per subsystem."""

    def __init__(
        self,
        scripts_dir=settings.SCRIPTS_DIR,
        vpn_dir=settings.VPN_DIR,
        wan_interfaces=settings.WAN_INTERFACES,
        profile_extensions=settings.VPN_PROFILE_EXTENSIONS,
        trigger_timeout=None,
        sudo=settings.SUDO,
    ):
        self.scripts_dir = Path(scripts_dir)
        self.vpn_dir = Path(vpn_dir)
        self.wan_interfaces = tuple(wan_interfaces)
        self.profile_extensions = tuple(profile_extensions)
        self.trigger_timeout = trigger_timeout or settings.TIMEOUT_CONFIG["trigger"]
        self.sudo = sudo
        self.locks = {name: threading.Lock() for name in SUBSYSTEMS}

    # ─── helpers ─────────────────────────────────────────────

    def _trigger(self, argv, success_message=None):
        """Run a privileged trigger; exit status decides ``ok``."""
        if self.sudo:
            argv = [self.sudo, *argv]
        r = runner.run(argv, timeout=self.trigger_timeout)
        if r.ok:
            return ActionResult(True, success_message or r.output)
        return ActionResult(False, r.output or f"Command failed (exit status {r.rc}).")

    def _script(self, name):
        return str(self.scripts_dir / name)

    # ─── handlers ────────────────────────────────────────────

    def new_circuit(self, request):
        return self._trigger([self._script("new_tor_circuit.sh")])

    def tor_restart(self, request):
        return self._trigger([settings.SYSTEMCTL, "restart", "tor"], "Tor restarted.")

    def vpn_connect(self, request):
        profile = validate_profile_name(request.params.get("profile"))
        return self._trigger([self._script("connect_vpn.sh"), profile])

    def vpn_disconnect(self, request):
        return self._trigger([self._script("disconnect_vpn.sh")], "VPN disconnected.")

    def vpn_upload(self, request):
        upload = request.upload
        if upload is None or not upload.filename:
            raise ValidationError("No file uploaded.")
        name = validate_upload_name(upload.filename, self.profile_extensions)
        try:
            dest = store_profile(self.vpn_dir, name, upload.content)
        except OSError as e:
            logger.error("storing VPN profile %s failed: %s", name, e)
            return ActionResult(False, "Upload failed.")
        logger.info("stored VPN profile %s (%d bytes)", dest, len(upload.content))
        return ActionResult(True, f"Profile '{name}' uploaded.", {"profile": name})

    def wan_set_primary(self, request):
        iface = validate_choice(
            request.params.get("interface"), self.wan_interfaces, "Invalid interface.",
        )
        return self._trigger([self._script("wan_manager.sh"), "set-primary", iface])

    def firewall_reload(self, request):
        return self._trigger([settings.FIREWALL_SCRIPT], "Firewall reloaded.")

    # ─── dispatch ────────────────────────────────────────────

    def dispatch(self, request):
        """Run ``request`` and return exactly one ActionResult."""
        name = ALIASES.get(request.action, request.action)
        try:
            if name not in ACTIONS:
                raise UnknownActionError(request.action)
            subsystem, handler = ACTIONS[name]
            lock = self.locks[subsystem]
            if not lock.acquire(blocking=False):
                raise BusyError(subsystem)
            try:
                result = getattr(self, handler)(request)
            finally:
                lock.release()
        except TorRouterError as e:
            logger.warning("rejected action %r: %s", request.action, e)
            return ActionResult(False, str(e), http_status=e.http_status)
        except Exception as e:
            logger.exception("action %s crashed", name)
            return ActionResult(False, f"Internal error: {e}", http_status=500)

        if result.ok:
            logger.info("action %s succeeded", name)
        else:
            logger.warning("action %s failed: %s", name, result.message)
        return result


# ─── Action registry ─────────────────────────────────────────
ACTIONS = {
    "new-circuit": ("tor", "new_circuit"),
    "tor-restart": ("tor", "tor_restart"),
    "vpn-connect": ("vpn", "vpn_connect"),
    "vpn-disconnect": ("vpn", "vpn_disconnect"),
    "vpn-upload": ("vpn", "vpn_upload"),
    "wan-set-primary": ("wan", "wan_set_primary"),
    "firewall-reload": ("firewall", "firewall_reload"),
}

# Names the web front end sends.
ALIASES = {
    "tor_new_circuit": "new-circuit",
    "tor_restart": "tor-restart",
    "vpn_connect": "vpn-connect",
    "vpn_disconnect": "vpn-disconnect",
    "vpn_upload": "vpn-upload",
    "wan_set_primary": "wan-set-primary",
    "firewall_reload": "firewall-reload",
}
