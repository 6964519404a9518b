"""Configuration for the tor-router agent.

Loads environment variables from the first .env file found and exposes every
path, URL and timeout the agent uses as a module constant.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

PACKAGE_DIR = Path(__file__).parent
PROJECT_ROOT = PACKAGE_DIR.parent

dotenv_paths = [
    Path(os.getenv("TOR_ROUTER_ENV_PATH", "/etc/tor-router/agent.env")),
    PROJECT_ROOT / ".env",
]

for dotenv_path in dotenv_paths:
    if dotenv_path.exists():
        load_dotenv(dotenv_path=dotenv_path)
        break

# Server
BIND_HOST = os.getenv("TOR_ROUTER_BIND", "127.0.0.1")
BIND_PORT = int(os.getenv("TOR_ROUTER_PORT", "8081"))
MAX_BODY_BYTES = int(os.getenv("TOR_ROUTER_MAX_BODY_BYTES", str(1024 * 1024)))
TOKEN_FILE = Path(os.getenv("TOR_ROUTER_TOKEN_FILE", "/etc/tor-router/agent.token"))

# Externally owned state
SCRIPTS_DIR = Path(os.getenv("TOR_ROUTER_SCRIPTS_DIR", "/usr/local/bin/tor-router.d"))
VPN_DIR = Path(os.getenv("TOR_ROUTER_VPN_DIR", "/etc/tor-router/vpn"))
WAN_STATE_FILE = Path(os.getenv("TOR_ROUTER_WAN_STATE_FILE", "/run/tor-router/wan_state"))
FIREWALL_SCRIPT = os.getenv("TOR_ROUTER_FIREWALL_SCRIPT", "/usr/local/bin/firewall.sh")
SYSTEMCTL = os.getenv("TOR_ROUTER_SYSTEMCTL", "/usr/bin/systemctl")
SUDO = os.getenv("TOR_ROUTER_SUDO", "sudo")

# Kernel counters
PROC_STAT = Path("/proc/stat")
PROC_MEMINFO = Path("/proc/meminfo")
PROC_NET_DEV = Path("/proc/net/dev")

# External HTTP sources
TOR_SOCKS_PROXY = os.getenv("TOR_ROUTER_TOR_PROXY", "socks5h://127.0.0.1:9050")
EXIT_IP_URL = os.getenv("TOR_ROUTER_EXIT_IP_URL", "https://api.ipify.org?format=json")
PIHOLE_API_URL = os.getenv("TOR_ROUTER_PIHOLE_URL", "http://127.0.0.1:8080/api/stats/summary")

# Timeouts (seconds)
TIMEOUT_CONFIG = {
    "exit_ip_connect": 10,
    "exit_ip_read": 5,
    "exit_ip_total": 15,
    "pihole": 5,
    "source": 5,  # systemctl, wg, pgrep and file reads
    "trigger": int(os.getenv("TOR_ROUTER_TRIGGER_TIMEOUT", "120")),
}
CPU_SAMPLE_INTERVAL = 0.2

# Allow-lists
MONITORED_SERVICES = {
    "tor": "tor",
    "dnsmasq": "dnsmasq",
    "nginx": "nginx",
    "pihole": "pihole-FTL",
    "openvpn": "openvpn",
}
NETWORK_INTERFACES = ("eth0", "wlan0", "eth1", "eth2", "eth3")
WAN_INTERFACES = ("eth0", "wlan0")
WAN_STATES = ("normal", "failover", "nowan", "manual", "unknown")
VPN_PROFILE_EXTENSIONS = (".conf", ".ovpn")

# Logging
LOG_LEVEL_STR = os.getenv("TOR_ROUTER_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("TOR_ROUTER_LOG_FILE", "")


def get_config_summary():
    """Summary of the active configuration, safe for logging."""
    return {
        "bind": f"{BIND_HOST}:{BIND_PORT}",
        "scripts_dir": str(SCRIPTS_DIR),
        "vpn_dir": str(VPN_DIR),
        "wan_state_file": str(WAN_STATE_FILE),
        "tor_proxy": TOR_SOCKS_PROXY,
        "pihole_url": PIHOLE_API_URL,
        "trigger_timeout": TIMEOUT_CONFIG["trigger"],
        "token_configured": TOKEN_FILE.exists(),
        "log_level": LOG_LEVEL_STR,
        "log_file": LOG_FILE or None,
    }
