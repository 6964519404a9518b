"""Status aggregation.

Collects service health, VPN/Tor connectivity, WAN mode, resource usage and
Pi-hole stats into one StatusSnapshot. Every source is a total function: a
source that cannot be read logs the problem and yields its sentinel, so one
broken subsystem never blanks the whole dashboard.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import asdict, dataclass
from functools import partial
from pathlib import Path
from typing import Any

import requests

from torrouter import runner, settings

logger = logging.getLogger(__name__)

EXIT_IP_UNAVAILABLE = "unavailable"
EXIT_IP_UNKNOWN = "unknown"
WAN_STATE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class StatusSnapshot:
    services: dict[str, str]
    vpn: dict[str, Any]
    vpn_profiles: list[str]
    tor_exit_ip: str
    cpu_percent: float
    memory: dict[str, Any]
    network: dict[str, dict[str, Any]]
    pihole: dict[str, Any]
    wan_state: str
    timestamp: int

    def to_dict(self):
        return asdict(self)


# ─── Services / VPN ──────────────────────────────────────────


def service_status(unit, timeout=None):
    """``active`` if systemd reports the unit active, else ``inactive``."""
    timeout = timeout or settings.TIMEOUT_CONFIG["source"]
    r = runner.run([settings.SYSTEMCTL, "is-active", unit], timeout=timeout)
    return "active" if r.ok else "inactive"


def wireguard_interfaces(timeout=None):
    """Names of the WireGuard interfaces that are currently up."""
    timeout = timeout or settings.TIMEOUT_CONFIG["source"]
    r = runner.run(["wg", "show", "interfaces"], timeout=timeout)
    if not r.ok:
        return []
    return sorted(set(r.output.split()))


def openvpn_running(timeout=None):
    timeout = timeout or settings.TIMEOUT_CONFIG["source"]
    return runner.run(["pgrep", "-x", "openvpn"], timeout=timeout).ok


def vpn_profiles(directory, extensions=settings.VPN_PROFILE_EXTENSIONS):
    """Uploaded profile file names, sorted. Missing directory -> []."""
    try:
        entries = list(Path(directory).iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return []
    except OSError as e:
        logger.warning("cannot list VPN profiles in %s: %s", directory, e)
        return []
    return sorted(
        p.name for p in entries
        if p.is_file() and not p.name.startswith(".") and p.name.endswith(tuple(extensions))
    )


# ─── Kernel counters ─────────────────────────────────────────


def read_cpu_times(path=settings.PROC_STAT):
    """(total, idle) jiffies from the aggregate ``cpu`` line of /proc/stat."""
    with open(path) as f:
        line = f.readline()
    parts = line.split()
    if not parts or parts[0] != "cpu":
        raise ValueError(f"unexpected first line in {path}: {line!r}")
    values = [int(x) for x in parts[1:]]
    # idle + iowait
    idle = values[3] + (values[4] if len(values) > 4 else 0)
    return sum(values), idle


def compute_cpu_percent(first, second):
    total_delta = second[0] - first[0]
    idle_delta = second[1] - first[1]
    if total_delta <= 0:
        return 0.0
    pct = 100.0 * (total_delta - idle_delta) / total_delta
    return round(min(100.0, max(0.0, pct)), 1)


def cpu_percent(path=settings.PROC_STAT, interval=settings.CPU_SAMPLE_INTERVAL):
    """Instantaneous CPU usage from two samples ``interval`` seconds apart."""
    first = read_cpu_times(path)
    time.sleep(interval)
    second = read_cpu_times(path)
    return compute_cpu_percent(first, second)


def memory_usage(path=settings.PROC_MEMINFO):
    mi = {}
    with open(path) as f:
        for line in f:
            key, _, rest = line.partition(":")
            parts = rest.split()
            if parts:
                try:
                    mi[key.strip()] = int(parts[0])
                except ValueError:
                    continue
    total = mi.get("MemTotal", 0)
    avail = mi.get("MemAvailable", 0)
    used = total - avail
    return {
        "total_mb": round(total / 1024),
        "used_mb": round(used / 1024),
        "free_mb": round(avail / 1024),
        "percent": round(used / total * 100, 1) if total > 0 else 0.0,
    }


def network_stats(path=settings.PROC_NET_DEV, interfaces=settings.NETWORK_INTERFACES):
    """Cumulative RX/TX counters for allow-listed interfaces only."""
    stats = {}
    with open(path) as f:
        for line in f:
            iface, sep, data = line.strip().partition(":")
            if not sep:
                continue
            iface = iface.strip()
            if iface not in interfaces:
                continue
            fields = data.split()
            try:
                rx, tx = int(fields[0]), int(fields[8])
            except (IndexError, ValueError):
                logger.warning("malformed %s line for %s", path, iface)
                continue
            stats[iface] = {
                "rx_bytes": rx,
                "tx_bytes": tx,
                "rx_mb": round(rx / 1048576, 2),
                "tx_mb": round(tx / 1048576, 2),
            }
    return stats


# ─── WAN marker ──────────────────────────────────────────────


def wan_state(path=settings.WAN_STATE_FILE):
    """WAN mode as written by the failover manager."""
    try:
        value = Path(path).read_text().strip()
    except FileNotFoundError:
        return WAN_STATE_UNKNOWN
    except OSError as e:
        logger.warning("cannot read WAN state from %s: %s", path, e)
        return WAN_STATE_UNKNOWN
    if value not in settings.WAN_STATES:
        logger.warning("unexpected WAN state %r in %s", value, path)
        return WAN_STATE_UNKNOWN
    return value


# ─── HTTP sources ────────────────────────────────────────────


def tor_exit_ip(url=settings.EXIT_IP_URL, proxy=settings.TOR_SOCKS_PROXY, timeout=None):
    """Public IP seen by the outside world when going through Tor.

    Transport errors and non-2xx replies give ``unavailable``; a 2xx reply
    without a usable ``ip`` field gives ``unknown``.
    """
    if timeout is None:
        timeout = (settings.TIMEOUT_CONFIG["exit_ip_connect"], settings.TIMEOUT_CONFIG["exit_ip_read"])
    try:
        resp = requests.get(url, proxies={"http": proxy, "https": proxy}, timeout=timeout)
        resp.raise_for_status()
        if not 200 <= resp.status_code < 300:
            raise requests.HTTPError(f"unexpected status {resp.status_code}", response=resp)
    except requests.RequestException as e:
        logger.info("exit IP check through %s failed: %s", proxy, e)
        return EXIT_IP_UNAVAILABLE
    try:
        data = resp.json()
    except ValueError:
        logger.info("exit IP service returned a non-JSON body")
        return EXIT_IP_UNKNOWN
    ip = data.get("ip") if isinstance(data, dict) else None
    if not isinstance(ip, str) or not ip.strip():
        return EXIT_IP_UNKNOWN
    return ip.strip()


PIHOLE_FIELDS = ("dns_queries_today", "ads_blocked_today", "ads_percentage")


def _pihole_nested(data):
    # Pi-hole v6: {"queries": {"total": .., "blocked": .., "percent_blocked": ..}}
    queries = data.get("queries")
    if not isinstance(queries, dict):
        return {}
    return {
        "dns_queries_today": queries.get("total"),
        "ads_blocked_today": queries.get("blocked"),
        "ads_percentage": queries.get("percent_blocked"),
    }


def _pihole_legacy(data):
    # Pi-hole v5 flat summary
    return {
        "dns_queries_today": data.get("dns_queries_today"),
        "ads_blocked_today": data.get("ads_blocked_today"),
        "ads_percentage": data.get("ads_percentage_today"),
    }


PIHOLE_STRATEGIES = (_pihole_nested, _pihole_legacy)


def _as_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.replace(",", ""))
        except ValueError:
            return None
    if not isinstance(value, float) or not math.isfinite(value):
        return None
    return int(value) if value.is_integer() else value


def extract_pihole_fields(data):
    """First strategy that yields a number wins per field; default 0."""
    found = {}
    for strategy in PIHOLE_STRATEGIES:
        for key, value in strategy(data).items():
            number = _as_number(value)
            if key not in found and number is not None:
                found[key] = number
    return {key: found.get(key, 0) for key in PIHOLE_FIELDS}


def pihole_stats(url=settings.PIHOLE_API_URL, timeout=None):
    timeout = timeout or settings.TIMEOUT_CONFIG["pihole"]
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        if not 200 <= resp.status_code < 300:
            raise requests.HTTPError(f"unexpected status {resp.status_code}", response=resp)
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.info("Pi-hole stats unavailable: %s", e)
        return {"available": False}
    if not isinstance(data, dict):
        logger.info("Pi-hole stats: unexpected %s body", type(data).__name__)
        return {"available": False}
    return {"available": True, **extract_pihole_fields(data)}


# ─── Aggregation ─────────────────────────────────────────────


class StatusAggregator:
    """Builds one StatusSnapshot per call; keeps no state between calls."""

    def __init__(
        self,
        services=None,
        interfaces=settings.NETWORK_INTERFACES,
        proc_stat=settings.PROC_STAT,
        proc_meminfo=settings.PROC_MEMINFO,
        proc_net_dev=settings.PROC_NET_DEV,
        vpn_dir=settings.VPN_DIR,
        wan_state_file=settings.WAN_STATE_FILE,
        exit_ip_url=settings.EXIT_IP_URL,
        tor_proxy=settings.TOR_SOCKS_PROXY,
        pihole_url=settings.PIHOLE_API_URL,
        cpu_interval=settings.CPU_SAMPLE_INTERVAL,
    ):
        self.services = dict(services or settings.MONITORED_SERVICES)
        self.interfaces = tuple(interfaces)
        self.proc_stat = proc_stat
        self.proc_meminfo = proc_meminfo
        self.proc_net_dev = proc_net_dev
        self.vpn_dir = vpn_dir
        self.wan_state_file = wan_state_file
        self.exit_ip_url = exit_ip_url
        self.tor_proxy = tor_proxy
        self.pihole_url = pihole_url
        self.cpu_interval = cpu_interval

        source = settings.TIMEOUT_CONFIG["source"] + 1
        self.deadlines = {
            "source": source,
            "cpu": cpu_interval + source,
            "exit_ip": settings.TIMEOUT_CONFIG["exit_ip_total"],
            "pihole": settings.TIMEOUT_CONFIG["pihole"] + 1,
        }

    def _empty(self):
        return {
            "services": {name: "inactive" for name in self.services},
            "vpn": {"wireguard_interfaces": [], "openvpn": False, "connected": False},
            "vpn_profiles": [],
            "tor_exit_ip": EXIT_IP_UNAVAILABLE,
            "cpu_percent": 0.0,
            "memory": {"total_mb": 0, "used_mb": 0, "free_mb": 0, "percent": 0.0},
            "network": {},
            "pihole": {"available": False},
            "wan_state": WAN_STATE_UNKNOWN,
            "timestamp": 0,
        }

    def _sources(self):
        """(destination key path, callable, deadline name) per source."""
        sources = [
            (("services", name), partial(service_status, unit), "source")
            for name, unit in self.services.items()
        ]
        sources += [
            (("vpn", "wireguard_interfaces"), wireguard_interfaces, "source"),
            (("vpn", "openvpn"), openvpn_running, "source"),
            (("vpn_profiles",), partial(vpn_profiles, self.vpn_dir), "source"),
            (("tor_exit_ip",), partial(tor_exit_ip, self.exit_ip_url, self.tor_proxy), "exit_ip"),
            (("cpu_percent",), partial(cpu_percent, self.proc_stat, self.cpu_interval), "cpu"),
            (("memory",), partial(memory_usage, self.proc_meminfo), "source"),
            (("network",), partial(network_stats, self.proc_net_dev, self.interfaces), "source"),
            (("pihole",), partial(pihole_stats, self.pihole_url), "pihole"),
            (("wan_state",), partial(wan_state, self.wan_state_file), "source"),
        ]
        return sources

    def get_snapshot(self):
        data = self._empty()
        sources = self._sources()
        pool = ThreadPoolExecutor(max_workers=len(sources), thread_name_prefix="status")
        try:
            started = time.monotonic()
            futures = [(key, pool.submit(fn), self.deadlines[dl]) for key, fn, dl in sources]
            for key, future, deadline in futures:
                name = ".".join(key)
                remaining = max(0.0, started + deadline - time.monotonic())
                try:
                    value = future.result(timeout=remaining)
                except FuturesTimeout:
                    logger.warning("status source %s missed its %ss deadline", name, deadline)
                    continue
                except Exception:
                    logger.exception("status source %s failed", name)
                    continue
                target = data
                for part in key[:-1]:
                    target = target[part]
                target[key[-1]] = value
        finally:
            # Stragglers keep running; their fields already hold sentinels.
            pool.shutdown(wait=False, cancel_futures=True)

        vpn = data["vpn"]
        vpn["connected"] = bool(vpn["wireguard_interfaces"]) or bool(vpn["openvpn"])
        data["timestamp"] = int(time.time())
        return StatusSnapshot(**data)
