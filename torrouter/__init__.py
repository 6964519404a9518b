"""tor-router agent: local status and control API for the router appliance.

Aggregates service, VPN/Tor, WAN and resource state into one JSON snapshot and
runs a fixed set of privileged maintenance actions for the web dashboard.

Endpoints:
    GET  /api/status    full status snapshot JSON
    POST /api/control   run an allow-listed action
    GET  /api/health    heartbeat (for uptime checks)

Usage:
    python3 -m torrouter                    # bind 127.0.0.1:8081 (nginx proxies it)
    python3 -m torrouter --bind 0.0.0.0     # bind to all interfaces (testing)
    python3 -m torrouter --port 9000        # custom port
"""

__version__ = "1.0.0"
