"""
Tunnelvisor - supervisor for multi-instance OpenVPN tunnel daemons.

Discovers tunnel configurations, launches one daemon per configuration,
tracks each by PID file and relays lifecycle commands and control signals.
"""

__version__ = "0.1.0"
