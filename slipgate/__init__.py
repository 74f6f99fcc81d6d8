"""Tunnel server toolkit: SOCKS5 and TLS/WebSocket SSH proxies, systemd units, firewall rules and prompts."""

__version__ = "1.6.13"