"""
Frappe VPS provisioning CLI - staged, idempotent server setup.

Hardens a fresh Ubuntu server, installs the Frappe dependency stack and
bootstraps a bench with its first site, all over a single SSH channel.
"""

__version__ = "1.0.0"
__author__ = "Frappe VPS Setup Team"
