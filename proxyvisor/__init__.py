"""
proxyvisor - keeps one Nginx reverse proxy and its TLS certificate healthy.

Renders the proxy configuration from a template, issues and renews a
Let's Encrypt certificate over DNS-01, and supervises the proxy process
alongside a renewal loop and a template watcher.
"""

__version__ = "0.1.0"
