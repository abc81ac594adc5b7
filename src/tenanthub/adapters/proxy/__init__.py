from tenanthub.adapters.proxy.caddy import CaddyProxyManager

__all__ = ["CaddyProxyManager"]
