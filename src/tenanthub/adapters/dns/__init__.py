from tenanthub.adapters.dns.cloudflare import CloudflareDnsProvider

__all__ = ["CloudflareDnsProvider"]
