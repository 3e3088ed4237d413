from __future__ import annotations

from typing import Optional, Protocol

import dns.asyncresolver
import dns.exception
import dns.resolver

from usergate.logging import get_logger

logger = get_logger(__name__)


class DomainChecker(Protocol):
    async def domain_receives_mail(self, domain: str) -> bool: ...


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].strip().lower()


class MXDomainChecker:
    """Decides whether a domain accepts mail by looking for MX records.

    A domain can exist and still not take mail (``example.com``), so an A
    record alone is not enough. Lookup failures of any kind count as "no".
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 3.0,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._resolver = resolver or dns.asyncresolver.Resolver()

    async def domain_receives_mail(self, domain: str) -> bool:
        if not domain:
            return False
        try:
            answer = await self._resolver.resolve(
                domain, "MX", lifetime=self.timeout_seconds
            )
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
            logger.info("email_domain_without_mx", domain=domain)
            return False
        except dns.exception.DNSException as exc:
            logger.warning(
                "email_domain_lookup_failed",
                domain=domain,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return len(answer) > 0


class AllowAllDomains:
    """Checker used when EMAIL_DOMAIN_CHECK is disabled."""

    async def domain_receives_mail(self, domain: str) -> bool:
        return True
