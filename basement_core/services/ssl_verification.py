"""
Basement Domain SSL Verification
================================

Derives the certificate status of a customer domain from three live checks:

1. DNS - does the hostname resolve to the instance's IP?
2. Certificate - does the Let's Encrypt chain exist on the instance?
3. TLS - does port 443 answer an HTTPS request?

SSL status values:
- none: no certificate possible or configured
- pending: certificate requested, awaiting issuance
- active: DNS valid + certificate present + TLS reachable
- orphaned: certificate present but DNS points elsewhere
- expired: certificate has expired (reserved, not derived here)
- unreachable: DNS valid + certificate present but TLS fails

Verification never writes to the database; the reconciler persists results.
"""

import logging
import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import dns.asyncresolver
import dns.exception
import dns.resolver
import httpx

from ..config import VerificationConfig
from ..models import Domain, Instance, SSLStatus, normalize_hostname
from ..ssh_client import RemoteCommandExecutor, SSHCommandError, SSHConnectionError

logger = logging.getLogger(__name__)


class CertPresence(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    UNKNOWN = "unknown"  # host could not be asked


@dataclass
class DNSCheck:
    valid: bool
    reason: str
    expected_ip: Optional[str] = None
    resolved_ips: List[str] = field(default_factory=list)


@dataclass
class CertCheck:
    presence: CertPresence
    reason: str
    cert_path: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.presence == CertPresence.PRESENT


@dataclass
class TLSCheck:
    reachable: bool
    reason: str
    status_code: Optional[int] = None


@dataclass
class VerificationResult:
    """Outcome of verifying one domain."""
    domain_id: int
    hostname: str
    previous_status: SSLStatus
    new_status: SSLStatus
    dns: DNSCheck
    cert: CertCheck
    tls: TLSCheck
    expected_ip: Optional[str]
    # False when certificate presence could not be determined
    conclusive: bool = True

    @property
    def cert_exists(self) -> bool:
        return self.cert.exists

    @property
    def ssl_enabled(self) -> bool:
        return self.new_status == SSLStatus.ACTIVE

    @property
    def changed(self) -> bool:
        return self.new_status != self.previous_status

    def to_dict(self) -> dict:
        return {
            "domain": self.hostname,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "conclusive": self.conclusive,
            "ssl_enabled": self.ssl_enabled,
            "expected_ip": self.expected_ip,
            "dns": {"valid": self.dns.valid, "reason": self.dns.reason, "resolved_ips": self.dns.resolved_ips},
            "cert": {"presence": self.cert.presence.value, "reason": self.cert.reason},
            "tls": {"reachable": self.tls.reachable, "reason": self.tls.reason},
        }


def decide_ssl_status(
    dns_valid: bool,
    cert_exists: bool,
    tls_reachable: bool,
    previous: SSLStatus,
) -> SSLStatus:
    """Map the three check outcomes (and the prior status) to a canonical status."""
    if not dns_valid:
        # Cert exists but DNS moved away
        return SSLStatus.ORPHANED if cert_exists else SSLStatus.NONE

    if not cert_exists:
        return SSLStatus.PENDING if previous == SSLStatus.PENDING else SSLStatus.NONE

    if not tls_reachable:
        return SSLStatus.UNREACHABLE

    return SSLStatus.ACTIVE


async def quick_dns_check(
    hostname: str,
    expected_ip: Optional[str],
    lifetime: float = 5.0,
    resolver: Optional[dns.asyncresolver.Resolver] = None,
) -> DNSCheck:
    """
    Check whether a hostname's A records include the expected IP.

    Failures are returned as an invalid result with a reason, never raised.
    """
    if not expected_ip:
        return DNSCheck(valid=False, reason="No IP address to compare against")

    resolver = resolver or dns.asyncresolver.Resolver()
    try:
        answer = await resolver.resolve(hostname, "A", lifetime=lifetime)
    except dns.resolver.NXDOMAIN:
        return DNSCheck(valid=False, reason="DNS lookup failed: NXDOMAIN", expected_ip=expected_ip)
    except dns.resolver.NoAnswer:
        return DNSCheck(valid=False, reason="DNS lookup failed: no A records", expected_ip=expected_ip)
    except dns.exception.Timeout:
        return DNSCheck(valid=False, reason=f"DNS lookup timed out after {lifetime}s", expected_ip=expected_ip)
    except dns.exception.DNSException as e:
        return DNSCheck(valid=False, reason=f"DNS lookup failed: {e}", expected_ip=expected_ip)

    ips = [rdata.to_text() for rdata in answer]
    points_to_us = expected_ip in ips
    return DNSCheck(
        valid=points_to_us,
        reason="DNS points to our server" if points_to_us else f"DNS points to {', '.join(ips)} instead of {expected_ip}",
        expected_ip=expected_ip,
        resolved_ips=ips,
    )


class DomainVerifier:
    """
    Runs the DNS, certificate and TLS checks for a domain.

    Usage:
        verifier = DomainVerifier(RemoteCommandExecutor(), VerificationConfig())
        result = await verifier.verify(domain, instance)
    """

    def __init__(
        self,
        executor: RemoteCommandExecutor,
        config: Optional[VerificationConfig] = None,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.executor = executor
        self.config = config or VerificationConfig()
        self._resolver = resolver
        self._transport = transport

    async def check_dns(self, hostname: str, expected_ip: Optional[str]) -> DNSCheck:
        return await quick_dns_check(
            hostname,
            expected_ip,
            lifetime=self.config.dns_lifetime_seconds,
            resolver=self._resolver,
        )

    async def check_certificate(self, hostname: str, instance: Instance) -> CertCheck:
        """Ask the instance whether the certificate chain file exists."""
        try:
            hostname = normalize_hostname(hostname)
        except ValueError as e:
            logger.error(f"Refusing certificate check: {e}", extra={"instance_id": instance.id})
            return CertCheck(CertPresence.UNKNOWN, str(e))

        cert_path = self.config.cert_path_template.format(domain=hostname)

        if not instance.ip_address:
            return CertCheck(CertPresence.UNKNOWN, "Instance has no IP address", cert_path)

        command = f'test -f {shlex.quote(cert_path)} && echo "EXISTS" || echo "MISSING"'
        try:
            result = await self.executor.run(
                instance.ip_address,
                instance.login_username,
                instance.login_secret,
                command,
                check=True,
            )
        except SSHConnectionError as e:
            logger.warning(
                f"Cannot reach {instance.ip_address} to check certificate for {hostname}: {e.message}",
                extra={"domain": hostname, "instance_id": instance.id},
            )
            return CertCheck(CertPresence.UNKNOWN, f"SSH connection error: {e.message}", cert_path)
        except SSHCommandError as e:
            # The check always exits 0; a nonzero exit means the command itself is broken
            logger.error(
                f"Certificate check for {hostname} exited {e.result.exit_code}: {e.result.stderr.strip()}",
                extra={"domain": hostname, "instance_id": instance.id},
            )
            return CertCheck(CertPresence.UNKNOWN, f"Probe failed: {e.message}", cert_path)

        output = result.stdout.strip()
        if output == "EXISTS":
            return CertCheck(CertPresence.PRESENT, "Certificate file found", cert_path)
        if output == "MISSING":
            return CertCheck(CertPresence.ABSENT, "Certificate file not found", cert_path)

        logger.error(f"Unexpected certificate check output for {hostname}: {output!r}")
        return CertCheck(CertPresence.UNKNOWN, f"Unexpected check output: {output[:100]}", cert_path)

    async def check_tls(self, hostname: str) -> TLSCheck:
        """Any HTTP response over TLS on 443 counts as reachable; trust is not checked."""
        try:
            async with httpx.AsyncClient(
                verify=False,
                timeout=self.config.tls_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.head(f"https://{hostname}:443/")
        except httpx.TimeoutException:
            return TLSCheck(reachable=False, reason="Connection timeout")
        except httpx.HTTPError as e:
            return TLSCheck(reachable=False, reason=f"TLS error: {e}")

        return TLSCheck(reachable=True, reason="TLS handshake successful", status_code=response.status_code)

    async def verify(self, domain: Domain, instance: Instance) -> VerificationResult:
        """Run all checks for one domain and derive its status."""
        hostname = domain.hostname
        expected_ip = instance.ip_address

        dns_check = await self.check_dns(hostname, expected_ip)
        cert_check = await self.check_certificate(hostname, instance)
        if dns_check.valid:
            tls_check = await self.check_tls(hostname)
        else:
            tls_check = TLSCheck(reachable=False, reason="Skipped (DNS invalid)")

        # Unknown presence folds into "absent" only in legacy mode
        conclusive = cert_check.presence != CertPresence.UNKNOWN or self.config.unknown_cert_as_absent

        if conclusive:
            new_status = decide_ssl_status(dns_check.valid, cert_check.exists, tls_check.reachable, domain.ssl_status)
        else:
            new_status = domain.ssl_status

        logger.info(
            f"{hostname}: DNS={dns_check.valid}, Cert={cert_check.presence.value}, "
            f"TLS={tls_check.reachable} -> {new_status.value}"
            + ("" if conclusive else " (inconclusive)"),
            extra={"domain": hostname, "instance_id": instance.id, "ssl_status": new_status},
        )

        return VerificationResult(
            domain_id=domain.id,
            hostname=hostname,
            previous_status=domain.ssl_status,
            new_status=new_status,
            dns=dns_check,
            cert=cert_check,
            tls=tls_check,
            expected_ip=expected_ip,
            conclusive=conclusive,
        )
