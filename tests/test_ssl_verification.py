"""
Tests for Domain SSL Verification
=================================

Tests the decision table, each live check, and the three-valued
certificate outcome.
"""

import itertools
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import dns.exception
import dns.resolver
import httpx
import pytest

from basement_core.config import VerificationConfig
from basement_core.models import Domain, Instance, InstanceState, SSLStatus
from basement_core.services.ssl_verification import (
    CertPresence,
    DomainVerifier,
    decide_ssl_status,
    quick_dns_check,
)
from basement_core.ssh_client import SSHCommandError, SSHConnectionError, SSHResult


INSTANCE_IP = "203.0.113.5"


def make_resolver(*ips):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=[SimpleNamespace(to_text=lambda ip=ip: ip) for ip in ips])
    return resolver


def failing_resolver(error):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(side_effect=error)
    return resolver


def make_executor(stdout="EXISTS\n"):
    executor = MagicMock()
    executor.run = AsyncMock(return_value=SSHResult(stdout=stdout, stderr="", exit_code=0))
    return executor


def tls_transport(reachable=True):
    def handler(request):
        if not reachable:
            raise httpx.ConnectError("Connection refused", request=request)
        return httpx.Response(200)
    return httpx.MockTransport(handler)


def make_instance(ip=INSTANCE_IP):
    return Instance(
        id=1,
        customer_id="42",
        plan="basic",
        status=InstanceState.RUNNING,
        provider_instance_id="1001",
        ip_address=ip,
        login_secret="s3cret-login",
    )


def make_domain(status=SSLStatus.PENDING, hostname="example.com"):
    return Domain(id=7, instance_id=1, hostname=hostname, ssl_status=status)


def make_verifier(resolver, executor, transport=None, **config):
    return DomainVerifier(
        executor,
        VerificationConfig(**config),
        resolver=resolver,
        transport=transport or tls_transport(),
    )


class TestDecisionTable:
    """Test decide_ssl_status."""

    @pytest.mark.parametrize("dns_valid,cert,tls,previous,expected", [
        (False, False, False, SSLStatus.ACTIVE, SSLStatus.NONE),
        (False, True, False, SSLStatus.ACTIVE, SSLStatus.ORPHANED),
        (True, False, False, SSLStatus.PENDING, SSLStatus.PENDING),
        (True, False, True, SSLStatus.ACTIVE, SSLStatus.NONE),
        (True, True, False, SSLStatus.ACTIVE, SSLStatus.UNREACHABLE),
        (True, True, True, SSLStatus.NONE, SSLStatus.ACTIVE),
    ])
    def test_rows(self, dns_valid, cert, tls, previous, expected):
        assert decide_ssl_status(dns_valid, cert, tls, previous) == expected

    def test_total_over_all_inputs(self):
        for dns_valid, cert, tls in itertools.product([False, True], repeat=3):
            for previous in SSLStatus:
                status = decide_ssl_status(dns_valid, cert, tls, previous)
                assert isinstance(status, SSLStatus)

    def test_tls_ignored_when_dns_invalid(self):
        for cert in (False, True):
            assert decide_ssl_status(False, cert, True, SSLStatus.NONE) == decide_ssl_status(False, cert, False, SSLStatus.NONE)

    def test_expired_never_derived(self):
        for dns_valid, cert, tls in itertools.product([False, True], repeat=3):
            assert decide_ssl_status(dns_valid, cert, tls, SSLStatus.EXPIRED) != SSLStatus.EXPIRED


class TestDNSCheck:
    """Test quick_dns_check."""

    @pytest.mark.asyncio
    async def test_matching_ip(self):
        check = await quick_dns_check("example.com", INSTANCE_IP, resolver=make_resolver("198.51.100.1", INSTANCE_IP))
        assert check.valid
        assert check.resolved_ips == ["198.51.100.1", INSTANCE_IP]

    @pytest.mark.asyncio
    async def test_points_elsewhere(self):
        check = await quick_dns_check("example.com", INSTANCE_IP, resolver=make_resolver("198.51.100.1"))
        assert not check.valid
        assert "198.51.100.1" in check.reason

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,fragment", [
        (dns.resolver.NXDOMAIN(), "NXDOMAIN"),
        (dns.resolver.NoAnswer(), "no A records"),
        (dns.exception.Timeout(), "timed out"),
    ])
    async def test_lookup_failures_have_distinct_reasons(self, error, fragment):
        check = await quick_dns_check("example.com", INSTANCE_IP, resolver=failing_resolver(error))
        assert not check.valid
        assert fragment in check.reason

    @pytest.mark.asyncio
    async def test_no_expected_ip(self):
        resolver = make_resolver(INSTANCE_IP)
        check = await quick_dns_check("example.com", None, resolver=resolver)
        assert not check.valid
        resolver.resolve.assert_not_called()


class TestCertificateCheck:
    """Test the remote certificate check."""

    @pytest.mark.asyncio
    async def test_present(self):
        executor = make_executor("EXISTS\n")
        verifier = make_verifier(make_resolver(), executor)

        check = await verifier.check_certificate("example.com", make_instance())

        assert check.presence == CertPresence.PRESENT
        host, username, secret, command = executor.run.call_args.args
        assert host == INSTANCE_IP
        assert username == "root"
        assert secret == "s3cret-login"
        assert "/etc/letsencrypt/live/example.com/fullchain.pem" in command
        assert executor.run.call_args.kwargs["check"] is True

    @pytest.mark.asyncio
    async def test_absent(self):
        verifier = make_verifier(make_resolver(), make_executor("MISSING\n"))
        check = await verifier.check_certificate("example.com", make_instance())
        assert check.presence == CertPresence.ABSENT

    @pytest.mark.asyncio
    async def test_connection_error_is_unknown(self):
        executor = MagicMock()
        executor.run = AsyncMock(side_effect=SSHConnectionError(INSTANCE_IP, "Connection failed: timed out"))
        verifier = make_verifier(make_resolver(), executor)

        check = await verifier.check_certificate("example.com", make_instance())

        assert check.presence == CertPresence.UNKNOWN
        assert "SSH connection error" in check.reason

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_unknown(self, caplog):
        result = SSHResult(stdout="", stderr="sh: test: not found", exit_code=127)
        executor = MagicMock()
        executor.run = AsyncMock(side_effect=SSHCommandError(INSTANCE_IP, "test -f ...", result))
        verifier = make_verifier(make_resolver(), executor)

        check = await verifier.check_certificate("example.com", make_instance())

        assert check.presence == CertPresence.UNKNOWN
        assert any(r.levelname == "ERROR" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_garbage_output_is_unknown(self):
        verifier = make_verifier(make_resolver(), make_executor("Welcome to Ubuntu\n"))
        check = await verifier.check_certificate("example.com", make_instance())
        assert check.presence == CertPresence.UNKNOWN

    @pytest.mark.asyncio
    async def test_invalid_hostname_never_reaches_the_shell(self):
        executor = make_executor("MISSING\n")
        verifier = make_verifier(make_resolver(), executor)

        check = await verifier.check_certificate("evil.com; rm -rf /", make_instance())

        assert check.presence == CertPresence.UNKNOWN
        assert "Invalid hostname" in check.reason
        executor.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_cert_path_uses_normalized_hostname(self):
        executor = make_executor("MISSING\n")
        verifier = make_verifier(make_resolver(), executor)

        await verifier.check_certificate("Shop.Example.com", make_instance())

        command = executor.run.call_args.args[3]
        assert command.startswith("test -f /etc/letsencrypt/live/shop.example.com/fullchain.pem ")


class TestTLSCheck:

    @pytest.mark.asyncio
    async def test_any_response_is_reachable(self):
        def handler(request):
            assert request.method == "HEAD"
            return httpx.Response(502)

        verifier = make_verifier(make_resolver(), make_executor(), transport=httpx.MockTransport(handler))
        check = await verifier.check_tls("example.com")

        assert check.reachable
        assert check.status_code == 502

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self):
        verifier = make_verifier(make_resolver(), make_executor(), transport=tls_transport(reachable=False))
        check = await verifier.check_tls("example.com")
        assert not check.reachable
        assert "TLS error" in check.reason


class TestVerify:
    """Test full verification of a domain."""

    @pytest.mark.asyncio
    async def test_all_checks_pass_is_active(self):
        verifier = make_verifier(make_resolver(INSTANCE_IP), make_executor("EXISTS\n"))

        result = await verifier.verify(make_domain(SSLStatus.PENDING), make_instance())

        assert result.new_status == SSLStatus.ACTIVE
        assert result.ssl_enabled
        assert result.expected_ip == INSTANCE_IP
        assert result.conclusive

    @pytest.mark.asyncio
    async def test_dns_moved_with_cert_left_behind_is_orphaned(self):
        verifier = make_verifier(make_resolver("198.51.100.77"), make_executor("EXISTS\n"))

        result = await verifier.verify(make_domain(SSLStatus.ACTIVE), make_instance())

        assert result.new_status == SSLStatus.ORPHANED
        assert not result.ssl_enabled
        assert result.tls.reason == "Skipped (DNS invalid)"

    @pytest.mark.asyncio
    async def test_tls_skipped_when_dns_invalid(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        verifier = make_verifier(
            make_resolver("198.51.100.77"),
            make_executor("MISSING\n"),
            transport=httpx.MockTransport(handler),
        )
        result = await verifier.verify(make_domain(), make_instance())

        assert calls == []
        assert not result.tls.reachable

    @pytest.mark.asyncio
    async def test_pending_stays_pending_until_issued(self):
        verifier = make_verifier(make_resolver(INSTANCE_IP), make_executor("MISSING\n"))

        result = await verifier.verify(make_domain(SSLStatus.PENDING), make_instance())

        assert result.new_status == SSLStatus.PENDING

    @pytest.mark.asyncio
    async def test_unreachable_host_is_inconclusive(self):
        executor = MagicMock()
        executor.run = AsyncMock(side_effect=SSHConnectionError(INSTANCE_IP, "timed out"))
        verifier = make_verifier(make_resolver(INSTANCE_IP), executor)

        result = await verifier.verify(make_domain(SSLStatus.ACTIVE), make_instance())

        assert not result.conclusive
        assert result.new_status == SSLStatus.ACTIVE
        assert not result.changed

    @pytest.mark.asyncio
    async def test_legacy_mode_folds_unknown_into_absent(self):
        executor = MagicMock()
        executor.run = AsyncMock(side_effect=SSHConnectionError(INSTANCE_IP, "timed out"))
        verifier = make_verifier(make_resolver("198.51.100.77"), executor, unknown_cert_as_absent=True)

        result = await verifier.verify(make_domain(SSLStatus.ACTIVE), make_instance())

        assert result.conclusive
        assert result.new_status == SSLStatus.NONE

    @pytest.mark.asyncio
    async def test_repeated_verification_is_stable(self):
        verifier = make_verifier(make_resolver(INSTANCE_IP), make_executor("EXISTS\n"), transport=tls_transport(False))
        domain = make_domain(SSLStatus.ACTIVE)

        first = await verifier.verify(domain, make_instance())
        domain.ssl_status = first.new_status
        second = await verifier.verify(domain, make_instance())

        assert first.new_status == second.new_status == SSLStatus.UNREACHABLE
