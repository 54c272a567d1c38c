"""Probe service - DNS, connecting-IP, TLS and HTTP checks for one resource.

A probe runs the checks in order and stops at the first failure:
1. DNS resolution of the URL host
2. Connecting IP compared against the pinned IP (pinned on first success)
3. TLS certificate validation (https only)
4. HTTP GET without redirects; only 200, 201, 203 and 204 are healthy

The result is a value, Healthy or Failed, never an exception.
"""
import asyncio
import ipaddress
import logging
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlsplit

import dns.asyncresolver
import dns.exception
import dns.resolver
import httpx
from cryptography import x509

from ..models import IssueType, Resource

logger = logging.getLogger(__name__)

HEALTHY_STATUS_CODES = frozenset({200, 201, 203, 204})

HTTPS_PORT = 443

USER_AGENT = "Detector/1.0.0"

# OpenSSL verification codes reported for a certificate issued to another name
X509_V_ERR_HOSTNAME_MISMATCH = 62
X509_V_ERR_IP_ADDRESS_MISMATCH = 64

SSL_CHAIN_ERRORS = ("CHAIN_ERRORS", "Remote Certificate Chain Errors")
SSL_NAME_MISMATCH = ("NAME_MISMATCH", "Remote Certificate Name Mismatch")
SSL_NOT_AVAILABLE = ("NOT_AVAILABLE", "Remote Certificate Not Available")


class ShutdownRequested(Exception):
    """The stop event fired before a network call was made."""


@dataclass(frozen=True)
class Healthy:
    """Every check passed."""
    connecting_ip: str
    status_code: int
    response_time_ms: Optional[int] = None
    certificate_expires: Optional[datetime] = None  # Naive UTC, https only

    def certificate_days_remaining(self, now: datetime) -> Optional[int]:
        if self.certificate_expires is None:
            return None
        return (self.certificate_expires - now).days


@dataclass(frozen=True)
class Failed:
    """A classified probe failure."""
    kind: IssueType
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


Outcome = Union[Healthy, Failed]


@dataclass(frozen=True)
class TlsCheckResult:
    """Outcome of the TLS handshake step."""
    code: Optional[str] = None
    message: Optional[str] = None
    certificate_expires: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.code is None


def classify_verification_error(error: ssl.SSLCertVerificationError) -> TlsCheckResult:
    """Map an OpenSSL verification failure to an SSL error code."""
    if error.verify_code in (X509_V_ERR_HOSTNAME_MISMATCH, X509_V_ERR_IP_ADDRESS_MISMATCH):
        code, message = SSL_NAME_MISMATCH
    else:
        code, message = SSL_CHAIN_ERRORS
    return TlsCheckResult(code=code, message=message)


def _certificate_not_after(cert_der: bytes) -> Optional[datetime]:
    """Expiry of a DER certificate as naive UTC."""
    try:
        cert = x509.load_der_x509_certificate(cert_der)
    except ValueError as e:
        logger.debug(f"Unable to parse peer certificate: {e}")
        return None
    return cert.not_valid_after_utc.replace(tzinfo=None)


def _raise_if_stopping(stop_event: Optional[asyncio.Event]):
    if stop_event is not None and stop_event.is_set():
        raise ShutdownRequested()


class ProbeService:
    """Runs one health check against one resource."""

    def __init__(
        self,
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
        ca_file: Optional[str] = None,
    ):
        self.timeout = timeout
        # CA bundle for the TLS step; None uses the system trust store
        self.ca_file = ca_file
        self._transport = transport
        self._resolver = resolver

    async def probe(
        self,
        resource: Resource,
        on_pin: Optional[Callable[[str], Awaitable[None]]] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Outcome:
        """Probe a resource.

        If the resource has no connecting IP yet, the resolved address is
        pinned on it and on_pin is awaited so the caller can persist it right
        away, whatever the rest of the probe returns.

        Raises ShutdownRequested if stop_event is set before a network call.
        """
        url = resource.url
        try:
            host = urlsplit(url).hostname
            _raise_if_stopping(stop_event)
            connecting_ip = await self.resolve_ip(host) if host else None
            if connecting_ip is None:
                return Failed(IssueType.UNABLE_TO_RESOLVE_IP, f"Unable to resolve IP for {url}")

            if resource.connecting_ip is None:
                resource.connecting_ip = connecting_ip
                if on_pin is not None:
                    await on_pin(connecting_ip)

            if resource.connecting_ip != connecting_ip:
                return Failed(
                    IssueType.INVALID_CONNECTING_IP,
                    f"Resource and scan IP mismatch. Resource says {resource.connecting_ip}. "
                    f"Scan says {connecting_ip}",
                    {"expected_ip": resource.connecting_ip, "connecting_ip": connecting_ip},
                )

            certificate_expires = None
            if urlsplit(url).scheme.lower() == "https":
                _raise_if_stopping(stop_event)
                tls = await self.check_tls(host)
                if not tls.ok:
                    return Failed(
                        IssueType.SSL_ERROR,
                        f"SSL Error: {tls.code} - {tls.message}",
                        {
                            "ssl_error_code": tls.code,
                            "ssl_error_message": tls.message,
                            "connecting_ip": connecting_ip,
                        },
                    )
                certificate_expires = tls.certificate_expires

            _raise_if_stopping(stop_event)
            return await self.check_http(url, connecting_ip, certificate_expires)

        except ShutdownRequested:
            raise
        except Exception as e:
            logger.exception(f"Unhandled error probing {url}")
            return Failed(
                IssueType.UNHANDLED_EXCEPTION,
                str(e) or type(e).__name__,
                {"exception": type(e).__name__},
            )

    def _make_resolver(self) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver(configure=True)
        resolver.timeout = self.timeout
        resolver.lifetime = self.timeout
        return resolver

    async def resolve_ip(self, host: str) -> Optional[str]:
        """Resolve the host's A record; first address wins.

        IP literals are returned as is. Any lookup that yields no address,
        including a timeout, returns None.
        """
        try:
            return str(ipaddress.ip_address(host))
        except ValueError:
            pass

        resolver = self._resolver or self._make_resolver()
        try:
            answer = await asyncio.wait_for(resolver.resolve(host, "A"), timeout=self.timeout)
        except (
            dns.resolver.NXDOMAIN,
            dns.resolver.NoAnswer,
            dns.resolver.NoNameservers,
            dns.exception.Timeout,
            asyncio.TimeoutError,
        ) as e:
            logger.debug(f"DNS lookup for {host} failed: {type(e).__name__}: {e}")
            return None

        for record in answer:
            return str(record)
        return None

    async def check_tls(self, host: str, port: int = HTTPS_PORT) -> TlsCheckResult:
        """Open a verifying TLS handshake and classify policy errors.

        Connection-level failures are not classified here; the HTTP step
        reports them.
        """
        context = ssl.create_default_context(cafile=self.ca_file)
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED

        writer = None
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host=host, port=port, ssl=context, server_hostname=host),
                timeout=self.timeout,
            )
            ssl_object = writer.get_extra_info("ssl_object")
            cert_der = ssl_object.getpeercert(binary_form=True) if ssl_object else None
            if not cert_der:
                code, message = SSL_NOT_AVAILABLE
                return TlsCheckResult(code=code, message=message)
            return TlsCheckResult(certificate_expires=_certificate_not_after(cert_der))

        except ssl.SSLCertVerificationError as e:
            return classify_verification_error(e)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"TLS handshake with {host} failed: {e}")
            return TlsCheckResult()
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError as e:
                    logger.debug(f"Error closing TLS connection to {host}: {e}")

    async def check_http(
        self,
        url: str,
        connecting_ip: str,
        certificate_expires: Optional[datetime] = None,
    ) -> Outcome:
        """GET the URL without following redirects."""
        try:
            start = time.monotonic()
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                response = await client.get(url)
            response_time = int((time.monotonic() - start) * 1000)

        except httpx.HTTPError as e:
            return Failed(
                IssueType.UNHANDLED_EXCEPTION,
                f"Request to {url} failed: {type(e).__name__}: {e}",
                {"exception": type(e).__name__, "connecting_ip": connecting_ip},
            )

        code = response.status_code
        if code not in HEALTHY_STATUS_CODES:
            return Failed(
                IssueType.INVALID_HTTP_STATUS_CODE,
                f"Invalid HTTP status code {code}",
                {
                    "status_code": code,
                    "response_time_ms": response_time,
                    "connecting_ip": connecting_ip,
                },
            )

        return Healthy(
            connecting_ip=connecting_ip,
            status_code=code,
            response_time_ms=response_time,
            certificate_expires=certificate_expires,
        )
