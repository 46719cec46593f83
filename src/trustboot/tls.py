"""Inspection of the broker's TLS certificate.

The Conjur release serves a certificate bound to a set of subject alternative
names. Clients must reach it through one of those names; raw IP or
``localhost`` access against a SAN-bound certificate is rejected here before
any credential is sent.
"""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from cryptography import x509
from cryptography.x509.oid import NameOID

from .errors import HostnameMismatch


class TLSValidationSeverity(Enum):
    """Validation severities for TLS checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSValidationFinding:
    """Individual validation check outcome."""

    check: str
    severity: TLSValidationSeverity
    message: str


@dataclass(frozen=True)
class BrokerCertificate:
    """Parsed identity facts from the broker certificate."""

    subject: str
    dns_names: tuple[str, ...]
    ip_addresses: tuple[str, ...]
    not_valid_before: datetime
    not_valid_after: datetime
    pem: bytes

    @property
    def names(self) -> tuple[str, ...]:
        """Return every SAN entry (DNS names then IP addresses)."""
        return self.dns_names + self.ip_addresses

    def covers(self, hostname: str) -> bool:
        """Return ``True`` when *hostname* is valid for this certificate."""
        candidate = hostname.strip().rstrip(".").lower()
        if not candidate:
            return False
        if is_ip_literal(candidate):
            target = ipaddress.ip_address(candidate.strip("[]"))
            return any(ipaddress.ip_address(value) == target for value in self.ip_addresses)
        return any(hostname_matches(candidate, pattern) for pattern in self.dns_names)

    def validity(
        self,
        *,
        now: datetime | None = None,
        warn_expiry_days: int = 30,
    ) -> TLSValidationFinding:
        """Return a finding describing the certificate's validity window."""
        now = now or datetime.now(UTC)
        if now < self.not_valid_before:
            return TLSValidationFinding(
                check="expiry",
                severity=TLSValidationSeverity.ERROR,
                message=f"Certificate not valid before {self.not_valid_before.isoformat()}",
            )
        if self.not_valid_after <= now:
            return TLSValidationFinding(
                check="expiry",
                severity=TLSValidationSeverity.ERROR,
                message=f"Certificate expired on {self.not_valid_after.isoformat()}",
            )
        days_remaining = (self.not_valid_after - now).days
        if days_remaining <= warn_expiry_days:
            return TLSValidationFinding(
                check="expiry",
                severity=TLSValidationSeverity.WARNING,
                message=(
                    "Certificate expires soon "
                    f"({self.not_valid_after.isoformat()}, {days_remaining} day(s) remaining)"
                ),
            )
        return TLSValidationFinding(
            check="expiry",
            severity=TLSValidationSeverity.OK,
            message=f"Certificate valid until {self.not_valid_after.isoformat()}",
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (without the PEM body)."""
        return {
            "subject": self.subject,
            "dns_names": list(self.dns_names),
            "ip_addresses": list(self.ip_addresses),
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
        }


def load_certificate(data: bytes) -> x509.Certificate:
    """Parse PEM (or DER) certificate bytes."""
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def inspect_certificate(data: bytes) -> BrokerCertificate:
    """Return the identity facts of the certificate in *data*."""
    cert = load_certificate(data)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        dns_names = tuple(name.lower() for name in san.get_values_for_type(x509.DNSName))
        ip_addresses = tuple(str(ip) for ip in san.get_values_for_type(x509.IPAddress))
    except x509.ExtensionNotFound:
        dns_names = ()
        ip_addresses = ()
    common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    subject = str(common_names[0].value) if common_names else cert.subject.rfc4514_string()
    return BrokerCertificate(
        subject=subject,
        dns_names=dns_names,
        ip_addresses=ip_addresses,
        not_valid_before=_as_utc(_cert_time(cert, "not_valid_before")),
        not_valid_after=_as_utc(_cert_time(cert, "not_valid_after")),
        pem=data,
    )


def require_hostname(certificate: BrokerCertificate, hostname: str) -> None:
    """Raise :class:`HostnameMismatch` unless *hostname* is covered by the SAN."""
    if certificate.covers(hostname):
        return
    allowed = ", ".join(certificate.names) or "none"
    hint = ""
    if is_ip_literal(hostname) or hostname.lower() == "localhost":
        hint = " Address the broker by a certificate name mapped to the tunnel instead."
    raise HostnameMismatch(
        f"Hostname '{hostname}' does not match the broker certificate "
        f"(subject alternative names: {allowed}).{hint}"
    )


def hostname_matches(hostname: str, pattern: str) -> bool:
    """Match *hostname* against a SAN *pattern* (left-most label wildcards only)."""
    host = hostname.lower().rstrip(".")
    candidate = pattern.lower().rstrip(".")
    if not candidate.startswith("*."):
        return host == candidate
    suffix = candidate[1:]
    if not host.endswith(suffix):
        return False
    label = host[: -len(suffix)]
    return bool(label) and "." not in label


def is_ip_literal(value: str) -> bool:
    """Return ``True`` when *value* is an IPv4/IPv6 address literal."""
    try:
        ipaddress.ip_address(value.strip("[]"))
    except ValueError:
        return False
    return True


def _cert_time(cert: x509.Certificate, name: str) -> datetime:
    value = getattr(cert, f"{name}_utc", None)
    if isinstance(value, datetime):
        return value
    return getattr(cert, name)  # pragma: no cover - compatibility fallback


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "BrokerCertificate",
    "TLSValidationFinding",
    "TLSValidationSeverity",
    "hostname_matches",
    "inspect_certificate",
    "is_ip_literal",
    "load_certificate",
    "require_hostname",
]
