"""
Connection options for directory endpoints.

Domain entries carry an `options` mapping keyed by the PHP LDAP extension
constant names (LDAP_OPT_REFERRALS, LDAP_OPT_X_TLS_REQUIRE_CERT, ...). This
module checks those options and translates them into ldap3 server,
connection and TLS arguments.
"""

import os
import ssl
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from cryptography import x509
from ldap3 import Tls, SYNC, RESTARTABLE
from ldap3.core.exceptions import LDAPSSLConfigurationError

from directory_sync.logging_setup import security_logger
from directory_sync.models import DomainEndpoint

logger = logging.getLogger(__name__)


class OptionError(ValueError):
    """Raised when an LDAP option has an unknown name or unusable value."""
    pass


# libldap numeric values of LDAP_OPT_X_TLS_REQUIRE_CERT
REQUIRE_CERT_LEVELS = {
    'LDAP_OPT_X_TLS_NEVER': 0,
    'LDAP_OPT_X_TLS_HARD': 1,
    'LDAP_OPT_X_TLS_DEMAND': 2,
    'LDAP_OPT_X_TLS_ALLOW': 3,
    'LDAP_OPT_X_TLS_TRY': 4,
}

_REQUIRE_CERT_VALIDATION = {
    0: ssl.CERT_NONE,
    1: ssl.CERT_REQUIRED,
    2: ssl.CERT_REQUIRED,
    3: ssl.CERT_NONE,
    4: ssl.CERT_OPTIONAL,
}

_SWITCH_CONSTANTS = {
    'LDAP_OPT_ON': True,
    'LDAP_OPT_OFF': False,
}


def _switch(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value in _SWITCH_CONSTANTS:
        return _SWITCH_CONSTANTS[value]
    raise OptionError(f"{name} must be 0, 1, LDAP_OPT_ON or LDAP_OPT_OFF, got {value!r}")


def _protocol_version(name: str, value: Any) -> int:
    if isinstance(value, bool) or value not in (2, 3):
        raise OptionError(f"{name} must be 2 or 3, got {value!r}")
    return value


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise OptionError(f"{name} must be a positive integer, got {value!r}")
    return value


def _limit(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise OptionError(f"{name} must be a non-negative integer, got {value!r}")
    return value


def _require_cert(name: str, value: Any) -> int:
    if isinstance(value, str) and value in REQUIRE_CERT_LEVELS:
        return REQUIRE_CERT_LEVELS[value]
    if isinstance(value, int) and not isinstance(value, bool) and value in _REQUIRE_CERT_VALIDATION:
        return value
    raise OptionError(
        f"{name} must be one of {', '.join(REQUIRE_CERT_LEVELS)}, got {value!r}"
    )


def _path(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise OptionError(f"{name} must be a file path, got {value!r}")
    return value


KNOWN_OPTIONS = {
    'LDAP_OPT_RESTART': _switch,
    'LDAP_OPT_REFERRALS': _switch,
    'LDAP_OPT_PROTOCOL_VERSION': _protocol_version,
    'LDAP_OPT_NETWORK_TIMEOUT': _positive_int,
    'LDAP_OPT_TIMELIMIT': _limit,
    'LDAP_OPT_SIZELIMIT': _limit,
    'LDAP_OPT_X_TLS_REQUIRE_CERT': _require_cert,
    'LDAP_OPT_X_TLS_CACERTFILE': _path,
    'LDAP_OPT_X_TLS_CERTFILE': _path,
    'LDAP_OPT_X_TLS_KEYFILE': _path,
}


def normalize_options(options: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Convert raw option values into Python values.

    Returns:
        Option name -> normalized value

    Raises:
        OptionError: On the first unknown option or bad value
    """
    normalized = {}
    for name, value in options.items():
        converter = KNOWN_OPTIONS.get(str(name))
        if converter is None:
            raise OptionError(f"Unknown LDAP option {name}")
        normalized[str(name)] = converter(str(name), value)
    return normalized


def check_options(options: Mapping[str, Any]) -> List[str]:
    """Return one message per invalid option instead of stopping at the first."""
    errors = []
    for name, value in options.items():
        try:
            normalize_options({name: value})
        except OptionError as e:
            errors.append(str(e))
    return errors


@dataclass(frozen=True)
class ConnectionSettings:
    """ldap3 arguments derived from one domain endpoint."""

    client_strategy: str
    auto_referrals: bool
    version: int
    connect_timeout: int
    receive_timeout: int
    time_limit: int
    size_limit: int
    validate: int
    ca_certs_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None


def connection_settings(endpoint: DomainEndpoint) -> ConnectionSettings:
    """
    Derive connection settings from an endpoint's timeout and options.

    Raises:
        OptionError: If the options are invalid
    """
    options = normalize_options(endpoint.options)
    require_cert = options.get('LDAP_OPT_X_TLS_REQUIRE_CERT', REQUIRE_CERT_LEVELS['LDAP_OPT_X_TLS_DEMAND'])
    return ConnectionSettings(
        client_strategy=RESTARTABLE if options.get('LDAP_OPT_RESTART', False) else SYNC,
        auto_referrals=options.get('LDAP_OPT_REFERRALS', True),
        version=options.get('LDAP_OPT_PROTOCOL_VERSION', 3),
        connect_timeout=options.get('LDAP_OPT_NETWORK_TIMEOUT', endpoint.timeout),
        receive_timeout=endpoint.timeout,
        time_limit=options.get('LDAP_OPT_TIMELIMIT', 0),
        size_limit=options.get('LDAP_OPT_SIZELIMIT', 0),
        validate=_REQUIRE_CERT_VALIDATION[require_cert],
        ca_certs_file=options.get('LDAP_OPT_X_TLS_CACERTFILE'),
        cert_file=options.get('LDAP_OPT_X_TLS_CERTFILE'),
        key_file=options.get('LDAP_OPT_X_TLS_KEYFILE'),
    )


def certificate_verification_disabled(endpoint: DomainEndpoint) -> bool:
    """True when the endpoint encrypts but does not check the server certificate."""
    if endpoint.transport == 'plain':
        return False
    try:
        return connection_settings(endpoint).validate == ssl.CERT_NONE
    except OptionError:
        return False


def build_tls(endpoint: DomainEndpoint, settings: Optional[ConnectionSettings] = None) -> Optional[Tls]:
    """
    Create the ldap3 TLS configuration for LDAPS or STARTTLS endpoints.

    Returns:
        Tls object, or None for plaintext endpoints

    Raises:
        OptionError: If the options are invalid or a certificate file is unusable
    """
    if endpoint.transport == 'plain':
        return None

    settings = settings or connection_settings(endpoint)
    tls_config = {'validate': settings.validate}

    if settings.validate == ssl.CERT_NONE:
        security_logger.log_security_event("TLS certificate verification disabled", f"domain={endpoint.key}")

    if settings.ca_certs_file:
        tls_config['ca_certs_file'] = settings.ca_certs_file
        logger.debug(f"Using CA certificate file: {settings.ca_certs_file}")

    if settings.cert_file and settings.key_file:
        tls_config['local_certificate_file'] = settings.cert_file
        tls_config['local_private_key_file'] = settings.key_file
        logger.debug("Client certificate configured for mutual TLS")

    try:
        return Tls(**tls_config)
    except LDAPSSLConfigurationError as e:
        raise OptionError(f"Invalid TLS configuration for domain {endpoint.key}: {e}")


def inspect_ca_bundle(path: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Describe the certificates in a PEM CA bundle.

    Args:
        path: PEM file
        now: Reference time for the expiry check (defaults to current UTC time)

    Returns:
        {'path', 'certificates': [{'subject', 'not_after', 'expired'}], 'expired'}

    Raises:
        OptionError: If the file is missing or holds no PEM certificate
    """
    if not os.path.isfile(path):
        raise OptionError(f"CA certificate file not found: {path}")

    now = now or datetime.now(timezone.utc)
    with open(path, 'rb') as f:
        data = f.read()

    try:
        certificates = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise OptionError(f"CA certificate file {path} is not a PEM bundle: {e}")

    described = []
    for cert in certificates:
        not_after = cert.not_valid_after_utc
        described.append({
            'subject': cert.subject.rfc4514_string(),
            'not_after': not_after.isoformat(),
            'expired': not_after < now,
        })

    return {
        'path': path,
        'certificates': described,
        'expired': [c['subject'] for c in described if c['expired']],
    }
