"""
Semantic validation of a loaded directorySync configuration.

Structural problems (wrong types, missing base_dn) are caught while the
configuration is built; this module checks the rules that tie values
together: hosts, ports and transports, distinguished names, filters and the
fields mapping referenced by each domain.
"""

import re
import logging
import ipaddress
from dataclasses import dataclass, field
from typing import List, Optional

from ldap3.core.exceptions import LDAPInvalidDnError, LDAPInvalidFilterError
from ldap3.operation.search import parse_filter
from ldap3.utils.dn import parse_dn

from directory_sync.models import (
    DirectorySyncConfig,
    DomainEndpoint,
    LDAPS_PORT,
    LDAP_PORT,
    SERVER_SELECTIONS,
)
from directory_sync.ldap_options import (
    OptionError,
    check_options,
    certificate_verification_disabled,
    inspect_ca_bundle,
)

logger = logging.getLogger(__name__)

_HOST_LABEL = re.compile(r'^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$')
_EMAIL = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Logical fields a flavor must map for users and groups to be read
REQUIRED_FIELDS = {
    'user': ('id', 'username'),
    'group': ('id', 'name', 'users'),
}


@dataclass
class ValidationReport:
    """Errors make a configuration unusable; warnings do not."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error(self, message: str):
        self.errors.append(message)

    def warn(self, message: str):
        self.warnings.append(message)


def is_valid_host(host: str) -> bool:
    """Hostname per RFC 1123, or an IPv4/IPv6 literal (brackets allowed)."""
    if not host:
        return False
    candidate = host[1:-1] if host.startswith('[') and host.endswith(']') else host
    try:
        ipaddress.ip_address(candidate)
        return True
    except ValueError:
        pass
    if len(host) > 253:
        return False
    labels = host.rstrip('.').split('.')
    if labels[-1].isdigit():
        # looks like a mangled IPv4 literal
        return False
    return all(_HOST_LABEL.match(label) for label in labels)


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(_EMAIL.match(value))


def parse_dn_or_none(dn: str) -> Optional[list]:
    """Parsed DN components, or None when the string is not a DN."""
    if not dn or '=' not in dn:
        return None
    try:
        return parse_dn(dn)
    except LDAPInvalidDnError:
        return None


def dn_is_suffix(suffix: str, dn: str) -> bool:
    """True when `suffix` names `dn` or one of its ancestors."""
    suffix_parts = parse_dn_or_none(suffix)
    dn_parts = parse_dn_or_none(dn)
    if suffix_parts is None or dn_parts is None or len(suffix_parts) > len(dn_parts):
        return False
    tail = dn_parts[len(dn_parts) - len(suffix_parts):]
    normalize = lambda parts: [(attr.lower(), value.lower()) for attr, value, _ in parts]
    return normalize(tail) == normalize(suffix_parts)


def is_valid_filter(expression: str) -> bool:
    """Check RFC 4515 filter syntax without a schema."""
    expression = expression.strip()
    if not (expression.startswith('(') and expression.endswith(')')):
        return False
    depth = 0
    for char in expression:
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
            if depth < 0:
                return False
    if depth != 0:
        return False
    try:
        parse_filter(expression, None, False, False, None, False)
    except LDAPInvalidFilterError:
        return False
    return True


class ConfigValidator:
    """Runs every check against a DirectorySyncConfig and collects the results."""

    def __init__(self, config: DirectorySyncConfig):
        self.config = config
        self.report = ValidationReport()

    def validate(self) -> ValidationReport:
        self._validate_policy()
        self._validate_schema()

        if not self.config.domains:
            if self.config.policy.enabled:
                self.report.error("At least one LDAP domain must be configured")
            else:
                self.report.warn("No LDAP domains configured")

        for endpoint in self.config.domains:
            self._validate_domain(endpoint)

        return self.report

    def _validate_policy(self):
        policy = self.config.policy

        for key, value in (('defaultUser', policy.default_user),
                           ('defaultGroupAdminUser', policy.default_group_admin_user)):
            if value is None:
                if policy.enabled:
                    self.report.error(f"Missing required field {key}")
            elif not is_valid_email(value):
                self.report.error(f"{key} must be an email address, got {value!r}")

        for key, value in (('userCustomFilters', policy.user_custom_filters),
                           ('groupCustomFilters', policy.group_custom_filters)):
            if value and not is_valid_filter(value):
                self.report.error(f"{key} is not a valid LDAP filter: {value}")

        if policy.use_email_prefix_suffix:
            if not policy.email_prefix:
                self.report.error("useEmailPrefixSuffix requires emailPrefix")
            if not policy.email_suffix:
                self.report.error("useEmailPrefixSuffix requires emailSuffix")

    def _validate_schema(self):
        schema = self.config.schema
        if not schema.user_object_class:
            self.report.error("userObjectClass must not be empty")
        if not schema.group_object_class:
            self.report.error("groupObjectClass must not be empty")

    def _validate_domain(self, endpoint: DomainEndpoint):
        prefix = f"domain {endpoint.key}"

        # Snapshot keys are "<domain>:<id>"
        if ':' in endpoint.key:
            self.report.error(f"{prefix}: domain key must not contain ':'")

        # Hosts
        if not endpoint.hosts:
            self.report.error(f"{prefix}: hosts must not be empty")
        for host in endpoint.hosts:
            if not is_valid_host(host):
                self.report.error(f"{prefix}: invalid host {host!r}")
        if len(set(h.lower() for h in endpoint.hosts)) != len(endpoint.hosts):
            self.report.warn(f"{prefix}: duplicate hosts in {list(endpoint.hosts)}")

        # Port and transport
        if not 1 <= endpoint.port <= 65535:
            self.report.error(f"{prefix}: port {endpoint.port} out of range")
        if endpoint.use_ssl and endpoint.use_tls:
            self.report.error(f"{prefix}: use_ssl and use_tls are mutually exclusive")
        if endpoint.port == LDAPS_PORT and not endpoint.use_ssl:
            self.report.error(f"{prefix}: port {LDAPS_PORT} requires use_ssl")
        if endpoint.port == LDAP_PORT and endpoint.use_ssl:
            self.report.error(f"{prefix}: port {LDAP_PORT} is plaintext or STARTTLS, not LDAPS")
        if endpoint.transport == 'plain' and endpoint.password:
            self.report.warn(f"{prefix}: bind credentials are sent without encryption")

        # Distinguished names
        if not endpoint.base_dn:
            self.report.error(f"{prefix}: base_dn must not be empty")
        elif parse_dn_or_none(endpoint.base_dn) is None:
            self.report.error(f"{prefix}: base_dn is not a valid DN: {endpoint.base_dn}")
        for key, value in (('user_path', endpoint.user_path), ('group_path', endpoint.group_path)):
            if value and parse_dn_or_none(value) is None:
                self.report.error(f"{prefix}: {key} is not a valid relative DN: {value}")
        if endpoint.username and parse_dn_or_none(endpoint.username) is not None:
            if endpoint.base_dn and not dn_is_suffix(endpoint.base_dn, endpoint.username):
                self.report.error(
                    f"{prefix}: base_dn {endpoint.base_dn} is not a suffix of bind DN {endpoint.username}"
                )

        # Bind settings
        if '%username%' not in endpoint.bind_format:
            self.report.error(f"{prefix}: bind_format must contain %username%")
        if endpoint.username and not endpoint.password:
            self.report.warn(f"{prefix}: bind password is empty")
        if endpoint.server_selection not in SERVER_SELECTIONS:
            self.report.error(
                f"{prefix}: server_selection must be one of {', '.join(SERVER_SELECTIONS)}, "
                f"got {endpoint.server_selection!r}"
            )
        if endpoint.timeout <= 0:
            self.report.error(f"{prefix}: timeout must be a positive number of seconds")
        if not is_valid_host(endpoint.domain_name):
            self.report.warn(f"{prefix}: domain_name {endpoint.domain_name!r} is not a DNS name")

        # Fields mapping
        fields_mapping = self.config.schema.fields_mapping
        if endpoint.ldap_type not in fields_mapping:
            self.report.error(
                f"{prefix}: ldap_type {endpoint.ldap_type!r} has no entry in fieldsMapping"
            )
        else:
            for entity, required in REQUIRED_FIELDS.items():
                mapped = self.config.schema.fields_for(endpoint.ldap_type, entity)
                missing = [name for name in required if not mapped.get(name)]
                if missing:
                    self.report.error(
                        f"{prefix}: fieldsMapping.{endpoint.ldap_type}.{entity} is missing {', '.join(missing)}"
                    )

        # Options and TLS
        option_errors = check_options(endpoint.options)
        for message in option_errors:
            self.report.error(f"{prefix}: {message}")
        if option_errors:
            return

        if certificate_verification_disabled(endpoint):
            self.report.warn(f"{prefix}: TLS certificate verification is disabled")

        ca_file = endpoint.options.get('LDAP_OPT_X_TLS_CACERTFILE')
        if ca_file and endpoint.transport != 'plain':
            try:
                bundle = inspect_ca_bundle(ca_file)
            except OptionError as e:
                self.report.error(f"{prefix}: {e}")
            else:
                for subject in bundle['expired']:
                    self.report.warn(f"{prefix}: CA certificate {subject} has expired")


def validate_config(config: DirectorySyncConfig) -> ValidationReport:
    """
    Validate a configuration.

    Returns:
        ValidationReport; nothing is raised for invalid configurations
    """
    report = ConfigValidator(config).validate()
    logger.debug(f"Validation finished with {len(report.errors)} errors "
                 f"and {len(report.warnings)} warnings")
    return report
