#!/usr/bin/env python3
"""
Cloud Audit Engine - GCP Provider

Service-account JSON credentials are exchanged for an OAuth access token
with google-auth; the checks then call the Google REST APIs directly
through RestClient. A project whose API is disabled answers 403, which
fails the affected check rather than the audit.
"""

import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from cloudaudit.exceptions import (
    AuthenticationError, CredentialFormatError, TransientProviderError,
)
from cloudaudit.models import Finding

from .base import (
    AuditScope, CloudProvider, ProviderHandle, RestClient, require_fields,
)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

CRM_API = "https://cloudresourcemanager.googleapis.com/v1"
IAM_API = "https://iam.googleapis.com/v1"
STORAGE_API = "https://storage.googleapis.com/storage/v1"
COMPUTE_API = "https://compute.googleapis.com/compute/v1"
KMS_API = "https://cloudkms.googleapis.com/v1"
LOGGING_API = "https://logging.googleapis.com/v2"
BIGQUERY_API = "https://bigquery.googleapis.com/bigquery/v2"
SQLADMIN_API = "https://sqladmin.googleapis.com/v1"

PUBLIC_MEMBERS = ("allUsers", "allAuthenticatedUsers")
PRIMITIVE_ROLES = ("roles/owner", "roles/editor")
ADMIN_PORTS = {22: "SSH", 3389: "RDP"}
SA_KEY_MAX_AGE_DAYS = 90
KMS_MAX_ROTATION_SECONDS = 90 * 24 * 3600

PROJECT_ID_RE = re.compile(r'^[a-z][a-z0-9-]{4,28}[a-z0-9]$')
FRACTION_RE = re.compile(r'\.\d+(?=[+-]\d{2}:\d{2}$|$)')


def parse_rfc3339(value: str) -> datetime:
    """Google timestamps: '2024-01-01T00:00:00Z', optionally with fractional seconds."""
    value = FRACTION_RE.sub('', value.replace('Z', '+00:00'))
    return datetime.fromisoformat(value)


def port_ranges(ports: List[str]) -> List[tuple]:
    """['22', '8000-8080'] -> [(22, 22), (8000, 8080)]; no ports means all."""
    if not ports:
        return [(0, 65535)]
    ranges = []
    for entry in ports:
        lo, _, hi = str(entry).partition('-')
        ranges.append((int(lo), int(hi or lo)))
    return ranges


class GcpHandle(ProviderHandle):
    """Refreshing service-account credentials bound to one project."""

    def __init__(self, credentials, project_id: str, region: str = ""):
        super().__init__()
        self.credentials = credentials
        self.project_id = project_id
        self.region = region
        self._token_lock = threading.Lock()
        self.rest = RestClient(self.token)

    def token(self) -> str:
        with self._token_lock:
            if not self.credentials.valid:
                self.credentials.refresh(Request())
            return self.credentials.token

    def aggregated(self, url: str, kind: str) -> Iterator[Dict]:
        """Iterate a Compute aggregatedList, flattening the per-zone buckets."""
        params: Dict[str, Any] = {}
        while True:
            page = self.rest.get(url, params=params)
            if not page:
                return
            for scoped in (page.get('items') or {}).values():
                for item in scoped.get(kind, []):
                    yield item
            token = page.get('nextPageToken')
            if not token:
                return
            params['pageToken'] = token


class GcpProvider(CloudProvider):
    """Google Cloud project auditing."""

    TAG = "GCP"
    DISPLAY_NAME = "Google Cloud Platform"
    DEFAULT_REGION = "us-central1"

    PHASES = (
        (1, "Identity & Access Management", (
            ("GCP-IAM-H01", "Primitive roles granted to users", "check_primitive_roles"),
            ("GCP-IAM-C01", "Project IAM bindings to public members", "check_public_project_iam"),
            ("GCP-IAM-M01", "Service account key age", "check_sa_key_age"),
        )),
        (2, "Storage Security", (
            ("GCP-STO-C01", "Publicly accessible buckets", "check_public_buckets"),
            ("GCP-STO-M01", "Uniform bucket-level access", "check_uniform_access"),
            ("GCP-STO-L01", "Bucket versioning", "check_bucket_versioning"),
        )),
        (3, "Compute Security", (
            ("GCP-CMP-H01", "Default service account with full API access", "check_default_sa_scopes"),
            ("GCP-CMP-M01", "Serial port access enabled", "check_serial_port"),
            ("GCP-CMP-L01", "Instances with public IP addresses", "check_public_ips"),
        )),
        (4, "Network Security", (
            ("GCP-NET-C01", "SSH/RDP open to the internet", "check_firewall_admin_ports"),
            ("GCP-NET-H01", "Firewall rules allowing all traffic", "check_firewall_all_traffic"),
            ("GCP-NET-M01", "Subnet flow logs", "check_subnet_flow_logs"),
        )),
        (5, "Encryption & KMS", (
            ("GCP-KMS-M01", "KMS key rotation", "check_kms_rotation"),
        )),
        (6, "Logging & Monitoring", (
            ("GCP-LOG-M01", "Log export sinks", "check_log_sinks"),
            ("GCP-LOG-L01", "Data access audit logs", "check_audit_configs"),
        )),
        (7, "Data Services", (
            ("GCP-DATA-C01", "Publicly accessible BigQuery datasets", "check_bigquery_public"),
            ("GCP-DATA-C02", "Cloud SQL open to the internet", "check_sql_public"),
            ("GCP-DATA-H01", "Cloud SQL without enforced SSL", "check_sql_ssl"),
            ("GCP-DATA-M01", "Cloud SQL automated backups", "check_sql_backups"),
        )),
    )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def parse_secret(self, secret: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(secret, dict):
            raise CredentialFormatError("GCP credentials must be a service-account JSON object")
        require_fields(secret, ('client_email', 'private_key', 'project_id'),
                       "GCP service-account key")
        if secret.get('type', 'service_account') != 'service_account':
            raise CredentialFormatError(
                f"GCP credentials must be a service-account key, got type '{secret.get('type')}'"
            )
        if not PROJECT_ID_RE.match(str(secret['project_id'])):
            raise CredentialFormatError(f"Invalid GCP project id: {secret['project_id']}")
        if '-----BEGIN' not in secret['private_key']:
            raise CredentialFormatError("GCP private_key is not a PEM-encoded key")
        parsed = dict(secret)
        parsed.setdefault('type', 'service_account')
        parsed.setdefault('token_uri', 'https://oauth2.googleapis.com/token')
        return parsed

    def default_external_id(self, secret: Dict[str, Any]) -> str:
        return secret.get('project_id', '')

    def authenticate(self, secret: Dict[str, Any], scope: AuditScope) -> GcpHandle:
        try:
            credentials = service_account.Credentials.from_service_account_info(
                secret, scopes=[CLOUD_PLATFORM_SCOPE]
            )
        except (ValueError, KeyError) as exc:
            raise CredentialFormatError(f"GCP service-account key is unusable: {exc}")

        try:
            credentials.refresh(Request())
        except RefreshError as exc:
            raise AuthenticationError(f"Google rejected the service account: {exc}")
        except TransportError as exc:
            raise TransientProviderError(f"Cannot reach Google OAuth endpoint: {exc}")

        project_id = scope.external_id or secret['project_id']
        self.logger.info("Authenticated to GCP project %s as %s",
                         project_id, secret['client_email'])
        return GcpHandle(credentials, project_id, scope.region)

    def probe(self, handle: GcpHandle, scope: AuditScope):
        handle.rest.get(f"{STORAGE_API}/b", params={'project': handle.project_id, 'maxResults': 1})

    # ------------------------------------------------------------------
    # Shared listings
    # ------------------------------------------------------------------

    def _project_policy(self, handle: GcpHandle) -> Dict:
        return handle.memo('crm.policy', lambda: handle.rest.post(
            f"{CRM_API}/projects/{handle.project_id}:getIamPolicy"
        ) or {})

    def _buckets(self, handle: GcpHandle) -> List[Dict]:
        return handle.memo('storage.buckets', lambda: list(handle.rest.paginate(
            f"{STORAGE_API}/b", 'items', params={'project': handle.project_id}
        )))

    def _instances(self, handle: GcpHandle) -> List[Dict]:
        return handle.memo('compute.instances', lambda: list(handle.aggregated(
            f"{COMPUTE_API}/projects/{handle.project_id}/aggregated/instances", 'instances'
        )))

    def _firewalls(self, handle: GcpHandle) -> List[Dict]:
        def load():
            rules = handle.rest.paginate(
                f"{COMPUTE_API}/projects/{handle.project_id}/global/firewalls", 'items'
            )
            return [r for r in rules
                    if r.get('direction', 'INGRESS') == 'INGRESS' and not r.get('disabled')
                    and any(src in ('0.0.0.0/0', '::/0') for src in r.get('sourceRanges', []))]
        return handle.memo('compute.open_firewalls', load)

    def _sql_instances(self, handle: GcpHandle) -> List[Dict]:
        return handle.memo('sql.instances', lambda: list(handle.rest.paginate(
            f"{SQLADMIN_API}/projects/{handle.project_id}/instances", 'items'
        )))

    # ------------------------------------------------------------------
    # Phase 1: IAM
    # ------------------------------------------------------------------

    def check_primitive_roles(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for binding in self._project_policy(handle).get('bindings', []):
            role = binding.get('role', '')
            if role not in PRIMITIVE_ROLES:
                continue
            humans = [m for m in binding.get('members', []) if m.startswith(('user:', 'group:'))]
            if humans:
                findings.append(self.finding(
                    'GCP-IAM-H01', 'HIGH', f"Primitive role {role} granted to users or groups",
                    f"{', '.join(humans)} hold {role} on the whole project.",
                    'Replace primitive roles with predefined or custom roles.',
                    resource=f"projects/{handle.project_id}", resource_type='cloudresourcemanager.Project',
                ))
        return findings

    def check_public_project_iam(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for binding in self._project_policy(handle).get('bindings', []):
            public = [m for m in binding.get('members', []) if m in PUBLIC_MEMBERS]
            if public:
                findings.append(self.finding(
                    'GCP-IAM-C01', 'CRITICAL', f"Role {binding.get('role')} granted to {public[0]}",
                    'A project-level role is granted to anyone on the internet.',
                    'Remove allUsers / allAuthenticatedUsers from the project IAM policy.',
                    resource=f"projects/{handle.project_id}", resource_type='cloudresourcemanager.Project',
                ))
        return findings

    def check_sa_key_age(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        now = datetime.now(timezone.utc)
        findings = []
        accounts = handle.rest.paginate(
            f"{IAM_API}/projects/{handle.project_id}/serviceAccounts", 'accounts'
        )
        for account in accounts:
            email = account['email']
            page = handle.rest.get(
                f"{IAM_API}/projects/{handle.project_id}/serviceAccounts/{email}/keys",
                params={'keyTypes': 'USER_MANAGED'},
            ) or {}
            for key in page.get('keys', []):
                created = key.get('validAfterTime')
                if not created:
                    continue
                days = (now - parse_rfc3339(created)).days
                if days > SA_KEY_MAX_AGE_DAYS:
                    findings.append(self.finding(
                        'GCP-IAM-M01', 'MEDIUM', f"Service account key for {email} is {days} days old",
                        'User-managed service account keys do not rotate automatically.',
                        'Rotate the key or switch to workload identity federation.',
                        resource=key.get('name', email), resource_type='iam.ServiceAccountKey',
                    ))
        return findings

    # ------------------------------------------------------------------
    # Phase 2: Storage
    # ------------------------------------------------------------------

    def check_public_buckets(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for bucket in self._buckets(handle):
            name = bucket['name']
            policy = handle.rest.get(f"{STORAGE_API}/b/{name}/iam") or {}
            for binding in policy.get('bindings', []):
                if any(m in PUBLIC_MEMBERS for m in binding.get('members', [])):
                    findings.append(self.finding(
                        'GCP-STO-C01', 'CRITICAL', f"Bucket '{name}' is publicly accessible",
                        f"{binding.get('role')} is granted to allUsers or allAuthenticatedUsers.",
                        'Remove public members from the bucket IAM policy and enforce public access prevention.',
                        resource=f"gs://{name}", resource_type='storage.Bucket',
                        region=bucket.get('location', '').lower(),
                    ))
                    break
        return findings

    def check_uniform_access(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'GCP-STO-M01', 'MEDIUM', f"Bucket '{b['name']}' does not enforce uniform access",
            'Object ACLs can grant access that bypasses bucket IAM.',
            'Enable uniform bucket-level access.',
            resource=f"gs://{b['name']}", resource_type='storage.Bucket',
            region=b.get('location', '').lower(),
        ) for b in self._buckets(handle)
            if not b.get('iamConfiguration', {}).get('uniformBucketLevelAccess', {}).get('enabled')]

    def check_bucket_versioning(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'GCP-STO-L01', 'LOW', f"Bucket '{b['name']}' versioning disabled",
            'Overwritten or deleted objects cannot be recovered.',
            'Enable object versioning.',
            resource=f"gs://{b['name']}", resource_type='storage.Bucket',
            region=b.get('location', '').lower(),
        ) for b in self._buckets(handle) if not b.get('versioning', {}).get('enabled')]

    # ------------------------------------------------------------------
    # Phase 3: Compute
    # ------------------------------------------------------------------

    @staticmethod
    def _zone(instance: Dict) -> str:
        return instance.get('zone', '').rsplit('/', 1)[-1]

    def check_default_sa_scopes(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for inst in self._instances(handle):
            for sa in inst.get('serviceAccounts', []):
                if (sa.get('email', '').endswith('-compute@developer.gserviceaccount.com')
                        and CLOUD_PLATFORM_SCOPE in sa.get('scopes', [])):
                    findings.append(self.finding(
                        'GCP-CMP-H01', 'HIGH',
                        f"Instance '{inst['name']}' uses the default service account with full access",
                        'Any process on the VM can call every Google API with Editor rights.',
                        'Attach a dedicated least-privilege service account.',
                        resource=inst.get('selfLink', inst['name']),
                        resource_type='compute.Instance', region=self._zone(inst),
                    ))
        return findings

    def check_serial_port(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for inst in self._instances(handle):
            items = inst.get('metadata', {}).get('items', [])
            if any(i.get('key') == 'serial-port-enable' and str(i.get('value')).lower() in ('true', '1')
                   for i in items):
                findings.append(self.finding(
                    'GCP-CMP-M01', 'MEDIUM', f"Instance '{inst['name']}' has serial port access enabled",
                    'The interactive serial console is reachable from the internet.',
                    'Remove the serial-port-enable metadata key.',
                    resource=inst.get('selfLink', inst['name']),
                    resource_type='compute.Instance', region=self._zone(inst),
                ))
        return findings

    def check_public_ips(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for inst in self._instances(handle):
            nat_ips = [
                ac.get('natIP') for ni in inst.get('networkInterfaces', [])
                for ac in ni.get('accessConfigs', []) if ac.get('natIP')
            ]
            if nat_ips:
                findings.append(self.finding(
                    'GCP-CMP-L01', 'LOW', f"Instance '{inst['name']}' has a public IP",
                    f"External address(es): {', '.join(nat_ips)}.",
                    'Use Cloud NAT and IAP instead of external addresses where possible.',
                    resource=inst.get('selfLink', inst['name']),
                    resource_type='compute.Instance', region=self._zone(inst),
                ))
        return findings

    # ------------------------------------------------------------------
    # Phase 4: Network
    # ------------------------------------------------------------------

    def check_firewall_admin_ports(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for rule in self._firewalls(handle):
            exposed = set()
            for allowed in rule.get('allowed', []):
                proto = allowed.get('IPProtocol')
                if proto not in ('tcp', 'all'):
                    continue
                for lo, hi in port_ranges(allowed.get('ports', [])):
                    exposed.update(label for port, label in ADMIN_PORTS.items() if lo <= port <= hi)
            if exposed:
                findings.append(self.finding(
                    'GCP-NET-C01', 'CRITICAL',
                    f"Firewall rule '{rule['name']}' exposes {'/'.join(sorted(exposed))} to the internet",
                    'An ingress rule allows administrative ports from 0.0.0.0/0.',
                    'Restrict the source ranges or use Identity-Aware Proxy for SSH/RDP.',
                    resource=rule.get('selfLink', rule['name']), resource_type='compute.Firewall',
                ))
        return findings

    def check_firewall_all_traffic(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'GCP-NET-H01', 'HIGH', f"Firewall rule '{r['name']}' allows all traffic from the internet",
            'An ingress rule allows every protocol and port from 0.0.0.0/0.',
            'Replace the rule with specific protocols, ports and source ranges.',
            resource=r.get('selfLink', r['name']), resource_type='compute.Firewall',
        ) for r in self._firewalls(handle)
            if any(a.get('IPProtocol') == 'all' for a in r.get('allowed', []))]

    def check_subnet_flow_logs(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        subnets = handle.aggregated(
            f"{COMPUTE_API}/projects/{handle.project_id}/aggregated/subnetworks", 'subnetworks'
        )
        return [self.finding(
            'GCP-NET-M01', 'MEDIUM', f"Subnet '{s['name']}' has flow logs disabled",
            'VPC traffic in the subnet is not captured for investigation.',
            'Enable VPC flow logs on the subnet.',
            resource=s.get('selfLink', s['name']), resource_type='compute.Subnetwork',
            region=s.get('region', '').rsplit('/', 1)[-1],
        ) for s in subnets
            if s.get('purpose', 'PRIVATE') == 'PRIVATE' and not s.get('logConfig', {}).get('enable')]

    # ------------------------------------------------------------------
    # Phase 5: KMS
    # ------------------------------------------------------------------

    def check_kms_rotation(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        locations = handle.rest.paginate(
            f"{KMS_API}/projects/{handle.project_id}/locations", 'locations'
        )
        for location in locations:
            rings = handle.rest.paginate(f"{KMS_API}/{location['name']}/keyRings", 'keyRings')
            for ring in rings:
                for key in handle.rest.paginate(f"{KMS_API}/{ring['name']}/cryptoKeys", 'cryptoKeys'):
                    if key.get('purpose') != 'ENCRYPT_DECRYPT':
                        continue
                    period = key.get('rotationPeriod', '')
                    seconds = float(period.rstrip('s')) if period else None
                    if seconds is None or seconds > KMS_MAX_ROTATION_SECONDS:
                        findings.append(self.finding(
                            'GCP-KMS-M01', 'MEDIUM',
                            f"KMS key '{key['name'].rsplit('/', 1)[-1]}' is not rotated every 90 days",
                            'Automatic rotation is disabled or longer than 90 days.',
                            'Set a rotation period of 90 days or less.',
                            resource=key['name'], resource_type='cloudkms.CryptoKey',
                            region=location.get('locationId', ''),
                        ))
        return findings

    # ------------------------------------------------------------------
    # Phase 6: Logging
    # ------------------------------------------------------------------

    def check_log_sinks(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        sinks = list(handle.rest.paginate(f"{LOGGING_API}/projects/{handle.project_id}/sinks", 'sinks'))
        if any(not s.get('disabled') for s in sinks):
            return []
        return [self.finding(
            'GCP-LOG-M01', 'MEDIUM', 'No log export sink',
            'Logs are only kept for the default retention of the _Default bucket.',
            'Create a sink exporting all logs to Cloud Storage, BigQuery or Pub/Sub.',
            resource=f"projects/{handle.project_id}", resource_type='logging.Sink',
        )]

    def check_audit_configs(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        for cfg in self._project_policy(handle).get('auditConfigs', []):
            if cfg.get('service') != 'allServices':
                continue
            types = {c.get('logType') for c in cfg.get('auditLogConfigs', [])}
            if {'DATA_READ', 'DATA_WRITE'} <= types:
                return []
        return [self.finding(
            'GCP-LOG-L01', 'LOW', 'Data access audit logs not enabled for all services',
            'Reads and writes of user data are not recorded in Cloud Audit Logs.',
            'Enable DATA_READ and DATA_WRITE audit logs for allServices.',
            resource=f"projects/{handle.project_id}", resource_type='cloudresourcemanager.Project',
        )]

    # ------------------------------------------------------------------
    # Phase 7: Data Services
    # ------------------------------------------------------------------

    def check_bigquery_public(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        datasets = handle.rest.paginate(
            f"{BIGQUERY_API}/projects/{handle.project_id}/datasets", 'datasets'
        )
        for ds in datasets:
            dataset_id = ds['datasetReference']['datasetId']
            detail = handle.rest.get(
                f"{BIGQUERY_API}/projects/{handle.project_id}/datasets/{dataset_id}"
            ) or {}
            for entry in detail.get('access', []):
                if entry.get('specialGroup') == 'allAuthenticatedUsers' or entry.get('iamMember') == 'allUsers':
                    findings.append(self.finding(
                        'GCP-DATA-C01', 'CRITICAL', f"BigQuery dataset '{dataset_id}' is public",
                        f"The dataset grants {entry.get('role')} to everyone.",
                        'Remove public access entries from the dataset.',
                        resource=f"{handle.project_id}:{dataset_id}", resource_type='bigquery.Dataset',
                        region=ds.get('location', ''),
                    ))
                    break
        return findings

    def check_sql_public(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for inst in self._sql_instances(handle):
            networks = inst.get('settings', {}).get('ipConfiguration', {}).get('authorizedNetworks', [])
            if any(n.get('value') in ('0.0.0.0/0', '::/0') for n in networks):
                findings.append(self.finding(
                    'GCP-DATA-C02', 'CRITICAL', f"Cloud SQL instance '{inst['name']}' accepts connections from anywhere",
                    '0.0.0.0/0 is an authorized network.',
                    'Remove the open authorized network and use private IP or the Cloud SQL Auth Proxy.',
                    resource=inst.get('selfLink', inst['name']), resource_type='sqladmin.Instance',
                    region=inst.get('region', ''),
                ))
        return findings

    def check_sql_ssl(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for inst in self._sql_instances(handle):
            ip_cfg = inst.get('settings', {}).get('ipConfiguration', {})
            enforced = ip_cfg.get('requireSsl') or ip_cfg.get('sslMode') in (
                'ENCRYPTED_ONLY', 'TRUSTED_CLIENT_CERTIFICATE_REQUIRED')
            if not enforced:
                findings.append(self.finding(
                    'GCP-DATA-H01', 'HIGH', f"Cloud SQL instance '{inst['name']}' allows unencrypted connections",
                    'Clients may connect without TLS.',
                    'Set sslMode to ENCRYPTED_ONLY.',
                    resource=inst.get('selfLink', inst['name']), resource_type='sqladmin.Instance',
                    region=inst.get('region', ''),
                ))
        return findings

    def check_sql_backups(self, handle: GcpHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'GCP-DATA-M01', 'MEDIUM', f"Cloud SQL instance '{i['name']}' has automated backups disabled",
            'The instance cannot be restored after data loss.',
            'Enable automated backups and point-in-time recovery.',
            resource=i.get('selfLink', i['name']), resource_type='sqladmin.Instance',
            region=i.get('region', ''),
        ) for i in self._sql_instances(handle)
            if not i.get('settings', {}).get('backupConfiguration', {}).get('enabled')]
