#!/usr/bin/env python3
"""
Cloud Audit Engine - Azure Provider

A service principal (tenant, client id, client secret) is exchanged for an
ARM access token with azure-identity; checks query the Azure Resource
Manager REST API for the subscription through RestClient.
"""

import re
import threading
import time
from typing import Any, Dict, List

from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError
from azure.identity import ClientSecretCredential

from cloudaudit.exceptions import (
    AuthenticationError, CredentialFormatError, TransientProviderError,
)
from cloudaudit.models import Finding

from .base import AuditScope, CloudProvider, ProviderHandle, RestClient, pick

ARM = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
TOKEN_REFRESH_MARGIN = 300

GUID_RE = re.compile(r'^[0-9a-fA-F]{8}-([0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}$')

API_VERSIONS = {
    'subscriptions': '2022-12-01',
    'storage': '2023-01-01',
    'compute': '2023-03-01',
    'disks': '2023-01-02',
    'network': '2023-05-01',
    'sql': '2021-11-01',
    'keyvault': '2023-02-01',
    'aks': '2023-05-01',
    'web': '2022-09-01',
    'cosmos': '2023-04-15',
    'alerts': '2020-10-01',
    'diagnostics': '2021-05-01-preview',
}

OPEN_SOURCES = ('*', 'Internet', '0.0.0.0/0', 'Any')
ADMIN_PORTS = ('22', '3389')


def rule_ports(props: Dict) -> List[str]:
    ports = list(props.get('destinationPortRanges') or [])
    if props.get('destinationPortRange'):
        ports.append(props['destinationPortRange'])
    return ports


def port_in(port: str, ports: List[str]) -> bool:
    target = int(port)
    for entry in ports:
        if entry == '*':
            return True
        lo, _, hi = entry.partition('-')
        if int(lo) <= target <= int(hi or lo):
            return True
    return False


class AzureHandle(ProviderHandle):
    """Service-principal token source bound to one subscription."""

    def __init__(self, credential: ClientSecretCredential, subscription_id: str,
                 access_token=None):
        super().__init__()
        self.credential = credential
        self.subscription_id = subscription_id
        self._token = access_token
        self._token_lock = threading.Lock()
        self.rest = RestClient(self.token)

    def token(self) -> str:
        with self._token_lock:
            if self._token is None or self._token.expires_on - TOKEN_REFRESH_MARGIN < time.time():
                self._token = self.credential.get_token(ARM_SCOPE)
            return self._token.token

    def list(self, provider_path: str, api: str) -> List[Dict]:
        """All resources of one type in the subscription."""
        url = f"{ARM}/subscriptions/{self.subscription_id}/providers/{provider_path}"
        return list(self.rest.paginate_links(url, params={'api-version': API_VERSIONS[api]}))

    def list_child(self, resource_id: str, child: str, api: str) -> List[Dict]:
        url = f"{ARM}{resource_id}/{child}"
        return list(self.rest.paginate_links(url, params={'api-version': API_VERSIONS[api]}))

    def get(self, resource_id: str, api: str) -> Dict:
        return self.rest.get(f"{ARM}{resource_id}",
                             params={'api-version': API_VERSIONS[api]}) or {}


class AzureProvider(CloudProvider):
    """Azure subscription auditing."""

    TAG = "AZURE"
    DISPLAY_NAME = "Microsoft Azure"
    DEFAULT_REGION = ""

    PHASES = (
        (1, "Storage Security", (
            ("AZ-STO-H01", "Public blob access allowed", "check_storage_public_blob"),
            ("AZ-STO-H02", "Storage accepts HTTP", "check_storage_https"),
            ("AZ-STO-M01", "Storage minimum TLS version", "check_storage_tls"),
            ("AZ-STO-M02", "Storage network default action", "check_storage_network"),
        )),
        (2, "Compute Security", (
            ("AZ-CMP-M01", "Linux VMs with password authentication", "check_vm_password_auth"),
            ("AZ-CMP-L01", "Unattached managed disks", "check_unattached_disks"),
        )),
        (3, "Network Security", (
            ("AZ-NET-C01", "NSG rules allowing any-any inbound", "check_nsg_any_any"),
            ("AZ-NET-H01", "NSG rules exposing SSH/RDP", "check_nsg_admin_ports"),
            ("AZ-NET-M01", "NSG flow logs", "check_nsg_flow_logs"),
        )),
        (4, "SQL Security", (
            ("AZ-SQL-C01", "SQL firewall open to the internet", "check_sql_firewall"),
            ("AZ-SQL-H01", "SQL transparent data encryption", "check_sql_tde"),
            ("AZ-SQL-M01", "SQL server auditing", "check_sql_auditing"),
        )),
        (5, "Key Vault Security", (
            ("AZ-KV-H01", "Key Vault soft delete", "check_keyvault_soft_delete"),
            ("AZ-KV-M01", "Key Vault purge protection", "check_keyvault_purge_protection"),
            ("AZ-KV-L01", "Key Vault network default action", "check_keyvault_network"),
        )),
        (6, "AKS Security", (
            ("AZ-AKS-H01", "AKS Kubernetes RBAC", "check_aks_rbac"),
            ("AZ-AKS-M01", "AKS network policy", "check_aks_network_policy"),
            ("AZ-AKS-M02", "AKS API server exposure", "check_aks_api_exposure"),
        )),
        (7, "App Service Security", (
            ("AZ-APP-H01", "App Service HTTPS only", "check_app_https_only"),
            ("AZ-APP-M01", "App Service TLS and FTP settings", "check_app_tls_ftp"),
        )),
        (8, "Data Services", (
            ("AZ-DATA-H01", "Cosmos DB open to all networks", "check_cosmos_network"),
            ("AZ-DATA-L01", "Cosmos DB key-based auth", "check_cosmos_local_auth"),
        )),
        (9, "Monitoring & Logging", (
            ("AZ-MON-M01", "Activity log alerts", "check_activity_log_alerts"),
            ("AZ-MON-M02", "Subscription diagnostic settings", "check_diagnostic_settings"),
        )),
    )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def parse_secret(self, secret: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(secret, dict):
            raise CredentialFormatError("Azure credentials must be a JSON object")
        parsed = {
            'tenant_id': pick(secret, 'tenant_id', 'tenantId', 'tenant'),
            'client_id': pick(secret, 'client_id', 'clientId', 'appId'),
            'client_secret': pick(secret, 'client_secret', 'clientSecret', 'password'),
            'subscription_id': pick(secret, 'subscription_id', 'subscriptionId'),
        }
        missing = [k for k in ('tenant_id', 'client_id', 'client_secret') if not parsed[k]]
        if missing:
            raise CredentialFormatError(
                f"Azure service principal is missing required field(s): {', '.join(missing)}"
            )
        for key in ('tenant_id', 'client_id', 'subscription_id'):
            if parsed[key] and not GUID_RE.match(parsed[key]):
                raise CredentialFormatError(f"Azure {key} must be a GUID")
        return parsed

    def default_external_id(self, secret: Dict[str, Any]) -> str:
        return secret.get('subscription_id', '')

    def authenticate(self, secret: Dict[str, Any], scope: AuditScope) -> AzureHandle:
        subscription_id = scope.external_id or secret.get('subscription_id')
        if not subscription_id:
            raise CredentialFormatError("No Azure subscription id given")
        credential = ClientSecretCredential(
            secret['tenant_id'], secret['client_id'], secret['client_secret']
        )
        try:
            token = credential.get_token(ARM_SCOPE)
        except ClientAuthenticationError as exc:
            raise AuthenticationError(f"Azure AD rejected the service principal: {exc.message}")
        except ServiceRequestError as exc:
            raise TransientProviderError(f"Cannot reach Azure AD: {exc}")
        self.logger.info("Authenticated to Azure subscription %s as %s",
                         subscription_id, secret['client_id'])
        return AzureHandle(credential, subscription_id, token)

    def probe(self, handle: AzureHandle, scope: AuditScope):
        sub = handle.get(f"/subscriptions/{handle.subscription_id}", 'subscriptions')
        if not sub:
            raise AuthenticationError(
                f"Subscription {handle.subscription_id} is not visible to the service principal"
            )

    # ------------------------------------------------------------------
    # Shared listings
    # ------------------------------------------------------------------

    def _storage_accounts(self, handle: AzureHandle) -> List[Dict]:
        return handle.memo('storage', lambda: handle.list('Microsoft.Storage/storageAccounts', 'storage'))

    def _nsgs(self, handle: AzureHandle) -> List[Dict]:
        return handle.memo('nsgs', lambda: handle.list('Microsoft.Network/networkSecurityGroups', 'network'))

    def _open_inbound_rules(self, handle: AzureHandle) -> List[tuple]:
        """(nsg, rule_props, rule_name) for Allow inbound rules from the internet."""
        rules = []
        for nsg in self._nsgs(handle):
            for rule in nsg.get('properties', {}).get('securityRules', []):
                props = rule.get('properties', {})
                if props.get('access') != 'Allow' or props.get('direction') != 'Inbound':
                    continue
                sources = list(props.get('sourceAddressPrefixes') or [])
                if props.get('sourceAddressPrefix'):
                    sources.append(props['sourceAddressPrefix'])
                if any(s in OPEN_SOURCES for s in sources):
                    rules.append((nsg, props, rule.get('name', '')))
        return rules

    def _sql_servers(self, handle: AzureHandle) -> List[Dict]:
        return handle.memo('sql', lambda: handle.list('Microsoft.Sql/servers', 'sql'))

    def _vaults(self, handle: AzureHandle) -> List[Dict]:
        return handle.memo('keyvault', lambda: handle.list('Microsoft.KeyVault/vaults', 'keyvault'))

    def _clusters(self, handle: AzureHandle) -> List[Dict]:
        return handle.memo('aks', lambda: handle.list('Microsoft.ContainerService/managedClusters', 'aks'))

    def _sites(self, handle: AzureHandle) -> List[Dict]:
        return handle.memo('web', lambda: handle.list('Microsoft.Web/sites', 'web'))

    def _cosmos(self, handle: AzureHandle) -> List[Dict]:
        return handle.memo('cosmos', lambda: handle.list('Microsoft.DocumentDB/databaseAccounts', 'cosmos'))

    # ------------------------------------------------------------------
    # Phase 1: Storage
    # ------------------------------------------------------------------

    def check_storage_public_blob(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-STO-H01', 'HIGH', f"Storage account '{a['name']}' allows public blob access",
            'Containers in the account can be made anonymously readable.',
            'Disable public blob access on the storage account.',
            resource=a['id'], resource_type='Microsoft.Storage/storageAccounts',
            region=a.get('location', ''),
        ) for a in self._storage_accounts(handle)
            if a.get('properties', {}).get('allowBlobPublicAccess', False)]

    def check_storage_https(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-STO-H02', 'HIGH', f"Storage account '{a['name']}' allows HTTP traffic",
            'Requests over unencrypted HTTP are accepted.',
            'Enable secure transfer (HTTPS only) on the storage account.',
            resource=a['id'], resource_type='Microsoft.Storage/storageAccounts',
            region=a.get('location', ''),
        ) for a in self._storage_accounts(handle)
            if not a.get('properties', {}).get('supportsHttpsTrafficOnly', True)]

    def check_storage_tls(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for account in self._storage_accounts(handle):
            tls = account.get('properties', {}).get('minimumTlsVersion', '')
            if tls and tls < 'TLS1_2':
                findings.append(self.finding(
                    'AZ-STO-M01', 'MEDIUM', f"Storage account '{account['name']}' allows {tls}",
                    'Clients may negotiate TLS versions below 1.2.',
                    'Set the minimum TLS version to TLS1_2.',
                    resource=account['id'], resource_type='Microsoft.Storage/storageAccounts',
                    region=account.get('location', ''),
                ))
        return findings

    def check_storage_network(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-STO-M02', 'MEDIUM', f"Storage account '{a['name']}' accepts traffic from all networks",
            'The storage firewall default action is Allow.',
            'Set the default network action to Deny and allow specific networks.',
            resource=a['id'], resource_type='Microsoft.Storage/storageAccounts',
            region=a.get('location', ''),
        ) for a in self._storage_accounts(handle)
            if a.get('properties', {}).get('networkAcls', {}).get('defaultAction', 'Allow') == 'Allow']

    # ------------------------------------------------------------------
    # Phase 2: Compute
    # ------------------------------------------------------------------

    def check_vm_password_auth(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for vm in handle.list('Microsoft.Compute/virtualMachines', 'compute'):
            linux = vm.get('properties', {}).get('osProfile', {}).get('linuxConfiguration')
            if linux is not None and not linux.get('disablePasswordAuthentication', False):
                findings.append(self.finding(
                    'AZ-CMP-M01', 'MEDIUM', f"VM '{vm['name']}' allows SSH password authentication",
                    'Passwords can be brute-forced where SSH keys cannot.',
                    'Disable password authentication and use SSH keys.',
                    resource=vm['id'], resource_type='Microsoft.Compute/virtualMachines',
                    region=vm.get('location', ''),
                ))
        return findings

    def check_unattached_disks(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-CMP-L01', 'LOW', f"Managed disk '{d['name']}' is unattached",
            'Orphaned disks keep data around without an owning workload.',
            'Snapshot and delete unused disks.',
            resource=d['id'], resource_type='Microsoft.Compute/disks', region=d.get('location', ''),
        ) for d in handle.list('Microsoft.Compute/disks', 'disks')
            if d.get('properties', {}).get('diskState') == 'Unattached']

    # ------------------------------------------------------------------
    # Phase 3: Network
    # ------------------------------------------------------------------

    def check_nsg_any_any(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for nsg, props, rule_name in self._open_inbound_rules(handle):
            if '*' in rule_ports(props) and props.get('protocol') == '*':
                findings.append(self.finding(
                    'AZ-NET-C01', 'CRITICAL', f"NSG '{nsg['name']}' rule '{rule_name}' allows all inbound traffic",
                    'Every port and protocol is open to the internet.',
                    'Restrict the rule to specific ports and sources.',
                    resource=nsg['id'], resource_type='Microsoft.Network/networkSecurityGroups',
                    region=nsg.get('location', ''),
                ))
        return findings

    def check_nsg_admin_ports(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for nsg, props, rule_name in self._open_inbound_rules(handle):
            ports = rule_ports(props)
            if '*' in ports and props.get('protocol') == '*':
                continue  # reported as any-any
            if props.get('protocol') not in ('Tcp', '*'):
                continue
            exposed = [p for p in ADMIN_PORTS if port_in(p, ports)]
            if exposed:
                findings.append(self.finding(
                    'AZ-NET-H01', 'HIGH',
                    f"NSG '{nsg['name']}' rule '{rule_name}' exposes port(s) {', '.join(exposed)}",
                    'SSH or RDP is reachable from the internet.',
                    'Use Azure Bastion or restrict the rule to known IPs.',
                    resource=nsg['id'], resource_type='Microsoft.Network/networkSecurityGroups',
                    region=nsg.get('location', ''),
                ))
        return findings

    def check_nsg_flow_logs(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        covered = set()
        for watcher in handle.list('Microsoft.Network/networkWatchers', 'network'):
            for flow_log in handle.list_child(watcher['id'], 'flowLogs', 'network'):
                props = flow_log.get('properties', {})
                if props.get('enabled'):
                    covered.add(props.get('targetResourceId', '').lower())
        return [self.finding(
            'AZ-NET-M01', 'MEDIUM', f"NSG '{nsg['name']}' has no flow logs",
            'Traffic through the security group is not recorded.',
            'Enable NSG flow logs through Network Watcher.',
            resource=nsg['id'], resource_type='Microsoft.Network/networkSecurityGroups',
            region=nsg.get('location', ''),
        ) for nsg in self._nsgs(handle) if nsg['id'].lower() not in covered]

    # ------------------------------------------------------------------
    # Phase 4: SQL
    # ------------------------------------------------------------------

    def check_sql_firewall(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for server in self._sql_servers(handle):
            for rule in handle.list_child(server['id'], 'firewallRules', 'sql'):
                props = rule.get('properties', {})
                if props.get('startIpAddress') == '0.0.0.0' and props.get('endIpAddress') == '255.255.255.255':
                    findings.append(self.finding(
                        'AZ-SQL-C01', 'CRITICAL', f"SQL server '{server['name']}' is open to the internet",
                        f"Firewall rule '{rule.get('name')}' allows every IPv4 address.",
                        'Remove the rule and allow only known client ranges or private endpoints.',
                        resource=server['id'], resource_type='Microsoft.Sql/servers',
                        region=server.get('location', ''),
                    ))
        return findings

    def check_sql_tde(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for server in self._sql_servers(handle):
            for db in handle.list_child(server['id'], 'databases', 'sql'):
                if db.get('name') == 'master':
                    continue
                tde = handle.get(f"{db['id']}/transparentDataEncryption/current", 'sql')
                if tde.get('properties', {}).get('state') == 'Disabled':
                    findings.append(self.finding(
                        'AZ-SQL-H01', 'HIGH', f"SQL database '{db['name']}' has TDE disabled",
                        'Database files and backups are not encrypted at rest.',
                        'Enable transparent data encryption.',
                        resource=db['id'], resource_type='Microsoft.Sql/servers/databases',
                        region=db.get('location', ''),
                    ))
        return findings

    def check_sql_auditing(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for server in self._sql_servers(handle):
            settings = handle.get(f"{server['id']}/auditingSettings/default", 'sql')
            if settings.get('properties', {}).get('state', 'Disabled') != 'Enabled':
                findings.append(self.finding(
                    'AZ-SQL-M01', 'MEDIUM', f"SQL server '{server['name']}' auditing disabled",
                    'Database events are not written to an audit log.',
                    'Enable server-level auditing to Log Analytics or storage.',
                    resource=server['id'], resource_type='Microsoft.Sql/servers',
                    region=server.get('location', ''),
                ))
        return findings

    # ------------------------------------------------------------------
    # Phase 5: Key Vault
    # ------------------------------------------------------------------

    def check_keyvault_soft_delete(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-KV-H01', 'HIGH', f"Key Vault '{v['name']}' has soft delete disabled",
            'Deleted keys and secrets cannot be recovered.',
            'Enable soft delete on the vault.',
            resource=v['id'], resource_type='Microsoft.KeyVault/vaults', region=v.get('location', ''),
        ) for v in self._vaults(handle)
            if v.get('properties', {}).get('enableSoftDelete') is False]

    def check_keyvault_purge_protection(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-KV-M01', 'MEDIUM', f"Key Vault '{v['name']}' has purge protection disabled",
            'Soft-deleted keys and secrets can be purged before the retention period ends.',
            'Enable purge protection on the vault.',
            resource=v['id'], resource_type='Microsoft.KeyVault/vaults', region=v.get('location', ''),
        ) for v in self._vaults(handle)
            if not v.get('properties', {}).get('enablePurgeProtection')]

    def check_keyvault_network(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-KV-L01', 'LOW', f"Key Vault '{v['name']}' accepts traffic from all networks",
            'The vault firewall default action is Allow.',
            'Restrict the vault to selected networks or private endpoints.',
            resource=v['id'], resource_type='Microsoft.KeyVault/vaults', region=v.get('location', ''),
        ) for v in self._vaults(handle)
            if v.get('properties', {}).get('networkAcls', {}).get('defaultAction', 'Allow') == 'Allow']

    # ------------------------------------------------------------------
    # Phase 6: AKS
    # ------------------------------------------------------------------

    def check_aks_rbac(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-AKS-H01', 'HIGH', f"AKS cluster '{c['name']}' has Kubernetes RBAC disabled",
            'Every authenticated user has full access to the cluster API.',
            'Recreate the cluster with RBAC enabled.',
            resource=c['id'], resource_type='Microsoft.ContainerService/managedClusters',
            region=c.get('location', ''),
        ) for c in self._clusters(handle) if not c.get('properties', {}).get('enableRBAC', False)]

    def check_aks_network_policy(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-AKS-M01', 'MEDIUM', f"AKS cluster '{c['name']}' has no network policy",
            'Pods can talk to each other without restriction.',
            'Enable Azure or Calico network policy.',
            resource=c['id'], resource_type='Microsoft.ContainerService/managedClusters',
            region=c.get('location', ''),
        ) for c in self._clusters(handle)
            if not c.get('properties', {}).get('networkProfile', {}).get('networkPolicy')]

    def check_aks_api_exposure(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for cluster in self._clusters(handle):
            access = cluster.get('properties', {}).get('apiServerAccessProfile') or {}
            if access.get('enablePrivateCluster') or access.get('authorizedIPRanges'):
                continue
            findings.append(self.finding(
                'AZ-AKS-M02', 'MEDIUM', f"AKS cluster '{cluster['name']}' API server is open to the internet",
                'The API server is public and has no authorized IP ranges.',
                'Use a private cluster or set authorized IP ranges.',
                resource=cluster['id'], resource_type='Microsoft.ContainerService/managedClusters',
                region=cluster.get('location', ''),
            ))
        return findings

    # ------------------------------------------------------------------
    # Phase 7: App Service
    # ------------------------------------------------------------------

    def check_app_https_only(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-APP-H01', 'HIGH', f"App Service '{s['name']}' accepts HTTP",
            'The site serves traffic without redirecting to HTTPS.',
            'Enable HTTPS Only on the site.',
            resource=s['id'], resource_type='Microsoft.Web/sites', region=s.get('location', ''),
        ) for s in self._sites(handle) if not s.get('properties', {}).get('httpsOnly', False)]

    def check_app_tls_ftp(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for site in self._sites(handle):
            props = handle.get(f"{site['id']}/config/web", 'web').get('properties', {})
            issues = []
            if props.get('minTlsVersion') and props['minTlsVersion'] < '1.2':
                issues.append(f"minimum TLS {props['minTlsVersion']}")
            if props.get('ftpsState') == 'AllAllowed':
                issues.append('plain FTP allowed')
            if issues:
                findings.append(self.finding(
                    'AZ-APP-M01', 'MEDIUM', f"App Service '{site['name']}' has weak transport settings",
                    'Weak settings: ' + ', '.join(issues) + '.',
                    'Set minimum TLS to 1.2 and FTPS to FtpsOnly or Disabled.',
                    resource=site['id'], resource_type='Microsoft.Web/sites',
                    region=site.get('location', ''),
                ))
        return findings

    # ------------------------------------------------------------------
    # Phase 8: Data Services
    # ------------------------------------------------------------------

    def check_cosmos_network(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for account in self._cosmos(handle):
            props = account.get('properties', {})
            if props.get('publicNetworkAccess', 'Enabled') != 'Enabled':
                continue
            if props.get('ipRules') or props.get('isVirtualNetworkFilterEnabled'):
                continue
            findings.append(self.finding(
                'AZ-DATA-H01', 'HIGH', f"Cosmos DB account '{account['name']}' is open to all networks",
                'No IP or virtual network filter restricts access.',
                'Configure IP rules, VNet filters or private endpoints.',
                resource=account['id'], resource_type='Microsoft.DocumentDB/databaseAccounts',
                region=account.get('location', ''),
            ))
        return findings

    def check_cosmos_local_auth(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'AZ-DATA-L01', 'LOW', f"Cosmos DB account '{a['name']}' allows key-based auth",
            'Primary keys grant full access and are not tied to an identity.',
            'Disable local authentication and use Azure AD RBAC.',
            resource=a['id'], resource_type='Microsoft.DocumentDB/databaseAccounts',
            region=a.get('location', ''),
        ) for a in self._cosmos(handle) if not a.get('properties', {}).get('disableLocalAuth', False)]

    # ------------------------------------------------------------------
    # Phase 9: Monitoring
    # ------------------------------------------------------------------

    def check_activity_log_alerts(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        alerts = handle.list('Microsoft.Insights/activityLogAlerts', 'alerts')
        if any(a.get('properties', {}).get('enabled', False) for a in alerts):
            return []
        return [self.finding(
            'AZ-MON-M01', 'MEDIUM', 'No activity log alerts configured',
            'No enabled alert fires on critical subscription operations.',
            'Configure activity log alerts for policy, NSG and security solution changes.',
            resource=f"/subscriptions/{handle.subscription_id}", resource_type='Microsoft.Insights/activityLogAlerts',
        )]

    def check_diagnostic_settings(self, handle: AzureHandle, scope: AuditScope) -> List[Finding]:
        settings = handle.list('Microsoft.Insights/diagnosticSettings', 'diagnostics')
        if settings:
            return []
        return [self.finding(
            'AZ-MON-M02', 'MEDIUM', 'No subscription diagnostic settings',
            'The activity log is not exported to a workspace or storage account.',
            'Configure diagnostic settings to a Log Analytics workspace.',
            resource=f"/subscriptions/{handle.subscription_id}", resource_type='Microsoft.Insights/diagnosticSettings',
        )]
