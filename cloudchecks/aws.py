#!/usr/bin/env python3
"""
Cloud Audit Engine - AWS Provider

Authenticates with an access-key pair (optionally with a session token) or
by assuming a role, then runs the 25-phase AWS catalogue through boto3.
Phases without registered checks are reported as skipped.

Checks call boto3 directly; botocore's adaptive retry mode absorbs
throttling. A ClientError that means "resource not configured" becomes a
finding or an empty result, any other ClientError propagates and marks the
check as failed.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List

import boto3
from botocore.config import Config as BotocoreConfig
from botocore.exceptions import (
    BotoCoreError, ClientError, ConnectTimeoutError, EndpointConnectionError,
    NoCredentialsError, ReadTimeoutError,
)

from cloudaudit.exceptions import (
    AuthenticationError, CredentialFormatError, TransientProviderError,
)
from cloudaudit.models import Finding

from .base import AuditScope, CloudProvider, ProviderHandle, pick

ACCESS_KEY_RE = re.compile(r'^(AKIA|ASIA)[A-Z0-9]{16}$')
ROLE_ARN_RE = re.compile(r'^arn:aws[a-zA-Z-]*:iam::(\d{12}):role/[\w+=,.@/-]+$')

THROTTLE_CODES = (
    "Throttling", "ThrottlingException", "RequestLimitExceeded",
    "TooManyRequestsException",
)
NETWORK_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)

PUBLIC_GRANTEE_URIS = (
    "http://acs.amazonaws.com/groups/global/AllUsers",
    "http://acs.amazonaws.com/groups/global/AuthenticatedUsers",
)
WORLD_CIDRS = ("0.0.0.0/0", "::/0")
ADMIN_PORTS = {22: "SSH", 3389: "RDP"}

DEPRECATED_LAMBDA_RUNTIMES = (
    "python2.7", "python3.6", "python3.7", "python3.8",
    "nodejs", "nodejs4.3", "nodejs6.10", "nodejs8.10", "nodejs10.x",
    "nodejs12.x", "nodejs14.x", "nodejs16.x",
    "ruby2.5", "ruby2.7", "java8", "go1.x",
    "dotnetcore1.0", "dotnetcore2.0", "dotnetcore2.1", "dotnetcore3.1", "dotnet6",
)

KEY_MAX_AGE_DAYS = 90
CERT_WARNING_DAYS = 30
MIN_BACKUP_RETENTION_DAYS = 7


def error_code(exc: ClientError) -> str:
    return exc.response.get('Error', {}).get('Code', '')


def age_days(when: datetime) -> int:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - when).days


def paginate(client, operation: str, key: str, **kwargs) -> Iterator[Dict]:
    for page in client.get_paginator(operation).paginate(**kwargs):
        for item in page.get(key, []):
            yield item


class AwsHandle(ProviderHandle):
    """Authenticated boto3 session bound to one account and region."""

    def __init__(self, session: boto3.Session, account_id: str, region: str):
        super().__init__()
        self.session = session
        self.account_id = account_id
        self.region = region
        self._config = BotocoreConfig(
            retries={'max_attempts': 8, 'mode': 'adaptive'},
            connect_timeout=10,
            read_timeout=60,
        )
        self._clients: Dict[tuple, Any] = {}

    def client(self, service: str, region: str = None):
        """Thread-safe client cache; sessions themselves are not thread-safe."""
        key = (service, region or self.region)
        with self._lock:
            if key not in self._clients:
                self._clients[key] = self.session.client(
                    service, region_name=key[1], config=self._config
                )
            return self._clients[key]


class AwsProvider(CloudProvider):
    """Amazon Web Services account auditing."""

    TAG = "AWS"
    DISPLAY_NAME = "Amazon Web Services"
    DEFAULT_REGION = "us-east-1"

    PHASES = (
        (1, "Identity & Access Management (IAM)", (
            ("IAM-C01", "Root account MFA", "check_root_mfa"),
            ("IAM-C02", "Root account access keys", "check_root_access_keys"),
            ("IAM-H01", "Console users without MFA", "check_console_users_mfa"),
            ("IAM-H02", "Customer policies granting full admin", "check_admin_policies"),
            ("IAM-M01", "Account password policy", "check_password_policy"),
            ("IAM-M02", "Access key age", "check_access_key_age"),
        )),
        (2, "S3 Security", (
            ("S3-C01", "Publicly readable buckets", "check_s3_public_buckets"),
            ("S3-H01", "Bucket public access block", "check_s3_public_access_block"),
            ("S3-H02", "Bucket default encryption", "check_s3_encryption"),
            ("S3-M01", "Bucket versioning", "check_s3_versioning"),
            ("S3-L01", "Bucket access logging", "check_s3_logging"),
        )),
        (3, "Network Security", (
            ("NET-C01", "SSH/RDP open to the internet", "check_sg_admin_ports"),
            ("NET-H01", "Security groups allowing all traffic", "check_sg_all_traffic"),
            ("NET-M01", "VPC flow logs", "check_vpc_flow_logs"),
            ("NET-L01", "Default security group rules", "check_default_sg"),
        )),
        (4, "Logging & Monitoring", (
            ("LOG-C01", "CloudTrail enabled", "check_cloudtrail_enabled"),
            ("LOG-H01", "Multi-region CloudTrail", "check_cloudtrail_multi_region"),
            ("LOG-H02", "CloudTrail actively logging", "check_trail_logging"),
            ("LOG-M01", "CloudTrail log file validation", "check_trail_validation"),
            ("LOG-M02", "AWS Config recorder", "check_config_recorder"),
        )),
        (5, "Compute & Container Security", (
            ("CMP-H01", "EBS encryption by default", "check_ebs_default_encryption"),
            ("CMP-M01", "Instance metadata service v2", "check_imdsv2"),
            ("CMP-L01", "ECR scan on push", "check_ecr_scan_on_push"),
        )),
        (6, "Data Services", (
            ("DATA-C01", "Publicly accessible RDS instances", "check_rds_public"),
            ("DATA-H01", "RDS storage encryption", "check_rds_encryption"),
            ("DATA-M01", "RDS backup retention", "check_rds_backups"),
            ("DATA-M02", "DynamoDB point-in-time recovery", "check_dynamodb_pitr"),
        )),
        (7, "Compliance Summary", ()),
        (8, "Certificate & DNS Security", (
            ("CERT-C01", "Expired ACM certificates", "check_acm_expired"),
            ("CERT-H01", "ACM certificates expiring soon", "check_acm_expiring"),
        )),
        (9, "API & Application Security", (
            ("API-H01", "Lambda function URLs without auth", "check_lambda_url_auth"),
            ("API-M01", "API Gateway execution logging", "check_apigw_logging"),
        )),
        (10, "Messaging & Queue Security", (
            ("MSG-M01", "SQS queue encryption", "check_sqs_encryption"),
            ("MSG-M02", "SNS topic encryption", "check_sns_encryption"),
        )),
        (11, "Advanced Security Services", (
            ("ADV-H01", "GuardDuty enabled", "check_guardduty"),
            ("ADV-M01", "Security Hub enabled", "check_securityhub"),
            ("ADV-L01", "IAM Access Analyzer", "check_access_analyzer"),
        )),
        (12, "SSM & Patch Management", (
            ("SSM-M01", "Instances not managed by SSM", "check_ssm_managed"),
        )),
        (13, "Backup & Disaster Recovery", (
            ("BKP-M01", "AWS Backup plans", "check_backup_plans"),
        )),
        (14, "Advanced Network Security", ()),
        (15, "Resource Optimization", ()),
        (16, "Compliance & Governance", ()),
        (17, "Container & Serverless Deep Dive", (
            ("SRV-H01", "EKS public endpoint open to the internet", "check_eks_public_endpoint"),
            ("SRV-M01", "Deprecated Lambda runtimes", "check_lambda_runtimes"),
        )),
        (18, "Final Extended Report", ()),
        (19, "Secrets & Key Management", (
            ("KMS-M01", "KMS key rotation", "check_kms_rotation"),
            ("SEC-M01", "Secrets Manager rotation", "check_secrets_rotation"),
        )),
        (20, "CI/CD Pipeline Security", ()),
        (21, "Performance & Reliability", ()),
        (22, "Incident Response Readiness", ()),
        (23, "Multi-Region & Disaster Recovery", ()),
        (24, "Account & Billing Security", (
            ("ACCT-L01", "Security alternate contact", "check_security_contact"),
        )),
        (25, "Subdomain Takeover & Dangling DNS", (
            ("DNS-H01", "CNAMEs pointing at missing S3 buckets", "check_dangling_s3_cnames"),
        )),
    )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def parse_secret(self, secret: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(secret, dict):
            raise CredentialFormatError("AWS credentials must be a JSON object")
        access_key = pick(secret, 'access_key_id', 'accessKeyId', 'aws_access_key_id')
        secret_key = pick(secret, 'secret_access_key', 'secretAccessKey', 'aws_secret_access_key')
        role_arn = pick(secret, 'role_arn', 'roleArn')

        if access_key or secret_key:
            if not (access_key and secret_key):
                raise CredentialFormatError(
                    "AWS access-key credentials need both access_key_id and secret_access_key"
                )
            if not ACCESS_KEY_RE.match(access_key):
                raise CredentialFormatError(
                    "access_key_id does not look like an AWS access key id (AKIA.../ASIA...)"
                )
        elif not role_arn:
            raise CredentialFormatError("AWS credentials need an access key pair or a role_arn")

        if role_arn and not ROLE_ARN_RE.match(role_arn):
            raise CredentialFormatError(f"role_arn is not a valid IAM role ARN: {role_arn}")

        return {
            'access_key_id': access_key,
            'secret_access_key': secret_key,
            'session_token': pick(secret, 'session_token', 'sessionToken', 'aws_session_token'),
            'role_arn': role_arn,
            'external_id': pick(secret, 'external_id', 'externalId'),
        }

    def default_external_id(self, secret: Dict[str, Any]) -> str:
        match = ROLE_ARN_RE.match(secret.get('role_arn') or "")
        return match.group(1) if match else ""

    def authenticate(self, secret: Dict[str, Any], scope: AuditScope) -> AwsHandle:
        region = scope.region or self.DEFAULT_REGION
        try:
            if secret.get('access_key_id'):
                session = boto3.Session(
                    aws_access_key_id=secret['access_key_id'],
                    aws_secret_access_key=secret['secret_access_key'],
                    aws_session_token=secret.get('session_token') or None,
                    region_name=region,
                )
            else:
                # Role-only secrets assume the role from the host's own identity
                session = boto3.Session(region_name=region)

            if secret.get('role_arn'):
                session = self._assume_role(session, secret, region)

            identity = session.client('sts', region_name=region).get_caller_identity()
        except ClientError as exc:
            code = error_code(exc)
            if code in THROTTLE_CODES:
                raise TransientProviderError(f"AWS STS throttled the request ({code})")
            raise AuthenticationError(f"AWS rejected the credentials ({code}): {exc}")
        except NETWORK_ERRORS as exc:
            raise TransientProviderError(f"Cannot reach AWS STS: {exc}")
        except NoCredentialsError:
            raise AuthenticationError("No AWS credentials available to assume the role")
        except BotoCoreError as exc:
            raise AuthenticationError(f"AWS credentials are unusable: {exc}")

        account_id = identity['Account']
        if scope.external_id and account_id != scope.external_id:
            raise AuthenticationError(
                f"Credentials belong to AWS account {account_id}, expected {scope.external_id}"
            )
        self.logger.info("Authenticated to AWS account %s as %s", account_id, identity.get('Arn'))
        return AwsHandle(session, account_id, region)

    def _assume_role(self, session: boto3.Session, secret: Dict[str, Any],
                     region: str) -> boto3.Session:
        kwargs = {
            'RoleArn': secret['role_arn'],
            'RoleSessionName': 'cloudaudit-scan',
            'DurationSeconds': 3600,
        }
        if secret.get('external_id'):
            kwargs['ExternalId'] = secret['external_id']
        creds = session.client('sts', region_name=region).assume_role(**kwargs)['Credentials']
        return boto3.Session(
            aws_access_key_id=creds['AccessKeyId'],
            aws_secret_access_key=creds['SecretAccessKey'],
            aws_session_token=creds['SessionToken'],
            region_name=region,
        )

    # ------------------------------------------------------------------
    # Shared listings
    # ------------------------------------------------------------------

    def _iam_summary(self, handle: AwsHandle) -> Dict:
        return handle.memo('iam.summary', lambda: handle.client('iam').get_account_summary()['SummaryMap'])

    def _iam_users(self, handle: AwsHandle) -> List[Dict]:
        return handle.memo('iam.users', lambda: list(paginate(handle.client('iam'), 'list_users', 'Users')))

    def _buckets(self, handle: AwsHandle) -> List[str]:
        return handle.memo('s3.buckets', lambda: [
            b['Name'] for b in handle.client('s3').list_buckets().get('Buckets', [])
        ])

    def _security_groups(self, handle: AwsHandle) -> List[Dict]:
        return handle.memo('ec2.sgs', lambda: list(
            paginate(handle.client('ec2'), 'describe_security_groups', 'SecurityGroups')
        ))

    def _instances(self, handle: AwsHandle) -> List[Dict]:
        def load():
            instances = []
            for reservation in paginate(handle.client('ec2'), 'describe_instances', 'Reservations'):
                instances.extend(reservation.get('Instances', []))
            return [i for i in instances if i.get('State', {}).get('Name') != 'terminated']
        return handle.memo('ec2.instances', load)

    def _trails(self, handle: AwsHandle) -> List[Dict]:
        return handle.memo('cloudtrail.trails', lambda: handle.client('cloudtrail').describe_trails(
            includeShadowTrails=True
        ).get('trailList', []))

    def _rds_instances(self, handle: AwsHandle) -> List[Dict]:
        return handle.memo('rds.instances', lambda: list(
            paginate(handle.client('rds'), 'describe_db_instances', 'DBInstances')
        ))

    def _certificates(self, handle: AwsHandle) -> List[Dict]:
        def load():
            acm = handle.client('acm')
            certs = []
            for summary in paginate(acm, 'list_certificates', 'CertificateSummaryList',
                                    CertificateStatuses=['ISSUED', 'EXPIRED']):
                detail = acm.describe_certificate(CertificateArn=summary['CertificateArn'])
                certs.append(detail['Certificate'])
            return certs
        return handle.memo('acm.certificates', load)

    def _lambda_functions(self, handle: AwsHandle) -> List[Dict]:
        return handle.memo('lambda.functions', lambda: list(
            paginate(handle.client('lambda'), 'list_functions', 'Functions')
        ))

    # ------------------------------------------------------------------
    # Phase 1: IAM
    # ------------------------------------------------------------------

    def check_root_mfa(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        if self._iam_summary(handle).get('AccountMFAEnabled', 0):
            return []
        return [self.finding(
            'IAM-C01', 'CRITICAL', 'Root account MFA not enabled',
            'The root user has unrestricted access to the account and is not protected by MFA.',
            'Enable a hardware or virtual MFA device on the root user.',
            resource=f"arn:aws:iam::{handle.account_id}:root", resource_type='AWS::IAM::Root',
        )]

    def check_root_access_keys(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        if not self._iam_summary(handle).get('AccountAccessKeysPresent', 0):
            return []
        return [self.finding(
            'IAM-C02', 'CRITICAL', 'Root account has access keys',
            'Programmatic access keys exist for the root user.',
            'Delete the root access keys and use IAM roles or users instead.',
            resource=f"arn:aws:iam::{handle.account_id}:root", resource_type='AWS::IAM::Root',
        )]

    def check_console_users_mfa(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        iam = handle.client('iam')
        findings = []
        for user in self._iam_users(handle):
            name = user['UserName']
            try:
                iam.get_login_profile(UserName=name)
            except ClientError as exc:
                if error_code(exc) == 'NoSuchEntity':
                    continue  # no console password
                raise
            if iam.list_mfa_devices(UserName=name).get('MFADevices'):
                continue
            findings.append(self.finding(
                'IAM-H01', 'HIGH', f"Console user '{name}' has no MFA device",
                f"IAM user {name} can sign in to the console with only a password.",
                'Require MFA for every IAM user with console access.',
                resource=user['Arn'], resource_type='AWS::IAM::User',
            ))
        return findings

    def check_admin_policies(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        iam = handle.client('iam')
        findings = []
        for policy in paginate(iam, 'list_policies', 'Policies', Scope='Local', OnlyAttached=True):
            version = iam.get_policy_version(
                PolicyArn=policy['Arn'], VersionId=policy['DefaultVersionId']
            )['PolicyVersion']
            document = version.get('Document') or {}
            if isinstance(document, str):
                document = json.loads(document)
            statements = document.get('Statement', [])
            if isinstance(statements, dict):
                statements = [statements]
            for stmt in statements:
                actions = stmt.get('Action', [])
                resources = stmt.get('Resource', [])
                actions = [actions] if isinstance(actions, str) else actions
                resources = [resources] if isinstance(resources, str) else resources
                if stmt.get('Effect') == 'Allow' and '*' in actions and '*' in resources:
                    findings.append(self.finding(
                        'IAM-H02', 'HIGH', f"Policy '{policy['PolicyName']}' grants full admin",
                        'An attached customer-managed policy allows every action on every resource.',
                        'Replace wildcard statements with least-privilege permissions.',
                        resource=policy['Arn'], resource_type='AWS::IAM::Policy',
                    ))
                    break
        return findings

    def check_password_policy(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        try:
            policy = handle.client('iam').get_account_password_policy()['PasswordPolicy']
        except ClientError as exc:
            if error_code(exc) != 'NoSuchEntity':
                raise
            return [self.finding(
                'IAM-M01', 'MEDIUM', 'No account password policy',
                'The account relies on the default IAM password rules.',
                'Set a password policy with at least 14 characters, complexity and reuse prevention.',
                resource=handle.account_id, resource_type='AWS::IAM::AccountPasswordPolicy',
            )]

        issues = []
        if policy.get('MinimumPasswordLength', 0) < 14:
            issues.append('minimum length below 14')
        for flag, label in (('RequireSymbols', 'symbols'), ('RequireNumbers', 'numbers'),
                            ('RequireUppercaseCharacters', 'uppercase'),
                            ('RequireLowercaseCharacters', 'lowercase')):
            if not policy.get(flag):
                issues.append(f"{label} not required")
        if not policy.get('PasswordReusePrevention'):
            issues.append('password reuse allowed')
        if not issues:
            return []
        return [self.finding(
            'IAM-M01', 'MEDIUM', 'Weak account password policy',
            'Password policy weaknesses: ' + ', '.join(issues) + '.',
            'Tighten the IAM password policy.',
            resource=handle.account_id, resource_type='AWS::IAM::AccountPasswordPolicy',
        )]

    def check_access_key_age(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        iam = handle.client('iam')
        findings = []
        for user in self._iam_users(handle):
            keys = iam.list_access_keys(UserName=user['UserName']).get('AccessKeyMetadata', [])
            for key in keys:
                if key.get('Status') != 'Active':
                    continue
                days = age_days(key['CreateDate'])
                if days > KEY_MAX_AGE_DAYS:
                    findings.append(self.finding(
                        'IAM-M02', 'MEDIUM',
                        f"Access key for '{user['UserName']}' is {days} days old",
                        f"Active access key {key['AccessKeyId']} has not been rotated "
                        f"for more than {KEY_MAX_AGE_DAYS} days.",
                        'Rotate access keys at least every 90 days.',
                        resource=user['Arn'], resource_type='AWS::IAM::AccessKey',
                    ))
        return findings

    # ------------------------------------------------------------------
    # Phase 2: S3
    # ------------------------------------------------------------------

    def check_s3_public_buckets(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        s3 = handle.client('s3')
        findings = []
        for name in self._buckets(handle):
            acl = s3.get_bucket_acl(Bucket=name)
            public_acl = any(
                grant.get('Grantee', {}).get('URI') in PUBLIC_GRANTEE_URIS
                for grant in acl.get('Grants', [])
            )
            try:
                status = s3.get_bucket_policy_status(Bucket=name)['PolicyStatus']
                public_policy = bool(status.get('IsPublic'))
            except ClientError as exc:
                if error_code(exc) != 'NoSuchBucketPolicy':
                    raise
                public_policy = False
            if public_acl or public_policy:
                via = 'ACL' if public_acl else 'bucket policy'
                findings.append(self.finding(
                    'S3-C01', 'CRITICAL', f"Bucket '{name}' is publicly accessible",
                    f"The bucket grants access to everyone through its {via}.",
                    'Remove public grants and enable S3 Block Public Access.',
                    resource=f"arn:aws:s3:::{name}", resource_type='AWS::S3::Bucket',
                ))
        return findings

    def check_s3_public_access_block(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        s3 = handle.client('s3')
        findings = []
        for name in self._buckets(handle):
            try:
                cfg = s3.get_public_access_block(Bucket=name)['PublicAccessBlockConfiguration']
            except ClientError as exc:
                if error_code(exc) != 'NoSuchPublicAccessBlockConfiguration':
                    raise
                cfg = {}
            if all(cfg.get(k) for k in ('BlockPublicAcls', 'IgnorePublicAcls',
                                        'BlockPublicPolicy', 'RestrictPublicBuckets')):
                continue
            findings.append(self.finding(
                'S3-H01', 'HIGH', f"Bucket '{name}' lacks a full public access block",
                'Not all four S3 Block Public Access settings are enabled.',
                'Enable all Block Public Access settings on the bucket.',
                resource=f"arn:aws:s3:::{name}", resource_type='AWS::S3::Bucket',
            ))
        return findings

    def check_s3_encryption(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        s3 = handle.client('s3')
        findings = []
        for name in self._buckets(handle):
            try:
                s3.get_bucket_encryption(Bucket=name)
            except ClientError as exc:
                if error_code(exc) != 'ServerSideEncryptionConfigurationNotFoundError':
                    raise
                findings.append(self.finding(
                    'S3-H02', 'HIGH', f"Bucket '{name}' has no default encryption",
                    'Objects written without explicit encryption are stored unencrypted.',
                    'Configure SSE-S3 or SSE-KMS default encryption.',
                    resource=f"arn:aws:s3:::{name}", resource_type='AWS::S3::Bucket',
                ))
        return findings

    def check_s3_versioning(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        s3 = handle.client('s3')
        findings = []
        for name in self._buckets(handle):
            if s3.get_bucket_versioning(Bucket=name).get('Status') == 'Enabled':
                continue
            findings.append(self.finding(
                'S3-M01', 'MEDIUM', f"Bucket '{name}' versioning disabled",
                'Overwritten or deleted objects cannot be recovered.',
                'Enable versioning on the bucket.',
                resource=f"arn:aws:s3:::{name}", resource_type='AWS::S3::Bucket',
            ))
        return findings

    def check_s3_logging(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        s3 = handle.client('s3')
        findings = []
        for name in self._buckets(handle):
            if s3.get_bucket_logging(Bucket=name).get('LoggingEnabled'):
                continue
            findings.append(self.finding(
                'S3-L01', 'LOW', f"Bucket '{name}' access logging disabled",
                'Requests to the bucket are not recorded in server access logs.',
                'Enable server access logging to a dedicated log bucket.',
                resource=f"arn:aws:s3:::{name}", resource_type='AWS::S3::Bucket',
            ))
        return findings

    # ------------------------------------------------------------------
    # Phase 3: Network
    # ------------------------------------------------------------------

    @staticmethod
    def _open_to_world(permission: Dict) -> bool:
        cidrs = [r.get('CidrIp') for r in permission.get('IpRanges', [])]
        cidrs += [r.get('CidrIpv6') for r in permission.get('Ipv6Ranges', [])]
        return any(c in WORLD_CIDRS for c in cidrs)

    def check_sg_admin_ports(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for sg in self._security_groups(handle):
            exposed = set()
            for perm in sg.get('IpPermissions', []):
                if not self._open_to_world(perm):
                    continue
                if perm.get('IpProtocol') == '-1':
                    exposed.update(ADMIN_PORTS.values())
                    continue
                if perm.get('IpProtocol') != 'tcp':
                    continue
                lo, hi = perm.get('FromPort', 0), perm.get('ToPort', 65535)
                for port, label in ADMIN_PORTS.items():
                    if lo <= port <= hi:
                        exposed.add(label)
            if exposed:
                findings.append(self.finding(
                    'NET-C01', 'CRITICAL',
                    f"Security group '{sg['GroupId']}' exposes {'/'.join(sorted(exposed))} to the internet",
                    'Inbound rules allow administrative ports from 0.0.0.0/0 or ::/0.',
                    'Restrict SSH/RDP to known CIDRs or use Session Manager.',
                    resource=sg['GroupId'], resource_type='AWS::EC2::SecurityGroup',
                    region=handle.region,
                ))
        return findings

    def check_sg_all_traffic(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        findings = []
        for sg in self._security_groups(handle):
            if any(p.get('IpProtocol') == '-1' and self._open_to_world(p)
                   for p in sg.get('IpPermissions', [])):
                findings.append(self.finding(
                    'NET-H01', 'HIGH', f"Security group '{sg['GroupId']}' allows all inbound traffic",
                    'An inbound rule allows every protocol and port from the internet.',
                    'Replace the rule with specific ports and source ranges.',
                    resource=sg['GroupId'], resource_type='AWS::EC2::SecurityGroup',
                    region=handle.region,
                ))
        return findings

    def check_vpc_flow_logs(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        ec2 = handle.client('ec2')
        vpcs = list(paginate(ec2, 'describe_vpcs', 'Vpcs'))
        logged = {fl.get('ResourceId') for fl in paginate(ec2, 'describe_flow_logs', 'FlowLogs')}
        return [self.finding(
            'NET-M01', 'MEDIUM', f"VPC '{vpc['VpcId']}' has no flow logs",
            'Network traffic in the VPC is not captured for investigation.',
            'Enable VPC flow logs to CloudWatch Logs or S3.',
            resource=vpc['VpcId'], resource_type='AWS::EC2::VPC', region=handle.region,
        ) for vpc in vpcs if vpc['VpcId'] not in logged]

    def check_default_sg(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'NET-L01', 'LOW', f"Default security group '{sg['GroupId']}' has inbound rules",
            'Resources launched without an explicit group inherit these rules.',
            'Remove all rules from default security groups.',
            resource=sg['GroupId'], resource_type='AWS::EC2::SecurityGroup', region=handle.region,
        ) for sg in self._security_groups(handle)
            if sg.get('GroupName') == 'default' and sg.get('IpPermissions')]

    # ------------------------------------------------------------------
    # Phase 4: Logging & Monitoring
    # ------------------------------------------------------------------

    def check_cloudtrail_enabled(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        if self._trails(handle):
            return []
        return [self.finding(
            'LOG-C01', 'CRITICAL', 'CloudTrail is not enabled',
            'No trail records API activity in this account.',
            'Create a multi-region CloudTrail trail.',
            resource=handle.account_id, resource_type='AWS::CloudTrail::Trail',
        )]

    def check_cloudtrail_multi_region(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        trails = self._trails(handle)
        if not trails or any(t.get('IsMultiRegionTrail') for t in trails):
            return []
        return [self.finding(
            'LOG-H01', 'HIGH', 'No multi-region CloudTrail trail',
            'Activity in regions without a trail is not recorded.',
            'Convert a trail to multi-region or create a new multi-region trail.',
            resource=handle.account_id, resource_type='AWS::CloudTrail::Trail',
        )]

    def check_trail_logging(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        cloudtrail = handle.client('cloudtrail')
        findings = []
        for trail in self._trails(handle):
            if trail.get('HomeRegion') not in (None, handle.region):
                continue
            status = cloudtrail.get_trail_status(Name=trail['TrailARN'])
            if not status.get('IsLogging'):
                findings.append(self.finding(
                    'LOG-H02', 'HIGH', f"CloudTrail trail '{trail['Name']}' is not logging",
                    'The trail exists but logging is stopped.',
                    'Start logging on the trail.',
                    resource=trail['TrailARN'], resource_type='AWS::CloudTrail::Trail',
                    region=trail.get('HomeRegion', ''),
                ))
        return findings

    def check_trail_validation(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'LOG-M01', 'MEDIUM', f"CloudTrail trail '{t['Name']}' has log file validation disabled",
            'Tampering with delivered log files cannot be detected.',
            'Enable log file integrity validation.',
            resource=t['TrailARN'], resource_type='AWS::CloudTrail::Trail',
            region=t.get('HomeRegion', ''),
        ) for t in self._trails(handle) if not t.get('LogFileValidationEnabled')]

    def check_config_recorder(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        statuses = handle.client('config').describe_configuration_recorder_status().get(
            'ConfigurationRecordersStatus', [])
        if any(s.get('recording') for s in statuses):
            return []
        return [self.finding(
            'LOG-M02', 'MEDIUM', 'AWS Config is not recording',
            'Resource configuration changes are not tracked in this region.',
            'Enable an AWS Config recorder for all resource types.',
            resource=handle.account_id, resource_type='AWS::Config::ConfigurationRecorder',
            region=handle.region,
        )]

    # ------------------------------------------------------------------
    # Phase 5: Compute & Container
    # ------------------------------------------------------------------

    def check_ebs_default_encryption(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        if handle.client('ec2').get_ebs_encryption_by_default().get('EbsEncryptionByDefault'):
            return []
        return [self.finding(
            'CMP-H01', 'HIGH', 'EBS encryption by default is disabled',
            'New EBS volumes in this region are created unencrypted unless requested.',
            'Enable EBS encryption by default.',
            resource=handle.account_id, resource_type='AWS::EC2::Volume', region=handle.region,
        )]

    def check_imdsv2(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'CMP-M01', 'MEDIUM', f"Instance '{i['InstanceId']}' allows IMDSv1",
            'The instance metadata service accepts unauthenticated v1 requests.',
            'Set HttpTokens to required on the instance.',
            resource=i['InstanceId'], resource_type='AWS::EC2::Instance', region=handle.region,
        ) for i in self._instances(handle)
            if i.get('MetadataOptions', {}).get('HttpTokens') != 'required']

    def check_ecr_scan_on_push(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        repos = paginate(handle.client('ecr'), 'describe_repositories', 'repositories')
        return [self.finding(
            'CMP-L01', 'LOW', f"ECR repository '{r['repositoryName']}' does not scan on push",
            'Images are pushed without a vulnerability scan.',
            'Enable scan on push or enhanced scanning.',
            resource=r['repositoryArn'], resource_type='AWS::ECR::Repository', region=handle.region,
        ) for r in repos if not r.get('imageScanningConfiguration', {}).get('scanOnPush')]

    # ------------------------------------------------------------------
    # Phase 6: Data Services
    # ------------------------------------------------------------------

    def check_rds_public(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'DATA-C01', 'CRITICAL', f"RDS instance '{db['DBInstanceIdentifier']}' is publicly accessible",
            'The database endpoint resolves to a public address.',
            'Disable public accessibility and place the instance in private subnets.',
            resource=db['DBInstanceArn'], resource_type='AWS::RDS::DBInstance', region=handle.region,
        ) for db in self._rds_instances(handle) if db.get('PubliclyAccessible')]

    def check_rds_encryption(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'DATA-H01', 'HIGH', f"RDS instance '{db['DBInstanceIdentifier']}' storage is unencrypted",
            'Database storage, snapshots and replicas are not encrypted at rest.',
            'Restore from an encrypted snapshot copy.',
            resource=db['DBInstanceArn'], resource_type='AWS::RDS::DBInstance', region=handle.region,
        ) for db in self._rds_instances(handle) if not db.get('StorageEncrypted')]

    def check_rds_backups(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'DATA-M01', 'MEDIUM',
            f"RDS instance '{db['DBInstanceIdentifier']}' keeps backups for "
            f"{db.get('BackupRetentionPeriod', 0)} day(s)",
            f"Automated backup retention is below {MIN_BACKUP_RETENTION_DAYS} days.",
            f"Set the backup retention period to at least {MIN_BACKUP_RETENTION_DAYS} days.",
            resource=db['DBInstanceArn'], resource_type='AWS::RDS::DBInstance', region=handle.region,
        ) for db in self._rds_instances(handle)
            if db.get('BackupRetentionPeriod', 0) < MIN_BACKUP_RETENTION_DAYS]

    def check_dynamodb_pitr(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        dynamodb = handle.client('dynamodb')
        findings = []
        for table in paginate(dynamodb, 'list_tables', 'TableNames'):
            try:
                desc = dynamodb.describe_continuous_backups(TableName=table)
            except ClientError as exc:
                if error_code(exc) == 'TableNotFoundException':
                    continue
                raise
            pitr = desc['ContinuousBackupsDescription'].get('PointInTimeRecoveryDescription', {})
            if pitr.get('PointInTimeRecoveryStatus') != 'ENABLED':
                findings.append(self.finding(
                    'DATA-M02', 'MEDIUM', f"DynamoDB table '{table}' has no point-in-time recovery",
                    'The table cannot be restored to an arbitrary point in the last 35 days.',
                    'Enable point-in-time recovery.',
                    resource=table, resource_type='AWS::DynamoDB::Table', region=handle.region,
                ))
        return findings

    # ------------------------------------------------------------------
    # Phase 8: Certificates
    # ------------------------------------------------------------------

    def check_acm_expired(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        now = datetime.now(timezone.utc)
        return [self.finding(
            'CERT-C01', 'CRITICAL', f"Certificate for '{c.get('DomainName')}' has expired",
            f"The ACM certificate expired on {c['NotAfter'].date().isoformat()}.",
            'Renew or replace the certificate and update its consumers.',
            resource=c['CertificateArn'], resource_type='AWS::ACM::Certificate', region=handle.region,
        ) for c in self._certificates(handle) if c.get('NotAfter') and c['NotAfter'] <= now]

    def check_acm_expiring(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        now = datetime.now(timezone.utc)
        findings = []
        for cert in self._certificates(handle):
            not_after = cert.get('NotAfter')
            if not not_after or not_after <= now:
                continue
            days = (not_after - now).days
            if days < CERT_WARNING_DAYS:
                findings.append(self.finding(
                    'CERT-H01', 'HIGH', f"Certificate for '{cert.get('DomainName')}' expires in {days} days",
                    f"The ACM certificate expires on {not_after.date().isoformat()}.",
                    'Renew the certificate or fix DNS validation so ACM can renew it.',
                    resource=cert['CertificateArn'], resource_type='AWS::ACM::Certificate',
                    region=handle.region,
                ))
        return findings

    # ------------------------------------------------------------------
    # Phase 9: API & Application
    # ------------------------------------------------------------------

    def check_lambda_url_auth(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        lam = handle.client('lambda')
        findings = []
        for fn in self._lambda_functions(handle):
            for url_cfg in paginate(lam, 'list_function_url_configs', 'FunctionUrlConfigs',
                                    FunctionName=fn['FunctionName']):
                if url_cfg.get('AuthType') == 'NONE':
                    findings.append(self.finding(
                        'API-H01', 'HIGH', f"Lambda '{fn['FunctionName']}' has a public function URL",
                        f"{url_cfg.get('FunctionUrl')} can be invoked without authentication.",
                        'Use AWS_IAM auth or front the function with an authenticated API.',
                        resource=fn['FunctionArn'], resource_type='AWS::Lambda::Function',
                        region=handle.region,
                    ))
        return findings

    def check_apigw_logging(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        apigw = handle.client('apigateway')
        findings = []
        for api in paginate(apigw, 'get_rest_apis', 'items'):
            for stage in apigw.get_stages(restApiId=api['id']).get('item', []):
                level = stage.get('methodSettings', {}).get('*/*', {}).get('loggingLevel', 'OFF')
                if level in ('OFF', None):
                    findings.append(self.finding(
                        'API-M01', 'MEDIUM',
                        f"API '{api['name']}' stage '{stage['stageName']}' has no execution logging",
                        'Requests to the stage are not logged to CloudWatch.',
                        'Enable INFO or ERROR execution logging on the stage.',
                        resource=f"{api['id']}/{stage['stageName']}",
                        resource_type='AWS::ApiGateway::Stage', region=handle.region,
                    ))
        return findings

    # ------------------------------------------------------------------
    # Phase 10: Messaging
    # ------------------------------------------------------------------

    def check_sqs_encryption(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        sqs = handle.client('sqs')
        findings = []
        for url in paginate(sqs, 'list_queues', 'QueueUrls'):
            attrs = sqs.get_queue_attributes(
                QueueUrl=url, AttributeNames=['SqsManagedSseEnabled', 'KmsMasterKeyId']
            ).get('Attributes', {})
            if attrs.get('KmsMasterKeyId') or attrs.get('SqsManagedSseEnabled') == 'true':
                continue
            findings.append(self.finding(
                'MSG-M01', 'MEDIUM', f"SQS queue '{url.rsplit('/', 1)[-1]}' is unencrypted",
                'Messages are stored without server-side encryption.',
                'Enable SSE-SQS or SSE-KMS on the queue.',
                resource=url, resource_type='AWS::SQS::Queue', region=handle.region,
            ))
        return findings

    def check_sns_encryption(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        sns = handle.client('sns')
        findings = []
        for topic in paginate(sns, 'list_topics', 'Topics'):
            arn = topic['TopicArn']
            attrs = sns.get_topic_attributes(TopicArn=arn).get('Attributes', {})
            if not attrs.get('KmsMasterKeyId'):
                findings.append(self.finding(
                    'MSG-M02', 'MEDIUM', f"SNS topic '{arn.rsplit(':', 1)[-1]}' is unencrypted",
                    'Messages published to the topic are not encrypted with KMS.',
                    'Set a KMS key on the topic.',
                    resource=arn, resource_type='AWS::SNS::Topic', region=handle.region,
                ))
        return findings

    # ------------------------------------------------------------------
    # Phase 11: Advanced Security Services
    # ------------------------------------------------------------------

    def check_guardduty(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        guardduty = handle.client('guardduty')
        for detector_id in guardduty.list_detectors().get('DetectorIds', []):
            if guardduty.get_detector(DetectorId=detector_id).get('Status') == 'ENABLED':
                return []
        return [self.finding(
            'ADV-H01', 'HIGH', 'GuardDuty is not enabled',
            'Threat detection is not running in this region.',
            'Enable GuardDuty in every active region.',
            resource=handle.account_id, resource_type='AWS::GuardDuty::Detector', region=handle.region,
        )]

    def check_securityhub(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        try:
            handle.client('securityhub').describe_hub()
            return []
        except ClientError as exc:
            if error_code(exc) not in ('InvalidAccessException', 'ResourceNotFoundException'):
                raise
        return [self.finding(
            'ADV-M01', 'MEDIUM', 'Security Hub is not enabled',
            'Findings from AWS security services are not aggregated.',
            'Enable Security Hub with the foundational best practices standard.',
            resource=handle.account_id, resource_type='AWS::SecurityHub::Hub', region=handle.region,
        )]

    def check_access_analyzer(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        analyzers = handle.client('accessanalyzer').list_analyzers().get('analyzers', [])
        if any(a.get('status') == 'ACTIVE' for a in analyzers):
            return []
        return [self.finding(
            'ADV-L01', 'LOW', 'IAM Access Analyzer is not enabled',
            'Resources shared outside the account are not detected.',
            'Create an account or organization analyzer.',
            resource=handle.account_id, resource_type='AWS::AccessAnalyzer::Analyzer',
            region=handle.region,
        )]

    # ------------------------------------------------------------------
    # Phase 12 / 13: Patch management and backups
    # ------------------------------------------------------------------

    def check_ssm_managed(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        running = [i for i in self._instances(handle) if i.get('State', {}).get('Name') == 'running']
        if not running:
            return []
        managed = {
            info.get('InstanceId')
            for info in paginate(handle.client('ssm'), 'describe_instance_information',
                                 'InstanceInformationList')
        }
        return [self.finding(
            'SSM-M01', 'MEDIUM', f"Instance '{i['InstanceId']}' is not managed by Systems Manager",
            'The instance cannot be patched or inventoried through SSM.',
            'Install the SSM agent and attach an instance profile with SSM permissions.',
            resource=i['InstanceId'], resource_type='AWS::EC2::Instance', region=handle.region,
        ) for i in running if i['InstanceId'] not in managed]

    def check_backup_plans(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        if list(paginate(handle.client('backup'), 'list_backup_plans', 'BackupPlansList')):
            return []
        return [self.finding(
            'BKP-M01', 'MEDIUM', 'No AWS Backup plans',
            'No centrally managed backup plan exists in this region.',
            'Create an AWS Backup plan covering critical resources.',
            resource=handle.account_id, resource_type='AWS::Backup::BackupPlan', region=handle.region,
        )]

    # ------------------------------------------------------------------
    # Phase 17: Containers & Serverless
    # ------------------------------------------------------------------

    def check_eks_public_endpoint(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        eks = handle.client('eks')
        findings = []
        for name in paginate(eks, 'list_clusters', 'clusters'):
            vpc_cfg = eks.describe_cluster(name=name)['cluster'].get('resourcesVpcConfig', {})
            if vpc_cfg.get('endpointPublicAccess') and '0.0.0.0/0' in vpc_cfg.get('publicAccessCidrs', []):
                findings.append(self.finding(
                    'SRV-H01', 'HIGH', f"EKS cluster '{name}' API endpoint is open to the internet",
                    'The Kubernetes API server accepts connections from any address.',
                    'Disable the public endpoint or restrict publicAccessCidrs.',
                    resource=name, resource_type='AWS::EKS::Cluster', region=handle.region,
                ))
        return findings

    def check_lambda_runtimes(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        return [self.finding(
            'SRV-M01', 'MEDIUM', f"Lambda '{fn['FunctionName']}' uses deprecated runtime {fn.get('Runtime')}",
            'The runtime no longer receives security patches.',
            'Upgrade the function to a supported runtime.',
            resource=fn['FunctionArn'], resource_type='AWS::Lambda::Function', region=handle.region,
        ) for fn in self._lambda_functions(handle)
            if fn.get('Runtime') in DEPRECATED_LAMBDA_RUNTIMES]

    # ------------------------------------------------------------------
    # Phase 19: Secrets & Keys
    # ------------------------------------------------------------------

    def check_kms_rotation(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        kms = handle.client('kms')
        findings = []
        for key in paginate(kms, 'list_keys', 'Keys'):
            meta = kms.describe_key(KeyId=key['KeyId'])['KeyMetadata']
            if (meta.get('KeyManager') != 'CUSTOMER' or meta.get('KeyState') != 'Enabled'
                    or meta.get('KeySpec', 'SYMMETRIC_DEFAULT') != 'SYMMETRIC_DEFAULT'
                    or meta.get('Origin') != 'AWS_KMS'):
                continue
            if not kms.get_key_rotation_status(KeyId=key['KeyId']).get('KeyRotationEnabled'):
                findings.append(self.finding(
                    'KMS-M01', 'MEDIUM', f"KMS key '{key['KeyId']}' has rotation disabled",
                    'Key material for the customer-managed key is never rotated.',
                    'Enable automatic key rotation.',
                    resource=meta['Arn'], resource_type='AWS::KMS::Key', region=handle.region,
                ))
        return findings

    def check_secrets_rotation(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        secrets = paginate(handle.client('secretsmanager'), 'list_secrets', 'SecretList')
        return [self.finding(
            'SEC-M01', 'MEDIUM', f"Secret '{s['Name']}' has no automatic rotation",
            'The secret value is never rotated automatically.',
            'Configure a rotation Lambda and schedule.',
            resource=s['ARN'], resource_type='AWS::SecretsManager::Secret', region=handle.region,
        ) for s in secrets if not s.get('RotationEnabled')]

    # ------------------------------------------------------------------
    # Phase 24 / 25: Account and DNS
    # ------------------------------------------------------------------

    def check_security_contact(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        try:
            handle.client('account').get_alternate_contact(AlternateContactType='SECURITY')
            return []
        except ClientError as exc:
            if error_code(exc) != 'ResourceNotFoundException':
                raise
        return [self.finding(
            'ACCT-L01', 'LOW', 'No security alternate contact',
            'AWS has no security contact to notify about incidents affecting the account.',
            'Register a security alternate contact on the account.',
            resource=handle.account_id, resource_type='AWS::Account',
        )]

    def check_dangling_s3_cnames(self, handle: AwsHandle, scope: AuditScope) -> List[Finding]:
        route53 = handle.client('route53')
        s3 = handle.client('s3')
        findings = []
        for zone in paginate(route53, 'list_hosted_zones', 'HostedZones'):
            for record in paginate(route53, 'list_resource_record_sets', 'ResourceRecordSets',
                                   HostedZoneId=zone['Id']):
                if record.get('Type') != 'CNAME':
                    continue
                targets = [r.get('Value', '') for r in record.get('ResourceRecords', [])]
                if not any('.s3' in t and t.rstrip('.').endswith('amazonaws.com') for t in targets):
                    continue
                bucket = record['Name'].rstrip('.')
                try:
                    s3.head_bucket(Bucket=bucket)
                except ClientError as exc:
                    if error_code(exc) not in ('404', 'NoSuchBucket'):
                        continue  # bucket exists but belongs to someone else or is forbidden
                    findings.append(self.finding(
                        'DNS-H01', 'HIGH', f"'{bucket}' points to a missing S3 bucket",
                        f"The CNAME targets {', '.join(targets)} but no bucket named "
                        f"{bucket} exists, so anyone can claim it.",
                        'Delete the record or recreate the bucket in this account.',
                        resource=record['Name'], resource_type='AWS::Route53::RecordSet',
                    ))
        return findings
