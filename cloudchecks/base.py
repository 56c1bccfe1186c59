#!/usr/bin/env python3
"""
Cloud Audit Engine - Base Provider Class
Common contract for the AWS, GCP and Azure credential providers and their
check catalogues, plus the JSON REST client used by the GCP and Azure checks.

A provider turns a stored secret into an authenticated handle once per
audit; every check unit then receives that handle and the audit scope.
Check units return a list of Finding objects. "Resource absent" returns an
empty list; only inability to query the provider raises.
"""

import json
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from cloudaudit.config import config
from cloudaudit.exceptions import (
    CheckError, CloudAuditError, CredentialFormatError,
    TransientProviderError,
)
from cloudaudit.logger import get_logger
from cloudaudit.models import Finding

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


@dataclass(frozen=True)
class AuditScope:
    """What an audit covers: the provider-side account id and default region."""

    external_id: str
    region: str = ""
    name: str = ""


@dataclass
class CheckUnit:
    check_id: str
    title: str
    func: Callable[[Any, AuditScope], Optional[List[Finding]]]

    def run(self, handle: Any, scope: AuditScope) -> List[Finding]:
        findings = self.func(handle, scope)
        return list(findings or [])


@dataclass
class Phase:
    number: int
    name: str
    checks: List[CheckUnit] = field(default_factory=list)


class ProviderHandle:
    """Authenticated per-audit handle; shares listings between check units."""

    def __init__(self):
        self._memo: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def memo(self, key: str, loader: Callable[[], Any]) -> Any:
        with self._lock:
            if key in self._memo:
                return self._memo[key]
        value = loader()
        with self._lock:
            return self._memo.setdefault(key, value)


class CloudProvider(ABC):
    """Base class for cloud providers."""

    TAG = ""
    DISPLAY_NAME = ""
    DEFAULT_REGION = ""

    # (phase_number, phase_name, ((check_id, title, method_name), ...))
    PHASES: Tuple = ()

    def __init__(self):
        self.logger = get_logger(f"provider.{self.TAG.lower()}")

    @abstractmethod
    def parse_secret(self, secret: Dict[str, Any]) -> Dict[str, Any]:
        """Normalise a raw secret; raise CredentialFormatError if malformed."""

    @abstractmethod
    def authenticate(self, secret: Dict[str, Any], scope: AuditScope) -> Any:
        """
        Build an authenticated handle bound to *scope*.

        Raises AuthenticationError when the provider rejects the credentials
        and TransientProviderError on network failure.
        """

    def probe(self, handle: Any, scope: AuditScope):
        """One cheap read-only call proving the handle can query the scope."""

    def scope_for(self, account: Dict[str, Any]) -> AuditScope:
        return AuditScope(
            external_id=str(account['external_id']),
            region=account.get('region') or self.DEFAULT_REGION,
            name=account.get('name') or "",
        )

    def validate(self, secret: Dict[str, Any],
                 scope: Optional[AuditScope] = None) -> Dict[str, Any]:
        """
        Check credentials without starting an audit.

        Returns {valid, error, transient}; transient is True only for network
        failure or throttling, where one retry is worthwhile.
        """
        try:
            parsed = self.parse_secret(secret)
            scope = scope or AuditScope(external_id=self.default_external_id(parsed),
                                        region=self.DEFAULT_REGION)
            handle = self.authenticate(parsed, scope)
            self.probe(handle, scope)
        except CredentialFormatError as exc:
            return {'valid': False, 'error': f"Malformed credentials: {exc}", 'transient': False}
        except TransientProviderError as exc:
            return {'valid': False, 'error': str(exc), 'transient': True}
        except CloudAuditError as exc:
            return {'valid': False, 'error': str(exc), 'transient': False}
        return {'valid': True, 'error': None, 'transient': False}

    def default_external_id(self, secret: Dict[str, Any]) -> str:
        """Account id implied by the secret itself, if any."""
        return ""

    def catalogue(self) -> List[Phase]:
        """Ordered phases with their check units bound to this provider."""
        phases = []
        for number, name, checks in self.PHASES:
            units = [
                CheckUnit(check_id=check_id, title=title, func=getattr(self, method))
                for check_id, title, method in checks
            ]
            phases.append(Phase(number=number, name=name, checks=units))
        return sorted(phases, key=lambda p: p.number)

    def finding(self, check_id: str, severity: str, title: str, description: str,
                recommendation: str, resource: str = "", resource_type: str = "",
                region: str = "") -> Finding:
        return Finding(
            finding_id=check_id, severity=severity, title=title,
            description=description, recommendation=recommendation,
            resource=resource, resource_type=resource_type, region=region,
        )


def require_fields(secret: Dict[str, Any], fields: Tuple[str, ...], kind: str):
    missing = [f for f in fields if not str(secret.get(f) or "").strip()]
    if missing:
        raise CredentialFormatError(f"{kind} is missing required field(s): {', '.join(missing)}")


def pick(secret: Dict[str, Any], *names: str) -> str:
    """First non-empty value among alternative key spellings."""
    for name in names:
        value = secret.get(name)
        if value:
            return str(value).strip()
    return ""


# ---------------------------------------------------------------------------
# REST client
# ---------------------------------------------------------------------------

class RestClient:
    """
    JSON-over-HTTPS client with bearer-token auth.

    404 returns None (resource absent). 429 and 5xx responses are retried
    with exponential backoff, honouring Retry-After; once retries are
    exhausted TransientProviderError is raised. 401/403 and other 4xx
    responses raise CheckError.
    """

    def __init__(self, token_source: Callable[[], str],
                 max_retries: Optional[int] = None,
                 backoff: Optional[float] = None,
                 timeout: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self._token_source = token_source
        self.max_retries = int(max_retries if max_retries is not None
                               else config.get('scanning.rest_max_retries', 4))
        self.backoff = float(backoff if backoff is not None
                             else config.get('scanning.rest_backoff_seconds', 1.0))
        self.timeout = float(timeout if timeout is not None
                             else config.get('scanning.rest_timeout_seconds', 30))
        self._sleep = sleep

    def request(self, method: str, url: str, params: Optional[Dict] = None,
                body: Optional[Dict] = None) -> Optional[Dict]:
        if params:
            sep = '&' if '?' in url else '?'
            url = f"{url}{sep}{urllib.parse.urlencode(params)}"
        data = json.dumps(body).encode('utf-8') if body is not None else None

        attempt = 0
        while True:
            headers = {
                'Authorization': f"Bearer {self._token_source()}",
                'Accept': 'application/json',
            }
            if data is not None:
                headers['Content-Type'] = 'application/json'
            req = urllib.request.Request(url, data=data, headers=headers, method=method)
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                    payload = resp.read()
                    return json.loads(payload) if payload else {}
            except urllib.error.HTTPError as exc:
                if exc.code == 404:
                    return None
                if exc.code in RETRYABLE_STATUSES and attempt < self.max_retries:
                    self._sleep(self._retry_delay(exc, attempt))
                    attempt += 1
                    continue
                if exc.code in RETRYABLE_STATUSES:
                    raise TransientProviderError(
                        f"{method} {url} still failing with HTTP {exc.code} "
                        f"after {attempt + 1} attempts"
                    )
                detail = self._error_detail(exc)
                if exc.code in (401, 403):
                    raise CheckError(f"Permission denied ({exc.code}) for {url}: {detail}")
                raise CheckError(f"HTTP {exc.code} for {url}: {detail}")
            except (urllib.error.URLError, TimeoutError, ConnectionError) as exc:
                if attempt < self.max_retries:
                    self._sleep(self.backoff * (2 ** attempt))
                    attempt += 1
                    continue
                raise TransientProviderError(f"Network error calling {url}: {exc}")

    def get(self, url: str, params: Optional[Dict] = None) -> Optional[Dict]:
        return self.request('GET', url, params=params)

    def post(self, url: str, body: Optional[Dict] = None) -> Optional[Dict]:
        return self.request('POST', url, body=body if body is not None else {})

    def _retry_delay(self, exc: urllib.error.HTTPError, attempt: int) -> float:
        retry_after = exc.headers.get('Retry-After') if exc.headers else None
        if retry_after:
            try:
                return min(float(retry_after), 60.0)
            except ValueError:
                pass
        return self.backoff * (2 ** attempt)

    @staticmethod
    def _error_detail(exc: urllib.error.HTTPError) -> str:
        try:
            body = exc.read().decode('utf-8', errors='replace')
        except (OSError, AttributeError):
            return exc.reason or ""
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            return body[:300]
        err = parsed.get('error') if isinstance(parsed, dict) else None
        if isinstance(err, dict):
            return str(err.get('message') or err.get('code') or err)[:300]
        return str(err or parsed)[:300]

    def paginate(self, url: str, items_key: str, params: Optional[Dict] = None,
                 next_key: str = 'nextPageToken',
                 page_param: str = 'pageToken') -> Iterator[Dict]:
        """Iterate items across token-paginated GET responses (GCP style)."""
        params = dict(params or {})
        while True:
            page = self.get(url, params=params)
            if not page:
                return
            for item in page.get(items_key, []) or []:
                yield item
            token = page.get(next_key)
            if not token:
                return
            params[page_param] = token

    def paginate_links(self, url: str, params: Optional[Dict] = None,
                       items_key: str = 'value',
                       next_key: str = 'nextLink') -> Iterator[Dict]:
        """Iterate items across link-paginated GET responses (Azure style)."""
        page = self.get(url, params=params)
        while page:
            for item in page.get(items_key, []) or []:
                yield item
            next_url = page.get(next_key)
            if not next_url:
                return
            page = self.get(next_url)
