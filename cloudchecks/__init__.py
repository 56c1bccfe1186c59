"""
Cloud Audit Engine - Provider Check Catalogues
"""

import importlib
from typing import Dict

from cloudaudit.exceptions import UnknownProviderError
from cloudaudit.models import normalize_provider

from .base import AuditScope, CheckUnit, CloudProvider, Phase, RestClient

# Provider SDKs are heavy; each module is imported on first use
PROVIDER_CLASSES = {
    'AWS': ('cloudchecks.aws', 'AwsProvider'),
    'GCP': ('cloudchecks.gcp', 'GcpProvider'),
    'AZURE': ('cloudchecks.azure', 'AzureProvider'),
}

_providers: Dict[str, CloudProvider] = {}


def get_provider(tag: str) -> CloudProvider:
    """Get the provider instance for a tag (AWS, GCP, AZURE)."""
    tag = normalize_provider(tag)
    if tag not in PROVIDER_CLASSES:
        raise UnknownProviderError(
            f"Unknown provider '{tag}'. Must be one of {tuple(PROVIDER_CLASSES)}"
        )
    if tag not in _providers:
        module_name, class_name = PROVIDER_CLASSES[tag]
        provider_cls = getattr(importlib.import_module(module_name), class_name)
        _providers[tag] = provider_cls()
    return _providers[tag]


__all__ = [
    'AuditScope',
    'CheckUnit',
    'CloudProvider',
    'Phase',
    'RestClient',
    'PROVIDER_CLASSES',
    'get_provider',
]
