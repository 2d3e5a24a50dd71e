"""
Registry access: references, credentials, and the distribution-API client.
"""

from .client import BlobStream, RegistryClient
from .credentials import DockerConfigCredentials
from .reference import (
    ArtifactReference,
    BlobReference,
    BlobUrlResolver,
    ReferenceResolver,
    parse_reference,
    resolve_location,
)

__all__ = [
    "ArtifactReference",
    "BlobReference",
    "BlobStream",
    "BlobUrlResolver",
    "DockerConfigCredentials",
    "ReferenceResolver",
    "RegistryClient",
    "parse_reference",
    "resolve_location",
]
