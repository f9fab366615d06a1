"""Document rendering, storage and certificate issuance."""

from .certificates import CertificateIssuer, membership_record, subscription_record
from .renderer import CertificateRecord, DocumentRenderer, HttpDocumentRenderer
from .storage import ObjectStore, S3ObjectStore

__all__ = [
    "CertificateIssuer",
    "CertificateRecord",
    "DocumentRenderer",
    "HttpDocumentRenderer",
    "ObjectStore",
    "S3ObjectStore",
    "membership_record",
    "subscription_record",
]
