"""Persistence backends: the local snapshot slot and the optional Firestore mirror."""

from .local import LocalStore, STORAGE_KEY
from .cloud import CloudStoreNotReady, FirestoreCloudStore, classify_cloud_error, document_id

__all__ = [
    "LocalStore",
    "STORAGE_KEY",
    "CloudStoreNotReady",
    "FirestoreCloudStore",
    "classify_cloud_error",
    "document_id",
]
