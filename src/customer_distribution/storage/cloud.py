"""Firestore-backed mirror of the customer collection.

One document per customer, keyed by the percent-encoded customer id. Writes
go through a single WriteBatch so a sync either lands completely or not at all.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence
from urllib.parse import quote, unquote

import requests
from google.api_core import exceptions as gexc
from google.auth import exceptions as auth_exc

from ..domain.models import CloudErrorType, Customer, RecordValidationError
from ..logging import get_logger


LOG = get_logger("cloud-store")

DEFAULT_COLLECTION = "customers"


class CloudStoreNotReady(RuntimeError):
    """The Firestore client could not be created."""


_PERMISSION_ERRORS = (gexc.PermissionDenied, gexc.Unauthenticated, gexc.Forbidden)
_NETWORK_ERRORS = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.RetryError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    ConnectionError,
    TimeoutError,
)
_INIT_ERRORS = (CloudStoreNotReady, auth_exc.DefaultCredentialsError)


def classify_cloud_error(exc: BaseException) -> CloudErrorType:
    if isinstance(exc, _PERMISSION_ERRORS):
        return CloudErrorType.PERMISSION_DENIED
    if isinstance(exc, _INIT_ERRORS):
        return CloudErrorType.INITIALIZATION
    if isinstance(exc, _NETWORK_ERRORS):
        return CloudErrorType.NETWORK
    return CloudErrorType.OTHER


def document_id(customer_id: str) -> str:
    """Firestore document id for a customer id.

    Percent-encodes everything outside letters, digits and `-_.~` so ids with
    slashes stay a single path segment; the raw id is kept in the document body.
    """
    encoded = quote(customer_id, safe="")
    if encoded in (".", "..") or (encoded.startswith("__") and encoded.endswith("__")):
        # reserved by Firestore
        encoded = encoded.replace(".", "%2E").replace("_", "%5F")
    return encoded


def _server_timestamp() -> Any:
    from google.cloud import firestore

    return firestore.SERVER_TIMESTAMP


def _descending() -> Any:
    from google.cloud import firestore

    return firestore.Query.DESCENDING


class FirestoreCloudStore:
    def __init__(self, *, project: Optional[str] = None, collection: str = DEFAULT_COLLECTION, client: Any = None) -> None:
        self.project = project
        self.collection_name = collection
        self._db = client

    def _get_db(self) -> Any:
        if self._db is None:
            try:
                from google.cloud import firestore

                self._db = firestore.Client(project=self.project)
            except Exception as exc:
                raise CloudStoreNotReady(f"Firestore client unavailable: {exc}") from exc
            LOG.info("Firestore client ready (project=%s, collection=%s)", self.project or "default", self.collection_name)
        return self._db

    def _collection(self) -> Any:
        return self._get_db().collection(self.collection_name)

    def fetch_all(self) -> List[Customer]:
        """Read every document, newest ``createdAt`` first."""
        query = self._collection().order_by("createdAt", direction=_descending())
        customers: List[Customer] = []
        for doc in query.stream():
            data = doc.to_dict() or {}
            data.pop("updatedAt", None)
            data.setdefault("id", unquote(doc.id))
            try:
                customers.append(Customer.from_dict(data))
            except RecordValidationError as exc:
                LOG.warning("Skipping malformed cloud document %s: %s", doc.id, exc)
        LOG.info("Fetched %d customer(s) from Firestore", len(customers))
        return customers

    def upsert_all(self, records: Sequence[Customer]) -> None:
        """Write every record in one atomic batch (last write wins per document)."""
        db = self._get_db()
        col = db.collection(self.collection_name)
        batch = db.batch()
        stamp = _server_timestamp()
        for c in records:
            doc = c.to_dict()
            doc["updatedAt"] = stamp
            batch.set(col.document(document_id(c.id)), doc)
        if records:
            batch.commit()
        LOG.info("Upserted %d customer(s) to Firestore", len(records))

    def delete_all(self) -> int:
        db = self._get_db()
        col = db.collection(self.collection_name)
        batch = db.batch()
        count = 0
        for doc in col.stream():
            batch.delete(doc.reference)
            count += 1
        if count:
            batch.commit()
        LOG.info("Deleted %d Firestore document(s)", count)
        return count
