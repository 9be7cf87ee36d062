"""Connector sources: content synced by an external sync service.

Training a connector source does not walk items locally. It resolves the
integration behind the source and asks the sync service to run its syncs;
the service then pushes content through its own pipeline.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request

from docprompt.db.models import Source

logger = logging.getLogger(__name__)

_TIMEOUT = 30  # seconds

SALESFORCE_DATABASE_TYPES = ("knowledge", "case")
SALESFORCE_ENVIRONMENTS = ("production", "sandbox")


def get_salesforce_database_integration_id(database_type: str, environment: str) -> str:
    """Map a Salesforce database type and environment to its integration id."""
    if database_type not in SALESFORCE_DATABASE_TYPES:
        raise ValueError(f"Unknown Salesforce database type: {database_type}")
    if environment not in SALESFORCE_ENVIRONMENTS:
        raise ValueError(f"Unknown Salesforce environment: {environment}")
    base = f"salesforce-{database_type}"
    return base if environment == "production" else f"{base}-sandbox"


def get_integration_id(source: Source) -> str | None:
    """Integration id of a connector source, or None if it cannot be resolved."""
    data = source.data_dict
    if data.get("integrationId"):
        return data["integrationId"]
    if data.get("databaseType") and data.get("environment"):
        return get_salesforce_database_integration_id(
            data["databaseType"], data["environment"]
        )
    return None


def get_sync_id(integration_id: str) -> str | None:
    """Sync to trigger for *integration_id*; sandbox variants share production syncs."""
    if not integration_id:
        return None
    return integration_id.removesuffix("-sandbox")


def get_connection_id(source_id: str) -> str:
    return source_id


class SyncClient:
    """POST sync triggers to the sync service at *base_url*."""

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")

    def trigger_sync(
        self,
        project_id: str,
        integration_id: str,
        connection_id: str,
        sync_ids: list[str],
    ) -> None:
        """Ask the service to run *sync_ids*. Raises RuntimeError on failure."""
        payload = json.dumps(
            {
                "projectId": project_id,
                "integrationId": integration_id,
                "connectionId": connection_id,
                "syncIds": sync_ids,
            }
        ).encode("utf-8")
        request = urllib.request.Request(
            f"{self._base_url}/sync/trigger",
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        logger.info("Triggering sync %s for %s", sync_ids, integration_id)
        try:
            with urllib.request.urlopen(request, timeout=_TIMEOUT) as response:
                response.read()
        except urllib.error.URLError as exc:
            raise RuntimeError(f"Unable to trigger sync for {integration_id}: {exc}") from exc
