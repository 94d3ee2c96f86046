"""
Thin REST client for record creation and SOQL queries.

    client = CrmApiClient(token.instance_url, token.access_token)
    created = client.create_record("Account", {"Name": "Acme"})
    rows = client.query("SELECT Id FROM Account LIMIT 5")
"""

import logging
from urllib.parse import quote

import requests as _requests

from crm_e2e.errors import CrmApiError

logger = logging.getLogger("crm_e2e")

FIELD_PERMISSIONS_QUERY = """
SELECT Id, Field, SObjectType, PermissionsRead, PermissionsEdit, parentId, parent.Profile.Name
FROM FieldPermissions
WHERE parentId IN (
        SELECT id
        FROM permissionset
        WHERE PermissionSet.Profile.Name = 'System Administrator'
      )
  AND SObjectType = 'Account'
"""


class CrmApiClient:
    """
    Bearer-token client for `/services/data/v{N}`.

    Stateless apart from the token; one instance per token. Errors are not
    retried — a non-2xx answer raises CrmApiError with status and body.
    """

    _TIMEOUT = 30  # seconds per request

    def __init__(self, instance_url: str, access_token: str, api_version: str = "64.0", session=None):
        self._base = f"{instance_url.rstrip('/')}/services/data/v{api_version}"
        self._http = session or _requests.Session()
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_config(cls, config, session=None) -> "CrmApiClient":
        """Client for the pre-issued SALESFORCE_ACCESS_TOKEN / SALESFORCE_API_URL pair."""
        config.require("access_token", "api_url")
        return cls(config.api_url, config.access_token, config.api_version, session=session)

    # ── Internal helpers ──────────────────────────────────────────────────

    @staticmethod
    def _body(response):
        try:
            return response.json()
        except ValueError:
            return response.text

    def _get(self, path: str, operation: str):
        response = self._http.get(f"{self._base}{path}", headers=self._headers, timeout=self._TIMEOUT)
        body = self._body(response)
        if not response.ok:
            logger.error(f"❌ {operation} failed: {body}")
            raise CrmApiError(operation, response.status_code, body)
        return body

    # ── Public API ────────────────────────────────────────────────────────

    def create_record(self, object_name: str, data: dict) -> dict:
        """POST a new record. Returns {"id", "success", "errors"}."""
        url = f"{self._base}/sobjects/{object_name}/"
        logger.debug(f"POST {url} fields={sorted(data)}")
        response = self._http.post(url, json=data, headers=self._headers, timeout=self._TIMEOUT)
        body = self._body(response)
        if not response.ok:
            logger.error(f"❌ Create {object_name} failed: {body}")
            raise CrmApiError(f"Create {object_name}", response.status_code, body)
        logger.info(f"✅ Created {object_name} via API: {body.get('id')}")
        return body

    def query(self, soql: str) -> dict:
        """Run a SOQL query. Returns {"totalSize", "done", "records"}."""
        return self._get(f"/query?q={quote(soql.strip(), safe='')}", "Query")

    def tooling_query(self, soql: str) -> dict:
        """Run a SOQL query against the Tooling API (profiles, permissions)."""
        return self._get(f"/tooling/query/?q={quote(soql.strip(), safe='')}", "Tooling query")


def sort_records_by_id(data: dict) -> dict:
    """Sort a query result's records by Id in place, for stable comparisons."""
    records = data.get("records")
    if isinstance(records, list):
        records.sort(key=lambda r: r.get("Id", ""))
    return data
