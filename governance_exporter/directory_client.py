"""HTTP client for the directory (Graph-style) REST API.

The access token is taken as given; acquiring it is the caller's concern.
"""

import logging
from typing import Any

import requests

from governance_exporter import constants
from governance_exporter.exceptions import CollectionError

logger = logging.getLogger(__name__)

SCOPE_GROUP = "group"
SCOPE_ADMINISTRATIVE_UNIT = "administrativeUnit"


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return f"{error.get('code', 'Error')}: {error['message']}"
    return response.text


class DirectoryClient:
    """Fetches users, scoped members and subscribed SKUs from the directory."""

    def __init__(
        self,
        access_token: str,
        base_url: str = constants.GRAPH_BASE_URL,
        connection_timeout: int = constants.GRAPH_CONNECTION_TIMEOUT,
        page_size: int = constants.GRAPH_PAGE_SIZE,
    ):
        """Initialize the directory client.

        Args:
            access_token: Bearer token for the directory API
            base_url: API root, e.g. https://graph.microsoft.com/v1.0
            connection_timeout: HTTP request timeout in seconds
            page_size: Requested page size ($top)
        """
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.connection_timeout = connection_timeout
        self.page_size = page_size

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "ConsistencyLevel": "eventual",
        }

    def _check(self, response: requests.Response, path: str) -> None:
        if not response.ok:
            message = _error_message(response)
            logger.error(
                "Directory request failed, response: %d: %s",
                response.status_code,
                message,
            )
            raise CollectionError(
                f"Directory request to '{path}' failed with response code "
                f"{response.status_code}: {message}",
                status_code=response.status_code,
            )

    def _get_all(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """GET a collection and follow ``@odata.nextLink`` until exhausted.

        Raises:
            CollectionError: If any page returns a non-2xx status.
        """
        records: list[dict[str, Any]] = []
        url: str | None = f"{self.base_url}/{path.lstrip('/')}"
        with requests.Session() as s:
            s.headers.update(self._headers())
            while url:
                logger.debug("Fetching %s", url)
                response = s.get(url, params=params, timeout=self.connection_timeout)
                self._check(response, path)
                body = response.json()
                records.extend(body.get("value", []))
                url = body.get("@odata.nextLink")
                # nextLink already carries the query string
                params = None

        logger.debug("Fetched %d records from %s", len(records), path)
        return records

    def fetch_users(
        self,
        select_fields: list[str] | tuple[str, ...],
        scope_id: str | None = None,
        scope_kind: str = SCOPE_GROUP,
    ) -> list[dict[str, Any]]:
        """Fetch user records, optionally limited to a group or administrative unit."""
        if scope_id is None:
            path = "users"
        elif scope_kind == SCOPE_ADMINISTRATIVE_UNIT:
            path = f"directory/administrativeUnits/{scope_id}/members/microsoft.graph.user"
        else:
            path = f"groups/{scope_id}/transitiveMembers/microsoft.graph.user"

        params: dict[str, Any] = {"$top": self.page_size}
        if select_fields:
            params["$select"] = ",".join(select_fields)
        return self._get_all(path, params)

    def fetch_subscribed_skus(self) -> list[dict[str, Any]]:
        return self._get_all("subscribedSkus")

    def fetch_scope_display_name(self, scope_id: str, scope_kind: str = SCOPE_GROUP) -> str | None:
        """Fetch the display name of a group or administrative unit.

        Raises:
            CollectionError: If the directory returns a non-2xx status.
        """
        if scope_kind == SCOPE_ADMINISTRATIVE_UNIT:
            path = f"directory/administrativeUnits/{scope_id}"
        else:
            path = f"groups/{scope_id}"

        response = requests.get(
            f"{self.base_url}/{path}",
            headers=self._headers(),
            params={"$select": "displayName"},
            timeout=self.connection_timeout,
        )
        self._check(response, path)
        return response.json().get("displayName")
