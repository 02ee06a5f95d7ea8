"""Optional enrichment from the asset-registry service."""

import httpx

from qrtrack.logging import degraded, get_logger, trace

log = get_logger("registry")


class AssetRegistryClient:
    """Looks up asset details by id. Every failure degrades to None."""

    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @trace
    def fetch_asset_details(self, asset_id: str, auth_token: str | None = None) -> dict | None:
        headers = {"Authorization": auth_token} if auth_token else {}
        url = f"{self.base_url}/assets/{asset_id}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(url, headers=headers)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            degraded("registry.lookup_failed", logger=log, asset=asset_id, error=str(e))
            return None
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            return body["data"]
        return body if isinstance(body, dict) else None
