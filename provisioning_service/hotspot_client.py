"""
HTTP adapter for the hotspot management API that fronts the routers.

Every call carries the owning device's connection details in the body and
is authenticated with the API bearer token.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

import requests

from common.circuit_breaker import DEVICE_CB_CONFIG, CircuitBreakerException, get_circuit_breaker
from common.settings import settings
from common.tracing import get_trace_headers
from provisioning_service.errors import InvalidCredentialInput, ProvisioningRejected, ProvisioningUnavailable
from provisioning_service.mac import normalize_mac

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class DeviceConfig:
    device_id: int
    host: str
    port: int
    username: str
    password: str

    @classmethod
    def from_model(cls, device) -> "DeviceConfig":
        return cls(device_id=device.id, host=device.host, port=device.port or 8728,
                   username=device.username, password=device.password)

    def credentials(self) -> Dict[str, Any]:
        return {"ip": self.host, "usuario": self.username, "senha": self.password, "porta": self.port}

    def __repr__(self):
        return f"DeviceConfig(device_id={self.device_id}, host={self.host}, port={self.port}, username={self.username})"

class HotspotApiClient:
    def __init__(self, base_url: str = None, token: str = None, timeout: float = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or settings.hotspot_api_url).rstrip("/")
        self.token = token if token is not None else settings.hotspot_api_token
        self.timeout = timeout or settings.hotspot_timeout_seconds
        self.session = session or requests.Session()

    def _breaker(self, device: DeviceConfig):
        return get_circuit_breaker(f"device:{device.host}:{device.port}", DEVICE_CB_CONFIG,
                                   counted_exceptions=(ProvisioningUnavailable,))

    def _post(self, device: DeviceConfig, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._breaker(device).call(self._do_post, device, path, payload)
        except CircuitBreakerException as e:
            raise ProvisioningUnavailable(f"Device {device.host} temporarily disabled: {e}", e)

    def _do_post(self, device: DeviceConfig, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.token:
            raise ProvisioningRejected("Hotspot API token not configured")
        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json",
                   **get_trace_headers()}
        body = {"credentials": device.credentials(), **payload}
        try:
            response = self.session.post(f"{self.base_url}{path}", json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProvisioningUnavailable(f"Device {device.host} unreachable: {e}", e)

        if response.status_code >= 500:
            raise ProvisioningUnavailable(f"Hotspot API {path} returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise ProvisioningRejected(f"Hotspot API {path} returned a non-JSON body", e, response.status_code)
        if not isinstance(data, dict):
            raise ProvisioningRejected(f"Hotspot API {path} returned a non-object body", status_code=response.status_code)
        if response.status_code >= 400 or not data.get("success"):
            message = data.get("error") or data.get("message") or f"HTTP {response.status_code}"
            raise ProvisioningRejected(f"Hotspot API {path} refused request: {message}",
                                       status_code=response.status_code)
        return data

    def list_by_identifier(self, device: DeviceConfig, mac_address: str) -> List[Dict[str, Any]]:
        """Credentials whose mac-address field matches; usernames are not trusted"""
        wanted = normalize_mac(mac_address)
        data = self._post(device, "/users/list", {"mac_address": wanted})
        matches = []
        for user in data.get("data") or []:
            raw = user.get("mac-address")
            if not raw:
                continue
            try:
                if normalize_mac(raw) == wanted:
                    matches.append(user)
            except InvalidCredentialInput:
                logger.warning(f"Ignoring device credential with unparseable mac-address {raw!r}")
        return matches

    def delete_by_identifier(self, device: DeviceConfig, credential_id: str) -> Dict[str, Any]:
        return self._post(device, "/users/delete", {"userId": credential_id})

    def create(self, device: DeviceConfig, user: Dict[str, Any]) -> Dict[str, Any]:
        return self._post(device, "/users/create", {"user": user})
