"""
Credential Provisioner: grants network access for a paid MAC address.

The device rejects duplicate usernames and has no upsert, so provisioning
is delete-then-create. A crash between the two steps leaves the client
without a credential; callers treat that as a retryable failure and the
next attempt repeats both steps.
"""
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from common.settings import settings
from provisioning_service.hotspot_client import DeviceConfig, HotspotApiClient
from provisioning_service.mac import format_mac, normalize_mac

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "default"

@dataclass
class ProvisionResult:
    username: str
    deleted_ids: List[str] = field(default_factory=list)
    delete_outcomes: List[Dict[str, Any]] = field(default_factory=list)
    created_id: Optional[str] = None
    create_outcome: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def deleted(self) -> bool:
        return bool(self.deleted_ids)

class CredentialProvisioner:
    def __init__(self, client: HotspotApiClient = None, max_concurrency: int = None):
        self.client = client or HotspotApiClient()
        self.max_concurrency = max_concurrency or settings.device_max_concurrency
        # Callers beyond the limit block until a slot frees up
        self._slots = threading.BoundedSemaphore(self.max_concurrency)
        self._in_flight = 0
        self._count_lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def provision_for_payment(self, mac_address: str, plan_profile: Optional[str], device: DeviceConfig,
                              reference: Optional[str] = None) -> ProvisionResult:
        username = normalize_mac(mac_address)
        profile = plan_profile or DEFAULT_PROFILE
        started = time.monotonic()

        with self._slots:
            with self._count_lock:
                self._in_flight += 1
            try:
                result = self._delete_then_create(username, profile, device, reference)
            finally:
                with self._count_lock:
                    self._in_flight -= 1

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"✅ Provisioned {username} on {device.host} (profile={profile}, "
                    f"replaced={result.deleted_ids or 'none'}, {result.duration_ms}ms)")
        return result

    def _delete_then_create(self, username: str, profile: str, device: DeviceConfig,
                            reference: Optional[str]) -> ProvisionResult:
        result = ProvisionResult(username=username)

        for credential in self.client.list_by_identifier(device, username):
            credential_id = credential.get(".id")
            if not credential_id:
                logger.warning(f"Device credential for {username} has no id, cannot delete: {credential}")
                continue
            result.delete_outcomes.append(self.client.delete_by_identifier(device, credential_id))
            result.deleted_ids.append(credential_id)
            logger.info(f"🗑️ Deleted existing credential {credential_id} for {username} on {device.host}")

        stamp = datetime.now(timezone.utc).isoformat()
        comment = f"PIX {reference} - {stamp}" if reference else f"Provisioned {stamp}"
        user = {
            "name": username,
            "password": username,
            "profile": profile,
            "comment": comment,
            "mac-address": format_mac(username),
        }
        result.create_outcome = self.client.create(device, user)
        result.created_id = (result.create_outcome.get("data") or {}).get(".id")
        return result
