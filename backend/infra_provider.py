# infra_provider.py — Infrastructure provider API client (Hostinger VPS)
import logging
import os
from dataclasses import dataclass
from typing import Optional

import httpx

from errors import CoreError, ErrorKind
from models import utcnow
from telemetry_aggregator import NodeMetrics

logger = logging.getLogger("aerelion.provider")

HOSTINGER_API_BASE = os.getenv("HOSTINGER_API_BASE", "https://developers.hostinger.com/api/vps/v1")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))
DEFAULT_PLAN = os.getenv("HOSTINGER_PLAN", "KVM 2")
DEFAULT_REGION = os.getenv("HOSTINGER_REGION", "eu-central")


@dataclass(frozen=True)
class NodeHandle:
    provider_node_id: str
    state: str
    label: str
    hostname: str
    ip_address: Optional[str] = None
    region: Optional[str] = None
    plan: Optional[str] = None


def node_label(owner_id: str) -> str:
    return f"AERELION_NODE_{owner_id[:8]}"


def node_hostname(owner_id: str) -> str:
    return f"aerelion-{owner_id[:8]}.node"


def _num(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class HostingerProvider:
    """Every call carries a timeout and fails with a distinguishable kind:

    - PROVIDER_TIMEOUT      the call did not finish in time
    - PROVIDER_UNAVAILABLE  transport failure or 5xx; retry later
    - PROVIDER_REJECTED     4xx (quota, validation, unknown node); do not retry
    """

    def __init__(self, api_token: Optional[str], base_url: str = HOSTINGER_API_BASE,
                 timeout: float = PROVIDER_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, reference: str, json: Optional[dict] = None) -> dict:
        if not self.api_token:
            raise CoreError(ErrorKind.PROVIDER_UNAVAILABLE, "Infrastructure provider is not configured", reference)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.api_token}", "Accept": "application/json"},
            ) as client:
                resp = await client.request(method, path, json=json)
        except httpx.TimeoutException:
            logger.warning(f"Provider timeout: {method} {path}")
            raise CoreError(ErrorKind.PROVIDER_TIMEOUT, "Infrastructure provider did not respond in time", reference)
        except httpx.HTTPError as e:
            logger.warning(f"Provider unreachable: {method} {path} ({type(e).__name__})")
            raise CoreError(ErrorKind.PROVIDER_UNAVAILABLE, "Infrastructure provider is unreachable", reference)

        if resp.status_code >= 500:
            logger.warning(f"Provider error {resp.status_code}: {method} {path}")
            raise CoreError(ErrorKind.PROVIDER_UNAVAILABLE, "Infrastructure provider is unavailable", reference)
        if resp.status_code >= 400:
            logger.warning(f"Provider rejected {resp.status_code}: {method} {path}")
            detail = "quota exceeded" if resp.status_code == 429 else f"HTTP {resp.status_code}"
            raise CoreError(
                ErrorKind.PROVIDER_REJECTED,
                f"Infrastructure provider rejected the request ({detail})",
                reference,
            )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            raise CoreError(ErrorKind.PROVIDER_UNAVAILABLE, "Infrastructure provider returned an unreadable response", reference)
        return data if isinstance(data, dict) else {"data": data}

    async def create_node(self, owner_id: str, plan: str = DEFAULT_PLAN, region: str = DEFAULT_REGION) -> NodeHandle:
        label, hostname = node_label(owner_id), node_hostname(owner_id)
        data = await self._request("POST", "/virtual-machines", owner_id, json={
            "label": label,
            "hostname": hostname,
            "plan": plan,
            "data_center": region,
        })
        vm = data.get("data", data)
        ipv4 = vm.get("ipv4") or []
        ip = vm.get("ip_address") or (ipv4[0].get("address") if ipv4 and isinstance(ipv4[0], dict) else None)
        return NodeHandle(
            provider_node_id=str(vm.get("id")),
            state=vm.get("state", "initial"),
            label=label,
            hostname=vm.get("hostname", hostname),
            ip_address=ip,
            region=vm.get("data_center", region),
            plan=vm.get("plan", plan),
        )

    async def reboot(self, provider_node_id: str) -> None:
        await self._request("POST", f"/virtual-machines/{provider_node_id}/restart", provider_node_id)

    async def request_resize(self, provider_node_id: str, justification: str) -> dict:
        return await self._request(
            "POST", f"/virtual-machines/{provider_node_id}/upgrade-requests", provider_node_id,
            json={"reason": justification},
        )

    async def get_metrics(self, provider_node_id: str) -> NodeMetrics:
        data = await self._request("GET", f"/virtual-machines/{provider_node_id}/metrics", provider_node_id)
        m = data.get("data", data)
        uptime = m.get("uptime_seconds", m.get("uptime"))
        return NodeMetrics(
            cpu_percent=_num(m.get("cpu_percent", m.get("cpu_usage"))),
            ram_percent=_num(m.get("ram_percent")),
            ram_used_mb=_num(m.get("ram_used_mb")),
            ram_total_mb=_num(m.get("ram_total_mb")),
            disk_percent=_num(m.get("disk_percent")),
            disk_used_gb=_num(m.get("disk_used_gb")),
            disk_total_gb=_num(m.get("disk_total_gb")),
            network_in_mbps=_num(m.get("network_in_mbps", m.get("incoming_traffic"))),
            network_out_mbps=_num(m.get("network_out_mbps", m.get("outgoing_traffic"))),
            uptime_seconds=int(_num(uptime)) if _num(uptime) is not None else None,
            state=m.get("state") or m.get("status"),
            sampled_at=utcnow(),
        )

    async def get_credential_material(self, provider_node_id: str) -> dict:
        data = await self._request("GET", f"/virtual-machines/{provider_node_id}/credentials", provider_node_id)
        material = data.get("data", data)
        return {
            "ssh_key_pair": material.get("ssh_key_pair") or material.get("ssh") or {},
            "service_account": material.get("service_account") or material.get("n8n") or {},
        }


_provider: Optional[HostingerProvider] = None


def get_infra_provider() -> HostingerProvider:
    """Dependency returning the configured provider client (FastAPI Depends)"""
    global _provider
    if _provider is None:
        _provider = HostingerProvider(os.getenv("HOSTINGER_API_TOKEN"))
    return _provider
