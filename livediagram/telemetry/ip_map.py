"""Reverse map from private IP address to diagram node."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from livediagram.cache import TTLCache, identity_key_prefix
from livediagram.config import LiveSettings
from livediagram.errors import LiveDiagramError
from livediagram.topology import Topology, subnet_id_of, subscription_of

logger = logging.getLogger(__name__)

NIC_API_VERSION = "2023-11-01"


@dataclass
class IpResourceEntry:
    private_ip: str
    node_id: str
    resource_id: str
    nic_id: Optional[str] = None
    vm_id: Optional[str] = None


class IpResourceMapper:
    """
    Builds ``ip -> node`` from the network interfaces of every subscription
    referenced by the topology.

    A NIC attached to a VM that is a diagram node maps directly. Otherwise the
    NIC's subnet is matched against nodes whose resource reference lives in
    that subnet (pool-managed compute such as clusters and scale sets); the
    first such node wins. Node ``endpoint`` values are added as direct entries.
    """

    def __init__(self, client, settings: LiveSettings, cache: Optional[TTLCache] = None) -> None:
        self.client = client
        self.settings = settings
        self.cache = cache or TTLCache(capacity=20, ttl_seconds=120.0, label="ip_map")

    def build(self, topology: Topology, identity: Optional[str]) -> Dict[str, IpResourceEntry]:
        key = f"{identity_key_prefix(identity)}:ipmap:{','.join(sorted(n.id for n in topology.nodes))}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        ip_map: Dict[str, IpResourceEntry] = {}
        by_resource: Dict[str, str] = {}
        subscriptions: List[str] = []
        for node in topology.nodes:
            if node.endpoint:
                ip_map[node.endpoint] = IpResourceEntry(
                    private_ip=node.endpoint,
                    node_id=node.id,
                    resource_id=node.resource_ref or node.endpoint,
                )
            if not node.resource_ref:
                continue
            by_resource[node.resource_ref.lower()] = node.id
            sub = subscription_of(node.resource_ref)
            if sub and sub not in subscriptions:
                subscriptions.append(sub)

        by_subnet = _subnet_members(topology)
        for sub in subscriptions:
            try:
                nics = self.client.list_arm(
                    f"/subscriptions/{sub}/providers/Microsoft.Network/networkInterfaces",
                    identity,
                    params={"api-version": NIC_API_VERSION, "$top": 200},
                )
            except LiveDiagramError as e:
                logger.warning(f"Listing network interfaces failed for subscription {sub}: {e}")
                continue
            for nic in nics:
                for ip, entry in _entries_for_nic(nic, by_resource, by_subnet):
                    ip_map.setdefault(ip, entry)

        self.cache.set(key, ip_map)
        logger.debug(f"IP map for diagram {topology.id}: {len(ip_map)} address(es)")
        return ip_map

    @staticmethod
    def resolve(ip_map: Dict[str, IpResourceEntry], src_ip: str, dst_ip: str) -> Tuple[Optional[str], Optional[str]]:
        src = ip_map.get(src_ip)
        dst = ip_map.get(dst_ip)
        return (src.node_id if src else None, dst.node_id if dst else None)


def _subnet_members(topology: Topology) -> Dict[str, List[str]]:
    members: Dict[str, List[str]] = {}
    for node in topology.nodes:
        subnet = subnet_id_of(node.resource_ref)
        if subnet:
            members.setdefault(subnet, []).append(node.id)
    return members


def _entries_for_nic(nic: Dict, by_resource: Dict[str, str], by_subnet: Dict[str, List[str]]):
    props = nic.get("properties") or {}
    vm_id = ((props.get("virtualMachine") or {}).get("id") or "").lower() or None
    nic_id = nic.get("id")
    for ip_config in props.get("ipConfigurations") or []:
        ip_props = ip_config.get("properties") or {}
        ip = ip_props.get("privateIPAddress")
        if not ip:
            continue
        if vm_id and vm_id in by_resource:
            yield ip, IpResourceEntry(ip, by_resource[vm_id], vm_id, nic_id=nic_id, vm_id=vm_id)
            continue
        subnet_id = ((ip_props.get("subnet") or {}).get("id") or "").lower()
        members = by_subnet.get(subnet_id) if subnet_id else None
        if members:
            yield ip, IpResourceEntry(ip, members[0], vm_id or nic_id or "", nic_id=nic_id, vm_id=vm_id)
