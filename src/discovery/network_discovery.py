"""
Network discovery for controllers that just joined the home network
"""

import asyncio
import ipaddress
import logging
import socket
from typing import AsyncIterator, Dict, List, Optional

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from http_helper import create_controller_session, controller_url
from .models import DiscoveryCandidate, normalize_mac

logger = logging.getLogger(__name__)

_SOURCE_DONE = object()


class NetworkDiscovery:
    """Handles mDNS browsing, hostname fallback and optional IP range probing"""

    def __init__(self, config: Dict):
        self.config = config
        self.discovery_timeout = config.get('discovery_timeout', 15)
        self.request_timeout = config.get('request_timeout', 3)
        self.service_type = config.get('service_type', '_wled._tcp.local.')
        self.hostnames = config.get('hostnames', ['wled.local'])
        self.ip_ranges = config.get('ip_ranges', [])
        self.max_concurrent_probes = config.get('max_concurrent_probes', 10)
        self.identity_path = config.get('identity_path', '/json/info')

    async def discover(self, timeout: Optional[float] = None) -> AsyncIterator[DiscoveryCandidate]:
        """
        Yield candidates in arrival order until every source finishes or the
        window closes. Each call is an independent pass; addresses are
        de-duplicated within the pass only.
        """
        timeout = self.discovery_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        queue: asyncio.Queue = asyncio.Queue()
        beacon_seen = asyncio.Event()

        sources = [
            ("mdns", self._browse_mdns),
            ("hostname", self._resolve_hostnames),
        ]
        if self.ip_ranges:
            sources.append(("ip_scan", self._sweep_ranges))

        logger.info(f"[SEARCH] Discovery pass started ({timeout}s, sources: {', '.join(n for n, _ in sources)})")
        producers = [asyncio.create_task(self._run_source(name, source, queue, deadline, beacon_seen))
                     for name, source in sources]
        pending = len(producers)
        seen = set()
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                if item is _SOURCE_DONE:
                    pending -= 1
                    continue
                if item.address in seen:
                    continue
                seen.add(item.address)
                logger.info(f"Candidate via {item.source}: {item.name or 'unnamed'} ({item.address})")
                yield item

            # Responders that arrived inside the window but were not consumed yet
            while not queue.empty():
                item = queue.get_nowait()
                if item is _SOURCE_DONE or item.address in seen:
                    continue
                seen.add(item.address)
                yield item
        finally:
            for task in producers:
                task.cancel()
            await asyncio.gather(*producers, return_exceptions=True)
            logger.info(f"Discovery pass finished: {len(seen)} candidates")

    async def _run_source(self, name: str, source, queue: asyncio.Queue, deadline: float,
                          beacon_seen: asyncio.Event) -> None:
        try:
            await source(queue, deadline, beacon_seen)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{name} discovery failed: {e}")
        finally:
            queue.put_nowait(_SOURCE_DONE)

    # ================== mDNS ==================

    async def _browse_mdns(self, queue: asyncio.Queue, deadline: float, beacon_seen: asyncio.Event) -> None:
        """Browse for the controller service type until the deadline"""
        loop = asyncio.get_running_loop()
        aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        lookups = set()

        def on_service_state_change(zeroconf, service_type: str, name: str, state_change: ServiceStateChange) -> None:
            if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
                return
            task = asyncio.ensure_future(
                self._resolve_service(aiozc, service_type, name, queue, deadline, beacon_seen)
            )
            lookups.add(task)
            task.add_done_callback(lookups.discard)

        browser = AsyncServiceBrowser(aiozc.zeroconf, [self.service_type], handlers=[on_service_state_change])
        try:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
        finally:
            await browser.async_cancel()
            for task in list(lookups):
                task.cancel()
            await asyncio.gather(*lookups, return_exceptions=True)
            await aiozc.async_close()

    async def _resolve_service(self, aiozc, service_type: str, name: str, queue: asyncio.Queue,
                               deadline: float, beacon_seen: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        remaining_ms = int(max(0.1, deadline - loop.time()) * 1000)
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(aiozc.zeroconf, min(3000, remaining_ms)):
            logger.debug(f"mDNS service {name} did not resolve")
            return

        addresses = info.parsed_addresses(IPVersion.V4Only)
        if not addresses:
            return

        properties = {}
        for key, value in (info.properties or {}).items():
            if isinstance(key, bytes):
                key = key.decode('utf-8', errors='replace')
            if isinstance(value, bytes):
                value = value.decode('utf-8', errors='replace')
            properties[key] = value

        beacon_seen.set()
        queue.put_nowait(DiscoveryCandidate(
            address=addresses[0],
            name=properties.get('name') or name.split('.')[0],
            identity_token=normalize_mac(properties.get('mac')),
            source="mdns",
            port=info.port or 80,
        ))

    # ================== HOSTNAME FALLBACK ==================

    async def _resolve_hostnames(self, queue: asyncio.Queue, deadline: float, beacon_seen: asyncio.Event) -> None:
        """Try well-known controller hostnames if no beacon arrives in the first half of the window"""
        if not self.hostnames:
            return
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(beacon_seen.wait(), timeout=max(0.0, (deadline - loop.time()) / 2))
            return
        except asyncio.TimeoutError:
            pass

        for host in self.hostnames:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                infos = await asyncio.wait_for(
                    loop.getaddrinfo(host, 80, family=socket.AF_INET, type=socket.SOCK_STREAM),
                    timeout=remaining,
                )
            except (asyncio.TimeoutError, OSError) as e:
                logger.debug(f"Host lookup failed for {host}: {e}")
                continue
            for info in infos:
                queue.put_nowait(DiscoveryCandidate(address=info[4][0], name=host, source="hostname"))

    # ================== IP RANGE PROBING ==================

    async def _sweep_ranges(self, queue: asyncio.Queue, deadline: float, beacon_seen: asyncio.Event) -> None:
        """Probe configured IP ranges for anything answering the identity endpoint"""
        loop = asyncio.get_running_loop()
        ip_list = self.generate_ip_range()
        semaphore = asyncio.Semaphore(self.max_concurrent_probes)
        logger.info(f"Probing {len(ip_list)} addresses...")

        async with create_controller_session(self.request_timeout) as session:
            async def probe(ip: str):
                async with semaphore:
                    if loop.time() >= deadline:
                        return
                    info = await self._http_get(session, controller_url(ip, self.identity_path))
                    if info is not None:
                        name = info.get('name') if isinstance(info.get('name'), str) else None
                        queue.put_nowait(DiscoveryCandidate(address=ip, name=name, source="ip_scan"))

            await asyncio.gather(*(probe(ip) for ip in ip_list), return_exceptions=True)

    async def _http_get(self, session, url: str) -> Optional[dict]:
        """Make HTTP GET request and return a JSON object, or None"""
        try:
            async with session.get(url) as response:
                if response.status == 200:
                    data = await response.json(content_type=None)
                    return data if isinstance(data, dict) else None
                return None
        except Exception as e:
            logger.debug(f"HTTP GET failed for {url}: {e}")
            return None

    def generate_ip_range(self) -> List[str]:
        """Generate IP list from configured ranges ("a-b", CIDR or single address)"""
        all_ips = []
        for ip_range in self.ip_ranges:
            if '-' in ip_range:
                start_ip, end_ip = ip_range.split('-')
                start = ipaddress.IPv4Address(start_ip.strip())
                end = ipaddress.IPv4Address(end_ip.strip())
                current = start
                while current <= end:
                    all_ips.append(str(current))
                    current += 1
            else:
                try:
                    network = ipaddress.IPv4Network(ip_range.strip(), strict=False)
                    if network.num_addresses == 1:
                        all_ips.append(str(network.network_address))
                    else:
                        all_ips.extend(str(ip) for ip in network.hosts())
                except ValueError:
                    logger.warning(f"Invalid IP range: {ip_range}")
        return all_ips
