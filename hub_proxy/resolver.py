"""
Startup lookups for the hub endpoint: the list of ports to proxy (fetched
over HTTP) and the hub's IPv4 address (a DNS A query).

Both lookups may fail; callers are expected to fall back to the defaults in
:mod:`hub_proxy.config`.
"""
import re
from typing import List, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    retry_if_exception_type,
)
from twisted.internet import threads
from twisted.names import client as dns_client, dns

_LINE_SPLIT = re.compile(r"\r?\n")


class ResolutionError(Exception):
    pass


def parse_hub_ports(text: str) -> List[int]:
    """
    Parse a newline-separated list of decimal port numbers.

    Blank lines are ignored. Any other line that is not a port in
    [1, 65535] rejects the whole response, as does a response with no
    ports at all.
    """
    ports = []
    for line in _LINE_SPLIT.split(text.strip()):
        line = line.strip()
        if not line:
            continue
        if not (line.isascii() and line.isdigit()):
            raise ResolutionError(f"Invalid hub port entry: {line!r}")
        port = int(line)
        if not 1 <= port <= 65535:
            raise ResolutionError(f"Hub port out of range: {port}")
        ports.append(port)
    if not ports:
        raise ResolutionError("Hub port list is empty")
    return ports


@retry(
    stop=stop_after_attempt(3),
    retry=retry_if_exception_type((
            httpx.TimeoutException,
            httpx.ConnectError,
            httpx.HTTPStatusError
    )),
    reraise=True
)
def fetch_hub_ports(url: str, timeout: float = 10.0,
                    client: Optional[httpx.Client] = None) -> List[int]:
    if client is None:
        with httpx.Client(timeout=timeout) as owned:
            resp = owned.get(url)
    else:
        resp = client.get(url, timeout=timeout)
    resp.raise_for_status()
    return parse_hub_ports(resp.text)


def lookup_hub_ports(reactor, config):
    """Run :func:`fetch_hub_ports` on the reactor's thread pool."""
    return threads.deferToThreadPool(
        reactor, reactor.getThreadPool(),
        fetch_hub_ports, config.hub_ports_url, config.http_timeout
    )


def lookup_hub_ip(hostname: str, resolver=None):
    if resolver is None:
        resolver = dns_client.getResolver()

    def first_a_record(result):
        answers, _authority, _additional = result
        for answer in answers:
            if answer.type == dns.A:
                return answer.payload.dottedQuad()
        raise ResolutionError(f"No A record found for {hostname}")

    d = resolver.lookupAddress(hostname)
    d.addCallback(first_a_record)
    return d
