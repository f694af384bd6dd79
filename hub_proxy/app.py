#!/usr/bin/env python3
import sys
from enum import Enum
from typing import List, Optional

from twisted.internet import defer
from twisted.logger import (
    FilteringLogObserver,
    LogLevelFilterPredicate,
    Logger,
    globalLogBeginner,
    textFileLogObserver,
)

from hub_proxy.config import ProxyConfig, config as default_config
from hub_proxy.port_forward import ProxyListener
from hub_proxy.resolver import lookup_hub_ip, lookup_hub_ports

log = Logger()


class State(Enum):
    STARTING = "starting"
    RESOLVING = "resolving"
    SERVING = "serving"


class Orchestrator:
    """
    Resolves the hub ports and address once, then runs one
    :class:`ProxyListener` per port, all forwarding to that address.

    ``ports_lookup`` and ``ip_lookup`` are zero-argument callables returning a
    value or a Deferred; they default to the HTTP and DNS lookups in
    :mod:`hub_proxy.resolver`.
    """

    def __init__(self, config: ProxyConfig = default_config, reactor=None,
                 ports_lookup=None, ip_lookup=None):
        if reactor is None:
            from twisted.internet import reactor
        self.config = config
        self.reactor = reactor
        self.ports_lookup = ports_lookup or (
            lambda: lookup_hub_ports(self.reactor, self.config))
        self.ip_lookup = ip_lookup or (
            lambda: lookup_hub_ip(self.config.hub_hostname))
        self.state = State.STARTING
        self.hub_ports: Optional[List[int]] = None
        self.hub_ip: Optional[str] = None
        self.listeners: List[ProxyListener] = []

    @defer.inlineCallbacks
    def resolve(self):
        self.state = State.RESOLVING
        try:
            hub_ports = yield defer.maybeDeferred(self.ports_lookup)
            log.info("Got hub ports: {ports}", ports=", ".join(map(str, hub_ports)))
        except Exception as e:
            hub_ports = list(self.config.fallback_ports)
            log.warn("Failed to get hub ports ({error})! Falling back to fallback ports {ports}",
                     error=e, ports=", ".join(map(str, hub_ports)))

        try:
            hub_ip = yield defer.maybeDeferred(self.ip_lookup)
            log.info("Got hub IP: {ip}", ip=hub_ip)
        except Exception as e:
            hub_ip = self.config.fallback_ip
            log.error("Failed to query hub IP! {error}", error=e)
            log.warn("Falling back to fallback IP {ip}", ip=hub_ip)

        self.hub_ports = hub_ports
        self.hub_ip = hub_ip
        return hub_ports, hub_ip

    @defer.inlineCallbacks
    def start(self):
        hub_ports, hub_ip = yield self.resolve()
        self.state = State.SERVING
        self.listeners = [
            ProxyListener(self.reactor, port, hub_ip,
                          interface=self.config.listen_interface,
                          connect_timeout=self.config.connect_timeout)
            for port in hub_ports
        ]
        yield defer.gatherResults([listener.start() for listener in self.listeners])
        return self.listeners


def start_logging(level, stream=sys.stdout):
    observer = FilteringLogObserver(
        textFileLogObserver(stream),
        [LogLevelFilterPredicate(defaultLogLevel=level)],
    )
    globalLogBeginner.beginLoggingTo([observer], redirectStandardIO=False)


def main():
    from twisted.internet import reactor

    start_logging(default_config.log_level)
    orchestrator = Orchestrator(default_config, reactor)
    reactor.callWhenRunning(orchestrator.start)
    reactor.run()


if __name__ == "__main__":
    main()
