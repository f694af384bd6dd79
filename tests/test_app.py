import errno

import httpx
from twisted.internet import defer
from twisted.internet.error import CannotListenError
from twisted.internet.testing import MemoryReactor
from twisted.names.error import DNSServerError

from hub_proxy.app import Orchestrator, State
from hub_proxy.config import ProxyConfig

from helpers import connect_client, result_of

CONFIG = ProxyConfig(fallback_ip="69.39.237.88", fallback_ports=(6001, 20002))


def failing(exc):
    return lambda: defer.fail(exc)


def test_resolved_ports_and_ip_are_used(reactor, log_messages):
    orchestrator = Orchestrator(CONFIG, reactor,
                                ports_lookup=lambda: defer.succeed([7001, 7002, 7003]),
                                ip_lookup=lambda: defer.succeed("198.51.100.1"))
    assert orchestrator.state is State.STARTING

    listeners = result_of(orchestrator.start())

    assert orchestrator.state is State.SERVING
    assert [l.port for l in listeners] == [7001, 7002, 7003]
    assert {l.target_ip for l in listeners} == {"198.51.100.1"}
    assert [server[0] for server in reactor.tcpServers] == [7001, 7002, 7003]
    messages = log_messages()
    assert "Got hub ports: 7001, 7002, 7003" in messages
    assert "Got hub IP: 198.51.100.1" in messages


def test_port_lookup_failure_falls_back_to_default_pair(reactor, log_events):
    orchestrator = Orchestrator(
        CONFIG, reactor,
        ports_lookup=failing(httpx.ConnectError("network unreachable")),
        ip_lookup=lambda: "198.51.100.1")

    result_of(orchestrator.start())

    assert orchestrator.hub_ports == [6001, 20002]
    assert [server[0] for server in reactor.tcpServers] == [6001, 20002]
    assert orchestrator.hub_ip == "198.51.100.1"
    warnings = [e for e in log_events if e.get("log_level") is not None
                and e["log_level"].name == "warn"]
    assert len(warnings) == 1


def test_dns_failure_falls_back_to_default_ip(reactor):
    orchestrator = Orchestrator(
        CONFIG, reactor,
        ports_lookup=lambda: [6001],
        ip_lookup=failing(DNSServerError("SERVFAIL")))

    listeners = result_of(orchestrator.start())

    assert orchestrator.hub_ip == "69.39.237.88"
    assert [l.target_ip for l in listeners] == ["69.39.237.88"]


def test_both_lookups_fail(reactor):
    def raise_now():
        raise RuntimeError("boom")

    orchestrator = Orchestrator(CONFIG, reactor,
                                ports_lookup=raise_now, ip_lookup=raise_now)
    result_of(orchestrator.start())

    assert (orchestrator.hub_ports, orchestrator.hub_ip) == ([6001, 20002], "69.39.237.88")
    factories = [server[1] for server in reactor.tcpServers]
    assert [(f.host, f.port) for f in factories] == [
        ("69.39.237.88", 6001), ("69.39.237.88", 20002)]


def test_resolution_waits_for_lookups(reactor):
    ports = defer.Deferred()
    orchestrator = Orchestrator(CONFIG, reactor,
                                ports_lookup=lambda: ports,
                                ip_lookup=lambda: "198.51.100.1")
    started = orchestrator.start()

    assert orchestrator.state is State.RESOLVING
    assert reactor.tcpServers == []

    ports.callback([6001])
    assert orchestrator.state is State.SERVING
    assert len(result_of(started)) == 1


def test_busy_port_does_not_stop_startup(log_messages):
    class BusyReactor(MemoryReactor):
        def listenTCP(self, port, factory, backlog=50, interface=""):
            if port == 6001:
                raise CannotListenError(
                    interface, port,
                    OSError(errno.EADDRINUSE, "Address already in use"))
            return super().listenTCP(port, factory, backlog, interface)

    reactor = BusyReactor()
    orchestrator = Orchestrator(CONFIG, reactor,
                                ports_lookup=lambda: [6001, 20002],
                                ip_lookup=lambda: "198.51.100.1")
    listeners = result_of(orchestrator.start())

    assert [l.listening_port is not None for l in listeners] == [False, True]
    assert "Error: Port 6001 is already in use" in log_messages()

    connect_client(reactor.tcpServers[0][1])
    assert reactor.tcpClients[0][:2] == ("198.51.100.1", 20002)
